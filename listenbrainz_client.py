"""
ListenBrainz client over its JSON HTTP API using requests

ListenBrainz authenticates with a user token, identifies listens by
(listened_at, recording_msid) and paginates by timestamp instead of page
number. Love/unlove needs a MusicBrainz recording MBID, looked up on demand.
"""
import asyncio
import logging
import threading
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import requests

from listen_models import (
    Listen,
    NowPlayingTrack,
    ScrobbleIdentifier,
    ScrobbleService,
    ServiceTrackData,
    TopAlbum,
    TopArtist,
    TopTrack,
    UserStats,
)
from service_clients import (
    AuthenticationError,
    ScrobbleClient,
    ServiceError,
    TransientServiceError,
    call_with_retry,
)

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.listenbrainz.org/1/"
MUSICBRAINZ_URL = "https://musicbrainz.org/ws/2/recording/"
USER_AGENT = "scrobble-sync/1.0 ( https://github.com/scrobble-sync )"
REQUEST_TIMEOUT = 10
RETRYABLE_HTTP_STATUSES = {429, 503}

RANGES = {
    '7day': 'week',
    '1month': 'month',
    '3month': 'quarter',
    '12month': 'year',
    'overall': 'all_time',
    'all_time': 'all_time',
}


def _cover_art_url(release_mbid: Optional[str]) -> Optional[str]:
    if not release_mbid:
        return None
    return f"https://coverartarchive.org/release/{release_mbid}/front-250"


def extract_mbids(metadata: Dict[str, Any]) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """(artist, release, recording) MBIDs, preferring the server-side mapping over submitted info"""
    mapping = metadata.get('mbid_mapping') or {}
    additional = metadata.get('additional_info') or {}

    artist_mbid = (mapping.get('artist_mbids') or [None])[0] or (additional.get('artist_mbids') or [None])[0]
    release_mbid = mapping.get('release_mbid') or additional.get('release_mbid')
    recording_mbid = mapping.get('recording_mbid') or additional.get('recording_mbid')
    return artist_mbid, release_mbid, recording_mbid


def artist_url(artist: str, mbid: Optional[str]) -> str:
    if mbid:
        return f"https://listenbrainz.org/artist/{mbid}/"
    query = quote(f'artist:"{artist}"')
    return f"https://musicbrainz.org/search?query={query}&type=artist&limit=1&method=advanced"


def album_url(artist: str, album: str, mbid: Optional[str]) -> str:
    if mbid:
        return f"https://listenbrainz.org/album/{mbid}/"
    query = quote(f'artist:"{artist}" AND release:"{album}"')
    return f"https://musicbrainz.org/search?query={query}&type=release&limit=1&method=advanced"


def track_url(artist: str, track: str, mbid: Optional[str]) -> str:
    if mbid:
        return f"https://listenbrainz.org/track/{mbid}/"
    query = quote(f'artist:"{artist}" AND recording:"{track}"')
    return f"https://musicbrainz.org/search?query={query}&type=recording&limit=1&method=advanced"


class ListenBrainzClient(ScrobbleClient):
    service = ScrobbleService.LISTENBRAINZ

    def __init__(self, api_url: str = DEFAULT_API_URL, session: Optional[requests.Session] = None,
                 sleep: Callable = asyncio.sleep):
        self.api_url = api_url.rstrip('/') + '/'
        self.http = session or requests.Session()
        self.http.headers.setdefault('User-Agent', USER_AGENT)
        self._sleep = sleep
        self._pagination_lock = threading.Lock()
        self._pagination_state: Dict[str, int] = {}  # username -> oldest listened_at seen

    # Network

    def _request(self, method: str, endpoint: str, token: Optional[str] = None,
                 params: Optional[Dict] = None, payload: Optional[Dict] = None) -> Optional[Dict]:
        headers = {}
        if token:
            headers['Authorization'] = f"Token {token}"

        try:
            response = self.http.request(
                method,
                self.api_url + endpoint,
                params=params,
                json=payload,
                headers=headers,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.RequestException as e:
            raise ServiceError(f"ListenBrainz request failed: {e}") from e

        if response.status_code == 401:
            raise AuthenticationError(f"ListenBrainz rejected token: {response.text}", 401)
        if response.status_code in RETRYABLE_HTTP_STATUSES:
            raise TransientServiceError(f"HTTP {response.status_code}: {response.text}", response.status_code)
        if response.status_code >= 400:
            raise ServiceError(f"HTTP {response.status_code}: {response.text}", response.status_code)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _call(self, method: str, endpoint: str, **kwargs) -> Optional[Dict]:
        return await call_with_retry(
            asyncio.to_thread, self._request, method, endpoint, sleep=self._sleep, **kwargs
        )

    # Authentication

    async def authenticate(self) -> Tuple[str, str]:
        # Tokens are pasted by the user from the settings page
        return "", "https://listenbrainz.org/settings/"

    async def complete_authentication(self, token: str) -> Tuple[str, str, Optional[str], bool]:
        token = token.strip()
        if not token:
            raise AuthenticationError("Empty ListenBrainz token")

        data = await self._call('GET', 'validate-token', token=token) or {}
        username = data.get('user_name')
        if not data.get('valid') or not username:
            raise AuthenticationError("Invalid ListenBrainz token")

        logger.info(f"Authenticated with ListenBrainz as {username}")
        return username, token, f"https://listenbrainz.org/user/{username}/", False

    # Scrobbling

    @staticmethod
    def _track_metadata(track: NowPlayingTrack) -> Dict[str, Any]:
        metadata = {
            'artist_name': track.artist,
            'track_name': track.name,
        }
        if track.album:
            metadata['release_name'] = track.album
        if track.length:
            metadata['additional_info'] = {'duration': int(track.length)}
        return metadata

    async def update_now_playing(self, session_key: str, track: NowPlayingTrack) -> None:
        payload = {
            'listen_type': 'playing_now',
            'payload': [{'track_metadata': self._track_metadata(track)}],
        }
        await self._call('POST', 'submit-listens', token=session_key, payload=payload)

    async def scrobble(self, session_key: str, track: NowPlayingTrack) -> None:
        payload = {
            'listen_type': 'single',
            'payload': [{
                'listened_at': int(track.started_at),
                'track_metadata': self._track_metadata(track),
            }],
        }
        await self._call('POST', 'submit-listens', token=session_key, payload=payload)

    async def update_love(self, session_key: str, artist: str, track: str, loved: bool) -> None:
        recording = await self.lookup_recording(artist, track)
        if not recording:
            logger.warning(f"No MusicBrainz recording for {artist} - {track}, skipping love update")
            return

        payload = {'recording_mbid': recording['id'], 'score': 1 if loved else 0}
        await self._call('POST', 'feedback/recording-feedback', token=session_key, payload=payload)
        logger.debug(f"Love status updated on ListenBrainz: {artist} - {track} ({loved})")

    async def delete_scrobble(self, session_key: str, identifier: ScrobbleIdentifier) -> None:
        if identifier.timestamp is None or not identifier.service_id:
            logger.warning("ListenBrainz delete skipped - requires timestamp and recording_msid")
            return

        payload = {'listened_at': identifier.timestamp, 'recording_msid': identifier.service_id}
        await self._call('POST', 'delete-listen', token=session_key, payload=payload)
        logger.info(f"Deleted listen on ListenBrainz: {identifier.artist} - {identifier.track}")

    # MusicBrainz

    def _search_recording(self, artist: str, track: str) -> Optional[Dict]:
        params = {'query': f'artist:"{artist}" AND recording:"{track}"', 'limit': 1, 'fmt': 'json'}
        try:
            response = self.http.get(MUSICBRAINZ_URL, params=params, timeout=REQUEST_TIMEOUT)
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.warning(f"MusicBrainz lookup failed for {artist} - {track}: {e}")
            return None
        recordings = response.json().get('recordings') or []
        return recordings[0] if recordings else None

    async def lookup_recording(self, artist: str, track: str) -> Optional[Dict]:
        return await asyncio.to_thread(self._search_recording, artist, track)

    async def enrich_track_with_urls(self, track: NowPlayingTrack) -> NowPlayingTrack:
        """Fill in ListenBrainz/MusicBrainz links for the now-playing track"""
        recording = await self.lookup_recording(track.artist, track.name)
        recording = recording or {}

        credits = recording.get('artist-credit') or [{}]
        artist_mbid = (credits[0].get('artist') or {}).get('id')
        releases = recording.get('releases') or [{}]
        release_mbid = releases[0].get('id')

        return replace(
            track,
            artist_url=artist_url(track.artist, artist_mbid),
            album_url=album_url(track.artist, track.album, release_mbid),
            track_url=track_url(track.artist, track.name, recording.get('id')),
        )

    # History

    async def fetch_listens(self, username: str, min_ts: Optional[int] = None,
                            max_ts: Optional[int] = None, count: int = 1000) -> List[Dict]:
        """One raw page of listens, newest first"""
        params = {'count': count}
        if max_ts is not None:
            params['max_ts'] = max_ts
        if min_ts is not None:
            params['min_ts'] = min_ts

        data = await self._call('GET', f"user/{quote(username, safe='')}/listens", params=params) or {}
        return (data.get('payload') or {}).get('listens') or []

    def _to_listen(self, listen: Dict) -> Optional[Listen]:
        metadata = listen.get('track_metadata') or {}
        artist = metadata.get('artist_name')
        name = metadata.get('track_name')
        if not artist or not name:
            return None

        album = metadata.get('release_name') or ""
        artist_mbid, release_mbid, recording_mbid = extract_mbids(metadata)
        timestamp = listen.get('listened_at')
        return Listen(
            name=name,
            artist=artist,
            album=album,
            date=timestamp,
            image_url=_cover_art_url(release_mbid),
            artist_url=artist_url(artist, artist_mbid),
            album_url=album_url(artist, album, release_mbid),
            track_url=track_url(artist, name, recording_mbid),
            service_info={
                self.service.id: ServiceTrackData.listenbrainz(
                    listen.get('recording_msid') or "", timestamp or 0
                )
            },
            source_service=self.service,
        )

    async def get_recent_tracks(self, username: str, limit: int, page: int,
                                token: Optional[str] = None) -> List[Listen]:
        max_ts = None
        with self._pagination_lock:
            if page == 1:
                self._pagination_state.pop(username, None)
            else:
                max_ts = self._pagination_state.get(username)
                if max_ts is None:
                    logger.warning(f"ListenBrainz page {page} requested without a pagination cursor")

        listens = await self.fetch_listens(username, max_ts=max_ts, count=limit)
        if listens and listens[-1].get('listened_at') is not None:
            with self._pagination_lock:
                self._pagination_state[username] = listens[-1]['listened_at']

        return [item for item in map(self._to_listen, listens) if item is not None]

    async def get_recent_tracks_by_time_range(self, username: str, min_ts: Optional[int],
                                              max_ts: Optional[int], limit: int,
                                              token: Optional[str] = None) -> Optional[List[Listen]]:
        listens = await self.fetch_listens(username, min_ts=min_ts, max_ts=max_ts, count=limit)
        return [item for item in map(self._to_listen, listens) if item is not None]

    # Profile data

    async def get_user_stats(self, username: str) -> Optional[UserStats]:
        data = await self._call('GET', f"user/{quote(username, safe='')}/listen-count") or {}
        count = (data.get('payload') or {}).get('count', 0)
        return UserStats(playcount=int(count))

    async def _stats(self, username: str, entity: str, period: str, limit: int, offset: int = 0) -> List[Dict]:
        params = {'range': RANGES.get(period, 'all_time'), 'count': limit, 'offset': offset}
        data = await self._call('GET', f"stats/user/{quote(username, safe='')}/{entity}", params=params)
        # 204 means statistics have not been calculated yet
        return ((data or {}).get('payload') or {}).get(entity) or []

    async def get_top_artists(self, username: str, period: str, limit: int) -> List[TopArtist]:
        artists = await self._stats(username, 'artists', period, limit)
        return [
            TopArtist(name=a['artist_name'], playcount=a['listen_count'])
            for a in artists if 'artist_name' in a and 'listen_count' in a
        ]

    async def get_top_albums(self, username: str, period: str, limit: int) -> List[TopAlbum]:
        releases = await self._stats(username, 'releases', period, limit)
        return [
            TopAlbum(
                artist=r['artist_name'],
                name=r['release_name'],
                playcount=r['listen_count'],
                image_url=_cover_art_url(r.get('release_mbid')),
            )
            for r in releases if 'release_name' in r and 'artist_name' in r and 'listen_count' in r
        ]

    async def get_top_tracks(self, username: str, period: str, limit: int) -> List[TopTrack]:
        recordings = await self._stats(username, 'recordings', period, limit)
        return [
            TopTrack(
                artist=r['artist_name'],
                name=r['track_name'],
                playcount=r['listen_count'],
                image_url=_cover_art_url(r.get('release_mbid')),
            )
            for r in recordings if 'track_name' in r and 'artist_name' in r and 'listen_count' in r
        ]
