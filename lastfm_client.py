"""
Last.fm and Libre.fm clients built on pylast

Both services speak the same Audioscrobbler 2.0 API, so one client class
serves both; LibreFmClient only swaps the pylast network and link base.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import quote

import pylast

from lastfm_web_client import LastFmWebClient
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

# Last.fm API error codes
RETRYABLE_STATUSES = {pylast.STATUS_OPERATION_FAILED, pylast.STATUS_TEMPORARILY_UNAVAILABLE}
AUTH_STATUSES = {pylast.STATUS_AUTH_FAILED, pylast.STATUS_INVALID_SK, pylast.STATUS_TOKEN_UNAUTHORIZED}

PERIODS = {
    '7day': pylast.PERIOD_7DAYS,
    '1month': pylast.PERIOD_1MONTH,
    '3month': pylast.PERIOD_3MONTHS,
    '6month': pylast.PERIOD_6MONTHS,
    '12month': pylast.PERIOD_12MONTHS,
    'overall': pylast.PERIOD_OVERALL,
    'all_time': pylast.PERIOD_OVERALL,
}


def translate_ws_error(error: pylast.WSError) -> ServiceError:
    """Map a pylast web-service error onto the shared error taxonomy"""
    try:
        code = int(error.get_id())
    except (TypeError, ValueError):
        code = None

    if code in RETRYABLE_STATUSES:
        return TransientServiceError(str(error), code)
    if code in AUTH_STATUSES:
        return AuthenticationError(str(error), code)
    return ServiceError(str(error), code)


class LastFmClient(ScrobbleClient):
    service = ScrobbleService.LASTFM
    site_url = "https://www.last.fm"
    network_class = pylast.LastFMNetwork

    def __init__(self, api_key: str, api_secret: str, sleep: Callable = asyncio.sleep,
                 web_client: Optional[LastFmWebClient] = None):
        self.api_key = api_key
        self.api_secret = api_secret
        self.web_client = web_client
        self._sleep = sleep
        self._networks: Dict[str, pylast._Network] = {}
        self._usernames: Dict[str, str] = {}
        self._pending_auth_urls: Dict[str, str] = {}

    # URL building helpers

    def artist_url(self, artist: str) -> str:
        return f"{self.site_url}/music/{quote(artist, safe='')}"

    def album_url(self, artist: str, album: str) -> str:
        return f"{self.site_url}/music/{quote(artist, safe='')}/{quote(album, safe='')}"

    def track_url(self, artist: str, track: str) -> str:
        return f"{self.site_url}/music/{quote(artist, safe='')}/_/{quote(track, safe='')}"

    # Network

    def network(self, session_key: Optional[str] = None) -> pylast._Network:
        """One pylast network per session key; the anonymous one is keyed by ''"""
        key = session_key or ""
        if key not in self._networks:
            self._networks[key] = self.network_class(
                api_key=self.api_key,
                api_secret=self.api_secret,
                session_key=key,
            )
        return self._networks[key]

    async def _run(self, func, *args, **kwargs):
        try:
            return await asyncio.to_thread(func, *args, **kwargs)
        except pylast.WSError as e:
            raise translate_ws_error(e) from e
        except (pylast.NetworkError, pylast.MalformedResponseError) as e:
            raise ServiceError(f"{self.service.display_name} request failed: {e}") from e

    async def _call(self, func, *args, **kwargs):
        return await call_with_retry(self._run, func, *args, sleep=self._sleep, **kwargs)

    async def _authenticated_username(self, session_key: str) -> str:
        if session_key not in self._usernames:
            user = await self._call(self.network(session_key).get_authenticated_user)
            self._usernames[session_key] = user.get_name()
        return self._usernames[session_key]

    # Authentication

    async def authenticate(self) -> Tuple[str, str]:
        generator = pylast.SessionKeyGenerator(self.network())
        auth_url = await self._call(generator.get_web_auth_url)
        token = generator.web_auth_tokens[auth_url]
        self._pending_auth_urls[token] = auth_url
        return token, auth_url

    async def complete_authentication(self, token: str) -> Tuple[str, str, Optional[str], bool]:
        generator = pylast.SessionKeyGenerator(self.network())
        auth_url = self._pending_auth_urls.pop(token, "")
        session_key, username = await self._call(
            generator.get_web_auth_session_key_username, auth_url, token
        )
        self._usernames[session_key] = username
        profile_url = f"{self.site_url}/user/{quote(username, safe='')}"
        logger.info(f"Authenticated with {self.service.display_name} as {username}")
        return username, session_key, profile_url, False

    # Scrobbling

    async def update_now_playing(self, session_key: str, track: NowPlayingTrack) -> None:
        await self._call(
            self.network(session_key).update_now_playing,
            artist=track.artist,
            title=track.name,
            album=track.album or None,
            duration=int(track.length) or None,
        )

    async def scrobble(self, session_key: str, track: NowPlayingTrack) -> None:
        await self._call(
            self.network(session_key).scrobble,
            artist=track.artist,
            title=track.name,
            timestamp=int(track.started_at),
            album=track.album or None,
            duration=int(track.length) or None,
        )

    async def update_love(self, session_key: str, artist: str, track: str, loved: bool) -> None:
        remote_track = self.network(session_key).get_track(artist, track)
        if loved:
            await self._call(remote_track.love)
        else:
            await self._call(remote_track.unlove)
        logger.debug(f"Love status updated on {self.service.display_name}: {artist} - {track} ({loved})")

    async def delete_scrobble(self, session_key: str, identifier: ScrobbleIdentifier) -> None:
        if identifier.timestamp is None:
            raise ServiceError("Missing timestamp for scrobble deletion", 6)

        network = self.network(session_key)
        request = pylast._Request(network, "library.removeScrobble", {
            'artist': identifier.artist,
            'track': identifier.track,
            'timestamp': str(identifier.timestamp),
        })
        try:
            await self._call(request.execute)
        except ServiceError as e:
            if self.web_client is None:
                raise
            logger.warning(f"{self.service.display_name} API delete failed, trying the website: {e}")
            await asyncio.to_thread(
                self.web_client.delete_scrobble, identifier.artist, identifier.track, identifier.timestamp
            )
            return
        logger.info(f"Deleted scrobble on {self.service.display_name}: {identifier.artist} - {identifier.track}")

    # History

    def _to_listen(self, played: pylast.PlayedTrack) -> Listen:
        artist = played.track.artist.name
        name = played.track.title
        album = played.album or ""
        timestamp = int(played.timestamp) if played.timestamp else None
        return Listen(
            name=name,
            artist=artist,
            album=album,
            date=timestamp,
            artist_url=self.artist_url(artist),
            album_url=self.album_url(artist, album),
            track_url=self.track_url(artist, name),
            service_info={self.service.id: ServiceTrackData.lastfm(timestamp or 0)},
            source_service=self.service,
        )

    async def get_recent_tracks(self, username: str, limit: int, page: int,
                                token: Optional[str] = None) -> List[Listen]:
        user = self.network(token).get_user(username)
        # pylast pages internally; fetch through the requested page and keep its slice
        played = await self._call(user.get_recent_tracks, limit=limit * page, now_playing=False)
        listens = [self._to_listen(p) for p in played[(page - 1) * limit:]]

        if not token:
            return listens

        counts = await asyncio.gather(*(
            self.get_track_user_playcount(token, listen.artist, listen.name) for listen in listens
        ))
        return [listen.with_playcount(count) for listen, count in zip(listens, counts)]

    async def get_recent_tracks_by_time_range(self, username: str, min_ts: Optional[int],
                                              max_ts: Optional[int], limit: int,
                                              token: Optional[str] = None) -> Optional[List[Listen]]:
        user = self.network(token).get_user(username)
        played = await self._call(
            user.get_recent_tracks,
            limit=limit,
            time_from=min_ts,
            time_to=max_ts,
            now_playing=False,
        )
        logger.debug(f"{self.service.display_name} time range {min_ts}-{max_ts}: {len(played)} tracks")
        return [self._to_listen(p) for p in played]

    # Profile data

    async def get_user_stats(self, username: str) -> Optional[UserStats]:
        user = self.network().get_user(username)
        playcount = await self._call(user.get_playcount)
        registered = await self._call(user.get_registered)
        country = await self._call(user.get_country)
        return UserStats(
            playcount=int(playcount or 0),
            registered=str(registered or ""),
            country=country.get_name() if country else None,
        )

    async def get_top_artists(self, username: str, period: str, limit: int) -> List[TopArtist]:
        user = self.network().get_user(username)
        items = await self._call(user.get_top_artists, period=PERIODS.get(period, period), limit=limit)
        return [TopArtist(name=i.item.get_name(), playcount=int(i.weight)) for i in items]

    async def get_top_albums(self, username: str, period: str, limit: int) -> List[TopAlbum]:
        user = self.network().get_user(username)
        items = await self._call(user.get_top_albums, period=PERIODS.get(period, period), limit=limit)
        return [
            TopAlbum(artist=i.item.artist.name, name=i.item.title, playcount=int(i.weight))
            for i in items
        ]

    async def get_top_tracks(self, username: str, period: str, limit: int) -> List[TopTrack]:
        user = self.network().get_user(username)
        items = await self._call(user.get_top_tracks, period=PERIODS.get(period, period), limit=limit)
        return [
            TopTrack(artist=i.item.artist.name, name=i.item.title, playcount=int(i.weight))
            for i in items
        ]

    async def _user_track(self, token: str, artist: str, track: str) -> pylast.Track:
        username = await self._authenticated_username(token)
        return pylast.Track(artist, track, self.network(token), username=username)

    async def get_track_user_playcount(self, token: str, artist: str, track: str) -> Optional[int]:
        try:
            remote_track = await self._user_track(token, artist, track)
            count = await self._call(remote_track.get_userplaycount)
            return int(count) if count is not None else None
        except ServiceError as e:
            logger.debug(f"No playcount for {artist} - {track}: {e}")
            return None

    async def get_track_loved(self, token: str, artist: str, track: str) -> bool:
        try:
            remote_track = await self._user_track(token, artist, track)
            return bool(await self._call(remote_track.get_userloved))
        except ServiceError as e:
            logger.debug(f"No loved state for {artist} - {track}: {e}")
            return False


class LibreFmClient(LastFmClient):
    service = ScrobbleService.LIBREFM
    site_url = "https://libre.fm"
    network_class = pylast.LibreFMNetwork
