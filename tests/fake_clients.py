"""
In-memory stand-ins for the service clients used by the service manager tests
"""
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

sys.path.append(str(Path(__file__).parent.parent))

from listen_models import Listen, ScrobbleService, ServiceCredentials, ServiceTrackData, UserStats
from service_clients import ScrobbleClient
from settings_store import SettingsStore


async def no_sleep(seconds):
    return None


def make_listen(service: ScrobbleService, artist: str, name: str, timestamp: Optional[int],
                msid: str = "", loved: bool = False) -> Listen:
    if service is ScrobbleService.LISTENBRAINZ:
        info = ServiceTrackData.listenbrainz(msid or f"msid-{timestamp}", timestamp or 0)
    else:
        info = ServiceTrackData.lastfm(timestamp or 0)
    return Listen(
        name=name,
        artist=artist,
        date=timestamp,
        loved=loved,
        service_info={service.id: info},
        source_service=service,
    )


def make_store(tmp_path: Path, *services: ScrobbleService) -> SettingsStore:
    store = SettingsStore(tmp_path / "settings.json")
    for service in services:
        store.add_or_update_credentials(ServiceCredentials(
            service=service,
            token=f"token-{service.name.lower()}",
            username=f"user-{service.name.lower()}",
        ))
    return store


class FakeClient(ScrobbleClient):
    """Records every call; history comes from the lists given at construction"""

    def __init__(self, service: ScrobbleService, recent: Optional[List[Listen]] = None,
                 time_range: Optional[List[Listen]] = None, fail: Optional[Exception] = None):
        self.service = service
        self.recent = recent or []
        self.time_range = time_range
        self.fail = fail
        self.calls = []
        self.scrobbled = []
        self.now_playing = []
        self.loved = []
        self.deleted = []
        self.history_tokens = []

    def _record(self, name, *args):
        self.calls.append((name,) + args)
        if self.fail is not None:
            raise self.fail

    async def authenticate(self):
        self._record('authenticate')
        return "request-token", f"https://auth.example/{self.service.name.lower()}"

    async def complete_authentication(self, token):
        self._record('complete_authentication', token)
        return "someone", f"session-{token}", "https://profile.example/someone", False

    async def update_now_playing(self, session_key, track):
        self._record('update_now_playing', session_key, track)
        self.now_playing.append(track)

    async def scrobble(self, session_key, track):
        self._record('scrobble', session_key, track)
        self.scrobbled.append(track)

    async def update_love(self, session_key, artist, track, loved):
        self._record('update_love', session_key, artist, track, loved)
        self.loved.append((artist, track, loved))

    async def delete_scrobble(self, session_key, identifier):
        self._record('delete_scrobble', session_key, identifier)
        self.deleted.append(identifier)

    async def get_recent_tracks(self, username, limit, page, token=None):
        self._record('get_recent_tracks', username, limit, page)
        self.history_tokens.append(token)
        return self.recent[(page - 1) * limit:page * limit]

    async def get_recent_tracks_by_time_range(self, username, min_ts, max_ts, limit, token=None):
        self._record('get_recent_tracks_by_time_range', username, min_ts, max_ts, limit)
        self.history_tokens.append(token)
        if self.time_range is None:
            return None
        return [t for t in self.time_range if t.date is None or min_ts <= t.date <= max_ts]

    async def get_user_stats(self, username):
        self._record('get_user_stats', username)
        return UserStats(playcount=len(self.recent))

    async def get_top_artists(self, username, period, limit):
        self._record('get_top_artists', username, period, limit)
        return []

    async def get_top_albums(self, username, period, limit):
        self._record('get_top_albums', username, period, limit)
        return []

    async def get_top_tracks(self, username, period, limit):
        self._record('get_top_tracks', username, period, limit)
        return []

    def called(self, name):
        return [c for c in self.calls if c[0] == name]


class FakeListenBrainzClient(FakeClient):
    def __init__(self, **kwargs):
        super().__init__(ScrobbleService.LISTENBRAINZ, **kwargs)

    async def enrich_track_with_urls(self, track):
        return replace(track, track_url=f"https://listenbrainz.org/track/{track.name}/")
