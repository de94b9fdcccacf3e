"""
Domain models shared by the service clients, the playcount cache and the
service manager
"""
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Optional

SECONDS_PER_DAY = 24 * 60 * 60
DEFAULT_MAX_BACKFILL_AGE_DAYS = 14


class ServiceKind(Enum):
    LASTFM_LIKE = "lastfm_like"
    LISTENBRAINZ_LIKE = "listenbrainz_like"


class ScrobbleService(Enum):
    """Known services, declared in default primary priority order"""
    LASTFM = "Last.fm"
    LIBREFM = "Libre.fm"
    LISTENBRAINZ = "ListenBrainz"

    @property
    def id(self) -> str:
        return self.value

    @property
    def display_name(self) -> str:
        return self.value

    @property
    def kind(self) -> ServiceKind:
        if self is ScrobbleService.LISTENBRAINZ:
            return ServiceKind.LISTENBRAINZ_LIKE
        return ServiceKind.LASTFM_LIKE


class SyncStatus(Enum):
    UNKNOWN = "unknown"
    SYNCED = "synced"            # present in every enabled service
    PARTIAL = "partial"          # present in some services


@dataclass(frozen=True)
class ServiceTrackData:
    """One service's record of a listen"""
    timestamp: Optional[int] = None
    id: Optional[str] = None  # ListenBrainz recording_msid, needed for deletion

    @classmethod
    def lastfm(cls, timestamp: int) -> "ServiceTrackData":
        return cls(timestamp=timestamp)

    @classmethod
    def listenbrainz(cls, recording_msid: str, timestamp: int) -> "ServiceTrackData":
        return cls(timestamp=timestamp, id=recording_msid)


@dataclass(frozen=True)
class ScrobbleIdentifier:
    artist: str
    track: str
    timestamp: Optional[int] = None
    service_id: Optional[str] = None


@dataclass(frozen=True)
class Listen:
    """A recorded play fetched from one service's history"""
    name: str
    artist: str
    album: str = ""
    date: Optional[int] = None
    is_now_playing: bool = False
    loved: bool = False
    image_url: Optional[str] = None
    artist_url: Optional[str] = None
    album_url: Optional[str] = None
    track_url: Optional[str] = None
    playcount: Optional[int] = None
    service_info: Dict[str, ServiceTrackData] = field(default_factory=dict)
    source_service: Optional[ScrobbleService] = None
    unique_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def merge_service_info(self, other: Dict[str, ServiceTrackData]) -> "Listen":
        """Return a copy carrying the union of both service_info maps"""
        merged = dict(self.service_info)
        merged.update(other)
        return replace(self, service_info=merged)

    def with_playcount(self, playcount: Optional[int]) -> "Listen":
        return replace(self, playcount=playcount)


@dataclass
class NowPlayingTrack:
    """The track currently reported by the player"""
    artist: str
    album: str
    name: str
    length: float = 0.0
    artwork: Optional[bytes] = None
    year: int = 0
    loved: bool = False
    started_at: int = field(default_factory=lambda: int(time.time()))
    scrobbled: bool = False
    artist_url: Optional[str] = None
    album_url: Optional[str] = None
    track_url: Optional[str] = None

    @property
    def description(self) -> str:
        return f"{self.name} - {self.artist} on {self.album} ({self.year})"

    @classmethod
    def from_listen(cls, listen: Listen) -> "NowPlayingTrack":
        return cls(
            artist=listen.artist,
            album=listen.album,
            name=listen.name,
            loved=listen.loved,
            started_at=listen.date or 0,
        )


@dataclass
class ServiceCredentials:
    service: ScrobbleService
    token: str
    username: str
    profile_url: Optional[str] = None
    is_subscriber: bool = False
    is_enabled: bool = True

    def to_dict(self) -> Dict:
        return {
            'service': self.service.value,
            'token': self.token,
            'username': self.username,
            'profile_url': self.profile_url,
            'is_subscriber': self.is_subscriber,
            'is_enabled': self.is_enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "ServiceCredentials":
        return cls(
            service=ScrobbleService(data['service']),
            token=data.get('token', ''),
            username=data.get('username', ''),
            profile_url=data.get('profile_url'),
            is_subscriber=bool(data.get('is_subscriber', False)),
            is_enabled=bool(data.get('is_enabled', True)),
        )


@dataclass(frozen=True)
class BackfillEvent:
    artist: str
    track: str
    timestamp: int
    service: ScrobbleService


@dataclass
class BackfillTask:
    listen: Listen
    target_service: ScrobbleService
    target_credentials: ServiceCredentials
    source_services: List[ScrobbleService] = field(default_factory=list)
    max_age_days: float = DEFAULT_MAX_BACKFILL_AGE_DAYS

    def can_backfill(self, now: Optional[float] = None) -> bool:
        if self.listen.date is None:
            return False
        if self.target_service.kind is ServiceKind.LISTENBRAINZ_LIKE:
            return True

        # Last.fm and Libre.fm drop scrobbles older than two weeks
        now = time.time() if now is None else now
        days_old = (now - self.listen.date) / SECONDS_PER_DAY
        return days_old < self.max_age_days


@dataclass
class UserStats:
    playcount: int
    artist_count: int = 0
    track_count: int = 0
    album_count: int = 0
    loved_count: int = 0
    registered: str = ""
    country: Optional[str] = None
    realname: Optional[str] = None


@dataclass
class TopArtist:
    name: str
    playcount: int
    image_url: Optional[str] = None


@dataclass
class TopAlbum:
    artist: str
    name: str
    playcount: int
    image_url: Optional[str] = None


@dataclass
class TopTrack:
    artist: str
    name: str
    playcount: int
    image_url: Optional[str] = None


def sync_status(listen: Listen, enabled_services: Iterable[ScrobbleService]) -> SyncStatus:
    """Derive a listen's sync status from its service_info and the enabled services"""
    enabled_ids = {service.id for service in enabled_services}
    if not enabled_ids:
        return SyncStatus.UNKNOWN

    if enabled_ids <= set(listen.service_info.keys()):
        return SyncStatus.SYNCED
    return SyncStatus.PARTIAL
