"""
Service client contract shared by Last.fm, Libre.fm and ListenBrainz,
plus the retry/backoff helper every client uses for transient failures
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, List, Optional, Tuple

from listen_models import (
    Listen,
    NowPlayingTrack,
    ScrobbleIdentifier,
    ScrobbleService,
    TopAlbum,
    TopArtist,
    TopTrack,
    UserStats,
)

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3


class ServiceError(Exception):
    """A remote service call failed"""

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TransientServiceError(ServiceError):
    """Backend busy or temporarily unavailable; safe to retry"""


class AuthenticationError(ServiceError):
    """Invalid or expired token; never retried"""


class ServiceNotFoundError(ServiceError):
    """No client registered for the requested service"""


async def call_with_retry(func: Callable[..., Awaitable], *args,
                          max_attempts: int = MAX_ATTEMPTS,
                          sleep: Callable[[float], Awaitable] = asyncio.sleep,
                          **kwargs):
    """Await func(*args, **kwargs), retrying transient failures with 2^attempt second waits"""
    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except TransientServiceError as e:
            if attempt == max_attempts - 1:
                logger.error(f"Giving up after {max_attempts} attempts: {e}")
                raise
            delay = 2 ** attempt
            logger.warning(f"API call failed (attempt {attempt + 1}/{max_attempts}), retrying in {delay}s: {e}")
            await sleep(delay)


class ScrobbleClient(ABC):
    """Capabilities every scrobbling service exposes to the service manager"""

    service: ScrobbleService

    @abstractmethod
    async def authenticate(self) -> Tuple[str, str]:
        """Start authentication; returns (request token, URL the user must visit)"""

    @abstractmethod
    async def complete_authentication(self, token: str) -> Tuple[str, str, Optional[str], bool]:
        """Finish authentication; returns (username, session key, profile url, is subscriber)"""

    @abstractmethod
    async def update_now_playing(self, session_key: str, track: NowPlayingTrack) -> None:
        ...

    @abstractmethod
    async def scrobble(self, session_key: str, track: NowPlayingTrack) -> None:
        ...

    async def update_love(self, session_key: str, artist: str, track: str, loved: bool) -> None:
        # Optional - not all services support this
        return None

    async def delete_scrobble(self, session_key: str, identifier: ScrobbleIdentifier) -> None:
        return None

    @abstractmethod
    async def get_recent_tracks(self, username: str, limit: int, page: int,
                                token: Optional[str] = None) -> List[Listen]:
        ...

    async def get_recent_tracks_by_time_range(self, username: str, min_ts: Optional[int],
                                              max_ts: Optional[int], limit: int,
                                              token: Optional[str] = None) -> Optional[List[Listen]]:
        """None when the service cannot filter history by timestamp"""
        return None

    @abstractmethod
    async def get_user_stats(self, username: str) -> Optional[UserStats]:
        ...

    @abstractmethod
    async def get_top_artists(self, username: str, period: str, limit: int) -> List[TopArtist]:
        ...

    @abstractmethod
    async def get_top_albums(self, username: str, period: str, limit: int) -> List[TopAlbum]:
        ...

    @abstractmethod
    async def get_top_tracks(self, username: str, period: str, limit: int) -> List[TopTrack]:
        ...

    async def get_track_user_playcount(self, token: str, artist: str, track: str) -> Optional[int]:
        return None

    async def get_track_loved(self, token: str, artist: str, track: str) -> bool:
        return False
