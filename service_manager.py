"""
Reconciliation across every enabled scrobbling service

ServiceManager fans now-playing, scrobble, love and delete calls out to all
enabled services, builds the unified history from the primary service, and
backfills listens that the other services are missing.
"""
import asyncio
import logging
import time
from typing import Callable, Dict, List, Optional, Set, Tuple

from listen_models import (
    DEFAULT_MAX_BACKFILL_AGE_DAYS,
    BackfillEvent,
    BackfillTask,
    Listen,
    NowPlayingTrack,
    ScrobbleIdentifier,
    ScrobbleService,
    ServiceCredentials,
    ServiceKind,
    ServiceTrackData,
    SyncStatus,
    TopAlbum,
    TopArtist,
    TopTrack,
    UserStats,
    sync_status,
)
from playcount_cache import PlaycountCache
from service_clients import ScrobbleClient, ServiceNotFoundError
from settings_store import SettingsStore
from track_matcher import DEFAULT_MATCH_THRESHOLD, find_best_match

logger = logging.getLogger(__name__)

ENRICHMENT_GUARD_SECONDS = 300
MAX_SECONDARY_FETCH = 1000
BACKFILL_DELAY_SECONDS = 0.5


class EventSink:
    """Observers for backfill progress and completed scrobbles"""

    def __init__(self):
        self._subscribers: List[Callable[[BackfillEvent], None]] = []
        self.last_backfilled_track: Optional[BackfillEvent] = None
        self.scrobble_completed_count = 0

    def subscribe(self, callback: Callable[[BackfillEvent], None]) -> None:
        self._subscribers.append(callback)

    def publish_backfill(self, event: BackfillEvent) -> None:
        self.last_backfilled_track = event
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f"Backfill subscriber failed: {e}")

    def scrobble_completed(self) -> None:
        self.scrobble_completed_count += 1


class ServiceManager:
    def __init__(self, clients: Dict[ScrobbleService, ScrobbleClient],
                 settings: SettingsStore,
                 cache: Optional[PlaycountCache] = None,
                 events: Optional[EventSink] = None,
                 match_threshold: float = DEFAULT_MATCH_THRESHOLD,
                 max_backfill_age_days: float = DEFAULT_MAX_BACKFILL_AGE_DAYS,
                 backfill_delay: float = BACKFILL_DELAY_SECONDS,
                 sleep: Callable = asyncio.sleep,
                 clock: Callable[[], float] = time.time):
        self.clients = dict(clients)
        self.settings = settings
        self.cache = cache
        self.events = events or EventSink()
        self.match_threshold = match_threshold
        self.max_backfill_age_days = max_backfill_age_days
        self.backfill_delay = backfill_delay
        self._sleep = sleep
        self._clock = clock
        self._backfill_tasks: Set[asyncio.Task] = set()
        self.backfill_task: Optional[asyncio.Task] = None

    # Registry

    def client(self, service: ScrobbleService) -> Optional[ScrobbleClient]:
        return self.clients.get(service)

    def _require_client(self, service: ScrobbleService) -> ScrobbleClient:
        client = self.client(service)
        if client is None:
            raise ServiceNotFoundError(f"No client configured for {service.display_name}")
        return client

    def enabled_services(self) -> List[Tuple[ServiceCredentials, ScrobbleClient]]:
        """Enabled credentials paired with their client, in priority order"""
        pairs = []
        for credentials in self.settings.enabled_services:
            client = self.client(credentials.service)
            if client is None:
                logger.warning(f"{credentials.service.display_name} is enabled but has no client")
                continue
            pairs.append((credentials, client))
        return pairs

    def primary_service(self) -> Optional[Tuple[ServiceCredentials, ScrobbleClient]]:
        credentials = self.settings.primary_service
        if credentials is None:
            return None
        client = self.client(credentials.service)
        if client is None:
            return None
        return credentials, client

    # Authentication

    async def authenticate(self, service: ScrobbleService) -> Tuple[str, str]:
        return await self._require_client(service).authenticate()

    async def complete_authentication(self, service: ScrobbleService, token: str) -> ServiceCredentials:
        username, session_key, profile_url, is_subscriber = \
            await self._require_client(service).complete_authentication(token)
        return ServiceCredentials(
            service=service,
            token=session_key,
            username=username,
            profile_url=profile_url,
            is_subscriber=is_subscriber,
            is_enabled=True,
        )

    # Fan-out

    async def _fan_out(self, action: str, call: Callable) -> None:
        """Run call(credentials, client) for every enabled service, logging failures per service"""
        services = self.enabled_services()

        async def run(credentials: ServiceCredentials, client: ScrobbleClient):
            try:
                await call(credentials, client)
                logger.info(f"{action} succeeded on {credentials.service.display_name}")
            except Exception as e:
                logger.error(f"{action} failed on {credentials.service.display_name}: {e}")

        await asyncio.gather(*(run(credentials, client) for credentials, client in services))

    async def update_now_playing_all(self, track: NowPlayingTrack) -> NowPlayingTrack:
        if self.settings.is_blacklisted(track.artist, track.name):
            logger.info(f"Skipping now playing for blacklisted track: {track.artist} - {track.name}")
            return track

        primary = self.primary_service()
        if primary is not None and primary[0].service.kind is ServiceKind.LISTENBRAINZ_LIKE:
            enrich = getattr(primary[1], 'enrich_track_with_urls', None)
            if enrich is not None:
                try:
                    track = await enrich(track)
                except Exception as e:
                    logger.warning(f"Could not enrich {track.artist} - {track.name} with links: {e}")

        await self._fan_out(
            "Now playing update",
            lambda credentials, client: client.update_now_playing(credentials.token, track),
        )
        return track

    async def scrobble_all(self, track: NowPlayingTrack) -> None:
        if self.settings.is_blacklisted(track.artist, track.name):
            logger.info(f"Skipping scrobble for blacklisted track: {track.artist} - {track.name}")
            return

        await self._fan_out(
            "Scrobble",
            lambda credentials, client: client.scrobble(credentials.token, track),
        )
        self.events.scrobble_completed()

    async def delete_scrobble_all(self, artist: str, track: str,
                                  service_info: Dict[str, ServiceTrackData]) -> None:
        def delete(credentials: ServiceCredentials, client: ScrobbleClient):
            data = service_info.get(credentials.service.id) or ServiceTrackData()
            identifier = ScrobbleIdentifier(
                artist=artist,
                track=track,
                timestamp=data.timestamp,
                service_id=data.id,
            )
            return client.delete_scrobble(credentials.token, identifier)

        await self._fan_out("Delete", delete)

    async def update_love_all(self, artist: str, track: str, loved: bool) -> None:
        await self._fan_out(
            "Love update" if loved else "Unlove update",
            lambda credentials, client: client.update_love(credentials.token, artist, track, loved),
        )

    # History

    async def get_all_recent_tracks(self, limit: int = 20, page: int = 1) -> List[Listen]:
        primary = self.primary_service()
        if primary is None:
            logger.info("No primary service available")
            return []

        credentials, client = primary
        logger.debug(f"Fetching page {page} from primary service {credentials.service.display_name}")
        tracks = await client.get_recent_tracks(credentials.username, limit, page, credentials.token)

        if credentials.service.kind is ServiceKind.LISTENBRAINZ_LIKE and self.cache is not None:
            tracks = await self._attach_cached_play_counts(credentials.username, tracks, page)

        return await self._enrich_with_secondaries(credentials, tracks, limit, page)

    async def _attach_cached_play_counts(self, username: str, tracks: List[Listen], page: int) -> List[Listen]:
        if page == 1:
            await self.cache.populate_play_count_cache(username)

        attached = []
        for listen in tracks:
            count = self.cache.get_cached_play_count(username, listen.artist, listen.name)
            attached.append(listen.with_playcount(count) if count is not None else listen)
        return attached

    async def _fetch_candidates(self, credentials: ServiceCredentials, client: ScrobbleClient,
                                min_ts: Optional[int], max_ts: Optional[int],
                                limit: int, page: int) -> Optional[List[Listen]]:
        """Candidate listens for matching, or None when the service could not be read"""
        service_name = credentials.service.display_name
        try:
            candidates = await client.get_recent_tracks_by_time_range(
                credentials.username, min_ts, max_ts, MAX_SECONDARY_FETCH
            )
            if not candidates:
                fallback_limit = min(limit * 10 * page, MAX_SECONDARY_FETCH)
                logger.debug(f"{service_name}: no time range results, fetching {fallback_limit} recent tracks")
                candidates = await client.get_recent_tracks(
                    credentials.username, fallback_limit, 1
                )
        except Exception as e:
            logger.error(f"Failed to fetch {service_name} history for matching, skipping it: {e}")
            return None

        logger.debug(f"{service_name}: {len(candidates)} candidates for matching")
        return candidates

    async def _enrich_with_secondaries(self, primary: ServiceCredentials, tracks: List[Listen],
                                       limit: int, page: int) -> List[Listen]:
        secondaries = [(c, client) for c, client in self.enabled_services() if c.service is not primary.service]
        if not tracks or not secondaries:
            return tracks

        timestamps = [t.date for t in tracks if t.date is not None]
        min_ts = min(timestamps) - ENRICHMENT_GUARD_SECONDS if timestamps else None
        max_ts = max(timestamps) + ENRICHMENT_GUARD_SECONDS if timestamps else None

        candidate_lists = await asyncio.gather(*(
            self._fetch_candidates(credentials, client, min_ts, max_ts, limit, page)
            for credentials, client in secondaries
        ))
        # Unreadable services get neither matches nor backfills
        readable = [
            (credentials, candidates)
            for (credentials, _), candidates in zip(secondaries, candidate_lists)
            if candidates is not None
        ]

        matches: List[Dict[str, ServiceTrackData]] = []
        backfill: List[BackfillTask] = []
        for listen in tracks:
            found: Dict[str, ServiceTrackData] = {}
            missing: List[ServiceCredentials] = []
            for credentials, candidates in readable:
                match = find_best_match(
                    listen, candidates, credentials.service.display_name, self.match_threshold
                )
                if match is not None:
                    found.update(match.service_info)
                else:
                    missing.append(credentials)
            matches.append(found)

            present_in = [primary.service] + [
                c.service for c, _ in secondaries if c.service.id in found
            ]
            for target in missing:
                task = BackfillTask(
                    listen=listen,
                    target_service=target.service,
                    target_credentials=target,
                    source_services=present_in,
                    max_age_days=self.max_backfill_age_days,
                )
                if task.can_backfill(self._clock()):
                    backfill.append(task)

        merged = [listen.merge_service_info(found) for listen, found in zip(tracks, matches)]

        if backfill:
            self._schedule_backfill(backfill)
        return merged

    # Backfill

    def _schedule_backfill(self, tasks: List[BackfillTask]) -> asyncio.Task:
        logger.info(f"Queueing {len(tasks)} tracks for backfill")
        task = asyncio.get_running_loop().create_task(self._process_backfill_queue(tasks))
        self._backfill_tasks.add(task)
        task.add_done_callback(self._backfill_tasks.discard)
        self.backfill_task = task
        return task

    async def _process_backfill_queue(self, tasks: List[BackfillTask]) -> None:
        succeeded = 0
        failed = 0

        for task in tasks:
            listen = task.listen
            service_name = task.target_service.display_name
            client = self.client(task.target_service)
            if client is None:
                failed += 1
                logger.error(f"Backfill skipped, no client for {service_name}")
                continue

            try:
                await client.scrobble(task.target_credentials.token, NowPlayingTrack.from_listen(listen))
            except Exception as e:
                failed += 1
                logger.error(f"Backfill to {service_name} failed for {listen.artist} - {listen.name}: {e}")
                continue

            if listen.loved:
                try:
                    await client.update_love(task.target_credentials.token, listen.artist, listen.name, True)
                except Exception as e:
                    logger.warning(f"Love sync to {service_name} failed for {listen.artist} - {listen.name}: {e}")

            succeeded += 1
            sources = ", ".join(s.display_name for s in task.source_services)
            logger.info(f"Backfilled {listen.artist} - {listen.name} to {service_name} (found on {sources})")
            self.events.publish_backfill(BackfillEvent(
                artist=listen.artist,
                track=listen.name,
                timestamp=listen.date,
                service=task.target_service,
            ))
            await self._sleep(self.backfill_delay)

        logger.info(f"Backfill complete: {succeeded} succeeded, {failed} failed")

    def sync_status(self, listen: Listen) -> SyncStatus:
        return sync_status(listen, [credentials.service for credentials, _ in self.enabled_services()])

    # Profile data for the primary service

    async def get_user_stats(self) -> Optional[UserStats]:
        primary = self.primary_service()
        if primary is None:
            return None
        credentials, client = primary
        return await client.get_user_stats(credentials.username)

    async def get_top_artists(self, period: str = 'overall', limit: int = 10) -> List[TopArtist]:
        primary = self.primary_service()
        if primary is None:
            return []
        credentials, client = primary
        return await client.get_top_artists(credentials.username, period, limit)

    async def get_top_albums(self, period: str = 'overall', limit: int = 10) -> List[TopAlbum]:
        primary = self.primary_service()
        if primary is None:
            return []
        credentials, client = primary
        return await client.get_top_albums(credentials.username, period, limit)

    async def get_top_tracks(self, period: str = 'overall', limit: int = 10) -> List[TopTrack]:
        primary = self.primary_service()
        if primary is None:
            return []
        credentials, client = primary
        return await client.get_top_tracks(credentials.username, period, limit)

    async def get_track_user_playcount(self, artist: str, track: str) -> Optional[int]:
        primary = self.primary_service()
        if primary is None:
            return None
        credentials, client = primary
        if credentials.service.kind is ServiceKind.LISTENBRAINZ_LIKE and self.cache is not None:
            return self.cache.get_cached_play_count(credentials.username, artist, track)
        return await client.get_track_user_playcount(credentials.token, artist, track)

    async def get_track_loved(self, artist: str, track: str) -> bool:
        primary = self.primary_service()
        if primary is None:
            return False
        credentials, client = primary
        return await client.get_track_loved(credentials.token, artist, track)
