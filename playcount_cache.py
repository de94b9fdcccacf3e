"""
Per-user play count cache for services without per-track play counts

Counts are built by paging backwards through the user's whole listen history
in a background task, checkpointed to a JSON snapshot so an interrupted scan
resumes where it stopped, and topped up incrementally once complete.
"""
import asyncio
import json
import logging
import os
import re
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

PAGE_SIZE = 1000
MAX_PAGES = 1000
CHECKPOINT_EVERY = 5
PAGE_DELAY_SECONDS = 0.2
CACHE_VALIDITY_SECONDS = 60 * 60
INCREMENTAL_AFTER_SECONDS = 5 * 60
MAX_SNAPSHOT_AGE_SECONDS = 7 * 24 * 60 * 60

FetchListens = Callable[..., Awaitable[List[Dict]]]


def normalize_for_cache(text: str) -> str:
    text = text.lower().strip()
    text = text.replace('\u200e', '').replace('\u200f', '').replace('\u00a0', ' ')
    return text.strip()


def cache_key(artist: str, track: str) -> str:
    return f"{normalize_for_cache(artist)}|{normalize_for_cache(track)}"


def add_listens_to_counts(listens: List[Dict], counts: Dict[str, int]) -> int:
    """Count raw listens into counts in place; returns how many were usable"""
    added = 0
    for listen in listens:
        metadata = listen.get('track_metadata') or {}
        artist = metadata.get('artist_name')
        name = metadata.get('track_name')
        if not artist or not name:
            continue
        key = cache_key(artist, name)
        counts[key] = counts.get(key, 0) + 1
        added += 1
    return added


@dataclass
class CacheSnapshot:
    username: str
    save_timestamp: float
    data: Dict[str, int]
    continue_from_ts: Optional[int] = None
    completed_at: Optional[float] = None


class PlaycountCache:
    """Play counts keyed by normalized "artist|track", one background refresh per user"""

    def __init__(self, fetch_listens: FetchListens, cache_dir: Path,
                 page_size: int = PAGE_SIZE,
                 max_pages: int = MAX_PAGES,
                 checkpoint_every: int = CHECKPOINT_EVERY,
                 page_delay: float = PAGE_DELAY_SECONDS,
                 validity: float = CACHE_VALIDITY_SECONDS,
                 incremental_after: float = INCREMENTAL_AFTER_SECONDS,
                 max_snapshot_age: float = MAX_SNAPSHOT_AGE_SECONDS,
                 clock: Callable[[], float] = time.time,
                 sleep: Callable[[float], Awaitable] = asyncio.sleep):
        self._fetch_listens = fetch_listens
        self.cache_dir = Path(cache_dir)
        self.page_size = page_size
        self.max_pages = max_pages
        self.checkpoint_every = checkpoint_every
        self.page_delay = page_delay
        self.validity = validity
        self.incremental_after = incremental_after
        self.max_snapshot_age = max_snapshot_age
        self._clock = clock
        self._sleep = sleep

        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = {}
        self._expiry: Dict[str, float] = {}

        self._tasks_lock = threading.Lock()
        self._tasks: Dict[str, asyncio.Task] = {}

    # Public API

    def get_cached_play_count(self, username: str, artist: str, track: str) -> Optional[int]:
        key = cache_key(artist, track)
        with self._lock:
            return self._counts.get(username, {}).get(key)

    def background_task(self, username: str) -> Optional[asyncio.Task]:
        with self._tasks_lock:
            task = self._tasks.get(username)
        if task is not None and not task.done():
            return task
        return None

    async def populate_play_count_cache(self, username: str) -> None:
        logger.debug(f"populate_play_count_cache for {username}")
        if self.background_task(username) is not None:
            logger.debug(f"Background task already running for {username}")
            return

        snapshot = self.load_snapshot(username)
        if snapshot is not None:
            with self._lock:
                self._counts[username] = dict(snapshot.data)
                self._expiry[username] = self._clock() + self.validity
            logger.info(f"Loaded {len(snapshot.data)} tracks from disk for {username}")

            if snapshot.continue_from_ts is not None:
                logger.info(f"Incomplete fetch - resuming from timestamp {snapshot.continue_from_ts}")
                self._start_task(username, lambda: self._fetch_all_pages(username, snapshot.continue_from_ts))
            elif snapshot.completed_at is not None:
                age = self._clock() - snapshot.completed_at
                if age > self.incremental_after:
                    logger.info(f"Cache is {int(age / 60)}min old - triggering incremental update")
                    since = int(snapshot.completed_at) + 1
                    self._start_task(username, lambda: self._fetch_new_listens(username, since))
            return

        with self._lock:
            expiry = self._expiry.get(username)
            if expiry is not None and self._clock() < expiry:
                logger.debug(f"Cache still valid, {len(self._counts.get(username, {}))} entries")
                return

        logger.debug(f"Starting fresh cache fetch for {username}")
        self._start_task(username, lambda: self._fetch_all_pages(username, None))

    def invalidate_cache(self, username: str) -> None:
        logger.info(f"Invalidating cache for {username}")

        with self._tasks_lock:
            task = self._tasks.pop(username, None)
        if task is not None:
            task.cancel()

        with self._lock:
            self._counts.pop(username, None)
            self._expiry.pop(username, None)

        path = self.snapshot_path(username)
        try:
            path.unlink()
            logger.info(f"Deleted cache file for {username}")
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete cache file {path}: {e}")

    # Background tasks

    def _start_task(self, username: str, factory: Callable[[], Awaitable[None]]) -> asyncio.Task:
        with self._tasks_lock:
            existing = self._tasks.get(username)
            if existing is not None and not existing.done():
                logger.debug(f"Duplicate prevented: background task already running for {username}")
                return existing
            task = asyncio.get_running_loop().create_task(factory())
            self._tasks[username] = task
        task.add_done_callback(lambda finished: self._forget_task(username, finished))
        return task

    def _forget_task(self, username: str, task: asyncio.Task) -> None:
        with self._tasks_lock:
            if self._tasks.get(username) is task:
                del self._tasks[username]

    async def _fetch_all_pages(self, username: str, continue_from: Optional[int]) -> None:
        logger.info(f"Background fetch started for {username}")
        if continue_from is None:
            counts: Dict[str, int] = {}
        else:
            with self._lock:
                counts = dict(self._counts.get(username, {}))
            logger.debug(f"Resuming with {len(counts)} existing entries")

        max_ts = continue_from
        total_listens = 0
        page = 0

        try:
            while page < self.max_pages:
                page += 1
                try:
                    listens = await self._fetch_listens(username, max_ts=max_ts, count=self.page_size)
                except Exception as e:
                    logger.error(f"Error fetching page {page} for {username}: {e}")
                    # Leave a resumable checkpoint rather than a complete marker
                    if max_ts is not None:
                        self.save_snapshot(username, counts, continue_from_ts=max_ts)
                    return

                if not listens:
                    break

                total_listens += add_listens_to_counts(listens, counts)
                with self._lock:
                    self._counts[username] = dict(counts)

                oldest = listens[-1].get('listened_at')
                logger.debug(f"Page {page}: {len(listens)} listens, {len(counts)} unique tracks")
                if oldest is None:
                    break
                max_ts = oldest

                if page % self.checkpoint_every == 0:
                    self.save_snapshot(username, counts, continue_from_ts=max_ts)
                    logger.info(f"Progress: {page} pages, {total_listens} listens, {len(counts)} tracks")

                await self._sleep(self.page_delay)
        except asyncio.CancelledError:
            logger.debug(f"Background fetch cancelled for {username}")
            raise

        with self._lock:
            self._counts[username] = dict(counts)
            self._expiry[username] = self._clock() + self.validity

        self.save_snapshot(username, counts, completed_at=self._clock())
        logger.info(f"Background fetch complete: {page} pages, {total_listens} listens, {len(counts)} tracks")

    async def _fetch_new_listens(self, username: str, since: int) -> None:
        logger.info(f"Incremental update started for {username}")
        with self._lock:
            counts = dict(self._counts.get(username, {}))

        try:
            listens = await self._fetch_listens(username, min_ts=since, count=self.page_size)
        except asyncio.CancelledError:
            logger.debug(f"Incremental update cancelled for {username}")
            raise
        except Exception as e:
            logger.error(f"Incremental update error for {username}: {e}")
            return

        added = add_listens_to_counts(listens, counts)
        with self._lock:
            self._counts[username] = counts
            self._expiry[username] = self._clock() + self.validity

        self.save_snapshot(username, counts, completed_at=self._clock())
        logger.info(f"Incremental update complete: added {added} listens, total {len(counts)} tracks")

    # Disk persistence

    def snapshot_path(self, username: str) -> Path:
        safe_name = re.sub(r'[^\w.-]', '_', username)
        return self.cache_dir / f"listenbrainz_cache_{safe_name}.json"

    def save_snapshot(self, username: str, counts: Dict[str, int],
                      continue_from_ts: Optional[int] = None,
                      completed_at: Optional[float] = None) -> None:
        """Write the snapshot atomically; a cursor and a completion time are never both set"""
        data = {
            'username': username,
            'save_timestamp': self._clock(),
            'continue_from_ts': continue_from_ts,
            'data': counts,
        }
        if completed_at is not None and continue_from_ts is None:
            data['completed_at'] = completed_at

        path = self.snapshot_path(username)
        tmp = path.with_name(f"{path.name}.tmp.{os.getpid()}")
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp, path)
        except OSError as e:
            logger.error(f"Failed to save cache for {username}: {e}")
            try:
                tmp.unlink()
            except OSError:
                pass

    def load_snapshot(self, username: str) -> Optional[CacheSnapshot]:
        path = self.snapshot_path(username)
        if not path.exists():
            return None

        try:
            with open(path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
            snapshot = CacheSnapshot(
                username=raw.get('username', username),
                save_timestamp=float(raw['save_timestamp']),
                data={str(k): int(v) for k, v in raw['data'].items()},
                continue_from_ts=raw.get('continue_from_ts'),
                completed_at=raw.get('completed_at'),
            )
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Ignoring unreadable cache file {path}: {e}")
            return None

        if self._clock() - snapshot.save_timestamp > self.max_snapshot_age:
            logger.info(f"Cache file for {username} is older than 7 days, removing")
            try:
                path.unlink()
            except OSError as e:
                logger.error(f"Failed to delete stale cache file {path}: {e}")
            return None

        if snapshot.continue_from_ts is not None:
            snapshot.completed_at = None
        return snapshot
