#!/usr/bin/env python3
"""
Test suite for multi-service fan-out, history reconciliation and backfill
"""
import asyncio
import json
import logging
import sys
import time
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.append(str(Path(__file__).parent.parent))

from fake_clients import FakeClient, FakeListenBrainzClient, make_listen, make_store, no_sleep
from listen_models import SECONDS_PER_DAY, NowPlayingTrack, ScrobbleService, ServiceTrackData, SyncStatus
from playcount_cache import PlaycountCache
from service_clients import ServiceError, ServiceNotFoundError
from service_manager import EventSink, ServiceManager

LASTFM = ScrobbleService.LASTFM
LIBREFM = ScrobbleService.LIBREFM
LISTENBRAINZ = ScrobbleService.LISTENBRAINZ


def make_manager(store, *clients, **kwargs):
    kwargs.setdefault('sleep', no_sleep)
    return ServiceManager({client.service: client for client in clients}, store, **kwargs)


def now_playing(artist="Artist A", name="Track A"):
    return NowPlayingTrack(artist=artist, album="Album", name=name, length=200, started_at=1000)


async def history_and_backfill(manager, **kwargs):
    tracks = await manager.get_all_recent_tracks(**kwargs)
    if manager.backfill_task is not None:
        await manager.backfill_task
    return tracks


def test_end_to_end_reconciliation(tmp_path):
    lastfm = FakeClient(LASTFM, recent=[
        make_listen(LASTFM, "Artist A", "Track A", 1000),
        make_listen(LASTFM, "Artist B", "Track B", 2000),
    ])
    listenbrainz = FakeListenBrainzClient(time_range=[
        make_listen(LISTENBRAINZ, "artist a", "Track A", 1005, msid="msid-a"),
    ])
    events = EventSink()
    received = []
    events.subscribe(received.append)
    manager = make_manager(make_store(tmp_path, LASTFM, LISTENBRAINZ), lastfm, listenbrainz, events=events)

    tracks = asyncio.run(history_and_backfill(manager))

    first, second = tracks
    assert set(first.service_info) == {LASTFM.id, LISTENBRAINZ.id}
    assert first.service_info[LISTENBRAINZ.id].id == "msid-a"
    assert manager.sync_status(first) is SyncStatus.SYNCED
    assert set(second.service_info) == {LASTFM.id}
    assert manager.sync_status(second) is SyncStatus.PARTIAL

    assert [(t.artist, t.name, t.started_at) for t in listenbrainz.scrobbled] == [("Artist B", "Track B", 2000)]
    assert lastfm.scrobbled == []
    assert [(e.track, e.service) for e in received] == [("Track B", LISTENBRAINZ)]
    assert events.last_backfilled_track.timestamp == 2000


def test_enrichment_queries_guard_band(tmp_path):
    lastfm = FakeClient(LASTFM, recent=[
        make_listen(LASTFM, "Artist A", "Track A", 1000),
        make_listen(LASTFM, "Artist B", "Track B", 2000),
    ])
    listenbrainz = FakeListenBrainzClient(time_range=[])
    manager = make_manager(make_store(tmp_path, LASTFM, LISTENBRAINZ), lastfm, listenbrainz)

    asyncio.run(history_and_backfill(manager))

    assert listenbrainz.called('get_recent_tracks_by_time_range')[0][2:] == (700, 2300, 1000)


def test_secondary_without_time_range_falls_back_to_recent_tracks(tmp_path):
    recent = int(time.time()) - 3600
    listenbrainz = FakeListenBrainzClient(recent=[make_listen(LISTENBRAINZ, "Artist", "Track", recent)])
    librefm = FakeClient(LIBREFM, recent=[make_listen(LIBREFM, "Artist", "Track", recent + 30)])
    manager = make_manager(make_store(tmp_path, LIBREFM, LISTENBRAINZ), librefm, listenbrainz)

    tracks = asyncio.run(history_and_backfill(manager, limit=20, page=1))

    assert listenbrainz.called('get_recent_tracks')[-1][1:] == ("user-listenbrainz", 200, 1)
    assert set(tracks[0].service_info) == {LIBREFM.id, LISTENBRAINZ.id}
    assert manager.backfill_task is None


def test_fallback_limit_is_capped(tmp_path):
    lastfm = FakeClient(LASTFM, recent=[make_listen(LASTFM, "Artist", "Track", 1000) for _ in range(150)])
    librefm = FakeClient(LIBREFM)
    manager = make_manager(make_store(tmp_path, LASTFM, LIBREFM), lastfm, librefm)

    asyncio.run(history_and_backfill(manager, limit=50, page=3))

    assert librefm.called('get_recent_tracks')[-1][2:] == (1000, 1)


def test_failing_secondary_degrades_to_no_enrichment(tmp_path):
    class UnreadableListenBrainz(FakeListenBrainzClient):
        async def get_recent_tracks(self, username, limit, page, token=None):
            raise ServiceError("HTTP 500", 500)

        async def get_recent_tracks_by_time_range(self, username, min_ts, max_ts, limit, token=None):
            raise ServiceError("HTTP 500", 500)

    lastfm = FakeClient(LASTFM, recent=[
        make_listen(LASTFM, "Artist A", "Track A", 1000),
        make_listen(LASTFM, "Artist B", "Track B", 2000),
    ])
    broken = UnreadableListenBrainz()
    manager = make_manager(make_store(tmp_path, LASTFM, LISTENBRAINZ), lastfm, broken)

    tracks = asyncio.run(history_and_backfill(manager))

    assert len(tracks) == 2
    assert all(set(t.service_info) == {LASTFM.id} for t in tracks)
    assert broken.scrobbled == []
    assert manager.backfill_task is None


def test_unreadable_secondary_does_not_block_backfill_to_others(tmp_path):
    class UnreadableLibreFm(FakeClient):
        async def get_recent_tracks_by_time_range(self, username, min_ts, max_ts, limit, token=None):
            raise ServiceError("timed out")

    recent = int(time.time()) - 3600
    lastfm = FakeClient(LASTFM, recent=[make_listen(LASTFM, "Artist", "Track", recent)])
    librefm = UnreadableLibreFm(LIBREFM)
    listenbrainz = FakeListenBrainzClient(time_range=[])
    store = make_store(tmp_path, LASTFM, LIBREFM, LISTENBRAINZ)
    manager = make_manager(store, lastfm, librefm, listenbrainz)

    asyncio.run(history_and_backfill(manager))

    assert librefm.scrobbled == []
    assert [t.name for t in listenbrainz.scrobbled] == ["Track"]


def test_enrichment_fetches_do_not_send_tokens(tmp_path):
    recent = int(time.time()) - 3600
    listenbrainz = FakeListenBrainzClient(recent=[make_listen(LISTENBRAINZ, "Artist", "Track", recent)])
    lastfm = FakeClient(LASTFM, recent=[make_listen(LASTFM, "Artist", "Track", recent + 10)])
    store = make_store(tmp_path, LASTFM, LISTENBRAINZ)
    store.set_primary_preference(LISTENBRAINZ)
    manager = make_manager(store, lastfm, listenbrainz)

    asyncio.run(history_and_backfill(manager))

    assert listenbrainz.history_tokens == ["token-listenbrainz"]
    assert [c[0] for c in lastfm.calls] == ['get_recent_tracks_by_time_range', 'get_recent_tracks']
    assert lastfm.history_tokens == [None, None]


def test_history_returns_while_backfill_is_pending(tmp_path):
    class SlowListenBrainz(FakeListenBrainzClient):
        def __init__(self, release, **kwargs):
            super().__init__(**kwargs)
            self.release = release

        async def scrobble(self, session_key, track):
            await self.release.wait()
            await super().scrobble(session_key, track)

    async def scenario():
        release = asyncio.Event()
        lastfm = FakeClient(LASTFM, recent=[make_listen(LASTFM, "Artist A", "Track A", 1000)])
        listenbrainz = SlowListenBrainz(release, time_range=[])
        events = EventSink()
        received = []
        events.subscribe(received.append)
        manager = make_manager(make_store(tmp_path, LASTFM, LISTENBRAINZ), lastfm, listenbrainz, events=events)

        tracks = await manager.get_all_recent_tracks()
        pending = manager.backfill_task
        await asyncio.sleep(0)

        assert [t.name for t in tracks] == ["Track A"]
        assert pending is not None and not pending.done()
        assert received == []
        assert listenbrainz.scrobbled == []

        release.set()
        await pending

        assert [(e.track, e.service) for e in received] == [("Track A", LISTENBRAINZ)]

    asyncio.run(scenario())


def test_primary_failure_propagates(tmp_path):
    lastfm = FakeClient(LASTFM, fail=ServiceError("down"))
    manager = make_manager(make_store(tmp_path, LASTFM), lastfm)

    with pytest.raises(ServiceError):
        asyncio.run(manager.get_all_recent_tracks())


def test_no_primary_returns_empty_history(tmp_path):
    manager = make_manager(make_store(tmp_path), FakeClient(LASTFM))

    assert asyncio.run(manager.get_all_recent_tracks()) == []
    assert asyncio.run(manager.get_user_stats()) is None


def test_primary_preference_overrides_priority(tmp_path):
    store = make_store(tmp_path, LASTFM, LISTENBRAINZ)
    lastfm = FakeClient(LASTFM)
    listenbrainz = FakeListenBrainzClient()
    manager = make_manager(store, lastfm, listenbrainz)

    asyncio.run(manager.get_all_recent_tracks())
    assert lastfm.called('get_recent_tracks')
    assert not listenbrainz.called('get_recent_tracks')

    store.set_primary_preference(LISTENBRAINZ)
    asyncio.run(manager.get_all_recent_tracks())
    assert listenbrainz.called('get_recent_tracks')


def test_old_listens_are_not_backfilled_to_lastfm(tmp_path):
    now = time.time()
    old = int(now - 20 * SECONDS_PER_DAY)
    fresh = int(now - 2 * SECONDS_PER_DAY)
    listenbrainz = FakeListenBrainzClient(recent=[
        make_listen(LISTENBRAINZ, "Artist", "Fresh", fresh),
        make_listen(LISTENBRAINZ, "Artist", "Old", old),
    ])
    lastfm = FakeClient(LASTFM, time_range=[])
    store = make_store(tmp_path, LASTFM, LISTENBRAINZ)
    store.set_primary_preference(LISTENBRAINZ)
    manager = make_manager(store, lastfm, listenbrainz)

    asyncio.run(history_and_backfill(manager))

    assert [t.name for t in lastfm.scrobbled] == ["Fresh"]


def test_backfill_log_names_the_services_that_had_the_listen(tmp_path, caplog):
    lastfm = FakeClient(LASTFM, recent=[make_listen(LASTFM, "Artist", "Track", 1000)])
    listenbrainz = FakeListenBrainzClient(time_range=[])
    manager = make_manager(make_store(tmp_path, LASTFM, LISTENBRAINZ), lastfm, listenbrainz)

    with caplog.at_level(logging.INFO, logger="service_manager"):
        asyncio.run(history_and_backfill(manager))

    assert "Backfilled Artist - Track to ListenBrainz (found on Last.fm)" in caplog.text


def test_backfill_failures_do_not_stop_the_queue(tmp_path):
    class FlakyTarget(FakeListenBrainzClient):
        async def scrobble(self, session_key, track):
            if track.name == "Track A":
                raise ServiceError("rejected")
            await super().scrobble(session_key, track)

    lastfm = FakeClient(LASTFM, recent=[
        make_listen(LASTFM, "Artist", "Track A", 1000),
        make_listen(LASTFM, "Artist", "Track B", 2000, loved=True),
    ])
    target = FlakyTarget(time_range=[])
    manager = make_manager(make_store(tmp_path, LASTFM, LISTENBRAINZ), lastfm, target)

    asyncio.run(history_and_backfill(manager))

    assert [t.name for t in target.scrobbled] == ["Track B"]
    assert target.loved == [("Artist", "Track B", True)]
    assert manager.events.last_backfilled_track.track == "Track B"


def test_listenbrainz_primary_gets_cached_play_counts(tmp_path):
    cache = PlaycountCache(None, tmp_path / "cache", sleep=no_sleep)
    cache.cache_dir.mkdir()
    cache.snapshot_path("user-listenbrainz").write_text(json.dumps({
        'username': "user-listenbrainz",
        'save_timestamp': time.time(),
        'continue_from_ts': None,
        'completed_at': time.time(),
        'data': {"artist a|track a": 7},
    }), encoding='utf-8')
    listenbrainz = FakeListenBrainzClient(recent=[
        make_listen(LISTENBRAINZ, "Artist A", "Track A", 1000),
        make_listen(LISTENBRAINZ, "Artist B", "Track B", 900),
    ])
    manager = make_manager(make_store(tmp_path, LISTENBRAINZ), listenbrainz, cache=cache)

    tracks = asyncio.run(manager.get_all_recent_tracks())

    assert [t.playcount for t in tracks] == [7, None]
    assert asyncio.run(manager.get_track_user_playcount("artist a", "track a")) == 7


def test_scrobble_fan_out_isolates_failures(tmp_path):
    lastfm = FakeClient(LASTFM, fail=ServiceError("Operation failed", 8))
    librefm = FakeClient(LIBREFM)
    listenbrainz = FakeListenBrainzClient()
    manager = make_manager(make_store(tmp_path, LASTFM, LIBREFM, LISTENBRAINZ), lastfm, librefm, listenbrainz)

    asyncio.run(manager.scrobble_all(now_playing()))

    assert len(lastfm.called('scrobble')) == 1
    assert [t.name for t in librefm.scrobbled] == ["Track A"]
    assert [t.name for t in listenbrainz.scrobbled] == ["Track A"]
    assert librefm.called('scrobble')[0][1] == "token-librefm"
    assert manager.events.scrobble_completed_count == 1


def test_disabled_services_are_skipped(tmp_path):
    store = make_store(tmp_path, LASTFM, LISTENBRAINZ)
    store.toggle_service(LASTFM, False)
    lastfm = FakeClient(LASTFM)
    listenbrainz = FakeListenBrainzClient()
    manager = make_manager(store, lastfm, listenbrainz)

    asyncio.run(manager.update_love_all("Artist", "Track", True))

    assert lastfm.calls == []
    assert listenbrainz.loved == [("Artist", "Track", True)]


def test_blacklist_suppresses_fan_out(tmp_path):
    store = make_store(tmp_path, LASTFM, LISTENBRAINZ)
    store.toggle_blacklist("Artist A", "Track A")
    lastfm = FakeClient(LASTFM)
    listenbrainz = FakeListenBrainzClient()
    manager = make_manager(store, lastfm, listenbrainz)
    track = now_playing()

    result = asyncio.run(manager.update_now_playing_all(track))
    asyncio.run(manager.scrobble_all(track))

    assert result is track
    assert lastfm.calls == []
    assert listenbrainz.calls == []
    assert manager.events.scrobble_completed_count == 0


def test_now_playing_enriched_when_listenbrainz_is_primary(tmp_path):
    store = make_store(tmp_path, LASTFM, LISTENBRAINZ)
    store.set_primary_preference(LISTENBRAINZ)
    lastfm = FakeClient(LASTFM)
    listenbrainz = FakeListenBrainzClient()
    manager = make_manager(store, lastfm, listenbrainz)

    result = asyncio.run(manager.update_now_playing_all(now_playing()))

    assert result.track_url == "https://listenbrainz.org/track/Track A/"
    assert lastfm.now_playing[0].track_url == result.track_url


def test_delete_builds_identifier_per_service(tmp_path):
    lastfm = FakeClient(LASTFM)
    listenbrainz = FakeListenBrainzClient()
    manager = make_manager(make_store(tmp_path, LASTFM, LISTENBRAINZ), lastfm, listenbrainz)
    service_info = {
        LASTFM.id: ServiceTrackData.lastfm(1000),
        LISTENBRAINZ.id: ServiceTrackData.listenbrainz("msid-1", 1003),
    }

    asyncio.run(manager.delete_scrobble_all("Artist", "Track", service_info))

    assert lastfm.deleted[0].timestamp == 1000
    assert lastfm.deleted[0].service_id is None
    assert (listenbrainz.deleted[0].timestamp, listenbrainz.deleted[0].service_id) == (1003, "msid-1")


def test_authentication_round_trip(tmp_path):
    manager = make_manager(make_store(tmp_path), FakeClient(LASTFM))

    token, url = asyncio.run(manager.authenticate(LASTFM))
    credentials = asyncio.run(manager.complete_authentication(LASTFM, token))

    assert url == "https://auth.example/lastfm"
    assert credentials.service is LASTFM
    assert credentials.username == "someone"
    assert credentials.token == "session-request-token"
    assert credentials.is_enabled

    with pytest.raises(ServiceNotFoundError):
        asyncio.run(manager.authenticate(LISTENBRAINZ))


def test_event_subscriber_errors_are_contained():
    events = EventSink()
    seen = []

    def broken(event):
        raise ValueError("boom")

    events.subscribe(broken)
    events.subscribe(seen.append)
    events.publish_backfill("event")

    assert seen == ["event"]
    assert events.last_backfilled_track == "event"
