#!/usr/bin/env python3
"""
Scrobble Sync command line
Scrobbles to Last.fm, Libre.fm and ListenBrainz at once and shows the
reconciled listening history from the primary service
"""
import argparse
import asyncio
import logging
import sys
import time
from typing import Dict, List, Optional

from app_config import AppConfig, load_config, setup_logging
from lastfm_client import LastFmClient, LibreFmClient
from lastfm_web_client import LastFmWebClient
from listen_models import Listen, NowPlayingTrack, ScrobbleService, ServiceTrackData
from listenbrainz_client import ListenBrainzClient
from playcount_cache import PlaycountCache
from service_clients import ScrobbleClient
from service_manager import EventSink, ServiceManager
from settings_store import BLACKLIST_SEPARATOR, SettingsStore

logger = logging.getLogger(__name__)

SERVICE_NAMES = {
    'lastfm': ScrobbleService.LASTFM,
    'librefm': ScrobbleService.LIBREFM,
    'listenbrainz': ScrobbleService.LISTENBRAINZ,
}


def build_clients(config: AppConfig) -> Dict[ScrobbleService, ScrobbleClient]:
    clients: Dict[ScrobbleService, ScrobbleClient] = {
        ScrobbleService.LISTENBRAINZ: ListenBrainzClient(config.listenbrainz_api_url),
    }
    if config.has_lastfm_keys:
        web_client = None
        if config.has_lastfm_web_login:
            web_client = LastFmWebClient(config.lastfm_username, config.lastfm_password)
        clients[ScrobbleService.LASTFM] = LastFmClient(
            config.lastfm_api_key, config.lastfm_api_secret, web_client=web_client
        )
    else:
        logger.warning("LASTFM_API_KEY / LASTFM_API_SECRET not set, Last.fm disabled")
    if config.has_librefm_keys:
        clients[ScrobbleService.LIBREFM] = LibreFmClient(config.librefm_api_key, config.librefm_api_secret)
    return clients


def build_service_manager(config: AppConfig, store: SettingsStore) -> ServiceManager:
    """Wire clients, cache and settings into a ServiceManager"""
    clients = build_clients(config)
    listenbrainz = clients[ScrobbleService.LISTENBRAINZ]
    cache = PlaycountCache(listenbrainz.fetch_listens, config.cache_dir)
    return ServiceManager(
        clients,
        store,
        cache=cache,
        events=EventSink(),
        match_threshold=config.match_threshold,
        max_backfill_age_days=config.max_backfill_age_days,
    )


def format_listen(manager: ServiceManager, listen: Listen) -> str:
    when = time.strftime('%Y-%m-%d %H:%M', time.localtime(listen.date)) if listen.date else "now playing"
    services = ", ".join(sorted(listen.service_info))
    parts = [f"{when}  {listen.artist} - {listen.name}"]
    if listen.album:
        parts.append(f"[{listen.album}]")
    if listen.playcount is not None:
        parts.append(f"({listen.playcount} plays)")
    if listen.loved:
        parts.append("<3")
    parts.append(f"{manager.sync_status(listen).value}: {services}")
    return "  ".join(parts)


# Commands

async def cmd_history(manager: ServiceManager, args) -> None:
    tracks = await manager.get_all_recent_tracks(limit=args.limit, page=args.page)
    if not tracks:
        print("No tracks found")
        return
    for listen in tracks:
        print(format_listen(manager, listen))

    # Let queued backfills finish before the event loop closes
    if manager.backfill_task is not None:
        await manager.backfill_task


def _track_from_args(args) -> NowPlayingTrack:
    track = NowPlayingTrack(
        artist=args.artist,
        album=args.album or "",
        name=args.title,
        length=float(args.duration or 0),
    )
    if getattr(args, 'timestamp', None):
        track.started_at = args.timestamp
    return track


async def cmd_now_playing(manager: ServiceManager, args) -> None:
    track = await manager.update_now_playing_all(_track_from_args(args))
    print(f"Now playing: {track.description}")


async def cmd_scrobble(manager: ServiceManager, args) -> None:
    track = _track_from_args(args)
    await manager.scrobble_all(track)
    print(f"Scrobbled: {track.artist} - {track.name}")


async def cmd_love(manager: ServiceManager, args) -> None:
    await manager.update_love_all(args.artist, args.title, not args.unlove)


async def cmd_delete(manager: ServiceManager, args) -> None:
    service_info = {
        ScrobbleService.LASTFM.id: ServiceTrackData.lastfm(args.timestamp),
        ScrobbleService.LIBREFM.id: ServiceTrackData.lastfm(args.timestamp),
    }
    if args.msid:
        service_info[ScrobbleService.LISTENBRAINZ.id] = ServiceTrackData.listenbrainz(args.msid, args.timestamp)
    await manager.delete_scrobble_all(args.artist, args.title, service_info)


async def cmd_stats(manager: ServiceManager, args) -> None:
    stats = await manager.get_user_stats()
    if stats is None:
        print("No primary service configured")
        return
    print(f"Scrobbles: {stats.playcount}")
    if stats.registered:
        print(f"Registered: {stats.registered}")
    if stats.country:
        print(f"Country: {stats.country}")

    print(f"\nTop artists ({args.period}):")
    for i, artist in enumerate(await manager.get_top_artists(args.period, args.limit), 1):
        print(f"  {i:2}. {artist.name} ({artist.playcount})")
    print(f"\nTop albums ({args.period}):")
    for i, album in enumerate(await manager.get_top_albums(args.period, args.limit), 1):
        print(f"  {i:2}. {album.artist} - {album.name} ({album.playcount})")
    print(f"\nTop tracks ({args.period}):")
    for i, track in enumerate(await manager.get_top_tracks(args.period, args.limit), 1):
        print(f"  {i:2}. {track.artist} - {track.name} ({track.playcount})")


async def cmd_cache(manager: ServiceManager, args) -> None:
    credentials = manager.settings.credentials_for(ScrobbleService.LISTENBRAINZ)
    if credentials is None:
        print("ListenBrainz is not configured")
        return
    username = credentials.username

    if args.action == 'populate':
        await manager.cache.populate_play_count_cache(username)
        task = manager.cache.background_task(username)
        if task is not None:
            print(f"Fetching ListenBrainz history for {username}...")
            await task
        print("Play count cache is up to date")
    elif args.action == 'invalidate':
        manager.cache.invalidate_cache(username)
        print(f"Cache cleared for {username}")
    elif args.action == 'lookup':
        if not args.artist or not args.title:
            print("lookup needs ARTIST and TITLE")
            return
        await manager.cache.populate_play_count_cache(username)
        count = manager.cache.get_cached_play_count(username, args.artist, args.title)
        print(f"{args.artist} - {args.title}: {count if count is not None else 'not cached'}")


async def cmd_blacklist(manager: ServiceManager, args) -> None:
    if not args.artist or not args.title:
        entries = manager.settings.blacklist
        if not entries:
            print("Blacklist is empty")
        for entry in entries:
            artist, title = entry.split(BLACKLIST_SEPARATOR, 1)
            print(f"{artist} - {title}")
        return

    if manager.settings.toggle_blacklist(args.artist, args.title):
        print(f"Blacklisted: {args.artist} - {args.title}")
    else:
        print(f"Removed from blacklist: {args.artist} - {args.title}")


async def cmd_services(manager: ServiceManager, args) -> None:
    store = manager.settings
    if args.enable:
        store.toggle_service(SERVICE_NAMES[args.enable], True)
    if args.disable:
        store.toggle_service(SERVICE_NAMES[args.disable], False)
    if args.primary:
        store.set_primary_preference(SERVICE_NAMES[args.primary])

    primary = store.primary_service
    if not store.credentials:
        print("No services configured. Run setup_credentials.py first.")
        return
    for credentials in store.credentials:
        flags = []
        if credentials.is_enabled:
            flags.append("enabled")
        if primary is not None and primary.service is credentials.service:
            flags.append("primary")
        print(f"{credentials.service.display_name:<13} {credentials.username:<20} {', '.join(flags)}")


COMMANDS = {
    'history': cmd_history,
    'now-playing': cmd_now_playing,
    'scrobble': cmd_scrobble,
    'love': cmd_love,
    'delete': cmd_delete,
    'stats': cmd_stats,
    'cache': cmd_cache,
    'blacklist': cmd_blacklist,
    'services': cmd_services,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Scrobble to several services and reconcile their histories")
    subparsers = parser.add_subparsers(dest='command', required=True)

    history = subparsers.add_parser('history', help="Show recent listens from the primary service")
    history.add_argument('--limit', type=int, default=20)
    history.add_argument('--page', type=int, default=1)

    for name, help_text in (('now-playing', "Send a now playing update"), ('scrobble', "Scrobble a track")):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('artist')
        sub.add_argument('title')
        sub.add_argument('--album')
        sub.add_argument('--duration', type=float, help="Track length in seconds")
        if name == 'scrobble':
            sub.add_argument('--timestamp', type=int, help="Unix time the track started")

    love = subparsers.add_parser('love', help="Love a track on every service")
    love.add_argument('artist')
    love.add_argument('title')
    love.add_argument('--unlove', action='store_true')

    delete = subparsers.add_parser('delete', help="Delete a scrobble from every service")
    delete.add_argument('artist')
    delete.add_argument('title')
    delete.add_argument('--timestamp', type=int, required=True)
    delete.add_argument('--msid', help="ListenBrainz recording_msid")

    stats = subparsers.add_parser('stats', help="Profile statistics from the primary service")
    stats.add_argument('--period', default='overall',
                       choices=['7day', '1month', '3month', '6month', '12month', 'overall'])
    stats.add_argument('--limit', type=int, default=10)

    cache = subparsers.add_parser('cache', help="Manage the ListenBrainz play count cache")
    cache.add_argument('action', choices=['populate', 'invalidate', 'lookup'])
    cache.add_argument('artist', nargs='?')
    cache.add_argument('title', nargs='?')

    blacklist = subparsers.add_parser('blacklist', help="Toggle a track on the blacklist, or list it")
    blacklist.add_argument('artist', nargs='?')
    blacklist.add_argument('title', nargs='?')

    services = subparsers.add_parser('services', help="List or change configured services")
    services.add_argument('--enable', choices=list(SERVICE_NAMES))
    services.add_argument('--disable', choices=list(SERVICE_NAMES))
    services.add_argument('--primary', choices=list(SERVICE_NAMES))

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    config = load_config()
    setup_logging(config)

    store = SettingsStore(config.settings_file)
    manager = build_service_manager(config, store)
    asyncio.run(COMMANDS[args.command](manager, args))


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        logger.info("Script interrupted by user")
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        sys.exit(1)
