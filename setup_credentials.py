#!/usr/bin/env python3
"""
Setup script for Scrobble Sync service credentials
Walks through Last.fm / Libre.fm authorization and the ListenBrainz user
token, verifies each by reading recent history, and saves them to settings.json
"""
import asyncio
import sys

from app_config import load_config, setup_logging
from listen_models import ScrobbleService
from scrobble_sync import build_service_manager
from service_manager import ServiceManager
from settings_store import SettingsStore


def print_instructions(service: ScrobbleService, auth_url: str):
    """Print the authorization steps for one service"""
    print("\n" + "="*60)
    print(f"{service.display_name} Setup Instructions")
    print("="*60)
    print()
    if service is ScrobbleService.LISTENBRAINZ:
        print(f"1. Open {auth_url}")
        print("2. Log in to ListenBrainz if needed")
        print("3. Copy the 'User token' shown on that page")
        print("4. Paste it below when prompted")
    else:
        print("1. Open this URL in your browser:")
        print(f"   {auth_url}")
        print(f"2. Log in to {service.display_name} and allow access")
        print("3. Come back here and press Enter")
    print()
    print("="*60)
    print()


async def authorize(manager: ServiceManager, store: SettingsStore, service: ScrobbleService) -> bool:
    """Interactive authorization for one service"""
    if manager.client(service) is None:
        print(f"❌ {service.display_name} has no API keys configured, skipping")
        return False

    existing = store.credentials_for(service)
    if existing is not None:
        response = input(f"{service.display_name} is already set up for {existing.username}. Replace? (y/n): ")
        if response.lower() != 'y':
            print("Keeping existing credentials.")
            return True

    try:
        token, auth_url = await manager.authenticate(service)
        print_instructions(service, auth_url)

        if service is ScrobbleService.LISTENBRAINZ:
            token = input("User token: ").strip()
        else:
            input("Press Enter once you have authorized access...")

        credentials = await manager.complete_authentication(service, token)
    except KeyboardInterrupt:
        print("\nSetup cancelled.")
        return False
    except Exception as e:
        print(f"❌ Authorization failed: {e}")
        return False

    if not await verify_credentials(manager, credentials):
        return False

    store.add_or_update_credentials(credentials)
    print(f"✅ {service.display_name} credentials saved to {store.path}")
    return True


async def verify_credentials(manager: ServiceManager, credentials) -> bool:
    """Verify that the credentials work"""
    try:
        print("Verifying credentials...")
        client = manager.client(credentials.service)
        tracks = await client.get_recent_tracks(credentials.username, 5, 1)
        if tracks:
            print(f"✅ Credentials verified! Found {len(tracks)} recent tracks.")
            print(f"Latest track: {tracks[0].artist} - {tracks[0].name}")
        else:
            print("⚠️  Credentials work but no listening history found.")
        return True

    except Exception as e:
        print(f"❌ Credential verification failed: {e}")
        return False


async def run_setup(manager: ServiceManager, store: SettingsStore) -> bool:
    configured = 0
    for service in ScrobbleService:
        response = input(f"\nSet up {service.display_name}? (y/n): ")
        if response.lower() != 'y':
            continue
        if await authorize(manager, store, service):
            configured += 1

    if configured and store.primary_preference is None and len(store.enabled_services) > 1:
        names = ", ".join(c.service.display_name for c in store.enabled_services)
        choice = input(f"Primary service for history ({names}), Enter for default: ").strip()
        for service in ScrobbleService:
            if choice.lower() == service.display_name.lower():
                store.set_primary_preference(service)

    return configured > 0


def main():
    """Main setup function"""
    config = load_config()
    setup_logging(config)

    print("Scrobble Sync - Service Setup")
    print(f"Config directory: {config.config_dir}")

    store = SettingsStore(config.settings_file)
    manager = build_service_manager(config, store)

    if asyncio.run(run_setup(manager, store)):
        print("\n✅ Setup completed successfully!")
        print("You can now run: scrobble-sync history")
        return True

    print("\n❌ Setup failed. Please try again.")
    return False


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
