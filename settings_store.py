"""
Settings persistence for Scrobble Sync
Stores per-service credentials, the primary service preference and the
track blacklist in a single JSON file
"""
import json
import logging
from pathlib import Path
from typing import List, Optional

from listen_models import ScrobbleService, ServiceCredentials

logger = logging.getLogger(__name__)

BLACKLIST_SEPARATOR = "|||"


def blacklist_key(artist: str, track: str) -> str:
    return f"{artist}{BLACKLIST_SEPARATOR}{track}"


class SettingsStore:
    """Credentials, primary preference and blacklist backed by settings.json"""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._credentials: List[ServiceCredentials] = []
        self._primary_preference: Optional[ScrobbleService] = None
        self._blacklist: List[str] = []
        self.load()

    def load(self) -> None:
        """Load settings from JSON file; unreadable files leave an empty store"""
        if not self.path.exists():
            logger.info("No settings file found, starting fresh")
            return

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            self._credentials = [ServiceCredentials.from_dict(c) for c in data.get('credentials', [])]
            preference = data.get('primary_service')
            self._primary_preference = ScrobbleService(preference) if preference else None
            self._blacklist = list(data.get('blacklist', []))
            logger.info(f"Loaded settings for {len(self._credentials)} services")
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error(f"Error loading settings: {e}")
            self._credentials = []
            self._primary_preference = None
            self._blacklist = []

    def save(self) -> None:
        """Save settings to JSON file"""
        data = {
            'credentials': [c.to_dict() for c in self._credentials],
            'primary_service': self._primary_preference.value if self._primary_preference else None,
            'blacklist': self._blacklist,
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            logger.error(f"Error saving settings: {e}")

    # Read-only views used by the service manager

    @property
    def credentials(self) -> List[ServiceCredentials]:
        return list(self._credentials)

    @property
    def enabled_services(self) -> List[ServiceCredentials]:
        """Enabled credentials in fixed service priority order"""
        order = list(ScrobbleService)
        enabled = [c for c in self._credentials if c.is_enabled]
        return sorted(enabled, key=lambda c: order.index(c.service))

    @property
    def primary_preference(self) -> Optional[ScrobbleService]:
        return self._primary_preference

    @property
    def primary_service(self) -> Optional[ServiceCredentials]:
        if self._primary_preference is not None:
            credentials = self.credentials_for(self._primary_preference)
            if credentials is not None and credentials.is_enabled:
                return credentials
        enabled = self.enabled_services
        return enabled[0] if enabled else None

    def credentials_for(self, service: ScrobbleService) -> Optional[ServiceCredentials]:
        return next((c for c in self._credentials if c.service is service), None)

    def is_blacklisted(self, artist: str, track: str) -> bool:
        return blacklist_key(artist, track) in self._blacklist

    @property
    def blacklist(self) -> List[str]:
        return list(self._blacklist)

    # Mutations, used by the CLI and the setup script

    def add_or_update_credentials(self, credentials: ServiceCredentials) -> None:
        self._credentials = [c for c in self._credentials if c.service is not credentials.service]
        self._credentials.append(credentials)
        self.save()

    def remove_credentials(self, service: ScrobbleService) -> None:
        self._credentials = [c for c in self._credentials if c.service is not service]
        if self._primary_preference is service:
            self._primary_preference = None
        self.save()

    def toggle_service(self, service: ScrobbleService, enabled: bool) -> None:
        credentials = self.credentials_for(service)
        if credentials is None:
            logger.warning(f"No credentials stored for {service.display_name}")
            return
        credentials.is_enabled = enabled
        self.save()

    def set_primary_preference(self, service: Optional[ScrobbleService]) -> None:
        self._primary_preference = service
        self.save()

    def toggle_blacklist(self, artist: str, track: str) -> bool:
        """Flip blacklist membership; returns True when the track is now blacklisted"""
        key = blacklist_key(artist, track)
        if key in self._blacklist:
            self._blacklist.remove(key)
            blacklisted = False
        else:
            self._blacklist.append(key)
            blacklisted = True
        self.save()
        return blacklisted
