"""
Configuration and logging setup shared by the CLI and the setup script
"""
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from listenbrainz_client import DEFAULT_API_URL
from listen_models import DEFAULT_MAX_BACKFILL_AGE_DAYS
from track_matcher import DEFAULT_MATCH_THRESHOLD

SCRIPT_DIR = Path(__file__).parent
DEFAULT_HOME = Path.home() / ".scrobble_sync"


def load_env_file(env_file: Path) -> None:
    """Copy KEY=value lines from env_file into os.environ"""
    if not env_file.exists():
        return
    with open(env_file, 'r') as f:
        for line in f:
            line = line.strip()
            if line and not line.startswith('#') and '=' in line:
                key, value = line.split('=', 1)
                os.environ[key.strip()] = value.strip()


@dataclass
class AppConfig:
    config_dir: Path
    lastfm_api_key: Optional[str] = None
    lastfm_api_secret: Optional[str] = None
    lastfm_username: Optional[str] = None
    lastfm_password: Optional[str] = None
    librefm_api_key: Optional[str] = None
    librefm_api_secret: Optional[str] = None
    listenbrainz_api_url: str = DEFAULT_API_URL
    max_backfill_age_days: float = DEFAULT_MAX_BACKFILL_AGE_DAYS
    match_threshold: float = DEFAULT_MATCH_THRESHOLD
    log_level: str = "INFO"

    @property
    def settings_file(self) -> Path:
        return self.config_dir / "settings.json"

    @property
    def cache_dir(self) -> Path:
        return self.config_dir / "cache"

    @property
    def log_file(self) -> Path:
        return self.config_dir / "scrobble_sync.log"

    @property
    def has_lastfm_keys(self) -> bool:
        return bool(self.lastfm_api_key and self.lastfm_api_secret)

    @property
    def has_lastfm_web_login(self) -> bool:
        return bool(self.lastfm_username and self.lastfm_password)

    @property
    def has_librefm_keys(self) -> bool:
        return bool(self.librefm_api_key and self.librefm_api_secret)


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        print(f"WARNING: Ignoring invalid {name}={value!r}, using {default}")
        return default


def load_config(home: Optional[Path] = None) -> AppConfig:
    """Resolve the config directory, load its .env file, and read settings from the environment"""
    config_dir = Path(home or os.environ.get('SCROBBLE_SYNC_HOME') or DEFAULT_HOME).expanduser()
    config_dir.mkdir(parents=True, exist_ok=True)

    # A .env in the config dir takes precedence over one next to the scripts
    load_env_file(SCRIPT_DIR / ".env")
    load_env_file(config_dir / ".env")

    lastfm_key = os.environ.get('LASTFM_API_KEY')
    lastfm_secret = os.environ.get('LASTFM_API_SECRET')
    return AppConfig(
        config_dir=config_dir,
        lastfm_api_key=lastfm_key,
        lastfm_api_secret=lastfm_secret,
        # Website login, only used when the API refuses a delete
        lastfm_username=os.environ.get('LASTFM_USERNAME'),
        lastfm_password=os.environ.get('LASTFM_PASSWORD'),
        # Libre.fm accepts any key pair; reuse the Last.fm one when none is set
        librefm_api_key=os.environ.get('LIBREFM_API_KEY') or lastfm_key,
        librefm_api_secret=os.environ.get('LIBREFM_API_SECRET') or lastfm_secret,
        listenbrainz_api_url=os.environ.get('LISTENBRAINZ_API_URL') or DEFAULT_API_URL,
        max_backfill_age_days=_float_env('SCROBBLE_SYNC_BACKFILL_DAYS', DEFAULT_MAX_BACKFILL_AGE_DAYS),
        match_threshold=_float_env('SCROBBLE_SYNC_MATCH_THRESHOLD', DEFAULT_MATCH_THRESHOLD),
        log_level=(os.environ.get('SCROBBLE_SYNC_LOG_LEVEL') or "INFO").upper(),
    )


def setup_logging(config: AppConfig) -> None:
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(config.log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )
    # pylast logs every HTTP request at INFO
    logging.getLogger('pylast').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
