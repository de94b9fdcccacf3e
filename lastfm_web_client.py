"""
Last.fm website session for scrobble deletion

The public API has no supported delete call, so deletes that the API
rejects go through the website's own endpoint. That needs a logged-in
session: the login page sets a csrftoken cookie, posting credentials sets
sessionid, and every later form post echoes the current csrftoken.
"""
import logging
from typing import Dict, Optional
from urllib.parse import quote

import requests

from listenbrainz_client import USER_AGENT
from service_clients import AuthenticationError, ServiceError

logger = logging.getLogger(__name__)

SITE_URL = "https://www.last.fm"
LOGIN_URL = f"{SITE_URL}/login"
REQUEST_TIMEOUT = 10


class LastFmWebClient:
    """Blocking requests session; callers run it through asyncio.to_thread"""

    def __init__(self, username: str, password: str, session: Optional[requests.Session] = None):
        self.username = username
        self._password = password
        self.http = session or requests.Session()
        self.http.headers.setdefault('User-Agent', USER_AGENT)
        self.is_authenticated = False

    def _csrf_token(self) -> str:
        token = self.http.cookies.get('csrftoken')
        if not token:
            raise AuthenticationError("Last.fm website did not set a csrftoken cookie")
        return token

    def _post(self, url: str, data: Dict[str, str], referer: str) -> requests.Response:
        try:
            return self.http.post(url, data=data, headers={'Referer': referer}, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise ServiceError(f"Last.fm website request failed: {e}") from e

    def login(self) -> None:
        try:
            self.http.get(LOGIN_URL, timeout=REQUEST_TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise ServiceError(f"Last.fm website request failed: {e}") from e

        response = self._post(LOGIN_URL, {
            'csrfmiddlewaretoken': self._csrf_token(),
            'username_or_email': self.username,
            'password': self._password,
        }, LOGIN_URL)

        if response.status_code != 200 or not self.http.cookies.get('sessionid'):
            raise AuthenticationError(
                f"Last.fm website login failed for {self.username} (HTTP {response.status_code})",
                response.status_code,
            )
        self.is_authenticated = True
        logger.info(f"Logged in to the Last.fm website as {self.username}")

    def delete_scrobble(self, artist: str, track: str, timestamp: int) -> None:
        if not self.is_authenticated:
            self.login()

        url = f"{SITE_URL}/user/{quote(self.username, safe='')}/library/delete"
        response = self._post(url, {
            'artist_name': artist,
            'track_name': track,
            'timestamp': str(timestamp),
            'csrfmiddlewaretoken': self._csrf_token(),
            'ajax': '1',
        }, SITE_URL)

        if response.status_code in (401, 403):
            # Session expired; log in again on the next delete
            self.is_authenticated = False
            raise AuthenticationError(f"Last.fm website rejected the session (HTTP {response.status_code})",
                                      response.status_code)
        if response.status_code >= 400:
            raise ServiceError(f"HTTP {response.status_code}: {response.text}", response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ServiceError(f"Unexpected Last.fm delete response: {e}") from e
        if not isinstance(data, dict) or not data.get('result'):
            raise ServiceError(f"Last.fm website did not delete {artist} - {track}")

        logger.info(f"Deleted scrobble through the Last.fm website: {artist} - {track}")
