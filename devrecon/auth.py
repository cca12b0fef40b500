"""OAuth2 client-credentials tokens for the upstream inventory APIs."""
from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict

import requests

from .errors import AuthError

LOGGER = logging.getLogger(__name__)

# Tokens are refreshed this many seconds before they expire.
EXPIRY_BUFFER_SECONDS = 60


class TokenProvider:
    """Client-credentials token source with a per-scope cache.

    The cache lives on the instance, so every engine (and every test) owns its
    tokens and nothing leaks between them.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: str,
        *,
        session: requests.Session | None = None,
        timeout: float = 30.0,
    ) -> None:
        self.token_url = token_url
        self.client_id = client_id
        self._client_secret = client_secret
        self._session = session
        self._owns_session = session is None
        self._timeout = timeout
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def init(self) -> None:
        if self._session is None:
            self._session = requests.Session()

    def close(self) -> None:
        if self._session is not None and self._owns_session:
            self._session.close()
            self._session = None
        self.clear_cache()

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_token(self, scope: str) -> str:
        with self._lock:
            cached = self._cache.get(scope)
            if cached and time.time() < cached["expires_at"] - EXPIRY_BUFFER_SECONDS:
                return cached["access_token"]
            token = self._request_token(scope)
            self._cache[scope] = token
            return token["access_token"]

    def _request_token(self, scope: str) -> Dict[str, Any]:
        self.init()
        data = {
            "grant_type": "client_credentials",
            "client_id": self.client_id,
            "client_secret": self._client_secret,
            "scope": scope,
        }
        LOGGER.debug("Requesting access token for scope %s", scope)
        try:
            response = self._session.post(self.token_url, data=data, timeout=self._timeout)
        except requests.RequestException as exc:
            raise AuthError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            raise AuthError(f"Token request for {scope} returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthError("Token response is not valid JSON") from exc

        if "access_token" not in payload:
            raise AuthError("Token response missing access_token")
        expires_in = float(payload.get("expires_in", 3600))
        LOGGER.debug("Access token for %s obtained, expires in %.0fs", scope, expires_in)
        return {
            "access_token": payload["access_token"],
            "expires_at": time.time() + expires_in,
        }


class StaticTokenProvider:
    """Pre-issued bearer token; useful for local runs and tests."""

    def __init__(self, token: str) -> None:
        self._token = token

    def init(self) -> None:
        return None

    def close(self) -> None:
        return None

    def get_token(self, scope: str) -> str:
        return self._token
