"""
OAuth Token Store

Persists one token row per provider in the `oauth_tokens` collection and
refreshes access tokens proactively, 30 seconds before they expire.
Client credentials come from the `settings` record, falling back to the
SPOTIFY_CLIENT_ID/SECRET and GOOGLE_CLIENT_ID/SECRET environment variables.
"""

import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Callable

import requests
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from spotube.core.errors import (
    AuthError, ProviderTimeout, TransientProviderError, Unauthorized, UnknownProviderError,
)
from spotube.core.models import OAUTH_TOKENS, SETTINGS, OAuthToken, to_iso, utcnow
from spotube.core.store import RecordStore

logger = logging.getLogger(__name__)

EXPIRY_BUFFER_SECONDS = 30

TOKEN_URLS = {
    "spotify": "https://accounts.spotify.com/api/token",
    "google": "https://oauth2.googleapis.com/token",
}

PROVIDER_FOR_SERVICE = {"spotify": "spotify", "youtube": "google"}


class TokenStore:
    def __init__(self, store: RecordStore, session: requests.Session | None = None,
                 env: dict | None = None, clock: Callable[[], datetime] = utcnow,
                 timeout: float = 10):
        self._store = store
        self._session = session or requests.Session()
        self._env = os.environ if env is None else env
        self._clock = clock
        self._timeout = timeout
        self._locks = {provider: threading.Lock() for provider in TOKEN_URLS}

    def get(self, provider: str) -> OAuthToken | None:
        record = self._store.find_first(OAUTH_TOKENS, {"provider": provider})
        return OAuthToken.from_record(record) if record else None

    def save(self, provider: str, access_token: str, refresh_token: str = "",
             expiry: datetime | None = None, scopes: list[str] | None = None) -> OAuthToken:
        """Insert or update the provider's row. An empty refresh token keeps the stored one."""
        with self._store.transaction():
            existing = self._store.find_first(OAUTH_TOKENS, {"provider": provider})
            changes = {"access_token": access_token, "expiry": to_iso(expiry)}
            if refresh_token:
                changes["refresh_token"] = refresh_token
            if scopes:
                changes["scopes"] = " ".join(scopes)
            if existing:
                record = self._store.update(OAUTH_TOKENS, existing["id"], changes)
            else:
                record = self._store.insert(OAUTH_TOKENS, {
                    "provider": provider, "refresh_token": "", "scopes": "", **changes,
                })
        return OAuthToken.from_record(record)

    def seed(self, provider: str, refresh_token: str) -> bool:
        """Store a refresh token for a provider that has none yet. Returns True if stored."""
        if not refresh_token:
            return False
        token = self.get(provider)
        if token and token.refresh_token:
            return False
        self.save(provider, "", refresh_token)
        logger.info(f"Seeded {provider} refresh token from environment")
        return True

    def credentials(self, provider: str) -> tuple[str, str]:
        settings = self._store.get(SETTINGS, SETTINGS) or {}
        client_id = settings.get(f"{provider}_client_id", "")
        client_secret = settings.get(f"{provider}_client_secret", "")
        if client_id and client_secret:
            return client_id, client_secret

        prefix = provider.upper()
        client_id = self._env.get(f"{prefix}_CLIENT_ID", "")
        client_secret = self._env.get(f"{prefix}_CLIENT_SECRET", "")
        if not client_id or not client_secret:
            raise AuthError(f"{provider} client credentials not configured in settings or environment",
                            service=provider)
        return client_id, client_secret

    def access_token(self, provider: str, force_refresh: bool = False) -> str:
        """Return a usable access token, refreshing it if it expires within the buffer."""
        with self._locks[provider]:
            token = self.get(provider)
            if token is None:
                raise Unauthorized(f"No {provider} token found", service=provider)
            if force_refresh or token.expires_within(EXPIRY_BUFFER_SECONDS, self._clock()):
                logger.info(f"Token for provider '{provider}' is expired or expiring soon, refreshing")
                token = self._refresh(token)
            return token.access_token

    def _refresh(self, token: OAuthToken) -> OAuthToken:
        provider = token.provider
        if not token.refresh_token:
            raise Unauthorized(f"No {provider} refresh token stored", service=provider)
        client_id, client_secret = self.credentials(provider)
        if provider == "google":
            return self._refresh_google(token, client_id, client_secret)

        try:
            response = self._session.post(
                TOKEN_URLS[provider],
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": token.refresh_token,
                    "client_id": client_id,
                    "client_secret": client_secret,
                },
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            raise ProviderTimeout(f"Token refresh for {provider} timed out: {e}", service=provider)
        except requests.RequestException as e:
            raise TransientProviderError(f"Token refresh for {provider} failed: {e}", service=provider)

        if response.status_code in (400, 401):
            logger.error(f"Failed to refresh token for provider '{provider}': {response.text[:200]}")
            raise Unauthorized(f"{provider} refresh token rejected ({response.status_code})",
                               service=provider, status=response.status_code)
        if response.status_code != 200:
            raise UnknownProviderError(f"Token refresh for {provider} returned {response.status_code}",
                                       service=provider, status=response.status_code)

        data = response.json()
        expiry = self._clock() + timedelta(seconds=int(data.get("expires_in", 3600)))
        scopes = data.get("scope", "").split() or None
        refreshed = self.save(provider, data["access_token"], data.get("refresh_token", ""), expiry, scopes)
        logger.info(f"Refreshed token for provider '{provider}', new expiry {to_iso(expiry)}")
        return refreshed

    def _refresh_google(self, token: OAuthToken, client_id: str, client_secret: str) -> OAuthToken:
        credentials = Credentials(
            token=None,
            refresh_token=token.refresh_token,
            token_uri=TOKEN_URLS["google"],
            client_id=client_id,
            client_secret=client_secret,
        )
        try:
            credentials.refresh(Request(session=self._session))
        except RefreshError as e:
            if getattr(e, "retryable", False):
                raise TransientProviderError(f"Token refresh for google failed: {e}", service="google")
            logger.error(f"Failed to refresh token for provider 'google': {e}")
            raise Unauthorized(f"google refresh token rejected: {e}", service="google")
        except TransportError as e:
            raise TransientProviderError(f"Token refresh for google failed: {e}", service="google")

        # google-auth reports a naive UTC expiry
        expiry = credentials.expiry
        if expiry is not None and expiry.tzinfo is None:
            expiry = expiry.replace(tzinfo=timezone.utc)
        if expiry is None:
            expiry = self._clock() + timedelta(hours=1)
        refresh_token = credentials.refresh_token if credentials.refresh_token != token.refresh_token else ""
        refreshed = self.save("google", credentials.token, refresh_token, expiry,
                              list(getattr(credentials, "granted_scopes", None) or []) or None)
        logger.info(f"Refreshed token for provider 'google', new expiry {to_iso(expiry)}")
        return refreshed
