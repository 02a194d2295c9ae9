"""OAuth2 bearer token handling.

This module provides:
- AccessTokenProvider: the capability every authenticated component needs
- AuthError: no valid token can be obtained
- TokenManager: stores tokens in the state store and refreshes them
- BearerAuth: httpx auth hook asking the provider for a token per request

A single TokenManager instance is created by the caller and injected into
the clients that need it; there is no module-level token cache.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Generator, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import httpx

from vaultsync.client.state import load_json, save_json
from vaultsync.client.sync.types import Clock, now_ms
from vaultsync.core.config import DEFAULT_TOKEN_URI

if TYPE_CHECKING:
    from vaultsync.client.state import StateStore

logger = logging.getLogger(__name__)

TOKEN_STORAGE_KEY = "oauth_tokens"

# Refresh this long before the access token actually expires
REFRESH_BUFFER_MS = 5 * 60 * 1000
DEFAULT_EXPIRES_IN = 3600  # seconds, when the token response omits it


class AuthError(Exception):
    """No valid access token could be obtained."""


class AccessTokenProvider(Protocol):
    def get_valid_access_token(self) -> str: ...


@dataclass
class TokenData:
    """Stored OAuth token set."""

    access_token: str
    refresh_token: str | None
    expires_at: int  # epoch ms
    token_type: str = "Bearer"
    scope: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at,
            "token_type": self.token_type,
            "scope": self.scope,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> TokenData:
        """Create from a stored dictionary."""
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=int(data["expires_at"]),
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
        )


class TokenManager:
    """Supplies valid access tokens, refreshing them when close to expiry."""

    def __init__(
        self,
        store: StateStore,
        client_id: str = "",
        client_secret: str = "",
        token_uri: str = DEFAULT_TOKEN_URI,
        transport: httpx.BaseTransport | None = None,
        clock: Clock = now_ms,
    ) -> None:
        """Initialize the token manager.

        Args:
            store: State store holding the token set.
            client_id: OAuth2 client id used for refreshes.
            client_secret: OAuth2 client secret used for refreshes.
            token_uri: OAuth2 token endpoint.
            transport: Optional httpx transport (tests).
            clock: Epoch-ms clock.
        """
        self._store = store
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_uri = token_uri
        self._transport = transport
        self._clock = clock
        self._lock = threading.Lock()
        self._tokens: TokenData | None = self._load()

    def _load(self) -> TokenData | None:
        data = load_json(self._store, TOKEN_STORAGE_KEY)
        if data is None:
            return None
        try:
            return TokenData.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"Ignoring malformed stored tokens: {e}")
            return None

    def _save(self, tokens: TokenData) -> None:
        self._tokens = tokens
        save_json(self._store, TOKEN_STORAGE_KEY, tokens.to_dict())

    @property
    def has_tokens(self) -> bool:
        return self._tokens is not None

    def import_tokens(self, response: Mapping[str, Any]) -> None:
        """Store a token endpoint response (access_token, refresh_token, expires_in).

        Raises:
            ValueError: If the response has no access token.
        """
        if not response.get("access_token"):
            raise ValueError("Invalid token data: missing access_token")
        expires_in = int(response.get("expires_in") or DEFAULT_EXPIRES_IN)
        with self._lock:
            self._save(
                TokenData(
                    access_token=response["access_token"],
                    refresh_token=response.get("refresh_token"),
                    expires_at=self._clock() + expires_in * 1000,
                    token_type=response.get("token_type", "Bearer"),
                    scope=response.get("scope", ""),
                )
            )
        logger.info("Imported OAuth tokens")

    def clear_tokens(self) -> None:
        with self._lock:
            self._tokens = None
            self._store.delete(TOKEN_STORAGE_KEY)

    def get_valid_access_token(self) -> str:
        """Return an access token valid for at least the refresh buffer.

        Raises:
            AuthError: "no token" when nothing is stored, "refresh failed"
                when the refresh request is rejected or cannot be sent.
        """
        with self._lock:
            if self._tokens is None:
                raise AuthError("no token")
            if self._tokens.expires_at - REFRESH_BUFFER_MS > self._clock():
                return self._tokens.access_token
            return self._refresh(self._tokens)

    def _refresh(self, tokens: TokenData) -> str:
        if not tokens.refresh_token:
            logger.error("Access token expired and no refresh token is stored")
            self._tokens = None
            self._store.delete(TOKEN_STORAGE_KEY)
            raise AuthError("refresh failed")

        logger.info("Refreshing access token")
        try:
            with httpx.Client(transport=self._transport, timeout=30.0) as client:
                response = client.post(
                    self._token_uri,
                    data={
                        "grant_type": "refresh_token",
                        "refresh_token": tokens.refresh_token,
                        "client_id": self._client_id,
                        "client_secret": self._client_secret,
                    },
                )
            response.raise_for_status()
            payload = response.json()
            access_token = payload["access_token"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Token refresh failed: {e}")
            self._tokens = None
            self._store.delete(TOKEN_STORAGE_KEY)
            raise AuthError("refresh failed") from e

        expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        self._save(
            TokenData(
                access_token=access_token,
                # Refresh responses usually omit the refresh token
                refresh_token=payload.get("refresh_token") or tokens.refresh_token,
                expires_at=self._clock() + expires_in * 1000,
                token_type=payload.get("token_type", tokens.token_type),
                scope=payload.get("scope", tokens.scope),
            )
        )
        return access_token


class StaticTokenProvider:
    """Provider for a fixed, externally managed access token."""

    def __init__(self, token: str) -> None:
        self._token = token

    def get_valid_access_token(self) -> str:
        if not self._token:
            raise AuthError("no token")
        return self._token


class BearerAuth(httpx.Auth):
    """Adds a fresh bearer token to every request."""

    def __init__(self, provider: AccessTokenProvider) -> None:
        self._provider = provider

    def auth_flow(self, request: httpx.Request) -> Generator[httpx.Request, httpx.Response, None]:
        request.headers["Authorization"] = f"Bearer {self._provider.get_valid_access_token()}"
        yield request
