"""OAuth2 client-credentials token handling for the Halaxy API.

Halaxy issues short-lived bearer tokens from ``/oauth2/token`` using HTTP
Basic auth with the API client id and secret.  Tokens are cached in memory
and treated as expired ``expiry_buffer_seconds`` before Halaxy would reject
them.

Environment variables (see ``bloom_sync.config.Settings``):
    HALAXY_CLIENT_ID      - API client id
    HALAXY_CLIENT_SECRET  - API client secret
    HALAXY_FHIR_URL       - FHIR base URL (default https://au-api.halaxy.com/fhir)
    HALAXY_TOKEN_URL      - token endpoint
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx

from bloom_sync.config import Settings

logger = logging.getLogger("bloom.halaxy.token")


@dataclass(frozen=True)
class HalaxyConfig:
    """Connection settings the API client needs on every call."""

    base_url: str
    token_url: str
    timeout_ms: int = 30_000
    max_requests_per_minute: int = 60

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000


class TokenError(Exception):
    """Raised when an access token cannot be obtained."""


class TokenProvider(Protocol):
    async def get_access_token(self) -> str: ...

    def invalidate_token(self) -> None: ...

    def get_config(self) -> HalaxyConfig: ...


class HalaxyTokenManager:
    """Fetch and cache Halaxy access tokens.

    Concurrent callers share a single in-flight token request.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        config: HalaxyConfig,
        expiry_buffer_seconds: int = 60,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._config = config
        self._buffer = timedelta(seconds=expiry_buffer_seconds)
        self._http_client = http_client
        self._access_token: str | None = None
        self._expires_at: datetime | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        expiry_buffer_seconds: int = 60,
        http_client: httpx.AsyncClient | None = None,
    ) -> HalaxyTokenManager:
        config = HalaxyConfig(
            base_url=settings.halaxy_fhir_url.rstrip("/"),
            token_url=settings.halaxy_token_url,
            timeout_ms=settings.halaxy_request_timeout_ms,
            max_requests_per_minute=settings.halaxy_max_requests_per_minute,
        )
        return cls(
            settings.halaxy_client_id,
            settings.halaxy_client_secret,
            config,
            expiry_buffer_seconds=expiry_buffer_seconds,
            http_client=http_client,
        )

    # ------------------------------------------------------------------
    # TokenProvider interface
    # ------------------------------------------------------------------

    def get_config(self) -> HalaxyConfig:
        return self._config

    def has_credentials(self) -> bool:
        return bool(self._client_id and self._client_secret)

    def invalidate_token(self) -> None:
        """Drop the cached token so the next call fetches a fresh one."""
        self._access_token = None
        self._expires_at = None
        logger.info("Halaxy access token invalidated")

    async def get_access_token(self) -> str:
        """Return a valid bearer token, requesting a new one when needed.

        Raises:
            TokenError: If credentials are missing or the token request fails.
        """
        if self._is_valid():
            return self._access_token  # type: ignore[return-value]

        async with self._lock:
            if self._is_valid():
                return self._access_token  # type: ignore[return-value]
            await self._refresh()
            return self._access_token  # type: ignore[return-value]

    def token_status(self) -> dict:
        """Summarize the cache state for diagnostics (never includes the token)."""
        valid = self._is_valid()
        expires_in = None
        if self._expires_at is not None:
            expires_in = int((self._expires_at - datetime.now(timezone.utc)).total_seconds())
        return {
            "has_credentials": self.has_credentials(),
            "has_token": self._access_token is not None,
            "is_valid": valid,
            "expires_in_seconds": expires_in,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_valid(self) -> bool:
        if self._access_token is None or self._expires_at is None:
            return False
        return datetime.now(timezone.utc) < self._expires_at - self._buffer

    async def _refresh(self) -> None:
        if not self.has_credentials():
            raise TokenError(
                "Halaxy credentials not configured "
                "(set HALAXY_CLIENT_ID and HALAXY_CLIENT_SECRET)"
            )

        logger.info("Requesting new Halaxy access token")
        try:
            if self._http_client is not None:
                response = await self._post_token(self._http_client)
            else:
                async with httpx.AsyncClient() as client:
                    response = await self._post_token(client)
        except httpx.HTTPError as exc:
            raise TokenError(f"Halaxy token request failed: {exc}") from exc

        if response.status_code != 200:
            raise TokenError(
                f"Halaxy token request returned {response.status_code}: "
                f"{response.text[:200]}"
            )

        data = response.json()
        access_token = data.get("access_token")
        if not access_token:
            raise TokenError("Halaxy token response did not include access_token")

        expires_in = int(data.get("expires_in", 3600))
        self._access_token = access_token
        self._expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
        logger.info("Halaxy access token acquired (expires in %ds)", expires_in)

    async def _post_token(self, client: httpx.AsyncClient) -> httpx.Response:
        return await client.post(
            self._config.token_url,
            data={"grant_type": "client_credentials"},
            auth=(self._client_id, self._client_secret),
            headers={"Accept": "application/json"},
            timeout=self._config.timeout_seconds,
        )
