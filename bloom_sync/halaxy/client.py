"""Halaxy FHIR API client.

Reads practitioner, patient and appointment resources from Halaxy's FHIR R4
API.  Every call is rate limited, carries a cached bearer token, and is
retried exactly once with a fresh token when Halaxy answers 401.

API base: https://au-api.halaxy.com/fhir

Endpoints used:
    /Practitioner/{id}  - Single practitioner
    /Practitioner       - Active practitioners (``active=true``)
    /Patient/{id}       - Single patient
    /Patient            - Patients by ``general-practitioner``
    /Appointment        - Appointments by ``actor`` + date range

Search endpoints return FHIR ``Bundle`` resources.  The client follows each
bundle's ``next`` link and yields resources lazily, so callers see one
stream regardless of page size.
"""

from __future__ import annotations

import logging
import re
from datetime import date
from typing import Any, AsyncIterator

import httpx

from bloom_sync.halaxy.config_loader import SyncConfig, get_sync_config
from bloom_sync.halaxy.rate_limiter import RateLimiter, SlidingWindowRateLimiter
from bloom_sync.halaxy.token_manager import TokenError, TokenProvider

logger = logging.getLogger("bloom.halaxy.client")

_FHIR_CONTENT_TYPE = "application/fhir+json"
_ID_PREFIX = re.compile(r"^(PR|EP)-")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class HalaxyError(Exception):
    """Base class for Halaxy client failures."""


class HalaxyApiError(HalaxyError):
    """A Halaxy request failed.

    Attributes:
        status_code:   HTTP status, or None for transport failures and timeouts.
        response_body: Raw response text when Halaxy answered.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class HalaxyAuthError(HalaxyApiError):
    """Authentication failed even after refreshing the access token."""


class HalaxyPaginationError(HalaxyError):
    """A search returned more pages than the configured cap."""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class HalaxyClient:
    """Authenticated, paginated, rate-limited reader of Halaxy resources.

    Usage::

        client = HalaxyClient(token_manager, limiter, http_client=http)
        practitioner = await client.fetch_practitioner("PR-1234")
        async for patient in client.fetch_patients_for_practitioner("PR-1234"):
            ...
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        rate_limiter: RateLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        config: SyncConfig | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            token_provider: Supplies bearer tokens and connection settings.
            rate_limiter:   Outbound throttle. Defaults to a per-process window counter.
            http_client:    Optional shared httpx client (injected for tests).
            config:         Sync engine config. Defaults to the bundled YAML.
        """
        self._tokens = token_provider
        self._config = config or get_sync_config()
        halaxy_config = token_provider.get_config()
        self._rate_limiter = rate_limiter or SlidingWindowRateLimiter(
            halaxy_config.max_requests_per_minute,
            window_seconds=self._config.rate_limit.window_seconds,
        )
        self._http_client = http_client

    # ------------------------------------------------------------------
    # Practitioners
    # ------------------------------------------------------------------

    async def fetch_practitioner(self, practitioner_id: str) -> dict | None:
        """Fetch one practitioner, returning None if Halaxy has no such record."""
        return await self._fetch_resource(f"/Practitioner/{practitioner_id}")

    async def fetch_all_practitioners(self) -> list[dict]:
        """Return every active practitioner in the organisation."""
        return [
            resource
            async for resource in self._iter_pages("/Practitioner", {"active": "true"})
        ]

    # ------------------------------------------------------------------
    # Patients
    # ------------------------------------------------------------------

    async def fetch_patient(self, patient_id: str) -> dict | None:
        return await self._fetch_resource(f"/Patient/{patient_id}")

    def fetch_patients_for_practitioner(self, practitioner_id: str) -> AsyncIterator[dict]:
        """Stream active patients whose general practitioner is ``practitioner_id``.

        Halaxy's patient search expects the bare numeric practitioner id, so
        any ``PR-``/``EP-`` prefix is stripped.
        """
        numeric_id = strip_id_prefix(practitioner_id)
        params = {
            "general-practitioner": f"Practitioner/{numeric_id}",
            "active": "true",
        }
        return self._iter_pages("/Patient", params)

    # ------------------------------------------------------------------
    # Appointments
    # ------------------------------------------------------------------

    def fetch_appointments(
        self,
        practitioner_id: str,
        start: date,
        end: date,
        statuses: list[str] | None = None,
    ) -> AsyncIterator[dict]:
        """Stream appointments for a practitioner within ``[start, end)``.

        Args:
            practitioner_id: Halaxy practitioner (role) id.
            start:           First day included.
            end:             First day excluded.
            statuses:        Optional FHIR appointment statuses to filter on.
        """
        params: dict[str, str] = {
            "actor": self._config.actor_reference(practitioner_id),
            "date": f"ge{start.isoformat()}",
            "date:lt": end.isoformat(),
        }
        if statuses:
            params["status"] = ",".join(statuses)
        return self._iter_pages("/Appointment", params)

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _fetch_resource(self, path: str) -> dict | None:
        try:
            return await self._request(path)
        except HalaxyApiError as exc:
            if exc.status_code == 404:
                logger.info("Halaxy resource not found: %s", path)
                return None
            raise

    async def _iter_pages(
        self, path: str, params: dict[str, str] | None = None
    ) -> AsyncIterator[dict]:
        """Yield every usable resource across all pages of a search bundle.

        Raises:
            HalaxyPaginationError: If more than ``pagination.max_pages`` pages exist.
        """
        max_pages = self._config.pagination.max_pages
        url: str | None = path
        page_params = params
        pages = 0

        while url:
            if pages >= max_pages:
                raise HalaxyPaginationError(
                    f"Halaxy search {path} exceeded {max_pages} pages"
                )
            bundle = await self._request(url, page_params)
            pages += 1

            for entry in bundle.get("entry") or []:
                resource = entry.get("resource")
                if _is_usable_resource(resource):
                    yield resource

            url = _next_link(bundle)
            # next links carry their own query string
            page_params = None

        logger.debug("Halaxy search %s finished after %d page(s)", path, pages)

    async def _request(
        self,
        path_or_url: str,
        params: dict[str, str] | None = None,
        *,
        retried: bool = False,
    ) -> dict:
        """Send one authenticated GET and return the decoded JSON body.

        Raises:
            HalaxyAuthError: If Halaxy rejects a freshly issued token.
            HalaxyApiError:  For any other non-2xx response or transport failure.
        """
        await self._rate_limiter.acquire()

        try:
            token = await self._tokens.get_access_token()
        except TokenError as exc:
            raise HalaxyAuthError(str(exc)) from exc

        url = self._url(path_or_url)
        response = await self._send(url, params, token)

        if response.status_code == 401:
            if retried:
                raise HalaxyAuthError(
                    "Halaxy rejected a refreshed access token",
                    status_code=401,
                    response_body=response.text,
                )
            logger.info("Halaxy returned 401, refreshing token and retrying once")
            self._tokens.invalidate_token()
            return await self._request(path_or_url, params, retried=True)

        if not response.is_success:
            raise HalaxyApiError(
                _error_message(response),
                status_code=response.status_code,
                response_body=response.text,
            )

        return response.json()

    async def _send(
        self, url: str, params: dict[str, str] | None, token: str
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": _FHIR_CONTENT_TYPE,
            "Content-Type": _FHIR_CONTENT_TYPE,
        }
        timeout = self._tokens.get_config().timeout_seconds
        try:
            if self._http_client is not None:
                return await self._http_client.get(
                    url, params=params, headers=headers, timeout=timeout
                )
            async with httpx.AsyncClient() as client:
                return await client.get(url, params=params, headers=headers, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise HalaxyApiError(f"Halaxy request timed out: {url}") from exc
        except httpx.HTTPError as exc:
            raise HalaxyApiError(f"Halaxy request failed: {url}: {exc}") from exc

    def _url(self, path_or_url: str) -> str:
        if path_or_url.startswith(("http://", "https://")):
            return path_or_url
        return f"{self._tokens.get_config().base_url}{path_or_url}"


# ---------------------------------------------------------------------------
# Module helpers
# ---------------------------------------------------------------------------


def strip_id_prefix(halaxy_id: str) -> str:
    """Strip Halaxy's ``PR-``/``EP-`` display prefix from an id."""
    return _ID_PREFIX.sub("", halaxy_id)


def _is_usable_resource(resource: Any) -> bool:
    if not isinstance(resource, dict):
        return False
    resource_id = resource.get("id")
    # Halaxy emits OperationOutcome entries with id "warning" inside bundles
    return bool(resource_id) and resource_id != "warning"


def _next_link(bundle: dict) -> str | None:
    for link in bundle.get("link") or []:
        if link.get("relation") == "next" and link.get("url"):
            return link["url"]
    return None


def _error_message(response: httpx.Response) -> str:
    message = f"Halaxy API error {response.status_code} {response.reason_phrase}"
    body = response.text
    if body:
        message += f": {body[:200]}"
    return message
