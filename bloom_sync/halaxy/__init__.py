"""Bloom Halaxy sync engine.

Mirrors practitioners, patients and appointments from Halaxy's FHIR API
into the Bloom operational store so nothing downstream calls Halaxy
directly.

Subpackages:
    sync/  - Orchestrator (full + webhook sync), audit log, scheduled reconciler

Core modules:
    base            - Canonical entity dataclasses and enums
    client          - Paginated, rate-limited, auth-retrying FHIR client
    token_manager   - OAuth2 client-credentials token cache
    rate_limiter    - Outbound request throttle
    transformers    - Pure FHIR → entity mapping
    events          - Webhook event names
    store           - SyncStore protocol and asyncpg implementation
    webhook         - Signed webhook receiver
    config_loader   - Load/validate/hot-reload sync_config.yaml
"""

from bloom_sync.halaxy.base import (
    Client,
    Practitioner,
    Session,
    SessionStatus,
    SyncError,
    SyncResult,
)
from bloom_sync.halaxy.client import HalaxyApiError, HalaxyClient
from bloom_sync.halaxy.config_loader import SyncConfig, get_sync_config

__all__ = [
    "Practitioner",
    "Client",
    "Session",
    "SessionStatus",
    "SyncError",
    "SyncResult",
    "HalaxyClient",
    "HalaxyApiError",
    "SyncConfig",
    "get_sync_config",
]
