"""Pydantic response models for the sync and webhook endpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from bloom_sync.halaxy.base import SyncHealth
from bloom_sync.models.base import CamelBase


class SyncErrorRead(CamelBase):
    entity_type: str
    entity_id: str
    operation: str
    message: str
    timestamp: datetime


class SyncResultRead(CamelBase):
    success: bool
    sync_log_id: uuid.UUID | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    errors: list[SyncErrorRead] = []
    duration_ms: int = 0


class PractitionerSyncRead(CamelBase):
    practitioner_id: str
    success: bool
    result: SyncResultRead | None = None
    error: str | None = None


class SyncRunRead(CamelBase):
    practitioners: int
    succeeded: int
    failed: int
    results: list[PractitionerSyncRead]


class SyncStatusRead(CamelBase):
    status: SyncHealth
    last_full_sync: datetime | None = None
    last_incremental_sync: datetime | None = None
    error_message: str | None = None
