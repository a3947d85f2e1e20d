"""Sync audit log: open/finalize ``sync_log`` rows and derive sync health.

A failure to write the audit log never fails the sync it describes.  If
the opening insert fails the run continues without a log id and the final
update is skipped.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Sequence
from uuid import UUID

from bloom_sync.halaxy.base import (
    SyncEntityType,
    SyncError,
    SyncHealth,
    SyncLogEntry,
    SyncStatus,
    SyncStatusReport,
    SyncType,
    utc_now,
)
from bloom_sync.halaxy.config_loader import HealthConfig
from bloom_sync.halaxy.store import SyncStore

logger = logging.getLogger("bloom.halaxy.sync.audit")

# Number of individual error messages copied into sync_log.error_message
MAX_LOGGED_ERRORS = 3


class SyncAuditLog:
    def __init__(
        self,
        store: SyncStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._clock = clock

    async def open(
        self,
        sync_type: SyncType,
        entity_type: SyncEntityType,
        practitioner_id: UUID | None = None,
    ) -> UUID | None:
        """Insert an ``in_progress`` log row and return its id (None on failure)."""
        entry = SyncLogEntry(
            sync_type=sync_type,
            entity_type=entity_type,
            status=SyncStatus.IN_PROGRESS,
            started_at=self._clock(),
            practitioner_id=practitioner_id,
        )
        try:
            return await self._store.create_sync_log(entry)
        except Exception as exc:
            logger.warning("Could not create sync log entry: %s", exc)
            return None

    async def finalize(
        self,
        log_id: UUID | None,
        records_processed: int,
        errors: Sequence[SyncError],
        practitioner_id: UUID | None = None,
    ) -> None:
        """Mark the log row success (no errors) or error, with an error summary.

        ``practitioner_id`` attaches the row to a practitioner resolved during
        the run; it leaves an existing value untouched when None.
        """
        if log_id is None:
            return
        status = SyncStatus.ERROR if errors else SyncStatus.SUCCESS
        try:
            await self._store.complete_sync_log(
                log_id,
                status,
                records_processed,
                summarize_errors(errors),
                self._clock(),
                practitioner_id=practitioner_id,
            )
        except Exception as exc:
            logger.warning("Could not finalize sync log %s: %s", log_id, exc)

    async def status(
        self, practitioner_id: UUID | None, config: HealthConfig
    ) -> SyncStatusReport:
        entries = await self._store.recent_sync_logs(practitioner_id, config.recent_log_limit)
        return derive_sync_status(
            entries,
            now=self._clock(),
            stale_after=timedelta(hours=config.stale_after_hours),
        )


def summarize_errors(errors: Sequence[SyncError]) -> str | None:
    if not errors:
        return None
    summary = "; ".join(e.message for e in errors[:MAX_LOGGED_ERRORS])
    if len(errors) > MAX_LOGGED_ERRORS:
        summary += f" (+{len(errors) - MAX_LOGGED_ERRORS} more)"
    return summary


def derive_sync_status(
    entries: Sequence[SyncLogEntry],
    now: datetime,
    stale_after: timedelta,
) -> SyncStatusReport:
    """Derive sync health from recent log entries.

    Rules:
        - ``error``:   the newest failed run finished after the newest successful
                       full sync (or there has been no successful full sync)
        - ``stale``:   no successful full sync, or it finished more than
                       ``stale_after`` ago
        - ``healthy``: otherwise

    Args:
        entries:     Log entries in any order; unfinished entries are ignored.
        now:         Current UTC time.
        stale_after: Maximum age of the last full sync before it counts as stale.

    Returns:
        SyncStatusReport with the latest full/incremental completion times.
    """
    finished = sorted(
        (e for e in entries if e.completed_at is not None),
        key=lambda e: e.completed_at,  # type: ignore[arg-type, return-value]
        reverse=True,
    )
    last_full = next(
        (e for e in finished if e.sync_type == SyncType.FULL and e.status == SyncStatus.SUCCESS),
        None,
    )
    last_incremental = next(
        (
            e for e in finished
            if e.sync_type == SyncType.WEBHOOK and e.status == SyncStatus.SUCCESS
        ),
        None,
    )
    last_error = next((e for e in finished if e.status == SyncStatus.ERROR), None)

    if last_error and (last_full is None or last_error.completed_at > last_full.completed_at):  # type: ignore[operator]
        health = SyncHealth.ERROR
    elif last_full is None or now - last_full.completed_at > stale_after:  # type: ignore[operator]
        health = SyncHealth.STALE
    else:
        health = SyncHealth.HEALTHY

    return SyncStatusReport(
        status=health,
        last_full_sync=last_full.completed_at if last_full else None,
        last_incremental_sync=last_incremental.completed_at if last_incremental else None,
        error_message=(
            last_error.error_message if health == SyncHealth.ERROR and last_error else None
        ),
    )
