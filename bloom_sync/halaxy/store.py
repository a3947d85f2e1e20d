"""Persistent store for mirrored Halaxy entities and the sync audit log.

``SyncStore`` is the interface the orchestrator depends on.
``PostgresSyncStore`` implements it on asyncpg.

Every entity write is a single ``INSERT ... ON CONFLICT DO UPDATE`` keyed on
the entity's external id, so two concurrent syncs touching the same record
converge on one row instead of racing a lookup-then-insert.

Unique keys:
    - practitioners: (halaxy_practitioner_id), (email)
    - clients:       (halaxy_patient_id)
    - sessions:      (halaxy_appointment_id)

Locally-owned columns that an update never overwrites:
    - clients.mhcp_used_sessions, clients.mhcp_total_sessions, clients.practitioner_id
    - sessions.session_number, sessions.practitioner_id, sessions.client_id,
      sessions.fee_currency
    - practitioners.halaxy_practitioner_role_id
    - clients.presenting_issues, the MHCP plan dates, practitioners.qualifications
      and practitioners.specialty are only replaced by a non-null value
"""

from __future__ import annotations

import logging
from dataclasses import fields
from datetime import datetime
from enum import Enum
from typing import Any, Protocol
from uuid import UUID

import asyncpg

from bloom_sync.halaxy.base import (
    ActivePractitioner,
    Client,
    Practitioner,
    Session,
    SessionStatus,
    SyncEntityType,
    SyncLogEntry,
    SyncStatus,
    SyncType,
    UpsertOutcome,
)
from bloom_sync.services.database import get_connection

logger = logging.getLogger("bloom.halaxy.store")


class SyncStore(Protocol):
    async def get_practitioner_by_external_id(self, external_id: str) -> Practitioner | None: ...

    async def get_client_by_external_id(self, external_id: str) -> Client | None: ...

    async def get_session_by_external_id(self, external_id: str) -> Session | None: ...

    async def upsert_practitioner(self, practitioner: Practitioner) -> UpsertOutcome: ...

    async def upsert_client(self, client: Client) -> UpsertOutcome: ...

    async def upsert_session(self, session: Session) -> UpsertOutcome: ...

    async def completed_session_counts(self, practitioner_id: UUID) -> dict[UUID, int]: ...

    async def count_completed_sessions(self, client_id: UUID) -> int: ...

    async def recompute_mhcp_used_sessions(self, practitioner_id: UUID) -> int: ...

    async def cancel_session(self, external_id: str) -> bool: ...

    async def deactivate_client(self, external_id: str) -> bool: ...

    async def list_active_practitioners(self) -> list[ActivePractitioner]: ...

    async def create_sync_log(self, entry: SyncLogEntry) -> UUID: ...

    async def complete_sync_log(
        self,
        log_id: UUID,
        status: SyncStatus,
        records_processed: int,
        error_message: str | None,
        completed_at: datetime,
        practitioner_id: UUID | None = None,
    ) -> None: ...

    async def recent_sync_logs(
        self, practitioner_id: UUID | None, limit: int
    ) -> list[SyncLogEntry]: ...


# ---------------------------------------------------------------------------
# SQL generation
# ---------------------------------------------------------------------------


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    coalesce_columns: list[str] | None = None,
    returning: list[str] | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    The statement reports whether it inserted or updated through the
    ``inserted`` column (``xmax = 0`` only holds for a freshly inserted row).

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to overwrite on conflict (defaults to non-key columns).
        coalesce_columns: Subset of update_columns that only take a non-null new value.
        returning:        Extra columns to return after ``id``.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]
    keep_existing = set(coalesce_columns or [])

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    assignments = [
        f"{col} = COALESCE(EXCLUDED.{col}, {table}.{col})"
        if col in keep_existing
        else f"{col} = EXCLUDED.{col}"
        for col in update_columns
    ]
    assignments.append("updated_at = NOW()")
    returned = ", ".join(["id", "(xmax = 0) AS inserted", *(returning or [])])

    return (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) DO UPDATE SET {', '.join(assignments)} "
        f"RETURNING {returned}"
    )


def _columns(model: type) -> list[str]:
    return [f.name for f in fields(model) if f.name != "id"]


def _values(entity: Any, columns: list[str]) -> list[Any]:
    values = []
    for column in columns:
        value = getattr(entity, column)
        values.append(value.value if isinstance(value, Enum) else value)
    return values


_PRACTITIONER_COLUMNS = _columns(Practitioner)
_CLIENT_COLUMNS = _columns(Client)
_SESSION_COLUMNS = _columns(Session)

_UPSERT_PRACTITIONER = build_upsert_query(
    "practitioners",
    _PRACTITIONER_COLUMNS,
    ["halaxy_practitioner_id"],
    update_columns=[
        c for c in _PRACTITIONER_COLUMNS
        if c not in ("halaxy_practitioner_id", "halaxy_practitioner_role_id")
    ],
    coalesce_columns=["qualifications", "specialty"],
)

_UPSERT_CLIENT = build_upsert_query(
    "clients",
    _CLIENT_COLUMNS,
    ["halaxy_patient_id"],
    update_columns=[
        c for c in _CLIENT_COLUMNS
        if c not in (
            "halaxy_patient_id",
            "practitioner_id",
            "mhcp_total_sessions",
            "mhcp_used_sessions",
        )
    ],
    coalesce_columns=["presenting_issues", "mhcp_plan_start_date", "mhcp_plan_expiry_date"],
)

_UPSERT_SESSION = build_upsert_query(
    "sessions",
    _SESSION_COLUMNS,
    ["halaxy_appointment_id"],
    update_columns=[
        c for c in _SESSION_COLUMNS
        if c not in (
            "halaxy_appointment_id",
            "practitioner_id",
            "client_id",
            "session_number",
            "fee_currency",
        )
    ],
    returning=["session_number"],
)


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------


class PostgresSyncStore:
    """asyncpg-backed SyncStore."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_practitioner_by_external_id(self, external_id: str) -> Practitioner | None:
        row = await self._fetchrow(
            "SELECT * FROM practitioners WHERE halaxy_practitioner_id = $1", external_id
        )
        return _to_practitioner(row) if row else None

    async def get_client_by_external_id(self, external_id: str) -> Client | None:
        row = await self._fetchrow(
            "SELECT * FROM clients WHERE halaxy_patient_id = $1", external_id
        )
        return _to_client(row) if row else None

    async def get_session_by_external_id(self, external_id: str) -> Session | None:
        row = await self._fetchrow(
            "SELECT * FROM sessions WHERE halaxy_appointment_id = $1", external_id
        )
        return _to_session(row) if row else None

    # ------------------------------------------------------------------
    # Upserts
    # ------------------------------------------------------------------

    async def upsert_practitioner(self, practitioner: Practitioner) -> UpsertOutcome:
        row = await self._fetchrow(
            _UPSERT_PRACTITIONER, *_values(practitioner, _PRACTITIONER_COLUMNS)
        )
        return UpsertOutcome(id=row["id"], created=row["inserted"])

    async def upsert_client(self, client: Client) -> UpsertOutcome:
        row = await self._fetchrow(_UPSERT_CLIENT, *_values(client, _CLIENT_COLUMNS))
        return UpsertOutcome(id=row["id"], created=row["inserted"])

    async def upsert_session(self, session: Session) -> UpsertOutcome:
        row = await self._fetchrow(_UPSERT_SESSION, *_values(session, _SESSION_COLUMNS))
        return UpsertOutcome(
            id=row["id"], created=row["inserted"], session_number=row["session_number"]
        )

    # ------------------------------------------------------------------
    # Derived counts
    # ------------------------------------------------------------------

    async def completed_session_counts(self, practitioner_id: UUID) -> dict[UUID, int]:
        """Return completed-session totals per client of a practitioner."""
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                """
                SELECT s.client_id, COUNT(*) AS completed
                FROM sessions s
                JOIN clients c ON c.id = s.client_id
                WHERE c.practitioner_id = $1 AND s.status = 'completed'
                GROUP BY s.client_id
                """,
                practitioner_id,
            )
        return {row["client_id"]: row["completed"] for row in rows}

    async def count_completed_sessions(self, client_id: UUID) -> int:
        async with get_connection(self._pool) as conn:
            count = await conn.fetchval(
                "SELECT COUNT(*) FROM sessions WHERE client_id = $1 AND status = 'completed'",
                client_id,
            )
        return int(count or 0)

    async def recompute_mhcp_used_sessions(self, practitioner_id: UUID) -> int:
        """Set each client's used MHCP sessions to its completed-session count.

        Returns:
            Number of client rows updated.
        """
        async with get_connection(self._pool) as conn:
            status = await conn.execute(
                """
                UPDATE clients c
                SET mhcp_used_sessions = (
                        SELECT COUNT(*) FROM sessions s
                        WHERE s.client_id = c.id AND s.status = 'completed'
                    ),
                    updated_at = NOW()
                WHERE c.practitioner_id = $1
                """,
                practitioner_id,
            )
        return _affected_rows(status)

    # ------------------------------------------------------------------
    # Soft deletes
    # ------------------------------------------------------------------

    async def cancel_session(self, external_id: str) -> bool:
        async with get_connection(self._pool) as conn:
            status = await conn.execute(
                """
                UPDATE sessions
                SET status = $2, last_synced_at = NOW(), updated_at = NOW()
                WHERE halaxy_appointment_id = $1
                """,
                external_id,
                SessionStatus.CANCELLED.value,
            )
        return _affected_rows(status) > 0

    async def deactivate_client(self, external_id: str) -> bool:
        async with get_connection(self._pool) as conn:
            status = await conn.execute(
                """
                UPDATE clients
                SET is_active = FALSE, last_synced_at = NOW(), updated_at = NOW()
                WHERE halaxy_patient_id = $1
                """,
                external_id,
            )
        return _affected_rows(status) > 0

    async def list_active_practitioners(self) -> list[ActivePractitioner]:
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                """
                SELECT id, halaxy_practitioner_id
                FROM practitioners
                WHERE is_active AND halaxy_practitioner_id IS NOT NULL
                ORDER BY halaxy_practitioner_id
                """
            )
        return [
            ActivePractitioner(local_id=row["id"], external_id=row["halaxy_practitioner_id"])
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    async def create_sync_log(self, entry: SyncLogEntry) -> UUID:
        async with get_connection(self._pool) as conn:
            return await conn.fetchval(
                """
                INSERT INTO sync_log (
                    sync_type, entity_type, operation, status,
                    started_at, records_processed, practitioner_id
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING id
                """,
                entry.sync_type.value,
                entry.entity_type.value,
                entry.operation,
                entry.status.value,
                entry.started_at,
                entry.records_processed,
                entry.practitioner_id,
            )

    async def complete_sync_log(
        self,
        log_id: UUID,
        status: SyncStatus,
        records_processed: int,
        error_message: str | None,
        completed_at: datetime,
        practitioner_id: UUID | None = None,
    ) -> None:
        async with get_connection(self._pool) as conn:
            await conn.execute(
                """
                UPDATE sync_log
                SET status = $2, records_processed = $3,
                    error_message = $4, completed_at = $5,
                    practitioner_id = COALESCE($6, practitioner_id)
                WHERE id = $1
                """,
                log_id,
                status.value,
                records_processed,
                error_message,
                completed_at,
                practitioner_id,
            )

    async def recent_sync_logs(
        self, practitioner_id: UUID | None, limit: int
    ) -> list[SyncLogEntry]:
        """Return the newest log entries for a practitioner or for all practitioners."""
        async with get_connection(self._pool) as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM sync_log
                WHERE practitioner_id = $1 OR practitioner_id IS NULL
                ORDER BY started_at DESC
                LIMIT $2
                """,
                practitioner_id,
                limit,
            )
        return [_to_sync_log(row) for row in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _fetchrow(self, query: str, *args: Any) -> asyncpg.Record | None:
        async with get_connection(self._pool) as conn:
            return await conn.fetchrow(query, *args)


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _pick(row: asyncpg.Record, model: type) -> dict[str, Any]:
    return {f.name: row[f.name] for f in fields(model) if f.name in row.keys()}


def _to_practitioner(row: asyncpg.Record) -> Practitioner:
    return Practitioner(**_pick(row, Practitioner))


def _to_client(row: asyncpg.Record) -> Client:
    return Client(**_pick(row, Client))


def _to_session(row: asyncpg.Record) -> Session:
    data = _pick(row, Session)
    data["status"] = SessionStatus(data["status"])
    if data.get("fee_amount") is not None:
        data["fee_amount"] = float(data["fee_amount"])
    return Session(**data)


def _to_sync_log(row: asyncpg.Record) -> SyncLogEntry:
    data = _pick(row, SyncLogEntry)
    data["sync_type"] = SyncType(data["sync_type"])
    data["entity_type"] = SyncEntityType(data["entity_type"])
    data["status"] = SyncStatus(data["status"])
    return SyncLogEntry(**data)


def _affected_rows(status: str) -> int:
    """Parse the row count from an asyncpg command tag like ``UPDATE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0
