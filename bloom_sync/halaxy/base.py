"""Canonical data models for the Halaxy sync engine.

Every entity the engine writes to the local store is represented here as a
plain dataclass.  The field names match the column names of the
``practitioners``, ``clients``, ``sessions`` and ``sync_log`` tables so the
store can bind them positionally without a mapping layer.

Remote resources never leave the ``transformers`` module in FHIR shape; the
orchestrator, store and routers only see the types below.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from uuid import UUID

logger = logging.getLogger("bloom.halaxy.base")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class SessionStatus(str, Enum):
    SCHEDULED = "scheduled"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"


class SyncType(str, Enum):
    FULL = "full"
    WEBHOOK = "webhook"


class SyncEntityType(str, Enum):
    PRACTITIONER = "practitioner"
    CLIENT = "client"
    SESSION = "session"
    ALL = "all"


class SyncStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    ERROR = "error"


class SyncHealth(str, Enum):
    HEALTHY = "healthy"
    STALE = "stale"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Mirrored entities
# ---------------------------------------------------------------------------


@dataclass
class Practitioner:
    """A clinician mirrored from Halaxy.

    Attributes:
        halaxy_practitioner_id: Immutable external join key (unique).
        first_name:             Given name.
        last_name:              Family name.
        display_name:           Full formatted name including prefix/suffix.
        email:                  Contact email, or a deterministic placeholder.
        phone:                  Contact phone number.
        qualifications:         Free-text qualification summary.
        specialty:              Psychology-related qualification, if any.
        halaxy_practitioner_role_id: PractitionerRole id used for appointment queries.
        is_active:              False only when Halaxy explicitly marks inactive.
        last_synced_at:         UTC timestamp of the sync that produced this row.
        id:                     Local primary key, None until first persisted.
    """

    halaxy_practitioner_id: str
    first_name: str
    last_name: str
    display_name: str
    email: str
    phone: str | None = None
    qualifications: str | None = None
    specialty: str | None = None
    halaxy_practitioner_role_id: str | None = None
    is_active: bool = True
    last_synced_at: datetime = field(default_factory=utc_now)
    id: UUID | None = None


@dataclass
class Client:
    """A patient mirrored from Halaxy.

    ``mhcp_used_sessions`` is owned locally: it is derived from the number of
    completed sessions and is never taken from the remote side.
    """

    halaxy_patient_id: str
    practitioner_id: UUID
    first_name: str
    last_name: str
    initials: str
    email: str | None = None
    phone: str | None = None
    date_of_birth: date | None = None
    mhcp_total_sessions: int = 10
    mhcp_used_sessions: int = 0
    mhcp_plan_start_date: date | None = None
    mhcp_plan_expiry_date: date | None = None
    presenting_issues: str | None = None
    is_active: bool = True
    last_synced_at: datetime = field(default_factory=utc_now)
    id: UUID | None = None


@dataclass
class Session:
    """An appointment mirrored from Halaxy.

    ``session_number`` is the client's ordinal for this appointment.  It is
    assigned the first time the appointment is seen and never changes.
    """

    halaxy_appointment_id: str
    practitioner_id: UUID
    client_id: UUID
    scheduled_start_time: datetime
    scheduled_end_time: datetime
    session_number: int
    status: SessionStatus = SessionStatus.SCHEDULED
    actual_start_time: datetime | None = None
    actual_end_time: datetime | None = None
    session_type: str | None = None
    notes: str | None = None
    fee_amount: float | None = None
    fee_currency: str = "AUD"
    is_paid: bool = False
    last_synced_at: datetime = field(default_factory=utc_now)
    id: UUID | None = None


# ---------------------------------------------------------------------------
# Store results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UpsertOutcome:
    """Result of an atomic insert-or-update keyed on an external id.

    Attributes:
        id:             Local primary key of the written row.
        created:        True if the row was inserted, False if it was updated.
        session_number: Stored session number (sessions only).
    """

    id: UUID
    created: bool
    session_number: int | None = None


@dataclass(frozen=True)
class ActivePractitioner:
    local_id: UUID
    external_id: str


# ---------------------------------------------------------------------------
# Audit / results
# ---------------------------------------------------------------------------


@dataclass
class SyncLogEntry:
    """One row of the ``sync_log`` audit table."""

    sync_type: SyncType
    entity_type: SyncEntityType
    status: SyncStatus
    started_at: datetime
    completed_at: datetime | None = None
    records_processed: int = 0
    error_message: str | None = None
    practitioner_id: UUID | None = None
    operation: str = "sync"
    id: UUID | None = None


@dataclass
class SyncError:
    """A single per-entity failure recorded during a sync run.

    Attributes:
        entity_type: Kind of entity that failed ('client', 'session', ...).
        entity_id:   External id of the failing resource.
        operation:   What was being attempted ('upsert', 'fetch', 'dispatch').
        message:     Human-readable failure description.
        timestamp:   UTC time the failure was recorded.
    """

    entity_type: str
    entity_id: str
    operation: str
    message: str
    timestamp: datetime = field(default_factory=utc_now)


@dataclass
class SyncResult:
    """Structured outcome of a full or incremental sync call."""

    success: bool
    sync_log_id: UUID | None = None
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    records_deleted: int = 0
    errors: list[SyncError] = field(default_factory=list)
    duration_ms: int = 0


@dataclass
class SyncStatusReport:
    """Health summary derived from recent sync log entries."""

    status: SyncHealth
    last_full_sync: datetime | None = None
    last_incremental_sync: datetime | None = None
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse an ISO-8601 datetime string to an aware UTC datetime.

    Naive strings are assumed to be UTC.  Returns None if the value is None
    or unparseable.
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError):
        logger.warning("Could not parse datetime string: %r", value)
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso_date(value: str | None) -> date | None:
    """Parse a ``YYYY-MM-DD`` string, returning None when absent or invalid."""
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except (ValueError, TypeError):
        logger.warning("Could not parse date string: %r", value)
        return None


def safe_int(value: object) -> int | None:
    """Safely coerce a value to int, returning None on failure."""
    if value is None:
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def safe_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
