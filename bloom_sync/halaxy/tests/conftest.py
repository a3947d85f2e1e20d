"""Shared fixtures, fakes and FHIR builders for Halaxy sync engine tests."""

from __future__ import annotations

from collections import Counter
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable
from uuid import UUID, uuid4

import httpx
import pytest

from bloom_sync.halaxy.base import (
    ActivePractitioner,
    Client,
    Practitioner,
    Session,
    SessionStatus,
    SyncLogEntry,
    SyncStatus,
    UpsertOutcome,
)
from bloom_sync.halaxy.client import HalaxyClient
from bloom_sync.halaxy.config_loader import SyncConfig, load_sync_config
from bloom_sync.halaxy.sync.audit import SyncAuditLog
from bloom_sync.halaxy.sync.orchestrator import SyncOrchestrator
from bloom_sync.halaxy.token_manager import HalaxyConfig

BASE_URL = "https://halaxy.test/fhir"
TOKEN_URL = "https://halaxy.test/oauth2/token"
PRACTITIONER_ID = "PR-1001"
TODAY = date(2026, 3, 2)
NOW = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# FHIR builders
# ---------------------------------------------------------------------------


def fhir_practitioner(
    practitioner_id: str = PRACTITIONER_ID,
    given: str = "Zoe",
    family: str = "Semmler",
    email: str | None = "zoe@bloom.test",
    active: bool = True,
) -> dict:
    resource: dict[str, Any] = {
        "resourceType": "Practitioner",
        "id": practitioner_id,
        "active": active,
        "name": [{"prefix": ["Dr"], "given": [given], "family": family}],
        "telecom": [{"system": "phone", "value": "0400 000 000"}],
        "qualification": [
            {"code": {"coding": [{"display": "Clinical Psychologist"}]}},
        ],
    }
    if email:
        resource["telecom"].append({"system": "email", "value": email})
    return resource


def fhir_patient(
    patient_id: str,
    given: str = "Alex",
    family: str = "Morgan",
    practitioner_id: str | None = None,
    extensions: list[dict] | None = None,
) -> dict:
    resource: dict[str, Any] = {
        "resourceType": "Patient",
        "id": patient_id,
        "active": True,
        "name": [{"given": [given], "family": family}],
        "telecom": [{"system": "email", "value": f"{patient_id}@patients.test"}],
        "birthDate": "1990-05-17",
        "extension": extensions or [],
    }
    if practitioner_id:
        resource["generalPractitioner"] = [{"reference": f"Practitioner/{practitioner_id}"}]
    return resource


def fhir_appointment(
    appointment_id: str,
    patient_id: str | None,
    practitioner_id: str | None = PRACTITIONER_ID,
    status: str = "booked",
    start: str = "2026-03-05T10:00:00Z",
    end: str = "2026-03-05T10:50:00Z",
) -> dict:
    participants = []
    if patient_id:
        participants.append({"actor": {"reference": f"Patient/{patient_id}"}})
    if practitioner_id:
        participants.append({"actor": {"reference": f"Practitioner/{practitioner_id}"}})
    return {
        "resourceType": "Appointment",
        "id": appointment_id,
        "status": status,
        "start": start,
        "end": end,
        "participant": participants,
    }


def bundle(resources: list[dict], next_url: str | None = None) -> dict:
    links = [{"relation": "self", "url": f"{BASE_URL}/search"}]
    if next_url:
        links.append({"relation": "next", "url": next_url})
    return {
        "resourceType": "Bundle",
        "type": "searchset",
        "link": links,
        "entry": [{"resource": r} for r in resources],
    }


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeTokenProvider:
    """Issues ``token-<n>``; each invalidation bumps n."""

    def __init__(self, config: HalaxyConfig | None = None) -> None:
        self.config = config or HalaxyConfig(base_url=BASE_URL, token_url=TOKEN_URL)
        self.generation = 1
        self.invalidations = 0

    async def get_access_token(self) -> str:
        return f"token-{self.generation}"

    def invalidate_token(self) -> None:
        self.invalidations += 1
        self.generation += 1

    def get_config(self) -> HalaxyConfig:
        return self.config


class RecordingRateLimiter:
    def __init__(self) -> None:
        self.calls = 0

    async def acquire(self) -> None:
        self.calls += 1


class FakeHalaxyClient:
    """In-memory stand-in for HalaxyClient used by orchestrator tests."""

    def __init__(self) -> None:
        self.practitioners: dict[str, dict] = {}
        self.patients: dict[str, dict] = {}
        self.patients_by_practitioner: dict[str, list[str]] = {}
        self.appointments: list[dict] = []
        self.appointment_windows: list[tuple[date, date]] = []
        self.patient_fetches: list[str] = []

    def add_practitioner(self, resource: dict) -> None:
        self.practitioners[resource["id"]] = resource

    def add_patient(self, resource: dict, practitioner_id: str = PRACTITIONER_ID) -> None:
        self.patients[resource["id"]] = resource
        self.patients_by_practitioner.setdefault(practitioner_id, []).append(resource["id"])

    async def fetch_practitioner(self, practitioner_id: str) -> dict | None:
        return self.practitioners.get(practitioner_id)

    async def fetch_all_practitioners(self) -> list[dict]:
        return list(self.practitioners.values())

    async def fetch_patient(self, patient_id: str) -> dict | None:
        self.patient_fetches.append(patient_id)
        return self.patients.get(patient_id)

    async def fetch_patients_for_practitioner(self, practitioner_id: str) -> AsyncIterator[dict]:
        for patient_id in self.patients_by_practitioner.get(practitioner_id, []):
            yield self.patients[patient_id]

    async def fetch_appointments(
        self,
        practitioner_id: str,
        start: date,
        end: date,
        statuses: list[str] | None = None,
    ) -> AsyncIterator[dict]:
        self.appointment_windows.append((start, end))
        for appointment in self.appointments:
            yield appointment


class FakeSyncStore:
    """In-memory SyncStore with the same upsert merge rules as PostgresSyncStore."""

    def __init__(self) -> None:
        self.practitioners: dict[str, Practitioner] = {}
        self.clients: dict[str, Client] = {}
        self.sessions: dict[str, Session] = {}
        self.logs: dict[UUID, SyncLogEntry] = {}
        self.failing_client_ids: set[str] = set()
        self.fail_log_creation = False
        self.fail_active_lookup = False

    # -- seeding helpers ------------------------------------------------

    def seed_practitioner(self, external_id: str = PRACTITIONER_ID, active: bool = True) -> Practitioner:
        practitioner = Practitioner(
            id=uuid4(),
            halaxy_practitioner_id=external_id,
            first_name="Zoe",
            last_name="Semmler",
            display_name="Dr Zoe Semmler",
            email=f"{external_id}@bloom.test",
            is_active=active,
        )
        self.practitioners[external_id] = practitioner
        return practitioner

    def seed_client(self, external_id: str, practitioner: Practitioner, **fields: Any) -> Client:
        client = Client(
            id=uuid4(),
            halaxy_patient_id=external_id,
            practitioner_id=practitioner.id,  # type: ignore[arg-type]
            first_name="Alex",
            last_name="Morgan",
            initials="AM",
            **fields,
        )
        self.clients[external_id] = client
        return client

    def seed_session(
        self,
        external_id: str,
        client: Client,
        session_number: int,
        status: SessionStatus = SessionStatus.COMPLETED,
    ) -> Session:
        start = NOW - timedelta(days=400 - session_number)
        session = Session(
            id=uuid4(),
            halaxy_appointment_id=external_id,
            practitioner_id=client.practitioner_id,
            client_id=client.id,  # type: ignore[arg-type]
            scheduled_start_time=start,
            scheduled_end_time=start + timedelta(minutes=50),
            session_number=session_number,
            status=status,
        )
        self.sessions[external_id] = session
        return session

    # -- lookups --------------------------------------------------------

    async def get_practitioner_by_external_id(self, external_id: str) -> Practitioner | None:
        return self.practitioners.get(external_id)

    async def get_client_by_external_id(self, external_id: str) -> Client | None:
        return self.clients.get(external_id)

    async def get_session_by_external_id(self, external_id: str) -> Session | None:
        return self.sessions.get(external_id)

    # -- upserts --------------------------------------------------------

    async def upsert_practitioner(self, practitioner: Practitioner) -> UpsertOutcome:
        key = practitioner.halaxy_practitioner_id
        existing = self.practitioners.get(key)
        if existing is None:
            row = replace(practitioner, id=uuid4())
            self.practitioners[key] = row
            return UpsertOutcome(id=row.id, created=True)  # type: ignore[arg-type]
        self.practitioners[key] = replace(
            practitioner,
            id=existing.id,
            halaxy_practitioner_role_id=existing.halaxy_practitioner_role_id,
            qualifications=_coalesce(practitioner.qualifications, existing.qualifications),
            specialty=_coalesce(practitioner.specialty, existing.specialty),
        )
        return UpsertOutcome(id=existing.id, created=False)  # type: ignore[arg-type]

    async def upsert_client(self, client: Client) -> UpsertOutcome:
        key = client.halaxy_patient_id
        if key in self.failing_client_ids:
            raise RuntimeError(f"constraint violation for patient {key}")
        existing = self.clients.get(key)
        if existing is None:
            row = replace(client, id=uuid4())
            self.clients[key] = row
            return UpsertOutcome(id=row.id, created=True)  # type: ignore[arg-type]
        self.clients[key] = replace(
            client,
            id=existing.id,
            practitioner_id=existing.practitioner_id,
            mhcp_total_sessions=existing.mhcp_total_sessions,
            mhcp_used_sessions=existing.mhcp_used_sessions,
            presenting_issues=_coalesce(client.presenting_issues, existing.presenting_issues),
            mhcp_plan_start_date=_coalesce(client.mhcp_plan_start_date, existing.mhcp_plan_start_date),
            mhcp_plan_expiry_date=_coalesce(client.mhcp_plan_expiry_date, existing.mhcp_plan_expiry_date),
        )
        return UpsertOutcome(id=existing.id, created=False)  # type: ignore[arg-type]

    async def upsert_session(self, session: Session) -> UpsertOutcome:
        key = session.halaxy_appointment_id
        existing = self.sessions.get(key)
        if existing is None:
            row = replace(session, id=uuid4())
            self.sessions[key] = row
            return UpsertOutcome(id=row.id, created=True, session_number=row.session_number)  # type: ignore[arg-type]
        self.sessions[key] = replace(
            session,
            id=existing.id,
            practitioner_id=existing.practitioner_id,
            client_id=existing.client_id,
            session_number=existing.session_number,
            fee_currency=existing.fee_currency,
        )
        return UpsertOutcome(
            id=existing.id,  # type: ignore[arg-type]
            created=False,
            session_number=existing.session_number,
        )

    # -- derived counts -------------------------------------------------

    async def completed_session_counts(self, practitioner_id: UUID) -> dict[UUID, int]:
        client_ids = {c.id for c in self.clients.values() if c.practitioner_id == practitioner_id}
        counts = Counter(
            s.client_id
            for s in self.sessions.values()
            if s.status == SessionStatus.COMPLETED and s.client_id in client_ids
        )
        return dict(counts)

    async def count_completed_sessions(self, client_id: UUID) -> int:
        return sum(
            1
            for s in self.sessions.values()
            if s.client_id == client_id and s.status == SessionStatus.COMPLETED
        )

    async def recompute_mhcp_used_sessions(self, practitioner_id: UUID) -> int:
        updated = 0
        for key, client in list(self.clients.items()):
            if client.practitioner_id != practitioner_id:
                continue
            used = await self.count_completed_sessions(client.id)  # type: ignore[arg-type]
            self.clients[key] = replace(client, mhcp_used_sessions=used)
            updated += 1
        return updated

    # -- soft deletes ---------------------------------------------------

    async def cancel_session(self, external_id: str) -> bool:
        session = self.sessions.get(external_id)
        if session is None:
            return False
        self.sessions[external_id] = replace(session, status=SessionStatus.CANCELLED)
        return True

    async def deactivate_client(self, external_id: str) -> bool:
        client = self.clients.get(external_id)
        if client is None:
            return False
        self.clients[external_id] = replace(client, is_active=False)
        return True

    async def list_active_practitioners(self) -> list[ActivePractitioner]:
        if self.fail_active_lookup:
            raise ConnectionError("database unavailable")
        return [
            ActivePractitioner(local_id=p.id, external_id=p.halaxy_practitioner_id)  # type: ignore[arg-type]
            for p in self.practitioners.values()
            if p.is_active
        ]

    # -- sync log -------------------------------------------------------

    async def create_sync_log(self, entry: SyncLogEntry) -> UUID:
        if self.fail_log_creation:
            raise ConnectionError("sync_log insert failed")
        log_id = uuid4()
        self.logs[log_id] = replace(entry, id=log_id)
        return log_id

    async def complete_sync_log(
        self,
        log_id: UUID,
        status: SyncStatus,
        records_processed: int,
        error_message: str | None,
        completed_at: datetime,
        practitioner_id: UUID | None = None,
    ) -> None:
        entry = self.logs[log_id]
        self.logs[log_id] = replace(
            entry,
            status=status,
            records_processed=records_processed,
            error_message=error_message,
            completed_at=completed_at,
            practitioner_id=practitioner_id or entry.practitioner_id,
        )

    async def recent_sync_logs(self, practitioner_id: UUID | None, limit: int) -> list[SyncLogEntry]:
        matching = [
            e for e in self.logs.values()
            if e.practitioner_id is None or e.practitioner_id == practitioner_id
        ]
        matching.sort(key=lambda e: e.started_at, reverse=True)
        return matching[:limit]


def _coalesce(new: Any, old: Any) -> Any:
    return new if new is not None else old


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def sync_config() -> SyncConfig:
    """Load the real bundled sync config."""
    return load_sync_config()


@pytest.fixture
def store() -> FakeSyncStore:
    return FakeSyncStore()


@pytest.fixture
def halaxy() -> FakeHalaxyClient:
    fake = FakeHalaxyClient()
    fake.add_practitioner(fhir_practitioner())
    return fake


@pytest.fixture
def orchestrator(
    halaxy: FakeHalaxyClient, store: FakeSyncStore, sync_config: SyncConfig
) -> SyncOrchestrator:
    return SyncOrchestrator(
        halaxy,  # type: ignore[arg-type]
        store,
        SyncAuditLog(store, clock=lambda: NOW),
        sync_config,
        today=lambda: TODAY,
    )


@pytest.fixture
def tokens() -> FakeTokenProvider:
    return FakeTokenProvider()


@pytest.fixture
def make_client(
    tokens: FakeTokenProvider, sync_config: SyncConfig
) -> Callable[..., HalaxyClient]:
    """Build a HalaxyClient whose HTTP traffic goes to ``handler``."""

    def _make(
        handler: Callable[[httpx.Request], httpx.Response],
        config: SyncConfig | None = None,
    ) -> HalaxyClient:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HalaxyClient(
            tokens,
            RecordingRateLimiter(),
            http_client=http_client,
            config=config or sync_config,
        )

    return _make
