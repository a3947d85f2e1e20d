"""Halaxy → Bloom sync orchestrator.

Two entry points share the same store and client:

``full_sync(practitioner_id)``
    1. Open a sync_log row
    2. Fetch and upsert the practitioner (the only fatal step)
    3. Fetch and upsert every active patient of that practitioner
    4. Fetch appointments in the configured window and seed per-client
       session counters from completed-session counts
    5. Upsert each appointment as a Session, numbering new sessions from the
       client's counter and keeping the stored number for known ones
    6. Recompute every client's used MHCP sessions
    7. Finalize the sync_log row

``incremental_sync(event, resource)``
    Applies one webhook notification, lazily back-filling a missing
    practitioner or client from Halaxy.

Per-entity failures in a full sync are collected and never stop the run.
Both entry points catch everything at their boundary and return a
``SyncResult``; neither raises.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable
from uuid import UUID

from bloom_sync.halaxy.base import (
    SyncEntityType,
    SyncError,
    SyncResult,
    SyncStatusReport,
    SyncType,
    UpsertOutcome,
)
from bloom_sync.halaxy.client import HalaxyClient
from bloom_sync.halaxy.config_loader import SyncConfig, get_sync_config
from bloom_sync.halaxy.events import WebhookEvent, parse_event
from bloom_sync.halaxy.store import SyncStore
from bloom_sync.halaxy.sync.audit import SyncAuditLog
from bloom_sync.halaxy.transformers import (
    patient_id_from_appointment,
    practitioner_id_from_appointment,
    practitioner_id_from_patient,
    transform_appointment,
    transform_patient,
    transform_practitioner,
)

logger = logging.getLogger("bloom.halaxy.sync.orchestrator")


class SyncAbortedError(Exception):
    """A sync cannot continue (missing practitioner, unresolvable reference)."""


@dataclass
class _RunCounts:
    created: int = 0
    updated: int = 0
    deleted: int = 0

    def add(self, outcome: UpsertOutcome) -> None:
        if outcome.created:
            self.created += 1
        else:
            self.updated += 1

    @property
    def processed(self) -> int:
        return self.created + self.updated + self.deleted


def _today() -> date:
    return datetime.now(timezone.utc).date()


class SyncOrchestrator:
    """Reconcile Halaxy data into the local store.

    Usage::

        orchestrator = SyncOrchestrator(client, store, SyncAuditLog(store))
        result = await orchestrator.full_sync("PR-1234")
        result = await orchestrator.incremental_sync("appointment.created", resource)
    """

    def __init__(
        self,
        client: HalaxyClient,
        store: SyncStore,
        audit: SyncAuditLog | None = None,
        config: SyncConfig | None = None,
        today: Callable[[], date] = _today,
    ) -> None:
        self._client = client
        self._store = store
        self._audit = audit or SyncAuditLog(store)
        self._config = config or get_sync_config()
        self._today = today

    # ------------------------------------------------------------------
    # Full sync
    # ------------------------------------------------------------------

    async def full_sync(self, practitioner_id: str) -> SyncResult:
        """Run a complete sync for one Halaxy practitioner.

        Args:
            practitioner_id: Halaxy practitioner id.

        Returns:
            SyncResult; ``success`` is False if any error was recorded.
        """
        started = time.monotonic()
        counts = _RunCounts()
        errors: list[SyncError] = []
        local_id: UUID | None = None

        logger.info("Starting full sync for practitioner %s", practitioner_id)
        log_id = await self._audit.open(SyncType.FULL, SyncEntityType.ALL)

        try:
            outcome = await self._sync_practitioner(practitioner_id)
            counts.add(outcome)
            local_id = outcome.id

            client_ids = await self._sync_patients(practitioner_id, local_id, counts, errors)
            await self._sync_appointments(practitioner_id, local_id, client_ids, counts, errors)

            try:
                await self._store.recompute_mhcp_used_sessions(local_id)
            except Exception as exc:
                errors.append(
                    SyncError("client", practitioner_id, "recompute_mhcp", _describe(exc))
                )
        except Exception as exc:
            logger.error("Full sync aborted for practitioner %s: %s", practitioner_id, exc)
            errors.append(SyncError("practitioner", practitioner_id, "sync", _describe(exc)))

        await self._audit.finalize(log_id, counts.processed, errors, practitioner_id=local_id)
        result = self._result(log_id, counts, errors, started)
        logger.info(
            "Full sync for practitioner %s finished: success=%s created=%d updated=%d errors=%d (%dms)",
            practitioner_id,
            result.success,
            result.records_created,
            result.records_updated,
            len(errors),
            result.duration_ms,
        )
        return result

    async def sync_all_practitioners(self) -> list[tuple[str, SyncResult]]:
        """Full-sync every active practitioner Halaxy knows about.

        Raises:
            HalaxyError: If the practitioner list itself cannot be fetched.
        """
        practitioners = await self._client.fetch_all_practitioners()
        logger.info("Syncing %d Halaxy practitioner(s)", len(practitioners))
        results = []
        for fhir in practitioners:
            external_id = str(fhir["id"])
            results.append((external_id, await self.full_sync(external_id)))
        return results

    async def _sync_patients(
        self,
        practitioner_id: str,
        local_id: UUID,
        counts: _RunCounts,
        errors: list[SyncError],
    ) -> dict[str, UUID]:
        """Upsert the practitioner's patients; return external → local client ids."""
        client_ids: dict[str, UUID] = {}
        try:
            async for fhir_patient in self._client.fetch_patients_for_practitioner(practitioner_id):
                patient_id = str(fhir_patient["id"])
                try:
                    outcome = await self._upsert_patient(fhir_patient, local_id)
                except Exception as exc:
                    logger.warning("Failed to sync patient %s: %s", patient_id, exc)
                    errors.append(SyncError("client", patient_id, "upsert", _describe(exc)))
                    continue
                client_ids[patient_id] = outcome.id
                counts.add(outcome)
        except Exception as exc:
            logger.warning("Failed to fetch patients for %s: %s", practitioner_id, exc)
            errors.append(SyncError("client", practitioner_id, "fetch", _describe(exc)))
        return client_ids

    async def _sync_appointments(
        self,
        practitioner_id: str,
        local_id: UUID,
        client_ids: dict[str, UUID],
        counts: _RunCounts,
        errors: list[SyncError],
    ) -> None:
        today = self._today()
        window = self._config.sync_window
        start = today - timedelta(days=window.past_days)
        end = today + timedelta(days=window.future_days)

        try:
            counters = await self._store.completed_session_counts(local_id)
            async for appointment in self._client.fetch_appointments(practitioner_id, start, end):
                appointment_id = str(appointment["id"])
                patient_id = patient_id_from_appointment(appointment)
                client_id = client_ids.get(patient_id) if patient_id else None
                if client_id is None:
                    logger.warning(
                        "Skipping appointment %s: patient %s was not synced",
                        appointment_id,
                        patient_id,
                    )
                    continue

                counters[client_id] = counters.get(client_id, 0) + 1
                try:
                    existing = await self._store.get_session_by_external_id(appointment_id)
                    session = transform_appointment(
                        appointment,
                        local_id,
                        client_id,
                        counters[client_id],
                        existing,
                    )
                    counts.add(await self._store.upsert_session(session))
                except Exception as exc:
                    logger.warning("Failed to sync appointment %s: %s", appointment_id, exc)
                    errors.append(
                        SyncError("session", appointment_id, "upsert", _describe(exc))
                    )
        except Exception as exc:
            logger.warning("Failed to fetch appointments for %s: %s", practitioner_id, exc)
            errors.append(SyncError("session", practitioner_id, "fetch", _describe(exc)))

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def incremental_sync(self, event_name: str, resource: object) -> SyncResult:
        """Apply a single Halaxy webhook notification.

        Args:
            event_name: Raw event name, e.g. ``appointment.created``.
            resource:   The FHIR resource carried in the webhook ``data`` field.

        Returns:
            SyncResult; an unrecognized event is a successful no-op.
        """
        started = time.monotonic()
        counts = _RunCounts()
        errors: list[SyncError] = []
        event = parse_event(event_name)

        log_id = await self._audit.open(SyncType.WEBHOOK, event.entity_type)
        try:
            await self._dispatch(event, event_name, resource, counts)
        except Exception as exc:
            logger.error("Webhook sync failed for %s: %s", event_name, exc)
            resource_id = resource.get("id") if isinstance(resource, dict) else None
            errors.append(
                SyncError(event.entity_type.value, str(resource_id or ""), "dispatch", _describe(exc))
            )

        await self._audit.finalize(log_id, counts.processed, errors)
        return self._result(log_id, counts, errors, started)

    async def _dispatch(
        self,
        event: WebhookEvent,
        event_name: str,
        resource: object,
        counts: _RunCounts,
    ) -> None:
        if event == WebhookEvent.UNRECOGNIZED:
            logger.info("Ignoring unrecognized Halaxy event %r", event_name)
            return
        if not isinstance(resource, dict):
            raise SyncAbortedError(f"{event.value} payload must be a JSON object")
        resource_id = _resource_id(resource)

        if event in (WebhookEvent.APPOINTMENT_CREATED, WebhookEvent.APPOINTMENT_UPDATED):
            await self._apply_appointment(resource, counts)
        elif event in (WebhookEvent.APPOINTMENT_CANCELLED, WebhookEvent.APPOINTMENT_DELETED):
            if await self._store.cancel_session(resource_id):
                counts.deleted += 1
            else:
                logger.info("No local session for cancelled appointment %s", resource_id)
        elif event in (WebhookEvent.PATIENT_CREATED, WebhookEvent.PATIENT_UPDATED):
            await self._apply_patient(resource, counts)
        elif event == WebhookEvent.PATIENT_DELETED:
            if await self._store.deactivate_client(resource_id):
                counts.deleted += 1
            else:
                logger.info("No local client for deleted patient %s", resource_id)
        elif event == WebhookEvent.PRACTITIONER_UPDATED:
            counts.add(await self._sync_practitioner(resource_id))

    async def _apply_appointment(self, resource: dict, counts: _RunCounts) -> None:
        appointment_id = _resource_id(resource)
        patient_ext = patient_id_from_appointment(resource)
        practitioner_ext = practitioner_id_from_appointment(resource)
        if not patient_ext or not practitioner_ext:
            raise SyncAbortedError(
                f"Appointment {appointment_id} has no patient or practitioner reference"
            )

        practitioner = await self._store.get_practitioner_by_external_id(practitioner_ext)
        if practitioner is not None and practitioner.id is not None:
            practitioner_id = practitioner.id
        else:
            logger.info("Provisioning practitioner %s from Halaxy", practitioner_ext)
            outcome = await self._sync_practitioner(practitioner_ext)
            counts.add(outcome)
            practitioner_id = outcome.id

        client = await self._store.get_client_by_external_id(patient_ext)
        if client is not None and client.id is not None:
            client_id = client.id
        else:
            logger.info("Provisioning patient %s from Halaxy", patient_ext)
            fhir_patient = await self._client.fetch_patient(patient_ext)
            if fhir_patient is None:
                raise SyncAbortedError(f"Patient {patient_ext} not found in Halaxy")
            outcome = await self._upsert_patient(fhir_patient, practitioner_id)
            counts.add(outcome)
            client_id = outcome.id

        existing = await self._store.get_session_by_external_id(appointment_id)
        completed = await self._store.count_completed_sessions(client_id)
        session = transform_appointment(
            resource, practitioner_id, client_id, completed + 1, existing
        )
        counts.add(await self._store.upsert_session(session))

    async def _apply_patient(self, resource: dict, counts: _RunCounts) -> None:
        patient_id = _resource_id(resource)
        existing = await self._store.get_client_by_external_id(patient_id)
        practitioner_id = existing.practitioner_id if existing else None

        if practitioner_id is None:
            practitioner_ext = practitioner_id_from_patient(resource)
            if practitioner_ext:
                practitioner = await self._store.get_practitioner_by_external_id(practitioner_ext)
                practitioner_id = practitioner.id if practitioner else None
        if practitioner_id is None:
            raise SyncAbortedError(f"Cannot resolve practitioner for patient {patient_id}")

        client = transform_patient(
            resource,
            practitioner_id,
            existing,
            default_total_sessions=self._config.default_mhcp_sessions,
        )
        counts.add(await self._store.upsert_client(client))

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def sync_status(self, practitioner_id: UUID | None) -> SyncStatusReport:
        return await self._audit.status(practitioner_id, self._config.health)

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    async def _sync_practitioner(self, practitioner_id: str) -> UpsertOutcome:
        fhir = await self._client.fetch_practitioner(practitioner_id)
        if fhir is None:
            raise SyncAbortedError(f"Practitioner {practitioner_id} not found in Halaxy")
        existing = await self._store.get_practitioner_by_external_id(str(fhir["id"]))
        return await self._store.upsert_practitioner(transform_practitioner(fhir, existing))

    async def _upsert_patient(self, fhir_patient: dict, practitioner_id: UUID) -> UpsertOutcome:
        existing = await self._store.get_client_by_external_id(str(fhir_patient["id"]))
        client = transform_patient(
            fhir_patient,
            practitioner_id,
            existing,
            default_total_sessions=self._config.default_mhcp_sessions,
        )
        return await self._store.upsert_client(client)

    @staticmethod
    def _result(
        log_id: UUID | None,
        counts: _RunCounts,
        errors: list[SyncError],
        started: float,
    ) -> SyncResult:
        return SyncResult(
            success=not errors,
            sync_log_id=log_id,
            records_processed=counts.processed,
            records_created=counts.created,
            records_updated=counts.updated,
            records_deleted=counts.deleted,
            errors=errors,
            duration_ms=int((time.monotonic() - started) * 1000),
        )


def _resource_id(resource: dict) -> str:
    resource_id = resource.get("id")
    if not resource_id:
        raise SyncAbortedError("Webhook resource has no id")
    return str(resource_id)


def _describe(exc: Exception) -> str:
    return str(exc) or type(exc).__name__
