"""Tests for webhook event parsing."""

from __future__ import annotations

import pytest

from bloom_sync.halaxy.base import SyncEntityType
from bloom_sync.halaxy.events import WebhookEvent, parse_event


class TestParseEvent:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("appointment.created", WebhookEvent.APPOINTMENT_CREATED),
            ("appointment.updated", WebhookEvent.APPOINTMENT_UPDATED),
            ("appointment.cancelled", WebhookEvent.APPOINTMENT_CANCELLED),
            ("appointment.deleted", WebhookEvent.APPOINTMENT_DELETED),
            ("patient.created", WebhookEvent.PATIENT_CREATED),
            ("patient.updated", WebhookEvent.PATIENT_UPDATED),
            ("patient.deleted", WebhookEvent.PATIENT_DELETED),
            ("practitioner.updated", WebhookEvent.PRACTITIONER_UPDATED),
            ("Appointment.Created", WebhookEvent.APPOINTMENT_CREATED),
        ],
    )
    def test_known_events(self, name: str, expected: WebhookEvent) -> None:
        assert parse_event(name) == expected

    @pytest.mark.parametrize("name", ["invoice.paid", "appointment", "", None, "practitioner.deleted"])
    def test_unknown_events_are_unrecognized(self, name: str | None) -> None:
        assert parse_event(name) == WebhookEvent.UNRECOGNIZED

    def test_entity_types(self) -> None:
        assert WebhookEvent.APPOINTMENT_CANCELLED.entity_type == SyncEntityType.SESSION
        assert WebhookEvent.PATIENT_DELETED.entity_type == SyncEntityType.CLIENT
        assert WebhookEvent.PRACTITIONER_UPDATED.entity_type == SyncEntityType.PRACTITIONER
        assert WebhookEvent.UNRECOGNIZED.entity_type == SyncEntityType.ALL
