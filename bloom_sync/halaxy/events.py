"""Halaxy webhook event names.

Halaxy notifies us of resource changes with a dotted event name such as
``appointment.created``.  Unknown names map to ``WebhookEvent.UNRECOGNIZED``
rather than raising, so a new Halaxy event type never fails a delivery.
"""

from __future__ import annotations

from enum import Enum

from bloom_sync.halaxy.base import SyncEntityType


class WebhookEvent(str, Enum):
    APPOINTMENT_CREATED = "appointment.created"
    APPOINTMENT_UPDATED = "appointment.updated"
    APPOINTMENT_CANCELLED = "appointment.cancelled"
    APPOINTMENT_DELETED = "appointment.deleted"
    PATIENT_CREATED = "patient.created"
    PATIENT_UPDATED = "patient.updated"
    PATIENT_DELETED = "patient.deleted"
    PRACTITIONER_UPDATED = "practitioner.updated"
    UNRECOGNIZED = "unrecognized"

    @property
    def entity_type(self) -> SyncEntityType:
        return _ENTITY_TYPES[self]


_ENTITY_TYPES: dict[WebhookEvent, SyncEntityType] = {
    WebhookEvent.APPOINTMENT_CREATED: SyncEntityType.SESSION,
    WebhookEvent.APPOINTMENT_UPDATED: SyncEntityType.SESSION,
    WebhookEvent.APPOINTMENT_CANCELLED: SyncEntityType.SESSION,
    WebhookEvent.APPOINTMENT_DELETED: SyncEntityType.SESSION,
    WebhookEvent.PATIENT_CREATED: SyncEntityType.CLIENT,
    WebhookEvent.PATIENT_UPDATED: SyncEntityType.CLIENT,
    WebhookEvent.PATIENT_DELETED: SyncEntityType.CLIENT,
    WebhookEvent.PRACTITIONER_UPDATED: SyncEntityType.PRACTITIONER,
    WebhookEvent.UNRECOGNIZED: SyncEntityType.ALL,
}


def parse_event(name: str | None) -> WebhookEvent:
    """Map a raw event name onto a WebhookEvent (case-insensitive)."""
    if not name:
        return WebhookEvent.UNRECOGNIZED
    try:
        event = WebhookEvent(name.strip().lower())
    except ValueError:
        return WebhookEvent.UNRECOGNIZED
    return event
