"""Map Halaxy FHIR R4 resources onto Bloom entities.

All functions here are pure: they take a FHIR resource dict (plus the
existing local row, when there is one) and return a dataclass from
``bloom_sync.halaxy.base``.  Nothing in this module performs I/O.

Merge rules applied when an existing row is supplied:
    - the local id is carried over
    - ``Client.mhcp_used_sessions`` is kept (it is derived locally)
    - ``Client.presenting_issues`` is kept when Halaxy sends none
    - ``Session.session_number`` is kept (assigned once, never recomputed)
"""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from bloom_sync.halaxy.base import (
    Client,
    Practitioner,
    Session,
    SessionStatus,
    parse_iso_date,
    parse_iso_datetime,
    safe_float,
    safe_int,
)

logger = logging.getLogger("bloom.halaxy.transformers")

PLACEHOLDER_EMAIL_DOMAIN = "placeholder.halaxy.local"

_STATUS_MAP: dict[str, SessionStatus] = {
    "proposed": SessionStatus.SCHEDULED,
    "pending": SessionStatus.SCHEDULED,
    "booked": SessionStatus.SCHEDULED,
    "waitlist": SessionStatus.SCHEDULED,
    "arrived": SessionStatus.CONFIRMED,
    "checked-in": SessionStatus.CONFIRMED,
    "fulfilled": SessionStatus.COMPLETED,
    "cancelled": SessionStatus.CANCELLED,
    "entered-in-error": SessionStatus.CANCELLED,
    "noshow": SessionStatus.NO_SHOW,
}


# ---------------------------------------------------------------------------
# Practitioner
# ---------------------------------------------------------------------------


def transform_practitioner(
    fhir: dict, existing: Practitioner | None = None
) -> Practitioner:
    """Build a Practitioner from a FHIR ``Practitioner`` resource.

    A practitioner without an email gets a deterministic placeholder so the
    unique email column can always be written.

    Args:
        fhir:     FHIR Practitioner resource.
        existing: Current local row, if the practitioner was synced before.

    Returns:
        Practitioner ready to upsert.
    """
    halaxy_id = str(fhir["id"])
    name = _primary_name(fhir)
    qualifications = _extract_qualifications(fhir)
    specialty = _extract_specialty(fhir)

    return Practitioner(
        id=existing.id if existing else None,
        halaxy_practitioner_id=halaxy_id,
        first_name=_first_given(name),
        last_name=(name or {}).get("family") or "",
        display_name=build_display_name(name),
        email=_telecom(fhir, "email") or f"{halaxy_id}@{PLACEHOLDER_EMAIL_DOMAIN}",
        phone=_telecom(fhir, "phone"),
        qualifications=qualifications if qualifications is not None else (
            existing.qualifications if existing else None
        ),
        specialty=specialty if specialty is not None else (
            existing.specialty if existing else None
        ),
        halaxy_practitioner_role_id=existing.halaxy_practitioner_role_id if existing else None,
        is_active=fhir.get("active") is not False,
    )


def build_display_name(name: dict | None) -> str:
    """Join prefix, first given name, family name and suffixes."""
    if not name:
        return "Unknown"
    parts: list[str] = []
    if name.get("prefix"):
        parts.append(name["prefix"][0])
    if name.get("given"):
        parts.append(name["given"][0])
    if name.get("family"):
        parts.append(name["family"])
    if name.get("suffix"):
        parts.append(" ".join(name["suffix"]))
    return " ".join(parts) or "Unknown"


def _extract_qualifications(fhir: dict) -> str | None:
    qualifications = fhir.get("qualification") or []
    if not qualifications:
        return None
    labels = []
    for qualification in qualifications:
        coding = ((qualification.get("code") or {}).get("coding") or [{}])[0]
        label = coding.get("display") or (qualification.get("identifier") or {}).get("value")
        if label:
            labels.append(label)
    return ", ".join(labels) if labels else None


def _extract_specialty(fhir: dict) -> str | None:
    for qualification in fhir.get("qualification") or []:
        codings = (qualification.get("code") or {}).get("coding") or []
        if any("psycholog" in (c.get("display") or "").lower() for c in codings):
            return codings[0].get("display")
    return None


# ---------------------------------------------------------------------------
# Client (Patient)
# ---------------------------------------------------------------------------


def transform_patient(
    fhir: dict,
    practitioner_id: UUID,
    existing: Client | None = None,
    default_total_sessions: int = 10,
) -> Client:
    """Build a Client from a FHIR ``Patient`` resource.

    Args:
        fhir:                   FHIR Patient resource.
        practitioner_id:        Local id of the owning practitioner.
        existing:               Current local row, if any.
        default_total_sessions: MHCP plan size when no extension is present.

    Returns:
        Client ready to upsert.
    """
    name = _primary_name(fhir)
    first_name = _first_given(name)
    last_name = (name or {}).get("family") or ""
    extensions = fhir.get("extension") or []

    total = safe_int(
        _extension_value(extensions, ("mhcp-total", "mental-health-plan-sessions"), "valueInteger")
    )
    presenting_issues = _extension_value(extensions, ("presenting-issues",), "valueString")
    if presenting_issues is None and existing is not None:
        presenting_issues = existing.presenting_issues

    return Client(
        id=existing.id if existing else None,
        halaxy_patient_id=str(fhir["id"]),
        practitioner_id=practitioner_id,
        first_name=first_name,
        last_name=last_name,
        initials=build_initials(first_name, last_name),
        email=_telecom(fhir, "email"),
        phone=_telecom(fhir, "phone"),
        date_of_birth=parse_iso_date(fhir.get("birthDate")),
        mhcp_total_sessions=total or default_total_sessions,
        mhcp_used_sessions=existing.mhcp_used_sessions if existing else 0,
        mhcp_plan_start_date=parse_iso_date(
            _extension_value(
                extensions, ("mhcp-plan-start", "mental-health-plan-plan-start"), "valueDate"
            )
        ),
        mhcp_plan_expiry_date=parse_iso_date(
            _extension_value(
                extensions, ("mhcp-plan-expiry", "mental-health-plan-plan-expiry"), "valueDate"
            )
        ),
        presenting_issues=presenting_issues,
        is_active=fhir.get("active") is not False,
    )


def build_initials(first_name: str, last_name: str) -> str:
    return f"{(first_name[:1] or '?').upper()}{(last_name[:1] or '?').upper()}"


# ---------------------------------------------------------------------------
# Session (Appointment)
# ---------------------------------------------------------------------------


def transform_appointment(
    fhir: dict,
    practitioner_id: UUID,
    client_id: UUID,
    session_number: int,
    existing: Session | None = None,
) -> Session:
    """Build a Session from a FHIR ``Appointment`` resource.

    Args:
        fhir:            FHIR Appointment resource.
        practitioner_id: Local practitioner id.
        client_id:       Local client id.
        session_number:  Number to use if the appointment has never been stored.
        existing:        Current local row, whose session number always wins.

    Raises:
        ValueError: If the appointment has no parseable start or end time.
    """
    appointment_id = str(fhir["id"])
    start = parse_iso_datetime(fhir.get("start"))
    end = parse_iso_datetime(fhir.get("end"))
    if start is None or end is None:
        raise ValueError(f"Appointment {appointment_id} is missing start/end time")

    extensions = fhir.get("extension") or []
    fee = _extension_value(extensions, ("fee", "amount"), "valueMoney")

    return Session(
        id=existing.id if existing else None,
        halaxy_appointment_id=appointment_id,
        practitioner_id=practitioner_id,
        client_id=client_id,
        scheduled_start_time=start,
        scheduled_end_time=end,
        actual_start_time=parse_iso_datetime(
            _extension_value(extensions, ("actual-start",), "valueString")
        ),
        actual_end_time=parse_iso_datetime(
            _extension_value(extensions, ("actual-end",), "valueString")
        ),
        session_number=existing.session_number if existing else session_number,
        status=map_appointment_status(fhir.get("status")),
        session_type=_extract_session_type(fhir),
        notes=fhir.get("comment") or fhir.get("description"),
        fee_amount=safe_float(fee.get("value")) if isinstance(fee, dict) else None,
        fee_currency="AUD",
        is_paid=_extension_value(extensions, ("paid", "payment-status"), "valueBoolean") is True,
    )


def map_appointment_status(fhir_status: str | None) -> SessionStatus:
    """Map a FHIR appointment status onto a session status (default: scheduled)."""
    return _STATUS_MAP.get(fhir_status or "", SessionStatus.SCHEDULED)


def _extract_session_type(fhir: dict) -> str | None:
    for concept in (fhir.get("serviceType") or [])[:1]:
        coding = (concept.get("coding") or [{}])[0]
        if coding.get("display"):
            return coding["display"]
    coding = ((fhir.get("appointmentType") or {}).get("coding") or [{}])[0]
    return coding.get("display")


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


def extract_id_from_reference(reference: str) -> str:
    """``"Patient/12345"`` → ``"12345"``; absolute URLs work too."""
    return reference.rstrip("/").split("/")[-1]


def patient_id_from_appointment(fhir: dict) -> str | None:
    return _participant_id(fhir, "Patient/")


def practitioner_id_from_appointment(fhir: dict) -> str | None:
    return _participant_id(fhir, "Practitioner/")


def practitioner_id_from_patient(fhir: dict) -> str | None:
    """Return the external id of the patient's first practitioner reference."""
    for reference in fhir.get("generalPractitioner") or []:
        value = reference.get("reference") or ""
        if "Practitioner/" in value:
            return extract_id_from_reference(value)
    return None


def _participant_id(fhir: dict, prefix: str) -> str | None:
    for participant in fhir.get("participant") or []:
        reference = (participant.get("actor") or {}).get("reference") or ""
        if reference.startswith(prefix):
            return extract_id_from_reference(reference)
    return None


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------


def _primary_name(fhir: dict) -> dict | None:
    names = fhir.get("name") or []
    return names[0] if names else None


def _first_given(name: dict | None) -> str:
    given = (name or {}).get("given") or []
    return given[0] if given else ""


def _telecom(fhir: dict, system: str) -> str | None:
    for contact in fhir.get("telecom") or []:
        if contact.get("system") == system:
            return contact.get("value")
    return None


def _extension_value(
    extensions: list[dict], url_fragments: tuple[str, ...], value_key: str
) -> Any:
    """Return ``value_key`` of the first extension whose url contains a fragment."""
    for extension in extensions:
        url = (extension.get("url") or "").lower()
        if any(fragment in url for fragment in url_fragments):
            return extension.get(value_key)
    return None
