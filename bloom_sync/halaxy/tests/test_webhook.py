"""Tests for Halaxy webhook verification, parsing and the HTTP route."""

from __future__ import annotations

import hashlib
import hmac
import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from bloom_sync.halaxy.sync.orchestrator import SyncOrchestrator
from bloom_sync.halaxy.tests.conftest import FakeSyncStore, fhir_appointment
from bloom_sync.halaxy.webhook import WebhookReceiver, verify_signature
from bloom_sync.routers import webhooks

SECRET = "whsec-test"


def sign(body: bytes, secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def payload(event: str, data: object) -> bytes:
    return json.dumps({"event": event, "data": data}).encode()


class ExplodingOrchestrator:
    async def incremental_sync(self, event_name: str, resource: object) -> None:
        raise RuntimeError("connection pool exhausted: postgres://bloom:secret@db")


@pytest.fixture
def receiver(orchestrator: SyncOrchestrator) -> WebhookReceiver:
    return WebhookReceiver(orchestrator, secret=SECRET)


class TestVerifySignature:
    def test_valid_signature(self) -> None:
        body = b'{"event":"patient.updated"}'
        assert verify_signature(body, sign(body), SECRET) is True

    def test_signature_is_case_and_whitespace_tolerant(self) -> None:
        body = b'{"event":"patient.updated"}'
        assert verify_signature(body, f"  {sign(body).upper()} ", SECRET) is True

    def test_mutated_body_fails(self) -> None:
        body = b'{"event":"patient.updated"}'
        signature = sign(body)
        assert verify_signature(body.replace(b"updated", b"updatex"), signature, SECRET) is False

    def test_wrong_secret_fails(self) -> None:
        body = b"{}"
        assert verify_signature(body, sign(body, "other"), SECRET) is False

    def test_missing_signature_fails(self) -> None:
        assert verify_signature(b"{}", None, SECRET) is False
        assert verify_signature(b"{}", "", SECRET) is False

    def test_non_ascii_signature_fails(self) -> None:
        assert verify_signature(b"{}", "\u00e9" * 64, SECRET) is False


class TestWebhookReceiver:
    @pytest.mark.asyncio
    async def test_bad_signature_is_401(self, receiver: WebhookReceiver) -> None:
        body = payload("appointment.created", {"id": "A1"})
        response = await receiver.handle(body, sign(body + b" "))

        assert response.status_code == 401
        assert response.body == {"success": False, "error": "Invalid webhook signature"}

    @pytest.mark.asyncio
    async def test_non_ascii_signature_is_401(self, receiver: WebhookReceiver) -> None:
        body = payload("appointment.created", {"id": "A1"})
        response = await receiver.handle(body, "\u00e9" * 64)

        assert response.status_code == 401
        assert response.body["error"] == "Invalid webhook signature"

    @pytest.mark.asyncio
    async def test_missing_signature_is_401(self, receiver: WebhookReceiver) -> None:
        response = await receiver.handle(payload("appointment.created", {"id": "A1"}), None)
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_no_secret_skips_verification(
        self, orchestrator: SyncOrchestrator
    ) -> None:
        receiver = WebhookReceiver(orchestrator, secret=None)
        response = await receiver.handle(payload("invoice.paid", {"id": "X"}), None)

        assert receiver.verifies_signatures is False
        assert response.status_code == 200

    @pytest.mark.asyncio
    @pytest.mark.parametrize("body", [b"{not json", b"[1, 2, 3]", b"\xff\xfe"])
    async def test_invalid_json_is_400(self, receiver: WebhookReceiver, body: bytes) -> None:
        response = await receiver.handle(body, sign(body))

        assert response.status_code == 400
        assert response.body["error"] == "Invalid JSON payload"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "document",
        [{"data": {"id": "A1"}}, {"event": "appointment.created"}, {"event": "", "data": {}}],
    )
    async def test_missing_event_or_data_is_400(
        self, receiver: WebhookReceiver, document: dict
    ) -> None:
        body = json.dumps(document).encode()
        response = await receiver.handle(body, sign(body))

        assert response.status_code == 400
        assert response.body["error"] == "Missing event or data"

    @pytest.mark.asyncio
    async def test_appointment_created_for_known_client(
        self, receiver: WebhookReceiver, store: FakeSyncStore
    ) -> None:
        practitioner = store.seed_practitioner()
        client = store.seed_client("P1", practitioner)
        store.seed_session("OLD1", client, 1)
        store.seed_session("OLD2", client, 2)
        body = payload("appointment.created", fhir_appointment("A-new", "P1"))

        response = await receiver.handle(body, sign(body))

        assert response.status_code == 200
        assert response.body["success"] is True
        assert response.body["event"] == "appointment.created"
        assert response.body["recordsProcessed"] == 1
        assert isinstance(response.body["durationMs"], int)
        assert store.sessions["A-new"].session_number == 3

    @pytest.mark.asyncio
    async def test_failed_sync_still_returns_200_with_success_false(
        self, receiver: WebhookReceiver
    ) -> None:
        body = payload("patient.created", {"id": "P-orphan", "resourceType": "Patient"})
        response = await receiver.handle(body, sign(body))

        assert response.status_code == 200
        assert response.body["success"] is False
        assert response.body["recordsProcessed"] == 0

    @pytest.mark.asyncio
    async def test_orchestrator_crash_is_500_without_details(self) -> None:
        receiver = WebhookReceiver(ExplodingOrchestrator(), secret=SECRET)  # type: ignore[arg-type]
        body = payload("appointment.created", {"id": "A1"})

        response = await receiver.handle(body, sign(body))

        assert response.status_code == 500
        assert response.body == {"success": False, "error": "Webhook processing failed"}
        assert "postgres" not in json.dumps(response.body)


class TestWebhookRoute:
    @pytest.fixture
    def http(self, receiver: WebhookReceiver) -> TestClient:
        app = FastAPI()
        app.include_router(webhooks.router, prefix="/api/v1")
        app.state.webhook_receiver = receiver
        return TestClient(app)

    def test_signed_delivery_is_applied(self, http: TestClient, store: FakeSyncStore) -> None:
        store.seed_practitioner()
        body = payload("patient.deleted", {"id": "P-none"})

        response = http.post(
            "/api/v1/webhooks/halaxy",
            content=body,
            headers={"X-Halaxy-Signature": sign(body), "Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True

    def test_legacy_signature_header_is_accepted(self, http: TestClient) -> None:
        body = payload("invoice.paid", {"id": "INV1"})

        response = http.post(
            "/api/v1/webhooks/halaxy",
            content=body,
            headers={"X-Webhook-Signature": sign(body)},
        )

        assert response.status_code == 200

    def test_unsigned_delivery_is_rejected(self, http: TestClient) -> None:
        response = http.post("/api/v1/webhooks/halaxy", content=payload("invoice.paid", {}))

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid webhook signature"

    def test_receiver_missing_is_503(self) -> None:
        app = FastAPI()
        app.include_router(webhooks.router, prefix="/api/v1")

        response = TestClient(app).post("/api/v1/webhooks/halaxy", content=b"{}")

        assert response.status_code == 503
