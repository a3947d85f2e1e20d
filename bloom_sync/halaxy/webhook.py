"""Halaxy webhook receiver.

Halaxy signs each delivery with a hex HMAC-SHA256 of the raw request body
using the shared webhook secret, sent in ``X-Halaxy-Signature`` (older
integrations use ``X-Webhook-Signature``).

Responses:
    200 - ``{success, event, recordsProcessed, durationMs}``
    400 - body is not a JSON object, or ``event``/``data`` is missing
    401 - signature missing or wrong (only when a secret is configured)
    500 - the sync raised; the body carries a generic message only
"""

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

from bloom_sync.halaxy.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("bloom.halaxy.webhook")

SIGNATURE_HEADERS = ("x-halaxy-signature", "x-webhook-signature")


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any]


def verify_signature(payload: bytes, signature: str | None, secret: str) -> bool:
    """Check a hex HMAC-SHA256 signature over the raw body in constant time.

    Surrounding whitespace and upper-case hex digits are accepted.  Header
    values are compared as bytes, so a non-ASCII signature is simply a
    mismatch.
    """
    if not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest().encode()
    received = signature.strip().lower().encode("utf-8", "replace")
    return hmac.compare_digest(expected, received)


class WebhookReceiver:
    """Verify and apply Halaxy change notifications.

    Args:
        orchestrator: Applies the change via ``incremental_sync``.
        secret:       Shared signing secret; verification is skipped when None.
    """

    def __init__(self, orchestrator: SyncOrchestrator, secret: str | None = None) -> None:
        self._orchestrator = orchestrator
        self._secret = secret or None

    @property
    def verifies_signatures(self) -> bool:
        return self._secret is not None

    async def handle(self, raw_body: bytes, signature: str | None) -> WebhookResponse:
        if self._secret is not None and not verify_signature(raw_body, signature, self._secret):
            logger.warning("Rejected Halaxy webhook with invalid signature")
            return _failure(401, "Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            return _failure(400, "Invalid JSON payload")
        if not isinstance(payload, dict):
            return _failure(400, "Invalid JSON payload")

        event = payload.get("event")
        data = payload.get("data")
        if not event or data is None:
            return _failure(400, "Missing event or data")

        logger.info("Halaxy webhook received: event=%s", event)
        try:
            result = await self._orchestrator.incremental_sync(str(event), data)
        except Exception:
            logger.exception("Halaxy webhook processing failed for event %s", event)
            return _failure(500, "Webhook processing failed")

        return WebhookResponse(
            200,
            {
                "success": result.success,
                "event": event,
                "recordsProcessed": result.records_processed,
                "durationMs": result.duration_ms,
            },
        )


def _failure(status_code: int, message: str) -> WebhookResponse:
    return WebhookResponse(status_code, {"success": False, "error": message})
