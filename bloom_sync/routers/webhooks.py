"""Halaxy webhook endpoint.

Halaxy posts change notifications to ``/api/v1/webhooks/halaxy``.  The
route reads the exact raw body (the signature covers those bytes) and
delegates to ``WebhookReceiver``.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from bloom_sync.dependencies import Receiver
from bloom_sync.halaxy.webhook import SIGNATURE_HEADERS

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/halaxy")
async def halaxy_webhook(request: Request, receiver: Receiver) -> JSONResponse:
    """Handle Halaxy appointment, patient and practitioner events."""
    body = await request.body()
    signature = next(
        (request.headers[h] for h in SIGNATURE_HEADERS if h in request.headers),
        None,
    )
    response = await receiver.handle(body, signature)
    return JSONResponse(status_code=response.status_code, content=response.body)
