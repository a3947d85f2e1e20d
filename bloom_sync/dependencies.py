"""Shared FastAPI dependencies injected into route handlers.

The sync services are built once in the application lifespan and stored on
``app.state``; these helpers hand them to routes.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import Depends, HTTPException, Request

from bloom_sync.config import Settings, get_settings
from bloom_sync.halaxy.sync.orchestrator import SyncOrchestrator
from bloom_sync.halaxy.sync.reconciler import ScheduledReconciler
from bloom_sync.halaxy.webhook import WebhookReceiver


def _service(request: Request, name: str) -> Any:
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(status_code=503, detail="Sync services are not initialized")
    return service


def get_orchestrator(request: Request) -> SyncOrchestrator:
    return _service(request, "orchestrator")


def get_webhook_receiver(request: Request) -> WebhookReceiver:
    return _service(request, "webhook_receiver")


def get_reconciler(request: Request) -> ScheduledReconciler:
    return _service(request, "reconciler")


def require_halaxy_credentials(settings: Annotated[Settings, Depends(get_settings)]) -> None:
    """Reject operator sync requests while Halaxy credentials are unset."""
    if not settings.has_halaxy_credentials:
        raise HTTPException(status_code=503, detail="Halaxy credentials are not configured")


# Annotated shortcuts for route signatures
Orchestrator = Annotated[SyncOrchestrator, Depends(get_orchestrator)]
Receiver = Annotated[WebhookReceiver, Depends(get_webhook_receiver)]
Reconciler = Annotated[ScheduledReconciler, Depends(get_reconciler)]
AppSettings = Annotated[Settings, Depends(get_settings)]
