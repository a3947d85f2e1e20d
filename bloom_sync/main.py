"""Bloom Sync API: FastAPI application entry point.

Run locally:
    uvicorn bloom_sync.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
from fastapi import FastAPI

from bloom_sync.config import get_settings
from bloom_sync.halaxy.client import HalaxyClient
from bloom_sync.halaxy.config_loader import get_sync_config
from bloom_sync.halaxy.rate_limiter import SlidingWindowRateLimiter
from bloom_sync.halaxy.store import PostgresSyncStore
from bloom_sync.halaxy.sync.audit import SyncAuditLog
from bloom_sync.halaxy.sync.orchestrator import SyncOrchestrator
from bloom_sync.halaxy.sync.reconciler import ScheduledReconciler
from bloom_sync.halaxy.token_manager import HalaxyTokenManager
from bloom_sync.halaxy.webhook import WebhookReceiver
from bloom_sync.routers import health, sync, webhooks
from bloom_sync.services.database import close_pool, init_pool

# ---------- Logging ----------

logging.basicConfig(
    level=get_settings().log_level.upper(),
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("bloom")


# ---------- Lifespan ----------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Startup / shutdown hooks.

    Builds the sync services once and exposes them on ``app.state``.
    """
    settings = get_settings()
    sync_config = get_sync_config()
    logger.info(
        "Starting Bloom Sync API v%s [%s]",
        settings.app_version,
        settings.environment,
    )

    pool = await init_pool(settings)
    http_client = httpx.AsyncClient()

    store = PostgresSyncStore(pool)
    tokens = HalaxyTokenManager.from_settings(
        settings,
        expiry_buffer_seconds=sync_config.token.expiry_buffer_seconds,
        http_client=http_client,
    )
    limiter = SlidingWindowRateLimiter(
        settings.halaxy_max_requests_per_minute,
        window_seconds=sync_config.rate_limit.window_seconds,
    )
    client = HalaxyClient(tokens, limiter, http_client=http_client, config=sync_config)
    orchestrator = SyncOrchestrator(client, store, SyncAuditLog(store), sync_config)
    reconciler = ScheduledReconciler(
        orchestrator,
        store,
        interval_minutes=settings.sync_interval_minutes,
        credentials_configured=settings.has_halaxy_credentials,
    )

    if not settings.halaxy_webhook_secret and settings.environment != "development":
        logger.warning(
            "HALAXY_WEBHOOK_SECRET is not set, webhook signatures will not be verified"
        )
    if not settings.has_halaxy_credentials:
        logger.warning("Halaxy credentials are not configured, sync is disabled")

    app.state.orchestrator = orchestrator
    app.state.webhook_receiver = WebhookReceiver(orchestrator, settings.halaxy_webhook_secret)
    app.state.reconciler = reconciler

    if settings.sync_scheduler_enabled:
        await reconciler.start()

    yield

    await reconciler.stop()
    await http_client.aclose()
    await close_pool()
    logger.info("Bloom Sync API shut down")


# ---------- App factory ----------

def create_app() -> FastAPI:
    settings = get_settings()

    app = FastAPI(
        title="Bloom Sync API",
        description="Mirrors Halaxy practitioners, patients and appointments into Bloom.",
        version=settings.app_version,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # ---------- Health check (outside v1 prefix, always at /health) ----------
    app.include_router(health.router)

    # ---------- API v1 routes ----------
    v1_prefix = "/api/v1"

    app.include_router(webhooks.router, prefix=v1_prefix)
    app.include_router(sync.router, prefix=v1_prefix)

    return app


app = create_app()
