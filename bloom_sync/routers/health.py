"""Health check endpoint, public."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Request

from bloom_sync.config import get_settings
from bloom_sync.services.database import get_pool

router = APIRouter(tags=["system"])
logger = logging.getLogger("bloom.health")


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness probe. Returns 200 if the API process is up.

    Also performs a lightweight DB connectivity check and reports whether
    the Halaxy reconciler is running.
    """
    settings = get_settings()
    db_ok = False
    try:
        pool = get_pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        db_ok = True
    except Exception as exc:
        logger.warning("Health check DB probe failed: %s", exc)

    reconciler = getattr(request.app.state, "reconciler", None)
    return {
        "status": "healthy" if db_ok else "degraded",
        "version": settings.app_version,
        "environment": settings.environment,
        "database": "connected" if db_ok else "unreachable",
        "halaxy_credentials": settings.has_halaxy_credentials,
        "reconciler": "running" if reconciler and reconciler.is_started else "stopped",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
