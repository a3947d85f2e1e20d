"""Operator endpoints: trigger syncs manually and inspect sync health."""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict
from typing import Any

from fastapi import APIRouter, Depends, HTTPException

from bloom_sync.dependencies import Orchestrator, Reconciler, require_halaxy_credentials
from bloom_sync.halaxy.client import HalaxyError
from bloom_sync.models.sync import (
    PractitionerSyncRead,
    SyncResultRead,
    SyncRunRead,
    SyncStatusRead,
)

router = APIRouter(prefix="/sync", tags=["sync"])
logger = logging.getLogger("bloom.sync")

_credentials = [Depends(require_halaxy_credentials)]


@router.post(
    "/practitioners/{halaxy_practitioner_id}",
    response_model=SyncResultRead,
    dependencies=_credentials,
)
async def sync_practitioner(halaxy_practitioner_id: str, orchestrator: Orchestrator) -> Any:
    """Run a full sync for one Halaxy practitioner."""
    result = await orchestrator.full_sync(halaxy_practitioner_id)
    return asdict(result)


@router.post("/all", response_model=SyncRunRead, dependencies=_credentials)
async def sync_all(orchestrator: Orchestrator) -> Any:
    """Full-sync every active practitioner listed in Halaxy."""
    try:
        results = await orchestrator.sync_all_practitioners()
    except HalaxyError as exc:
        logger.error("Could not list Halaxy practitioners: %s", exc)
        raise HTTPException(status_code=502, detail="Could not list Halaxy practitioners")

    return _summary(
        [
            PractitionerSyncRead(
                practitioner_id=external_id,
                success=result.success,
                result=SyncResultRead.model_validate(asdict(result)),
            )
            for external_id, result in results
        ]
    )


@router.post("/run", response_model=SyncRunRead, dependencies=_credentials)
async def run_reconciler(reconciler: Reconciler) -> Any:
    """Run one reconciliation pass over the locally active practitioners."""
    outcomes = await reconciler.run_once()
    return _summary(
        [
            PractitionerSyncRead(
                practitioner_id=outcome.practitioner_id,
                success=outcome.success,
                result=(
                    SyncResultRead.model_validate(asdict(outcome.result))
                    if outcome.result
                    else None
                ),
                error=outcome.error,
            )
            for outcome in outcomes
        ]
    )


@router.get("/status/{practitioner_id}", response_model=SyncStatusRead)
async def sync_status(practitioner_id: uuid.UUID, orchestrator: Orchestrator) -> Any:
    """Derive sync health for a local practitioner from the sync log."""
    report = await orchestrator.sync_status(practitioner_id)
    return asdict(report)


def _summary(results: list[PractitionerSyncRead]) -> SyncRunRead:
    succeeded = sum(1 for r in results if r.success)
    return SyncRunRead(
        practitioners=len(results),
        succeeded=succeeded,
        failed=len(results) - succeeded,
        results=results,
    )
