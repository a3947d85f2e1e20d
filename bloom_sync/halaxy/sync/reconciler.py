"""Scheduled full reconciliation against Halaxy.

Webhooks can be dropped or arrive out of order, so every
``sync_interval_minutes`` the reconciler runs a full sync for each active
practitioner in the local store.  Practitioners are processed one at a
time; a failure for one is recorded and the next still runs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from bloom_sync.halaxy.base import SyncResult
from bloom_sync.halaxy.store import SyncStore
from bloom_sync.halaxy.sync.orchestrator import SyncOrchestrator

logger = logging.getLogger("bloom.halaxy.sync.reconciler")

_JOB_ID = "halaxy_full_reconciliation"


@dataclass
class ReconcileOutcome:
    """Result of reconciling one practitioner.

    Attributes:
        practitioner_id: Halaxy practitioner id.
        result:          SyncResult, or None if the sync raised.
        error:           Failure message when ``result`` is None.
    """

    practitioner_id: str
    result: SyncResult | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.result is not None and self.result.success


class ScheduledReconciler:
    """Run ``full_sync`` for every active practitioner on a fixed interval.

    Usage::

        reconciler = ScheduledReconciler(orchestrator, store, interval_minutes=15)
        await reconciler.start()
        ...
        await reconciler.stop()
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        store: SyncStore,
        interval_minutes: int = 15,
        credentials_configured: bool = True,
    ) -> None:
        self._orchestrator = orchestrator
        self._store = store
        self._interval_minutes = interval_minutes
        self._credentials_configured = credentials_configured
        self.scheduler = AsyncIOScheduler(timezone="UTC")
        self._is_started = False

    @property
    def is_started(self) -> bool:
        return self._is_started

    async def start(self) -> None:
        """Register the reconciliation job and start the scheduler."""
        if self._is_started:
            logger.warning("Halaxy reconciler is already started")
            return

        self.scheduler.add_job(
            self.run_once,
            IntervalTrigger(minutes=self._interval_minutes),
            id=_JOB_ID,
            name="Halaxy full reconciliation",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
            misfire_grace_time=self._interval_minutes * 60,
        )
        self.scheduler.start()
        self._is_started = True
        logger.info(
            "Halaxy reconciler started (every %d minutes)", self._interval_minutes
        )

    async def stop(self) -> None:
        if self._is_started:
            self.scheduler.shutdown(wait=False)
            self._is_started = False
            logger.info("Halaxy reconciler stopped")

    async def run_once(self) -> list[ReconcileOutcome]:
        """Reconcile every active practitioner once.

        Returns:
            One outcome per practitioner, in processing order.  Empty when
            credentials are missing or the practitioner lookup fails.
        """
        if not self._credentials_configured:
            logger.info("Halaxy credentials not configured, skipping reconciliation")
            return []

        try:
            practitioners = await self._store.list_active_practitioners()
        except Exception as exc:
            logger.error("Could not load active practitioners: %s", exc)
            return []

        logger.info("Reconciling %d active practitioner(s)", len(practitioners))
        outcomes: list[ReconcileOutcome] = []
        for practitioner in practitioners:
            try:
                result = await self._orchestrator.full_sync(practitioner.external_id)
            except Exception as exc:
                logger.error(
                    "Reconciliation failed for practitioner %s: %s",
                    practitioner.external_id,
                    exc,
                )
                outcomes.append(
                    ReconcileOutcome(practitioner.external_id, error=str(exc) or type(exc).__name__)
                )
                continue
            outcomes.append(ReconcileOutcome(practitioner.external_id, result=result))

        failed = sum(1 for o in outcomes if not o.success)
        logger.info(
            "Reconciliation finished: %d practitioner(s), %d with errors",
            len(outcomes),
            failed,
        )
        return outcomes
