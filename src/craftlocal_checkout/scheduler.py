"""Background job scheduler for the checkout engine."""
from __future__ import annotations

import logging
from functools import partial
from typing import Any, Awaitable, Callable

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from craftlocal_checkout.settlement import SettlementWorker, run_settlement

logger = logging.getLogger("craftlocal.scheduler")

JobCallable = Callable[[], Awaitable[object] | object]

SETTLEMENT_JOB_ID = "escrow_settlement"


class CheckoutScheduler:
    """Interval job scheduler on APScheduler.

    Jobs coalesce and never overlap within one process. Several processes
    may still run the same job at once; jobs must tolerate that.
    """

    def __init__(self, timezone: str = "UTC"):
        self._started = False
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": 60 * 5,
            },
            timezone=timezone,
        )

    def add_interval_job(
        self,
        func: JobCallable,
        job_id: str,
        *,
        seconds: int = 300,
        **kwargs: Any,
    ) -> None:
        """Register an interval job."""
        self._scheduler.add_job(
            func,
            "interval",
            id=job_id,
            seconds=seconds,
            replace_existing=True,
            **kwargs,
        )
        logger.info("Registered interval job: %s (every %ss)", job_id, seconds)

    def has_job(self, job_id: str) -> bool:
        return self._scheduler.get_job(job_id) is not None

    async def start(self) -> None:
        """Start the scheduler."""
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        logger.info("Scheduler started")

    async def shutdown(self, wait: bool = True) -> None:
        """Stop the scheduler gracefully."""
        if not self._started:
            return
        self._scheduler.shutdown(wait=wait)
        self._started = False
        logger.info("Scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._started and bool(self._scheduler.running)


def register_settlement_job(
    scheduler: CheckoutScheduler,
    worker: SettlementWorker,
    interval_seconds: int = 300,
) -> None:
    """Run the settlement worker every `interval_seconds`."""
    scheduler.add_interval_job(
        partial(run_settlement, worker),
        SETTLEMENT_JOB_ID,
        seconds=interval_seconds,
    )

