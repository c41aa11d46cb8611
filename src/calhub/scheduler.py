"""Cron-driven periodic trigger for ``SyncOrchestrator.sync_all``.

The scheduler only decides *when* to fire.  Overlap protection lives in the
orchestrator: a tick that lands while a batch (manual or scheduled) is still
running comes back skipped and is logged, not retried.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from croniter import croniter

from calhub.sync import BatchResult

logger = logging.getLogger(__name__)

DEFAULT_SYNC_CRON = "*/15 * * * *"

SyncTrigger = Callable[[], Awaitable[BatchResult]]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def next_run_after(cron: str, anchor: datetime) -> datetime:
    """Next occurrence of ``cron`` strictly after ``anchor`` (UTC)."""
    next_run = croniter(cron, anchor).get_next(datetime)
    if next_run.tzinfo is None:
        next_run = next_run.replace(tzinfo=UTC)
    return next_run


class SyncScheduler:
    """Runs a sync trigger on a cron cadence until stopped."""

    def __init__(
        self,
        trigger: SyncTrigger,
        *,
        cron: str = DEFAULT_SYNC_CRON,
        run_on_startup: bool = True,
        clock: Clock = _utcnow,
    ) -> None:
        if not croniter.is_valid(cron):
            raise ValueError(f"Invalid cron expression: {cron!r}")
        self._trigger = trigger
        self._cron = cron
        self._run_on_startup = run_on_startup
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopped = asyncio.Event()
        self.runs = 0
        self.skipped = 0

    @property
    def cron(self) -> str:
        return self._cron

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopped.clear()
        self._task = asyncio.create_task(self._loop(), name="calhub-sync-scheduler")
        logger.info("Sync scheduler started (cron=%s)", self._cron)

    async def stop(self) -> None:
        self._stopped.set()
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Sync scheduler stopped")

    async def run_once(self) -> BatchResult | None:
        """Fire the trigger now; returns ``None`` when the trigger itself failed."""
        self.runs += 1
        try:
            result = await self._trigger()
        except Exception:
            logger.exception("Scheduled sync raised unexpectedly")
            return None
        if result.skipped:
            self.skipped += 1
            logger.info("Scheduled sync skipped: %s", result.reason)
        else:
            logger.info(
                "Scheduled sync complete: %d succeeded, %d failed",
                len(result.success),
                len(result.failed),
            )
        return result

    async def _loop(self) -> None:
        if self._run_on_startup:
            await self.run_once()
        while not self._stopped.is_set():
            now = self._clock()
            next_run = next_run_after(self._cron, now)
            delay = max(0.0, (next_run - now).total_seconds())
            logger.debug("Next scheduled sync at %s", next_run.isoformat())
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=delay)
            except TimeoutError:
                await self.run_once()
