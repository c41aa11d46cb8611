"""Sync orchestration: drives each source through pending -> success | error.

``SyncOrchestrator.sync_all`` runs every enabled source sequentially behind a
single-flight flag; a call that arrives while a batch is running is rejected
with a skipped result instead of queueing.  Per-source failures are recorded on
the source's cursor record and collected into the batch result, never raised
out of the batch loop.

``sync_source`` and ``force_resync`` are out-of-band entry points that bypass
the single-flight flag.  All three paths take a per-source lock so a forced
resync cannot interleave with a batch sync of the same source.
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import UTC, datetime

from pydantic import BaseModel, ConfigDict, Field

from calhub.core.logging import source_context
from calhub.core.metrics import SyncMetrics
from calhub.core.telemetry import sync_span
from calhub.models import Source, SourceSyncStatus, SyncCursorRecord, SyncResult
from calhub.registry import ProviderRegistry
from calhub.storage.cursors import SyncCursorStore
from calhub.storage.events import EventReconciler
from calhub.storage.sources import SourceNotFoundError, SourceRepository

logger = logging.getLogger(__name__)

SYNC_IN_PROGRESS_REASON = "Sync already in progress"

__all__ = [
    "SYNC_IN_PROGRESS_REASON",
    "BatchResult",
    "SourceDisabledError",
    "SourceFailure",
    "SourceNotFoundError",
    "SourceSyncOutcome",
    "SyncOrchestrator",
]


class SourceDisabledError(RuntimeError):
    """Raised when a single-source sync targets a disabled source."""

    def __init__(self, source_id: int) -> None:
        self.source_id = source_id
        super().__init__(f"Calendar source {source_id} is disabled")


class SourceSyncOutcome(BaseModel):
    """Result of syncing one source."""

    model_config = ConfigDict(extra="forbid")

    source_id: int
    unchanged: bool
    events_count: int
    new_events: int = 0
    deleted_events: int = 0


class SourceFailure(BaseModel):
    model_config = ConfigDict(extra="forbid")

    source_id: int
    source_name: str
    error: str


class BatchResult(BaseModel):
    """Summary of one ``sync_all`` run."""

    model_config = ConfigDict(extra="forbid")

    success: list[SourceSyncOutcome] = Field(default_factory=list)
    failed: list[SourceFailure] = Field(default_factory=list)
    skipped: bool = False
    reason: str | None = None
    started_at: datetime
    completed_at: datetime | None = None


def _describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or type(exc).__name__


class SyncOrchestrator:
    """Coordinates providers, the event reconciler and cursor bookkeeping."""

    def __init__(
        self,
        *,
        sources: SourceRepository,
        cursors: SyncCursorStore,
        reconciler: EventReconciler,
        registry: ProviderRegistry,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._sources = sources
        self._cursors = cursors
        self._reconciler = reconciler
        self._registry = registry
        self._metrics = metrics or SyncMetrics()
        self._batch_running = False
        self._source_locks: dict[int, asyncio.Lock] = {}

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def is_running(self) -> bool:
        return self._batch_running

    # ------------------------------------------------------------------
    # Batch path
    # ------------------------------------------------------------------

    async def sync_all(self) -> BatchResult:
        """Sync every enabled source, one at a time, in id order."""
        started_at = datetime.now(UTC)
        if self._batch_running:
            logger.info("Sync batch requested while another is running; skipping")
            return BatchResult(
                skipped=True,
                reason=SYNC_IN_PROGRESS_REASON,
                started_at=started_at,
                completed_at=started_at,
            )

        self._batch_running = True
        try:
            result = BatchResult(started_at=started_at)
            with sync_span("batch") as span:
                sources = await self._sources.list_sources(enabled_only=True)
                span.set_attribute("batch.source_count", len(sources))
                for source in sources:
                    try:
                        outcome = await self._sync_locked(source)
                    except Exception as exc:
                        logger.warning(
                            "Sync failed for source %s (%s): %s",
                            source.id,
                            source.name,
                            _describe_error(exc),
                        )
                        result.failed.append(
                            SourceFailure(
                                source_id=source.id,
                                source_name=source.name,
                                error=_describe_error(exc),
                            )
                        )
                    else:
                        result.success.append(outcome)
                span.set_attribute("batch.succeeded", len(result.success))
                span.set_attribute("batch.failed", len(result.failed))

            result.completed_at = datetime.now(UTC)
            logger.info(
                "Sync batch finished: %d succeeded, %d failed",
                len(result.success),
                len(result.failed),
            )
            return result
        finally:
            self._batch_running = False

    # ------------------------------------------------------------------
    # Out-of-band paths
    # ------------------------------------------------------------------

    async def sync_source(self, source_id: int) -> SourceSyncOutcome:
        """Sync one source now, regardless of a running batch.

        Raises:
            SourceNotFoundError: No source has this id.
            SourceDisabledError: The source exists but is disabled.
        """
        source = await self._require_enabled(source_id)
        return await self._sync_locked(source)

    async def force_resync(self, source_id: int) -> SourceSyncOutcome:
        """Drop the cursor, the cached provider and every event, then sync from scratch."""
        source = await self._require_enabled(source_id)
        async with self._lock_for(source.id):
            with source_context(source.id):
                logger.info("Forcing full resync of source %s (%s)", source.id, source.name)
                await self._cursors.reset(source.id)
                await self._registry.clear_provider(source)
                deleted = await self._reconciler.delete_all(source.id)
                logger.info("Cleared %d events for source %s", deleted, source.id)
                return await self._run_source(source)

    async def get_sync_status(self) -> list[SourceSyncStatus]:
        return await self._cursors.list_statuses()

    async def shutdown(self) -> None:
        await self._registry.clear_all()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_enabled(self, source_id: int) -> Source:
        source = await self._sources.require(source_id)
        if not source.enabled:
            raise SourceDisabledError(source_id)
        return source

    def _lock_for(self, source_id: int) -> asyncio.Lock:
        return self._source_locks.setdefault(source_id, asyncio.Lock())

    async def _sync_locked(self, source: Source) -> SourceSyncOutcome:
        async with self._lock_for(source.id):
            with source_context(source.id):
                return await self._run_source(source)

    async def _run_source(self, source: Source) -> SourceSyncOutcome:
        """Run the per-source state machine; errors are recorded and re-raised."""
        kind = str(source.kind)
        started = time.perf_counter()
        with sync_span("source", **{"source.id": source.id, "source.kind": kind}) as span:
            try:
                record = await self._cursors.load(source.id)
                await self._cursors.mark_pending(source.id)

                cursor = record.to_cursor() if record is not None else None
                result = await self._registry.sync_source(source, cursor)
                outcome = await self._reconciler.apply(source.id, result)

                cursor_token, validator = _next_cursor(result, record)
                await self._cursors.mark_success(
                    source.id,
                    cursor_token=cursor_token,
                    validator=validator,
                    event_count=outcome.event_count,
                )
            except Exception as exc:
                await self._record_error(source, exc)
                self._metrics.record_run(
                    kind=kind, outcome="error", duration_ms=_elapsed_ms(started)
                )
                raise

            span.set_attribute("sync.unchanged", result.unchanged)
            span.set_attribute("sync.full_refresh", result.full_refresh)
            span.set_attribute("sync.event_count", outcome.event_count)

        self._metrics.record_run(
            kind=kind,
            outcome="unchanged" if result.unchanged else "success",
            duration_ms=_elapsed_ms(started),
        )
        self._metrics.record_applied(
            kind=kind, upserted=outcome.upserted, deleted=outcome.deleted
        )
        logger.info(
            "Synced source %s (%s): unchanged=%s full_refresh=%s events=%d deleted=%d total=%d",
            source.id,
            kind,
            result.unchanged,
            result.full_refresh,
            len(result.events),
            len(result.deleted_ids),
            outcome.event_count,
        )
        return SourceSyncOutcome(
            source_id=source.id,
            unchanged=result.unchanged,
            events_count=outcome.event_count,
            new_events=len(result.events),
            deleted_events=len(result.deleted_ids),
        )

    async def _record_error(self, source: Source, exc: Exception) -> None:
        try:
            await self._cursors.mark_error(source.id, _describe_error(exc))
        except Exception:
            logger.exception("Failed to record sync error for source %s", source.id)


def _next_cursor(
    result: SyncResult, previous: SyncCursorRecord | None
) -> tuple[str | None, str | None]:
    """Cursor values to persist after a successful attempt.

    An unchanged result may omit markers it did not move; those fall back to
    the values stored before the attempt.
    """
    if not result.unchanged or previous is None:
        return result.cursor_token, result.validator
    return (
        result.cursor_token if result.cursor_token is not None else previous.cursor_token,
        result.validator if result.validator is not None else previous.validator,
    )


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
