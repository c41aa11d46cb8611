"""Unit tests for calhub.sync: per-source state machine and batch driver."""

from __future__ import annotations

import asyncio

import pytest

from calhub.models import SourceKind, SyncResult, SyncStatus
from calhub.providers import ProviderInitError, TransientFetchError
from calhub.registry import ProviderRegistry
from calhub.storage.events import ReconciliationError
from calhub.sync import (
    SYNC_IN_PROGRESS_REASON,
    SourceDisabledError,
    SourceNotFoundError,
    SyncOrchestrator,
)
from tests.doubles import (
    InMemoryCursorStore,
    InMemoryReconciler,
    InMemorySourceRepository,
    ScriptedProvider,
    make_event,
    make_source,
)

pytestmark = pytest.mark.unit


class _Harness:
    def __init__(self) -> None:
        self.sources = InMemorySourceRepository()
        self.cursors = InMemoryCursorStore(self.sources)
        self.reconciler = InMemoryReconciler()
        self.providers: dict[int, ScriptedProvider] = {}
        self.scripts: dict[int, list[SyncResult | Exception]] = {}
        self.init_errors: dict[int, Exception] = {}
        self.gate: asyncio.Event | None = None
        self.registry = ProviderRegistry(self._factory)
        self.orchestrator = SyncOrchestrator(
            sources=self.sources,  # type: ignore[arg-type]
            cursors=self.cursors,  # type: ignore[arg-type]
            reconciler=self.reconciler,  # type: ignore[arg-type]
            registry=self.registry,
        )

    def _factory(self, source):
        provider = ScriptedProvider(source, self.scripts.setdefault(source.id, []))
        # share the script list so tests can keep appending after creation
        provider.script = self.scripts[source.id]
        provider.gate = self.gate
        init_error = self.init_errors.get(source.id)
        if init_error is not None:

            async def _fail() -> None:
                raise init_error

            provider.initialize = _fail  # type: ignore[method-assign]
        self.providers[source.id] = provider
        return provider

    def add_source(self, source_id: int, *steps: SyncResult | Exception, **kwargs):
        source = self.sources.add(make_source(source_id, **kwargs))
        self.scripts.setdefault(source_id, []).extend(steps)
        return source


@pytest.fixture
def harness() -> _Harness:
    return _Harness()


class TestSyncSource:
    async def test_first_sync_stores_events_and_marks_success(self, harness: _Harness):
        harness.add_source(
            7,
            SyncResult(
                events=[make_event("a"), make_event("b"), make_event("c")],
                validator='"etag-A"',
                full_refresh=True,
            ),
        )

        outcome = await harness.orchestrator.sync_source(7)

        assert outcome.unchanged is False
        assert outcome.events_count == 3
        assert outcome.new_events == 3
        record = harness.cursors.records[7]
        assert record.status == SyncStatus.SUCCESS
        assert record.event_count == 3
        assert record.validator == '"etag-A"'
        assert record.last_error is None
        assert harness.cursors.writes == [("pending", 7), ("success", 7)]

    async def test_not_modified_second_sync_makes_no_event_writes(self, harness: _Harness):
        harness.add_source(
            7,
            SyncResult(
                events=[make_event("a"), make_event("b"), make_event("c")],
                validator='"etag-A"',
                full_refresh=True,
            ),
            SyncResult(unchanged=True, validator='"etag-A"'),
        )
        await harness.orchestrator.sync_source(7)
        writes_after_first = harness.reconciler.write_count

        outcome = await harness.orchestrator.sync_source(7)

        assert outcome.unchanged is True
        assert outcome.events_count == 3
        assert harness.reconciler.write_count == writes_after_first
        assert harness.cursors.records[7].event_count == 3
        assert harness.cursors.records[7].validator == '"etag-A"'
        provider = harness.providers[7]
        assert provider.cursors[1] is not None
        assert provider.cursors[1].validator == '"etag-A"'

    async def test_unchanged_result_without_markers_keeps_previous_cursor(
        self, harness: _Harness
    ):
        harness.add_source(
            1,
            SyncResult(events=[make_event("a")], cursor_token="tok-1"),
            SyncResult(unchanged=True),
        )
        await harness.orchestrator.sync_source(1)
        await harness.orchestrator.sync_source(1)

        assert harness.cursors.records[1].cursor_token == "tok-1"

    async def test_transient_error_preserves_cursor_and_records_error(self, harness: _Harness):
        harness.add_source(
            3,
            SyncResult(events=[make_event("a")], cursor_token="C1", validator="V1"),
            TransientFetchError("upstream timed out"),
        )
        await harness.orchestrator.sync_source(3)

        with pytest.raises(TransientFetchError):
            await harness.orchestrator.sync_source(3)

        record = harness.cursors.records[3]
        assert record.status == SyncStatus.ERROR
        assert record.cursor_token == "C1"
        assert record.validator == "V1"
        assert record.event_count == 1
        assert record.last_error == "upstream timed out"
        assert set(harness.reconciler.for_source(3)) == {"a"}

    async def test_reconciliation_error_is_recorded(self, harness: _Harness):
        harness.add_source(4, SyncResult(events=[make_event("a")], full_refresh=True))
        harness.reconciler.fail_with = ReconciliationError(4, "disk full")

        with pytest.raises(ReconciliationError):
            await harness.orchestrator.sync_source(4)

        assert harness.cursors.records[4].status == SyncStatus.ERROR
        assert "disk full" in (harness.cursors.records[4].last_error or "")

    async def test_incremental_result_applies_deletions(self, harness: _Harness):
        harness.add_source(
            2,
            SyncResult(events=[make_event("a"), make_event("b")], cursor_token="t1"),
            SyncResult(
                events=[make_event("c")], deleted_ids=["a"], cursor_token="t2"
            ),
            kind=SourceKind.GOOGLE,
        )
        await harness.orchestrator.sync_source(2)

        outcome = await harness.orchestrator.sync_source(2)

        assert outcome.new_events == 1
        assert outcome.deleted_events == 1
        assert outcome.events_count == 2
        assert set(harness.reconciler.for_source(2)) == {"b", "c"}
        assert harness.providers[2].cursors[1].cursor_token == "t1"
        assert harness.cursors.records[2].cursor_token == "t2"

    async def test_unknown_source_raises_not_found(self, harness: _Harness):
        with pytest.raises(SourceNotFoundError):
            await harness.orchestrator.sync_source(404)

    async def test_disabled_source_raises(self, harness: _Harness):
        harness.add_source(5, enabled=False)

        with pytest.raises(SourceDisabledError):
            await harness.orchestrator.sync_source(5)
        assert harness.cursors.writes == []

    async def test_init_failure_is_recorded_and_retried_next_time(self, harness: _Harness):
        harness.add_source(6, SyncResult(events=[make_event("a")], full_refresh=True))
        harness.init_errors[6] = ProviderInitError("no credential linked")

        with pytest.raises(ProviderInitError):
            await harness.orchestrator.sync_source(6)
        assert harness.cursors.records[6].last_error == "no credential linked"
        assert len(harness.registry) == 0

        del harness.init_errors[6]
        outcome = await harness.orchestrator.sync_source(6)
        assert outcome.events_count == 1


class TestSyncAll:
    async def test_one_failing_source_does_not_abort_batch(self, harness: _Harness):
        harness.add_source(1, TransientFetchError("boom"))
        harness.add_source(2, SyncResult(events=[make_event("x")], full_refresh=True))

        result = await harness.orchestrator.sync_all()

        assert result.skipped is False
        assert [failure.source_id for failure in result.failed] == [1]
        assert result.failed[0].error == "boom"
        assert result.failed[0].source_name == "Source 1"
        assert [outcome.source_id for outcome in result.success] == [2]
        assert set(harness.reconciler.for_source(2)) == {"x"}
        assert result.completed_at is not None
        assert result.completed_at >= result.started_at

    async def test_disabled_sources_are_not_synced(self, harness: _Harness):
        harness.add_source(1, enabled=False)
        harness.add_source(2, SyncResult(events=[], full_refresh=True))

        result = await harness.orchestrator.sync_all()

        assert [outcome.source_id for outcome in result.success] == [2]
        assert 1 not in harness.cursors.records

    async def test_sources_run_in_id_order(self, harness: _Harness):
        order: list[int] = []
        for source_id in (3, 1, 2):
            harness.add_source(source_id, SyncResult(full_refresh=True))

        original = harness.registry.sync_source

        async def _tracking(source, cursor):
            order.append(source.id)
            return await original(source, cursor)

        harness.registry.sync_source = _tracking  # type: ignore[method-assign]
        await harness.orchestrator.sync_all()

        assert order == [1, 2, 3]

    async def test_concurrent_call_is_skipped_without_touching_cursors(
        self, harness: _Harness
    ):
        harness.add_source(1, SyncResult(full_refresh=True))
        gate = asyncio.Event()
        harness.gate = gate
        first = asyncio.create_task(harness.orchestrator.sync_all())
        # let the first batch run until the provider blocks on the gate
        while 1 not in harness.providers or not harness.providers[1].cursors:
            await asyncio.sleep(0)
        assert harness.orchestrator.is_running is True
        writes_before = list(harness.cursors.writes)

        skipped = await harness.orchestrator.sync_all()

        assert skipped.skipped is True
        assert skipped.reason == SYNC_IN_PROGRESS_REASON
        assert skipped.success == [] and skipped.failed == []
        assert harness.cursors.writes == writes_before

        gate.set()
        completed = await first
        assert completed.skipped is False
        assert harness.orchestrator.is_running is False

    async def test_flag_cleared_when_batch_raises(self, harness: _Harness):
        async def _explode(**kwargs):
            raise RuntimeError("listing failed")

        harness.sources.list_sources = _explode  # type: ignore[method-assign]

        with pytest.raises(RuntimeError):
            await harness.orchestrator.sync_all()
        assert harness.orchestrator.is_running is False


class TestForceResync:
    async def test_force_resync_clears_state_and_refetches(self, harness: _Harness):
        harness.add_source(
            8,
            SyncResult(events=[make_event("a"), make_event("b")], cursor_token="t1"),
            SyncResult(events=[make_event("c")], cursor_token="t-new", full_refresh=True),
            kind=SourceKind.GOOGLE,
        )
        await harness.orchestrator.sync_source(8)
        first_provider = harness.providers[8]

        outcome = await harness.orchestrator.force_resync(8)

        assert first_provider.shutdowns == 1
        new_provider = harness.providers[8]
        assert new_provider is not first_provider
        assert new_provider.cursors[-1] is not None
        assert new_provider.cursors[-1].is_empty
        assert outcome.events_count == 1
        assert set(harness.reconciler.for_source(8)) == {"c"}
        assert harness.cursors.records[8].cursor_token == "t-new"
        assert ("reset", 8) in harness.cursors.writes

    async def test_force_resync_of_disabled_source_is_rejected(self, harness: _Harness):
        harness.add_source(9, enabled=False)

        with pytest.raises(SourceDisabledError):
            await harness.orchestrator.force_resync(9)


class TestSyncStatus:
    async def test_status_lists_never_synced_sources(self, harness: _Harness):
        harness.add_source(1, SyncResult(events=[make_event("a")], full_refresh=True))
        harness.add_source(2)
        await harness.orchestrator.sync_source(1)

        statuses = await harness.orchestrator.get_sync_status()

        assert [status.source_id for status in statuses] == [1, 2]
        assert statuses[0].status == SyncStatus.SUCCESS
        assert statuses[0].event_count == 1
        assert statuses[1].status is None
        assert statuses[1].event_count == 0
