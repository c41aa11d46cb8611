"""Event store and sync-result reconciliation.

Each ``SyncResult`` is applied to one source's rows inside a single
transaction:

- unchanged: no event writes
- full refresh: delete every event of the source, then insert the result
- incremental: delete the reported ids, then upsert by ``(source_id, external_id)``

The upsert only touches a row (and ``updated_at``) when a mutable column
actually differs, so re-applying the same result is a no-op.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import asyncpg
from pydantic import BaseModel, ConfigDict

from calhub.models import CalendarEvent, SyncResult
from calhub.storage.jsonb import decode_jsonb, encode_jsonb, strip_nul

logger = logging.getLogger(__name__)

_UPSERT_EVENT_SQL = """
INSERT INTO events (
    source_id, external_id, title, description, location,
    starts_at, ends_at, all_day, status, recurrence_rule, raw
)
VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11::jsonb)
ON CONFLICT (source_id, external_id) DO UPDATE
SET title = EXCLUDED.title,
    description = EXCLUDED.description,
    location = EXCLUDED.location,
    starts_at = EXCLUDED.starts_at,
    ends_at = EXCLUDED.ends_at,
    all_day = EXCLUDED.all_day,
    status = EXCLUDED.status,
    recurrence_rule = EXCLUDED.recurrence_rule,
    raw = EXCLUDED.raw,
    updated_at = now()
WHERE (
    events.title, events.description, events.location, events.starts_at, events.ends_at,
    events.all_day, events.status, events.recurrence_rule, events.raw
) IS DISTINCT FROM (
    EXCLUDED.title, EXCLUDED.description, EXCLUDED.location, EXCLUDED.starts_at,
    EXCLUDED.ends_at, EXCLUDED.all_day, EXCLUDED.status, EXCLUDED.recurrence_rule,
    EXCLUDED.raw
)
"""

_EVENT_COLUMNS = (
    "id, source_id, external_id, title, description, location, starts_at, ends_at, "
    "all_day, status, recurrence_rule, raw, created_at, updated_at"
)


class ReconciliationError(RuntimeError):
    """Raised when a sync result could not be written; nothing was committed."""

    def __init__(self, source_id: int, message: str) -> None:
        self.source_id = source_id
        super().__init__(f"Failed to store events for source {source_id}: {message}")


class ReconcileOutcome(BaseModel):
    """What one reconciliation did to a source's events."""

    model_config = ConfigDict(extra="forbid")

    event_count: int
    upserted: int = 0
    deleted: int = 0
    unchanged: bool = False


class StoredEvent(CalendarEvent):
    """An event as persisted, with store-local identity and timestamps."""

    id: int
    source_id: int
    created_at: datetime
    updated_at: datetime


def _affected_rows(status: str) -> int:
    """Parse the row count from an asyncpg command status such as ``DELETE 3``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


def _event_args(source_id: int, event: CalendarEvent) -> tuple[Any, ...]:
    return (
        source_id,
        strip_nul(event.external_id),
        strip_nul(event.title),
        strip_nul(event.description),
        strip_nul(event.location),
        event.starts_at,
        event.ends_at,
        event.all_day,
        str(event.status),
        strip_nul(event.recurrence_rule),
        encode_jsonb(event.raw),
    )


def _dedupe(events: list[CalendarEvent]) -> list[CalendarEvent]:
    """Keep the last occurrence of each external id, preserving order."""
    by_id: dict[str, CalendarEvent] = {}
    for event in events:
        by_id.pop(event.external_id, None)
        by_id[event.external_id] = event
    return list(by_id.values())


class EventReconciler:
    """Applies sync results to the ``events`` table, atomically per source."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def apply(self, source_id: int, result: SyncResult) -> ReconcileOutcome:
        if result.unchanged:
            return ReconcileOutcome(event_count=await self.count(source_id), unchanged=True)

        events = _dedupe(result.events)
        deleted_ids = sorted({external_id for external_id in result.deleted_ids if external_id})
        try:
            async with self._pool.acquire() as conn:
                async with conn.transaction():
                    if result.full_refresh:
                        status = await conn.execute(
                            "DELETE FROM events WHERE source_id = $1", source_id
                        )
                    elif deleted_ids:
                        status = await conn.execute(
                            "DELETE FROM events "
                            "WHERE source_id = $1 AND external_id = ANY($2::text[])",
                            source_id,
                            deleted_ids,
                        )
                    else:
                        status = "DELETE 0"
                    deleted = _affected_rows(status)

                    if events:
                        await conn.executemany(
                            _UPSERT_EVENT_SQL,
                            [_event_args(source_id, event) for event in events],
                        )

                    event_count = await conn.fetchval(
                        "SELECT count(*) FROM events WHERE source_id = $1", source_id
                    )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise ReconciliationError(source_id, str(exc)) from exc

        logger.debug(
            "Reconciled source %s: full_refresh=%s upserted=%d deleted=%d total=%d",
            source_id,
            result.full_refresh,
            len(events),
            deleted,
            event_count,
        )
        return ReconcileOutcome(event_count=event_count, upserted=len(events), deleted=deleted)

    async def count(self, source_id: int) -> int:
        return await self._pool.fetchval(
            "SELECT count(*) FROM events WHERE source_id = $1", source_id
        )

    async def delete_all(self, source_id: int) -> int:
        try:
            status = await self._pool.execute("DELETE FROM events WHERE source_id = $1", source_id)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
            raise ReconciliationError(source_id, str(exc)) from exc
        return _affected_rows(status)

    async def list_events(
        self,
        *,
        source_id: int | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 500,
    ) -> list[StoredEvent]:
        """Events overlapping ``[start, end)``, ordered by start time."""
        if limit < 1:
            raise ValueError("limit must be at least 1")
        clauses: list[str] = []
        args: list[Any] = []
        if source_id is not None:
            args.append(source_id)
            clauses.append(f"source_id = ${len(args)}")
        if start is not None:
            args.append(start)
            clauses.append(f"COALESCE(ends_at, starts_at) >= ${len(args)}")
        if end is not None:
            args.append(end)
            clauses.append(f"starts_at < ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        args.append(limit)
        rows = await self._pool.fetch(
            f"SELECT {_EVENT_COLUMNS} FROM events {where} "
            f"ORDER BY starts_at, id LIMIT ${len(args)}",
            *args,
        )
        events: list[StoredEvent] = []
        for row in rows:
            data = dict(row)
            data["raw"] = decode_jsonb(data.get("raw"))
            events.append(StoredEvent.model_validate(data))
        return events
