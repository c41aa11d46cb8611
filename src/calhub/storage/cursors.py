"""Per-source sync cursor records.

Only the orchestrator writes here. Failed attempts update ``status`` and
``last_error`` but leave ``cursor_token``, ``validator`` and ``event_count``
exactly as the last successful sync left them.
"""

from __future__ import annotations

import logging

import asyncpg

from calhub.models import SourceSyncStatus, SyncCursorRecord

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

_CURSOR_COLUMNS = (
    "source_id, cursor_token, validator, last_sync_at, status, last_error, event_count"
)


class SyncCursorStore:
    """Read/write access to the ``sync_cursors`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def load(self, source_id: int) -> SyncCursorRecord | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CURSOR_COLUMNS} FROM sync_cursors WHERE source_id = $1",
            source_id,
        )
        return SyncCursorRecord.model_validate(dict(row)) if row is not None else None

    async def mark_pending(self, source_id: int) -> None:
        """Record an in-flight attempt, creating the record on first sync."""
        await self._pool.execute(
            """
            INSERT INTO sync_cursors (source_id, status)
            VALUES ($1, 'pending')
            ON CONFLICT (source_id) DO UPDATE
            SET status = 'pending'
            """,
            source_id,
        )

    async def mark_success(
        self,
        source_id: int,
        *,
        cursor_token: str | None,
        validator: str | None,
        event_count: int,
    ) -> None:
        await self._pool.execute(
            """
            INSERT INTO sync_cursors
                (source_id, cursor_token, validator, last_sync_at, status, last_error, event_count)
            VALUES ($1, $2, $3, now(), 'success', NULL, $4)
            ON CONFLICT (source_id) DO UPDATE
            SET cursor_token = EXCLUDED.cursor_token,
                validator = EXCLUDED.validator,
                last_sync_at = EXCLUDED.last_sync_at,
                status = 'success',
                last_error = NULL,
                event_count = EXCLUDED.event_count
            """,
            source_id,
            cursor_token,
            validator,
            event_count,
        )

    async def mark_error(self, source_id: int, error: str) -> None:
        message = (error or "").strip() or "unknown error"
        await self._pool.execute(
            """
            INSERT INTO sync_cursors (source_id, status, last_error)
            VALUES ($1, 'error', $2)
            ON CONFLICT (source_id) DO UPDATE
            SET status = 'error',
                last_error = EXCLUDED.last_error
            """,
            source_id,
            message[:MAX_ERROR_LENGTH],
        )

    async def reset(self, source_id: int) -> None:
        """Forget the cursor token and validator so the next sync starts fresh."""
        await self._pool.execute(
            """
            INSERT INTO sync_cursors (source_id, status)
            VALUES ($1, 'pending')
            ON CONFLICT (source_id) DO UPDATE
            SET cursor_token = NULL,
                validator = NULL,
                status = 'pending'
            """,
            source_id,
        )
        logger.info("Reset sync cursor for source %s", source_id)

    async def list_statuses(self) -> list[SourceSyncStatus]:
        """Status for every source, including ones that have never synced."""
        rows = await self._pool.fetch(
            """
            SELECT s.id AS source_id,
                   s.name AS source_name,
                   s.kind AS source_kind,
                   s.enabled,
                   c.cursor_token,
                   c.validator,
                   c.last_sync_at,
                   c.status,
                   c.last_error,
                   COALESCE(c.event_count, 0) AS event_count
            FROM sources s
            LEFT JOIN sync_cursors c ON c.source_id = s.id
            ORDER BY s.id
            """
        )
        return [SourceSyncStatus.model_validate(dict(row)) for row in rows]
