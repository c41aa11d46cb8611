"""Source descriptor persistence.

``connection_config`` is validated against the source kind on every create
and on any update that touches the kind or the config.
"""

from __future__ import annotations

import logging
from typing import Any

import asyncpg

from calhub.models import Source, SourceKind, validate_connection_config
from calhub.storage.jsonb import decode_jsonb, encode_jsonb

logger = logging.getLogger(__name__)

_SOURCE_COLUMNS = (
    "id, owner_id, name, kind, connection_config, enabled, display_color, created_at, updated_at"
)
_UPDATABLE_FIELDS = frozenset(
    {"owner_id", "name", "kind", "connection_config", "enabled", "display_color"}
)


class SourceNotFoundError(LookupError):
    """Raised when a source id does not exist."""

    def __init__(self, source_id: int) -> None:
        self.source_id = source_id
        super().__init__(f"Source not found: {source_id}")


def _row_to_source(row: asyncpg.Record) -> Source:
    data = dict(row)
    data["connection_config"] = decode_jsonb(data.get("connection_config")) or {}
    return Source.model_validate(data)


class SourceRepository:
    """CRUD access to the ``sources`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def create(
        self,
        *,
        name: str,
        kind: SourceKind | str,
        connection_config: dict[str, Any] | None = None,
        owner_id: str | None = None,
        enabled: bool = True,
        display_color: str | None = None,
    ) -> Source:
        normalized_name = name.strip()
        if not normalized_name:
            raise ValueError("name must be a non-empty string")
        config = validate_connection_config(kind, connection_config)
        row = await self._pool.fetchrow(
            f"""
            INSERT INTO sources (owner_id, name, kind, connection_config, enabled, display_color)
            VALUES ($1, $2, $3, $4::jsonb, $5, $6)
            RETURNING {_SOURCE_COLUMNS}
            """,
            owner_id,
            normalized_name,
            str(SourceKind(kind)),
            encode_jsonb(config),
            enabled,
            display_color,
        )
        source = _row_to_source(row)
        logger.info("Created %s source %s (%s)", source.kind, source.id, source.name)
        return source

    async def get(self, source_id: int) -> Source | None:
        row = await self._pool.fetchrow(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE id = $1",
            source_id,
        )
        return _row_to_source(row) if row is not None else None

    async def require(self, source_id: int) -> Source:
        source = await self.get(source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    async def list_sources(
        self, *, enabled_only: bool = False, owner_id: str | None = None
    ) -> list[Source]:
        clauses: list[str] = []
        args: list[Any] = []
        if enabled_only:
            clauses.append("enabled = true")
        if owner_id is not None:
            args.append(owner_id)
            clauses.append(f"owner_id = ${len(args)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._pool.fetch(
            f"SELECT {_SOURCE_COLUMNS} FROM sources {where} ORDER BY id",
            *args,
        )
        return [_row_to_source(row) for row in rows]

    async def update(self, source_id: int, **fields: Any) -> Source:
        """Apply a partial update; unknown field names raise ``ValueError``."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown source field(s): {', '.join(sorted(unknown))}")

        current = await self.require(source_id)
        if not fields:
            return current

        if "kind" in fields or "connection_config" in fields:
            kind = fields.get("kind", current.kind)
            config = fields.get("connection_config", current.connection_config)
            fields["kind"] = str(SourceKind(kind))
            fields["connection_config"] = validate_connection_config(kind, config)
        if "name" in fields:
            name = str(fields["name"]).strip()
            if not name:
                raise ValueError("name must be a non-empty string")
            fields["name"] = name

        assignments: list[str] = []
        args: list[Any] = [source_id]
        for column, value in fields.items():
            if column == "connection_config":
                args.append(encode_jsonb(value))
                assignments.append(f"{column} = ${len(args)}::jsonb")
            else:
                args.append(value)
                assignments.append(f"{column} = ${len(args)}")

        row = await self._pool.fetchrow(
            f"""
            UPDATE sources
            SET {', '.join(assignments)}, updated_at = now()
            WHERE id = $1
            RETURNING {_SOURCE_COLUMNS}
            """,
            *args,
        )
        if row is None:
            raise SourceNotFoundError(source_id)
        return _row_to_source(row)

    async def set_enabled(self, source_id: int, enabled: bool) -> Source:
        return await self.update(source_id, enabled=enabled)

    async def delete(self, source_id: int) -> bool:
        """Delete a source; its cursor record and events go with it."""
        result = await self._pool.execute("DELETE FROM sources WHERE id = $1", source_id)
        deleted = result.endswith(" 1")
        if deleted:
            logger.info("Deleted source %s", source_id)
        return deleted
