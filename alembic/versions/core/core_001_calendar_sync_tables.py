"""calendar sync baseline

Revision ID: core_001
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the source registry, normalized event store, per-source sync cursor
records and the OAuth token store.
"""

from __future__ import annotations

from alembic import op

# revision identifiers, used by Alembic.
revision = "core_001"
down_revision = None
branch_labels = ("core",)
depends_on = None

_SOURCE_KINDS = ("remote-oauth-a", "remote-oauth-b", "remote-http-feed", "local-file-feed")
_EVENT_STATUSES = ("confirmed", "tentative", "cancelled")
_SYNC_STATUSES = ("pending", "success", "error")


def _in_list(values: tuple[str, ...]) -> str:
    return ", ".join(f"'{value}'" for value in values)


def upgrade() -> None:
    op.execute(
        f"""
        CREATE TABLE IF NOT EXISTS sources (
            id BIGSERIAL PRIMARY KEY,
            owner_id TEXT,
            name TEXT NOT NULL,
            kind TEXT NOT NULL CHECK (kind IN ({_in_list(_SOURCE_KINDS)})),
            connection_config JSONB NOT NULL DEFAULT '{{}}'::jsonb,
            enabled BOOLEAN NOT NULL DEFAULT true,
            display_color TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
        """
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_sources_owner ON sources (owner_id)")

    op.execute(
        f"""
        CREATE TABLE IF NOT EXISTS events (
            id BIGSERIAL PRIMARY KEY,
            source_id BIGINT NOT NULL REFERENCES sources (id) ON DELETE CASCADE,
            external_id TEXT NOT NULL,
            title TEXT,
            description TEXT,
            location TEXT,
            starts_at TIMESTAMPTZ NOT NULL,
            ends_at TIMESTAMPTZ,
            all_day BOOLEAN NOT NULL DEFAULT false,
            status TEXT NOT NULL DEFAULT 'confirmed'
                CHECK (status IN ({_in_list(_EVENT_STATUSES)})),
            recurrence_rule TEXT,
            raw JSONB,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT uq_events_source_external UNIQUE (source_id, external_id)
        )
        """
    )
    op.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_source_start ON events (source_id, starts_at)"
    )
    op.execute("CREATE INDEX IF NOT EXISTS idx_events_starts_at ON events (starts_at)")

    op.execute(
        f"""
        CREATE TABLE IF NOT EXISTS sync_cursors (
            source_id BIGINT PRIMARY KEY REFERENCES sources (id) ON DELETE CASCADE,
            cursor_token TEXT,
            validator TEXT,
            last_sync_at TIMESTAMPTZ,
            status TEXT NOT NULL DEFAULT 'pending'
                CHECK (status IN ({_in_list(_SYNC_STATUSES)})),
            last_error TEXT,
            event_count INTEGER NOT NULL DEFAULT 0 CHECK (event_count >= 0),
            CONSTRAINT ck_sync_cursors_error_message
                CHECK (status <> 'error' OR last_error IS NOT NULL)
        )
        """
    )

    op.execute(
        """
        CREATE TABLE IF NOT EXISTS oauth_tokens (
            account TEXT NOT NULL,
            provider TEXT NOT NULL,
            access_token TEXT,
            refresh_token TEXT,
            expires_at TIMESTAMPTZ,
            token_type TEXT NOT NULL DEFAULT 'Bearer',
            scope TEXT,
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            PRIMARY KEY (account, provider)
        )
        """
    )


def downgrade() -> None:
    op.execute("DROP TABLE IF EXISTS oauth_tokens")
    op.execute("DROP TABLE IF EXISTS sync_cursors")
    op.execute("DROP TABLE IF EXISTS events")
    op.execute("DROP TABLE IF EXISTS sources")
