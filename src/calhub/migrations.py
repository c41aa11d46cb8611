"""Programmatic Alembic migration runner.

Lets ``calhub migrate`` and ``calhub run`` upgrade the schema without shelling
out to the Alembic CLI.

The migration scripts live in the repository's ``alembic/`` directory, which
is not part of the built wheel. Run from a checkout or an editable install, or
point ``CALHUB_ALEMBIC_DIR`` at a copy of that directory.
"""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path

from alembic.config import Config

from alembic import command

logger = logging.getLogger(__name__)

# Root of the alembic directory (sibling to src/)
ALEMBIC_DIR = Path(__file__).resolve().parent.parent.parent / "alembic"
ALEMBIC_DIR_ENV = "CALHUB_ALEMBIC_DIR"

CORE_CHAIN = "core"


class MigrationsNotFoundError(RuntimeError):
    """Raised when the Alembic script directory cannot be located."""


def resolve_alembic_dir() -> Path:
    """Return the Alembic script directory, honouring ``CALHUB_ALEMBIC_DIR``."""
    override = os.environ.get(ALEMBIC_DIR_ENV, "").strip()
    alembic_dir = Path(override).expanduser() if override else ALEMBIC_DIR
    if not (alembic_dir / "env.py").is_file():
        raise MigrationsNotFoundError(
            f"No Alembic scripts found at {alembic_dir}; run from a source checkout "
            f"or set {ALEMBIC_DIR_ENV}"
        )
    return alembic_dir


def build_alembic_config(db_url: str) -> Config:
    """Build an Alembic Config pointing at the core version directory."""
    alembic_dir = resolve_alembic_dir()
    config = Config()
    config.set_main_option("script_location", str(alembic_dir))
    # Config values go through configparser interpolation, so '%' must be doubled.
    config.set_main_option("sqlalchemy.url", db_url.replace("%", "%%"))
    config.set_main_option("version_locations", str(alembic_dir / "versions" / CORE_CHAIN))
    return config


def upgrade_to_head(db_url: str) -> None:
    logger.info("Running migration chain to head (chain=%s)", CORE_CHAIN)
    command.upgrade(build_alembic_config(db_url), f"{CORE_CHAIN}@head")


async def run_migrations(db_url: str) -> None:
    """Upgrade the calhub schema to the latest revision.

    Alembic drives a synchronous SQLAlchemy engine, so the upgrade runs in a
    worker thread.
    """
    await asyncio.to_thread(upgrade_to_head, db_url)
