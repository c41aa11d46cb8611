"""Root conftest: Postgres testcontainer fixtures for DB-backed tests.

Unit tests never touch these fixtures.  Integration tests request
``provisioned_postgres_pool`` and are skipped when Docker is not available.
"""

from __future__ import annotations

import logging
import shutil
import time
import uuid
from collections.abc import AsyncIterator, Callable, Iterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import TYPE_CHECKING, Any

import pytest

if TYPE_CHECKING:
    from asyncpg.pool import Pool
    from testcontainers.postgres import PostgresContainer

docker_available = shutil.which("docker") is not None
logger = logging.getLogger(__name__)

_TESTCONTAINER_STOP_RETRY_ATTEMPTS = 4
_TESTCONTAINER_STOP_BASE_DELAY_SECONDS = 0.1
_TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS = (
    "did not receive an exit event",
    "no such container",
    "is already in progress",
    "is dead or marked for removal",
)


def _unique_test_db_name() -> str:
    return f"test_{uuid.uuid4().hex[:12]}"


def _is_transient_teardown_error(exc: BaseException) -> bool:
    text = str(getattr(exc, "explanation", "") or exc).lower()
    return any(marker in text for marker in _TRANSIENT_DOCKER_TEARDOWN_ERROR_MARKERS)


def _retry_testcontainer_stop(stop_call: Callable[[], None]) -> None:
    """Retry transient Docker teardown races with bounded backoff."""
    delay = _TESTCONTAINER_STOP_BASE_DELAY_SECONDS
    for attempt in range(1, _TESTCONTAINER_STOP_RETRY_ATTEMPTS + 1):
        try:
            stop_call()
            return
        except Exception as exc:
            if attempt >= _TESTCONTAINER_STOP_RETRY_ATTEMPTS or not _is_transient_teardown_error(
                exc
            ):
                raise
            logger.warning(
                "Transient Docker API teardown race (attempt %s/%s): %s",
                attempt,
                _TESTCONTAINER_STOP_RETRY_ATTEMPTS,
                exc,
            )
            time.sleep(delay)
            delay *= 2


@pytest.fixture(scope="session")
def postgres_container() -> Iterator[PostgresContainer]:
    """Shared Postgres testcontainer for all DB-backed tests in this session.

    Each ``provisioned_postgres_pool`` usage provisions a fresh, randomly named
    database, so rows never leak between tests.
    """
    from testcontainers.postgres import PostgresContainer

    pg = PostgresContainer("postgres:16")
    pg.start()
    try:
        yield pg
    finally:
        _retry_testcontainer_stop(pg.stop)


@pytest.fixture
def provisioned_postgres_pool(
    postgres_container: PostgresContainer,
) -> Callable[..., AbstractAsyncContextManager[Pool]]:
    """Create a fresh, migrated database and asyncpg pool for a single test.

    Tests should use this as:
        async with provisioned_postgres_pool() as pool:
            ...
    """
    from calhub.db import Database
    from calhub.migrations import run_migrations

    @asynccontextmanager
    async def _provision(
        *,
        migrate: bool = True,
        min_pool_size: int = 1,
        max_pool_size: int = 3,
    ) -> AsyncIterator[Pool]:
        db = Database(
            db_name=_unique_test_db_name(),
            host=postgres_container.get_container_host_ip(),
            port=int(postgres_container.get_exposed_port(5432)),
            user=postgres_container.username,
            password=postgres_container.password,
            min_pool_size=min_pool_size,
            max_pool_size=max_pool_size,
        )
        await db.provision()
        if migrate:
            await run_migrations(db.sqlalchemy_url)
        pool = await db.connect()
        try:
            yield pool
        finally:
            await db.close()

    return _provision


def pytest_collection_modifyitems(config: Any, items: list[pytest.Item]) -> None:
    """Skip integration tests when Docker is unavailable."""
    if docker_available:
        return
    skip_docker = pytest.mark.skip(reason="Docker not available")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_docker)
