"""Process wiring: database, stores, provider registry, orchestrator.

``CalhubApp`` is what the CLI commands run against.  ``start()`` opens the
pool (optionally provisioning and migrating first) and builds every component
over it; ``shutdown()`` stops the scheduler, evicts providers and closes the
pool.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from calhub.config import CalhubConfig
from calhub.core.logging import configure_logging
from calhub.core.metrics import SyncMetrics, init_metrics
from calhub.core.telemetry import init_telemetry
from calhub.db import Database
from calhub.migrations import run_migrations
from calhub.providers import create_provider
from calhub.registry import ProviderRegistry
from calhub.scheduler import SyncScheduler
from calhub.storage import (
    EventReconciler,
    PostgresTokenStore,
    SourceRepository,
    SyncCursorStore,
)
from calhub.sync import SyncOrchestrator

logger = logging.getLogger(__name__)

SERVICE_NAME = "calhub"


def database_from_config(config: CalhubConfig) -> Database:
    db = config.database
    return Database(
        db_name=db.name,
        host=db.host,
        port=db.port,
        user=db.user,
        password=db.password,
        ssl=db.ssl,
        min_pool_size=db.min_pool_size,
        max_pool_size=db.max_pool_size,
    )


def setup_observability(config: CalhubConfig) -> None:
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    init_telemetry(SERVICE_NAME)
    init_metrics(SERVICE_NAME)


class CalhubApp:
    """All long-lived components for one calhub process."""

    def __init__(self, config: CalhubConfig) -> None:
        self.config = config
        self.db = database_from_config(config)
        self.sources: SourceRepository | None = None
        self.cursors: SyncCursorStore | None = None
        self.reconciler: EventReconciler | None = None
        self.tokens: PostgresTokenStore | None = None
        self.orchestrator: SyncOrchestrator | None = None
        self.scheduler: SyncScheduler | None = None

    async def start(self, *, migrate: bool = False) -> None:
        if migrate:
            await self.db.provision()
            await run_migrations(self.db.sqlalchemy_url)

        pool = await self.db.connect()
        self.sources = SourceRepository(pool)
        self.cursors = SyncCursorStore(pool)
        self.reconciler = EventReconciler(pool)
        self.tokens = PostgresTokenStore(pool)

        settings = self.config.provider_settings(token_store=self.tokens)
        registry = ProviderRegistry(lambda source: create_provider(source, settings))
        self.orchestrator = SyncOrchestrator(
            sources=self.sources,
            cursors=self.cursors,
            reconciler=self.reconciler,
            registry=registry,
            metrics=SyncMetrics(),
        )

    def start_scheduler(self) -> SyncScheduler:
        orchestrator = self.require_orchestrator()
        self.scheduler = SyncScheduler(
            orchestrator.sync_all,
            cron=self.config.sync.cron,
            run_on_startup=self.config.sync.run_on_startup,
        )
        self.scheduler.start()
        return self.scheduler

    def require_orchestrator(self) -> SyncOrchestrator:
        if self.orchestrator is None:
            raise RuntimeError("CalhubApp used before start()")
        return self.orchestrator

    async def shutdown(self) -> None:
        if self.scheduler is not None:
            await self.scheduler.stop()
            self.scheduler = None
        if self.orchestrator is not None:
            await self.orchestrator.shutdown()
            self.orchestrator = None
        await self.db.close()


@asynccontextmanager
async def open_app(config: CalhubConfig, *, migrate: bool = False) -> AsyncIterator[CalhubApp]:
    app = CalhubApp(config)
    await app.start(migrate=migrate)
    try:
        yield app
    finally:
        await app.shutdown()
