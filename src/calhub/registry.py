"""Provider registry: one live provider per source, created on first use.

The registry is an explicit object owned by the orchestrator rather than a
module-level cache, so tests and co-hosted tenants never share instances.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from calhub.models import CalendarEvent, FetchWindow, Source, SourceKind, SyncCursor, SyncResult
from calhub.providers import CalendarProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[Source], CalendarProvider]
RegistryKey = tuple[SourceKind, int]


def registry_key(source: Source) -> RegistryKey:
    return (SourceKind(source.kind), source.id)


class ProviderRegistry:
    """Creates, initializes, and memoizes providers keyed by ``(kind, source_id)``."""

    def __init__(self, factory: ProviderFactory) -> None:
        self._factory = factory
        self._providers: dict[RegistryKey, CalendarProvider] = {}
        self._init_locks: dict[RegistryKey, asyncio.Lock] = {}

    def __contains__(self, source: Source) -> bool:
        return registry_key(source) in self._providers

    def __len__(self) -> int:
        return len(self._providers)

    async def get_provider(self, source: Source) -> CalendarProvider:
        """Return the cached provider for *source*, creating and initializing it once.

        A provider whose ``initialize()`` fails is shut down and not cached, so
        the next call retries from scratch.
        """
        key = registry_key(source)
        cached = self._providers.get(key)
        if cached is not None:
            return cached

        lock = self._init_locks.setdefault(key, asyncio.Lock())
        async with lock:
            cached = self._providers.get(key)
            if cached is not None:
                return cached

            provider = self._factory(source)
            try:
                await provider.initialize()
            except BaseException:
                await _shutdown_quietly(provider)
                raise
            self._providers[key] = provider
            logger.info("Initialized %s provider for source %s", key[0], source.id)
            return provider

    async def clear_provider(self, source: Source) -> None:
        """Evict and shut down the cached provider for *source*, if any.

        Waits for an in-flight initialization of the same key, so the provider
        it produces is the one evicted.
        """
        key = registry_key(source)
        async with self._init_locks.setdefault(key, asyncio.Lock()):
            provider = self._providers.pop(key, None)
            if provider is not None:
                await _shutdown_quietly(provider)
                logger.info("Evicted %s provider for source %s", key[0], source.id)

    async def clear_all(self) -> None:
        """Shut down every cached provider."""
        providers = list(self._providers.values())
        self._providers.clear()
        for provider in providers:
            await _shutdown_quietly(provider)

    async def fetch_events(
        self, source: Source, window: FetchWindow | None = None
    ) -> list[CalendarEvent]:
        provider = await self.get_provider(source)
        return await provider.fetch_events(window)

    async def sync_source(self, source: Source, cursor: SyncCursor | None) -> SyncResult:
        provider = await self.get_provider(source)
        return await provider.sync(cursor)


async def _shutdown_quietly(provider: CalendarProvider) -> None:
    try:
        await provider.shutdown()
    except Exception:
        logger.warning("Provider shutdown failed for %r", provider, exc_info=True)
