"""Calendar source providers and the kind -> provider dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from typing import assert_never

import httpx

from calhub.models import Source, SourceKind
from calhub.providers.base import (
    CalendarProvider,
    CalendarSyncError,
    CursorExpiredError,
    MalformedEventError,
    ProviderInitError,
    ProviderRequestError,
    TokenRefreshError,
    TransientFetchError,
)
from calhub.providers.google import GoogleCalendarProvider
from calhub.providers.ical import HttpFeedProvider, LocalFileFeedProvider
from calhub.providers.microsoft import MicrosoftCalendarProvider
from calhub.providers.oauth import OAuthClientCredentials, OAuthCredential, TokenStore

__all__ = [
    "CalendarProvider",
    "CalendarSyncError",
    "CursorExpiredError",
    "GoogleCalendarProvider",
    "HttpFeedProvider",
    "LocalFileFeedProvider",
    "MalformedEventError",
    "MicrosoftCalendarProvider",
    "OAuthClientCredentials",
    "OAuthCredential",
    "ProviderInitError",
    "ProviderRequestError",
    "ProviderSettings",
    "TokenRefreshError",
    "TokenStore",
    "TransientFetchError",
    "create_provider",
]


@dataclass
class ProviderSettings:
    """Process-wide inputs needed to construct providers."""

    google_client: OAuthClientCredentials | None = None
    microsoft_client: OAuthClientCredentials | None = None
    microsoft_tenant: str | None = None
    token_store: TokenStore | None = None
    http_timeout_seconds: float = 30.0
    full_sync_window_days: int = 365
    fetch_horizon_days: int = 30
    http_client: httpx.AsyncClient | None = None


def create_provider(source: Source, settings: ProviderSettings) -> CalendarProvider:
    """Build the provider for *source*'s kind. No I/O happens here."""
    kind = SourceKind(source.kind)
    match kind:
        case SourceKind.GOOGLE:
            return GoogleCalendarProvider(
                source,
                client=settings.google_client,
                token_store=settings.token_store,
                http_client=settings.http_client,
                timeout_seconds=settings.http_timeout_seconds,
                full_sync_window_days=settings.full_sync_window_days,
                fetch_horizon_days=settings.fetch_horizon_days,
            )
        case SourceKind.MICROSOFT:
            return MicrosoftCalendarProvider(
                source,
                client=settings.microsoft_client,
                token_store=settings.token_store,
                tenant=settings.microsoft_tenant,
                http_client=settings.http_client,
                timeout_seconds=settings.http_timeout_seconds,
                full_sync_window_days=settings.full_sync_window_days,
                fetch_horizon_days=settings.fetch_horizon_days,
            )
        case SourceKind.HTTP_FEED:
            return HttpFeedProvider(
                source,
                http_client=settings.http_client,
                fetch_horizon_days=settings.fetch_horizon_days,
            )
        case SourceKind.LOCAL_FEED:
            return LocalFileFeedProvider(source, fetch_horizon_days=settings.fetch_horizon_days)
        case _:
            assert_never(kind)
