"""Provider contract and shared normalization helpers.

A provider translates engine-level operations (initialize, fetch, sync) into
source-specific calls and maps source payloads onto ``CalendarEvent``. The
orchestrator only ever sees ``SyncResult`` values; cursor-expiry handling
stays inside each provider.
"""

from __future__ import annotations

import abc
import asyncio
import hashlib
import logging
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, date, datetime, timedelta
from typing import Any, ClassVar

import httpx

from calhub.models import (
    CalendarEvent,
    EventStatus,
    FetchWindow,
    Source,
    SourceKind,
    SyncCursor,
    SyncResult,
)

logger = logging.getLogger(__name__)

RATE_LIMIT_RETRY_STATUS_CODES = {429, 503}
RATE_LIMIT_MAX_RETRIES = 3
RATE_LIMIT_BASE_BACKOFF_SECONDS = 1.0

DEFAULT_FETCH_HORIZON_DAYS = 30
GENERATED_ID_PREFIX = "generated-"


class CalendarSyncError(RuntimeError):
    """Base calendar sync error."""


class ProviderInitError(CalendarSyncError):
    """Raised when a source is misconfigured or its credentials are unusable."""


class TokenRefreshError(ProviderInitError):
    """Raised when an OAuth refresh-token exchange fails."""


class TransientFetchError(CalendarSyncError):
    """Raised for network, timeout, and rate-limit failures that may succeed later."""


class ProviderRequestError(CalendarSyncError):
    """Raised when a source API answers with a non-retryable error status."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Calendar source request failed ({status_code}): {message}")


class CursorExpiredError(CalendarSyncError):
    """Raised inside a provider when its incremental cursor is no longer accepted."""


class MalformedEventError(CalendarSyncError):
    """Raised by ``normalize_event`` when a payload lacks a mandatory field."""


class CalendarProvider(abc.ABC):
    """Strategy object that knows how to talk to one source kind."""

    kind: ClassVar[SourceKind]

    def __init__(
        self, source: Source, *, fetch_horizon_days: int = DEFAULT_FETCH_HORIZON_DAYS
    ) -> None:
        self._source = source
        self._fetch_horizon_days = max(1, int(fetch_horizon_days))

    @property
    def source(self) -> Source:
        return self._source

    @property
    def source_id(self) -> int:
        return self._source.id

    @property
    def supports_incremental_sync(self) -> bool:
        return False

    @property
    def supports_push_notifications(self) -> bool:
        return False

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Establish connection state; raise ``ProviderInitError`` when unusable."""
        ...

    @abc.abstractmethod
    async def fetch_events(self, window: FetchWindow | None = None) -> list[CalendarEvent]:
        """Return the full normalized event list for the source within *window*."""
        ...

    @abc.abstractmethod
    def normalize_event(self, raw: Any) -> CalendarEvent:
        """Map one source payload onto the common event shape."""
        ...

    async def sync(self, cursor: SyncCursor | None = None) -> SyncResult:
        """Default sync for kinds without change tracking: full fetch, full refresh."""
        del cursor
        events = await self.fetch_events()
        return SyncResult(events=events, full_refresh=True)

    async def shutdown(self) -> None:
        """Release provider resources."""
        return None

    def default_window(self) -> FetchWindow:
        now = datetime.now(UTC)
        return FetchWindow(start=now, end=now + timedelta(days=self._fetch_horizon_days))

    def normalize_many(self, raw_items: Iterable[Any]) -> list[CalendarEvent]:
        """Normalize *raw_items*, dropping the ones missing mandatory fields."""
        events: list[CalendarEvent] = []
        for raw in raw_items:
            try:
                events.append(self.normalize_event(raw))
            except MalformedEventError as exc:
                logger.warning(
                    "Dropping malformed event from source %s (%s): %s",
                    self.source_id,
                    self.kind,
                    exc,
                )
        return events

    def __repr__(self) -> str:
        return f"{type(self).__name__}(source_id={self.source_id})"


# ---------------------------------------------------------------------------
# Normalization helpers
# ---------------------------------------------------------------------------


def generated_external_id(source_id: int, title: str | None, start: datetime | date | str) -> str:
    """Content-derived identifier for payloads without a native id.

    Deterministic so that re-syncing the same payload updates in place.
    """
    start_text = start.isoformat() if isinstance(start, date | datetime) else str(start)
    content = f"{source_id}|{title or ''}|{start_text}"
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return f"{GENERATED_ID_PREFIX}{digest[:32]}"


def as_text(value: Any) -> str | None:
    """Best-effort text coercion; blank or non-text values become ``None``.

    NUL characters are removed since PostgreSQL text columns reject them.
    """
    if value is None:
        return None
    if not isinstance(value, str):
        value = str(value)
    normalized = value.replace("\x00", "").strip()
    return normalized or None


def parse_status(value: Any, mapping: dict[str, EventStatus]) -> EventStatus:
    """Collapse a source status value via *mapping*; unknown values are confirmed."""
    if isinstance(value, str):
        mapped = mapping.get(value.strip().lower())
        if mapped is not None:
            return mapped
    return EventStatus.CONFIRMED


def parse_iso_datetime(value: str) -> datetime:
    """Parse an ISO-8601 instant, treating naive and ``Z`` values as UTC."""
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    # Graph returns seven fractional digits; trim to microseconds
    if "." in normalized:
        head, _, tail = normalized.partition(".")
        digits = ""
        rest = ""
        for index, char in enumerate(tail):
            if not char.isdigit():
                rest = tail[index:]
                break
            digits += char
        normalized = f"{head}.{digits[:6]}{rest}" if digits else f"{head}{rest}"
    parsed = datetime.fromisoformat(normalized)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def date_to_utc_midnight(value: date) -> datetime:
    """All-day dates are stored as midnight UTC of the calendar date."""
    return datetime(value.year, value.month, value.day, tzinfo=UTC)


def to_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def safe_error_message(response: httpx.Response) -> str:
    """Extract a short, single-line error message from an API error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        message = payload.get("error_description") or payload.get("message")
        if isinstance(message, str) and message.strip():
            return " ".join(message.split())[:200]

    text = response.text.strip()
    if text:
        return " ".join(text.split())[:200]
    return "unknown error"


async def send_with_rate_limit_retry(
    send: Callable[[], Awaitable[httpx.Response]],
    *,
    label: str,
    max_retries: int = RATE_LIMIT_MAX_RETRIES,
    base_backoff_seconds: float = RATE_LIMIT_BASE_BACKOFF_SECONDS,
) -> httpx.Response:
    """Invoke *send*, retrying 429/503 responses with exponential backoff.

    Transport and timeout failures become ``TransientFetchError``; so does a
    response that is still rate-limited after the final retry.
    """
    retry = 0
    while True:
        try:
            response = await send()
        except httpx.TimeoutException as exc:
            raise TransientFetchError(f"{label} request timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"{label} request failed: {exc}") from exc

        if response.status_code not in RATE_LIMIT_RETRY_STATUS_CODES:
            return response
        if retry >= max_retries:
            raise TransientFetchError(
                f"{label} still rate-limited after {max_retries} retries "
                f"(status={response.status_code})"
            )

        backoff = base_backoff_seconds * (2**retry)
        if response.status_code == 429:
            retry_after_header = response.headers.get("Retry-After")
            if retry_after_header is not None:
                try:
                    backoff = float(retry_after_header)
                except ValueError:
                    pass
        logger.warning(
            "%s rate-limited (status=%d), retrying in %.1fs (attempt %d/%d)",
            label,
            response.status_code,
            backoff,
            retry + 1,
            max_retries,
        )
        await asyncio.sleep(backoff)
        retry += 1
