"""iCalendar feed providers (``remote-http-feed`` and ``local-file-feed``).

Feeds have no change cursor. Each sync either proves the feed unchanged via
a validator or re-reads the whole feed and reports a full refresh.

Validator encodings stored in the cursor record:

- a plain HTTP entity tag, sent back as ``If-None-Match``
- ``last-modified:<http-date>``, sent back as ``If-Modified-Since``
- ``sha256:<hex>`` of the feed body, compared after download
- ``mtime:<iso8601>`` for local files
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from datetime import UTC, date, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
from icalendar import Calendar

from calhub.models import (
    CalendarEvent,
    EventStatus,
    FetchWindow,
    HttpFeedConfig,
    LocalFeedConfig,
    Source,
    SourceKind,
    SyncCursor,
    SyncResult,
)
from calhub.providers.base import (
    CalendarProvider,
    MalformedEventError,
    ProviderInitError,
    ProviderRequestError,
    TransientFetchError,
    as_text,
    date_to_utc_midnight,
    generated_external_id,
    parse_status,
)

logger = logging.getLogger(__name__)

LAST_MODIFIED_PREFIX = "last-modified:"
BODY_HASH_PREFIX = "sha256:"
MTIME_PREFIX = "mtime:"

_STATUS_MAP = {
    "confirmed": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
    "cancelled": EventStatus.CANCELLED,
}


class _ICalendarParsingMixin:
    """VEVENT normalization shared by the feed providers."""

    source_id: int

    def _parse_feed(self, data: bytes | str) -> list[Any]:
        try:
            calendar = Calendar.from_ical(data)
        except ValueError as exc:
            raise ProviderRequestError(
                status_code=200, message=f"Invalid iCalendar data: {exc}"
            ) from exc
        return list(calendar.walk("VEVENT"))

    def normalize_event(self, raw: Any) -> CalendarEvent:
        starts_at, all_day = _component_time(raw, "DTSTART")
        if starts_at is None:
            raise MalformedEventError(f"VEVENT {raw.get('UID')!r} has no usable DTSTART")

        ends_at, _ = _component_time(raw, "DTEND")
        if ends_at is None:
            duration = _component_duration(raw)
            if duration is not None:
                ends_at = starts_at + duration
            elif all_day:
                ends_at = starts_at + timedelta(days=1)

        title = as_text(raw.get("SUMMARY"))
        external_id = as_text(raw.get("UID")) or generated_external_id(
            self.source_id, title, starts_at
        )
        # Overridden instances of a recurring series share the master's UID
        recurrence_id, _ = _component_time(raw, "RECURRENCE-ID")
        if recurrence_id is not None:
            external_id = f"{external_id}@{recurrence_id.isoformat()}"

        return CalendarEvent(
            external_id=external_id,
            title=title,
            description=as_text(raw.get("DESCRIPTION")),
            location=as_text(raw.get("LOCATION")),
            starts_at=starts_at,
            ends_at=ends_at,
            all_day=all_day,
            status=parse_status(raw.get("STATUS"), _STATUS_MAP),
            recurrence_rule=_component_rrule(raw),
            raw={"ical": raw.to_ical().decode("utf-8", errors="replace")},
        )


def _property_value(component: Any, name: str) -> Any:
    """Decoded value of *name*, or ``None`` when absent or unparseable."""
    prop = component.get(name)
    if prop is None:
        return None
    try:
        return getattr(prop, "dt", None)
    except ValueError as exc:
        # icalendar keeps bad values as broken properties that raise on access
        logger.debug("Ignoring unparseable %s on %r: %s", name, component.get("UID"), exc)
        return None


def _component_time(component: Any, name: str) -> tuple[datetime | None, bool]:
    value = _property_value(component, name)
    if isinstance(value, datetime):
        # Floating times carry no zone; read them as UTC
        normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
        return normalized.astimezone(UTC), False
    if isinstance(value, date):
        return date_to_utc_midnight(value), True
    return None, False


def _component_duration(component: Any) -> timedelta | None:
    value = _property_value(component, "DURATION")
    return value if isinstance(value, timedelta) else None


def _component_rrule(component: Any) -> str | None:
    prop = component.get("RRULE")
    if prop is None:
        return None
    try:
        return as_text(prop.to_ical().decode("utf-8"))
    except (AttributeError, ValueError):
        return as_text(str(prop))


def _within_window(event: CalendarEvent, window: FetchWindow | None) -> bool:
    if window is None:
        return True
    ends_at = event.ends_at or event.starts_at
    if window.start is not None and ends_at < window.start:
        return False
    if window.end is not None and event.starts_at >= window.end:
        return False
    return True


def body_hash_validator(body: bytes) -> str:
    return f"{BODY_HASH_PREFIX}{hashlib.sha256(body).hexdigest()}"


class HttpFeedProvider(_ICalendarParsingMixin, CalendarProvider):
    """Remote iCalendar URL fetched with conditional GETs."""

    kind = SourceKind.HTTP_FEED

    def __init__(
        self,
        source: Source,
        *,
        http_client: httpx.AsyncClient | None = None,
        fetch_horizon_days: int = 30,
    ) -> None:
        super().__init__(source, fetch_horizon_days=fetch_horizon_days)
        self._config: HttpFeedConfig = source.parsed_config()  # type: ignore[assignment]
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(
                timeout=httpx.Timeout(self._config.timeout_seconds, connect=10.0)
            )
        )
        self._last_validator: str | None = None

    @property
    def last_validator(self) -> str | None:
        return self._last_validator

    async def initialize(self) -> None:
        # Reachability is checked by the first fetch
        return None

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def fetch_events(self, window: FetchWindow | None = None) -> list[CalendarEvent]:
        response = await self._download(None)
        self._last_validator = _response_validator(response)
        events = await self._events_from_body(response.content)
        return [event for event in events if _within_window(event, window)]

    async def sync(self, cursor: SyncCursor | None = None) -> SyncResult:
        previous = cursor.validator if cursor is not None else None
        response = await self._download(previous)

        if response.status_code == 304:
            logger.debug("Feed for source %s not modified", self.source_id)
            return SyncResult(unchanged=True, validator=previous)

        body = response.content
        validator = _response_validator(response)
        if (
            previous is not None
            and previous.startswith(BODY_HASH_PREFIX)
            and validator == previous
        ):
            logger.debug("Feed body for source %s hashes unchanged", self.source_id)
            return SyncResult(unchanged=True, validator=previous)

        self._last_validator = validator
        events = await self._events_from_body(body)
        return SyncResult(events=events, validator=validator, full_refresh=True)

    async def _events_from_body(self, body: bytes) -> list[CalendarEvent]:
        components = await asyncio.to_thread(self._parse_feed, body)
        return self.normalize_many(components)

    async def _download(self, validator: str | None) -> httpx.Response:
        headers = {"Accept": "text/calendar", **self._config.headers}
        if validator is not None:
            if validator.startswith(LAST_MODIFIED_PREFIX):
                headers["If-Modified-Since"] = validator[len(LAST_MODIFIED_PREFIX) :]
            elif not validator.startswith(BODY_HASH_PREFIX):
                headers["If-None-Match"] = validator

        try:
            response = await self._http_client.get(
                self._config.url,
                headers=headers,
                timeout=self._config.timeout_seconds,
                follow_redirects=True,
            )
        except httpx.TimeoutException as exc:
            raise TransientFetchError(
                f"Feed request timed out after {self._config.timeout_seconds}s: {exc}"
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(f"Feed request failed: {exc}") from exc

        if response.status_code == 304:
            return response
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientFetchError(f"Feed server returned HTTP {response.status_code}")
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=response.reason_phrase or "feed request rejected",
            )
        return response


def _response_validator(response: httpx.Response) -> str:
    etag = as_text(response.headers.get("ETag"))
    if etag is not None:
        return etag
    last_modified = as_text(response.headers.get("Last-Modified"))
    if last_modified is not None:
        return f"{LAST_MODIFIED_PREFIX}{last_modified}"
    return body_hash_validator(response.content)


class LocalFileFeedProvider(_ICalendarParsingMixin, CalendarProvider):
    """iCalendar file on local disk, re-read when its mtime changes."""

    kind = SourceKind.LOCAL_FEED

    def __init__(self, source: Source, *, fetch_horizon_days: int = 30) -> None:
        super().__init__(source, fetch_horizon_days=fetch_horizon_days)
        config: LocalFeedConfig = source.parsed_config()  # type: ignore[assignment]
        self._path = Path(config.path).expanduser()

    @property
    def path(self) -> Path:
        return self._path

    async def initialize(self) -> None:
        is_file = await asyncio.to_thread(self._path.is_file)
        if not is_file:
            raise ProviderInitError(f"Calendar file not found: {self._path}")

    async def fetch_events(self, window: FetchWindow | None = None) -> list[CalendarEvent]:
        body = await self._read()
        components = await asyncio.to_thread(self._parse_feed, body)
        return [event for event in self.normalize_many(components) if _within_window(event, window)]

    async def sync(self, cursor: SyncCursor | None = None) -> SyncResult:
        validator = await self._mtime_validator()
        previous = cursor.validator if cursor is not None else None
        if previous is not None and previous == validator:
            logger.debug("Calendar file for source %s unchanged (%s)", self.source_id, validator)
            return SyncResult(unchanged=True, validator=previous)

        events = await self.fetch_events()
        return SyncResult(events=events, validator=validator, full_refresh=True)

    async def _mtime_validator(self) -> str:
        try:
            stat = await asyncio.to_thread(self._path.stat)
        except FileNotFoundError as exc:
            raise TransientFetchError(f"Calendar file disappeared: {self._path}") from exc
        except OSError as exc:
            raise TransientFetchError(f"Could not stat calendar file {self._path}: {exc}") from exc
        modified = datetime.fromtimestamp(stat.st_mtime, tz=UTC)
        return f"{MTIME_PREFIX}{modified.isoformat()}"

    async def _read(self) -> bytes:
        try:
            return await asyncio.to_thread(self._path.read_bytes)
        except OSError as exc:
            raise TransientFetchError(f"Could not read calendar file {self._path}: {exc}") from exc
