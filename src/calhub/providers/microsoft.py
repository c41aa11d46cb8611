"""Microsoft Graph calendar provider (source kind ``remote-oauth-b``).

Incremental sync walks ``calendarView/delta`` pages and stores the final
``@odata.deltaLink`` as the cursor token. Graph signals an expired delta
token with 410 Gone or a ``SyncStateNotFound`` / ``resyncRequired`` error
code; either restarts a windowed full sync reported as a full refresh.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from calhub.models import (
    CalendarEvent,
    EventStatus,
    FetchWindow,
    MicrosoftCalendarConfig,
    Source,
    SourceKind,
    SyncCursor,
    SyncResult,
)
from calhub.providers.base import (
    CalendarProvider,
    CursorExpiredError,
    MalformedEventError,
    ProviderInitError,
    ProviderRequestError,
    as_text,
    date_to_utc_midnight,
    generated_external_id,
    parse_iso_datetime,
    parse_status,
    safe_error_message,
    send_with_rate_limit_retry,
    to_rfc3339,
)
from calhub.providers.oauth import (
    MICROSOFT_DEFAULT_SCOPE,
    OAuthClientCredentials,
    OAuthSession,
    TokenStore,
    microsoft_token_url,
)

logger = logging.getLogger(__name__)

GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_FULL_SYNC_WINDOW_DAYS = 365
DEFAULT_PAGE_SIZE = 100
EVENT_SELECT_FIELDS = (
    "id,subject,body,bodyPreview,start,end,location,isAllDay,showAs,isCancelled,recurrence"
)
_EXPIRED_DELTA_ERROR_CODES = {"syncstatenotfound", "syncstateinvalid", "resyncrequired"}

_SHOW_AS_MAP = {
    "free": EventStatus.CONFIRMED,
    "busy": EventStatus.CONFIRMED,
    "oof": EventStatus.CONFIRMED,
    "workingelsewhere": EventStatus.CONFIRMED,
    "unknown": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
}


class MicrosoftCalendarProvider(CalendarProvider):
    """Microsoft Graph provider with deltaLink-based incremental sync."""

    kind = SourceKind.MICROSOFT

    def __init__(
        self,
        source: Source,
        *,
        client: OAuthClientCredentials | None,
        token_store: TokenStore | None,
        tenant: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS,
        fetch_horizon_days: int = 30,
    ) -> None:
        super().__init__(source, fetch_horizon_days=fetch_horizon_days)
        self._config: MicrosoftCalendarConfig = source.parsed_config()  # type: ignore[assignment]
        self._client = client
        self._token_store = token_store
        self._tenant = tenant
        self._full_sync_window_days = max(1, int(full_sync_window_days))
        self._owns_http_client = http_client is None
        self._http_client = (
            http_client
            if http_client is not None
            else httpx.AsyncClient(timeout=httpx.Timeout(timeout_seconds, connect=10.0))
        )
        self._oauth: OAuthSession | None = None

    @property
    def supports_incremental_sync(self) -> bool:
        return True

    async def initialize(self) -> None:
        if self._oauth is not None:
            return
        if self._client is None:
            raise ProviderInitError("Microsoft OAuth client credentials are not configured")
        if self._token_store is None:
            raise ProviderInitError("No OAuth token store available for Microsoft sources")
        account = self._config.account or self.source.owner_id
        if not account:
            raise ProviderInitError(
                f"Microsoft source {self.source_id} has no account or owner to load credentials for"
            )
        session = OAuthSession(
            provider="microsoft",
            account=account,
            token_url=microsoft_token_url(self._tenant),
            client=self._client,
            token_store=self._token_store,
            http_client=self._http_client,
            scope=MICROSOFT_DEFAULT_SCOPE,
        )
        await session.start()
        self._oauth = session

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    def _calendar_path(self) -> str:
        if self._config.calendar_id == "primary":
            return "/me/calendar"
        return f"/me/calendars/{quote(self._config.calendar_id, safe='')}"

    async def fetch_events(self, window: FetchWindow | None = None) -> list[CalendarEvent]:
        window = window or self.default_window()
        now = datetime.now(UTC)
        start = window.start or now
        end = window.end or start + timedelta(days=self._fetch_horizon_days)
        url = f"{GRAPH_API_BASE_URL}{self._calendar_path()}/calendarView"
        params: dict[str, Any] | None = {
            "startDateTime": to_rfc3339(start),
            "endDateTime": to_rfc3339(end),
            "$select": EVENT_SELECT_FIELDS,
            "$orderby": "start/dateTime",
            "$top": DEFAULT_PAGE_SIZE,
        }

        items: list[dict[str, Any]] = []
        next_url: str | None = url
        while next_url is not None:
            payload = await self._get_json(next_url, params)
            raw_items = payload.get("value")
            if isinstance(raw_items, list):
                items.extend(item for item in raw_items if isinstance(item, dict))
            next_url = as_text(payload.get("@odata.nextLink"))
            # nextLink already carries the query string
            params = None

        return self.normalize_many(item for item in items if not item.get("isCancelled"))

    async def sync(self, cursor: SyncCursor | None = None) -> SyncResult:
        delta_link = cursor.cursor_token if cursor is not None else None
        if delta_link is not None:
            try:
                return await self._sync_from(delta_link)
            except CursorExpiredError:
                logger.info(
                    "Graph delta link expired for source %s; performing full re-sync",
                    self.source_id,
                )
        return await self._sync_from(None)

    async def _sync_from(self, delta_link: str | None) -> SyncResult:
        params: dict[str, Any] | None
        if delta_link is not None:
            url = delta_link
            params = None
        else:
            now = datetime.now(UTC)
            url = f"{GRAPH_API_BASE_URL}{self._calendar_path()}/calendarView/delta"
            params = {
                "startDateTime": to_rfc3339(now - timedelta(days=self._full_sync_window_days)),
                "endDateTime": to_rfc3339(now + timedelta(days=self._full_sync_window_days)),
            }

        delta_items: list[dict[str, Any]] = []
        new_delta_link: str | None = None
        next_url: str | None = url
        while next_url is not None:
            payload = await self._get_json(next_url, params, is_delta=delta_link is not None)
            params = None
            raw_items = payload.get("value")
            if isinstance(raw_items, list):
                delta_items.extend(item for item in raw_items if isinstance(item, dict))
            next_url = as_text(payload.get("@odata.nextLink"))
            if next_url is None:
                new_delta_link = as_text(payload.get("@odata.deltaLink"))

        if new_delta_link is None:
            raise ProviderRequestError(
                status_code=200,
                message="Graph delta response ended without an @odata.deltaLink",
            )

        deleted_ids: list[str] = []
        live_items: list[dict[str, Any]] = []
        for item in delta_items:
            event_id = as_text(item.get("id"))
            if event_id is None:
                continue
            if "@removed" in item or item.get("isCancelled") is True:
                deleted_ids.append(event_id)
                continue
            if not isinstance(item.get("start"), dict):
                # Delta pages may omit properties; fetch the full event
                detail = await self._get_event_detail(event_id)
                if detail is None:
                    deleted_ids.append(event_id)
                    continue
                if detail.get("isCancelled") is True:
                    deleted_ids.append(event_id)
                    continue
                item = detail
            live_items.append(item)

        return SyncResult(
            events=self.normalize_many(live_items),
            deleted_ids=deleted_ids,
            cursor_token=new_delta_link,
            full_refresh=delta_link is None,
        )

    async def _get_event_detail(self, event_id: str) -> dict[str, Any] | None:
        url = f"{GRAPH_API_BASE_URL}/me/events/{quote(event_id, safe='')}"
        try:
            return await self._get_json(url, {"$select": EVENT_SELECT_FIELDS})
        except ProviderRequestError as exc:
            if exc.status_code == 404:
                return None
            raise

    async def _get_json(
        self,
        url: str,
        params: dict[str, Any] | None,
        *,
        is_delta: bool = False,
    ) -> dict[str, Any]:
        if self._oauth is None:
            raise ProviderInitError("Microsoft provider used before initialize()")
        oauth = self._oauth

        async def _send(force_refresh: bool = False) -> httpx.Response:
            token = await oauth.get_access_token(force_refresh=force_refresh)
            return await self._http_client.get(
                url,
                params=params,
                headers={
                    "Authorization": f"Bearer {token}",
                    "Accept": "application/json",
                    "Prefer": f'outlook.timezone="UTC", odata.maxpagesize={DEFAULT_PAGE_SIZE}',
                },
            )

        response = await send_with_rate_limit_retry(_send, label="Microsoft Graph")
        if response.status_code == 401:
            response = await send_with_rate_limit_retry(
                lambda: _send(force_refresh=True), label="Microsoft Graph"
            )

        if is_delta and _is_expired_delta(response):
            raise CursorExpiredError("Graph delta token is no longer valid")

        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderRequestError(
                status_code=response.status_code,
                message=safe_error_message(response),
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderRequestError(
                status_code=response.status_code,
                message="Invalid JSON payload from Microsoft Graph",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                status_code=response.status_code,
                message="Microsoft Graph payload must be a JSON object",
            )
        return payload

    def normalize_event(self, raw: Any) -> CalendarEvent:
        if not isinstance(raw, dict):
            raise MalformedEventError("Graph event payload must be an object")

        all_day = raw.get("isAllDay") is True
        starts_at = _parse_graph_boundary(raw.get("start"), all_day=all_day)
        if starts_at is None:
            raise MalformedEventError(f"Graph event {raw.get('id')!r} has no start")
        ends_at = _parse_graph_boundary(raw.get("end"), all_day=all_day)

        if raw.get("isCancelled") is True:
            status = EventStatus.CANCELLED
        else:
            status = parse_status(raw.get("showAs"), _SHOW_AS_MAP)

        title = as_text(raw.get("subject"))
        external_id = as_text(raw.get("id")) or generated_external_id(
            self.source_id, title, starts_at
        )
        location = raw.get("location")
        return CalendarEvent(
            external_id=external_id,
            title=title,
            description=_extract_body(raw),
            location=as_text(location.get("displayName")) if isinstance(location, dict) else None,
            starts_at=starts_at,
            ends_at=ends_at,
            all_day=all_day,
            status=status,
            recurrence_rule=_extract_recurrence(raw.get("recurrence")),
            raw=raw,
        )


def _is_expired_delta(response: httpx.Response) -> bool:
    if response.status_code == 410:
        return True
    if response.status_code < 400:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    error = payload.get("error") if isinstance(payload, dict) else None
    code = error.get("code") if isinstance(error, dict) else None
    return isinstance(code, str) and code.strip().lower() in _EXPIRED_DELTA_ERROR_CODES


def _parse_graph_boundary(payload: Any, *, all_day: bool) -> datetime | None:
    if not isinstance(payload, dict):
        return None
    value = as_text(payload.get("dateTime"))
    if value is None:
        return None
    try:
        parsed = parse_iso_datetime(value)
    except ValueError:
        logger.debug("Ignoring invalid Graph dateTime value: %s", value)
        return None

    timezone_name = as_text(payload.get("timeZone"))
    if timezone_name is not None and timezone_name.upper() != "UTC":
        try:
            parsed = parsed.replace(tzinfo=ZoneInfo(timezone_name))
        except (ZoneInfoNotFoundError, ValueError):
            pass

    if all_day:
        return date_to_utc_midnight(parsed.date())
    return parsed.astimezone(UTC)


def _extract_body(raw: dict[str, Any]) -> str | None:
    preview = as_text(raw.get("bodyPreview"))
    if preview is not None:
        return preview
    body = raw.get("body")
    if isinstance(body, dict) and str(body.get("contentType", "")).lower() == "text":
        return as_text(body.get("content"))
    return None


def _extract_recurrence(value: Any) -> str | None:
    if not isinstance(value, dict) or not value:
        return None
    return json.dumps(value, sort_keys=True, separators=(",", ":"))
