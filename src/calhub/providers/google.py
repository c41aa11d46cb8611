"""Google Calendar provider (source kind ``remote-oauth-a``).

Incremental sync uses the events.list ``syncToken`` / ``nextSyncToken`` flow
with expanded recurring instances. A 410 Gone response means the token is
no longer accepted; the provider restarts from a bounded full sync and
reports the result as a full refresh.
"""

from __future__ import annotations

import logging
from datetime import UTC, date, datetime, timedelta
from typing import Any
from urllib.parse import quote

import httpx

from calhub.models import (
    CalendarEvent,
    EventStatus,
    FetchWindow,
    GoogleCalendarConfig,
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
    GOOGLE_OAUTH_TOKEN_URL,
    OAuthClientCredentials,
    OAuthSession,
    TokenStore,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_FULL_SYNC_WINDOW_DAYS = 365
DEFAULT_PAGE_SIZE = 250

_STATUS_MAP = {
    "confirmed": EventStatus.CONFIRMED,
    "tentative": EventStatus.TENTATIVE,
    "cancelled": EventStatus.CANCELLED,
}


class GoogleCalendarProvider(CalendarProvider):
    """Google Calendar API provider with syncToken-based incremental sync."""

    kind = SourceKind.GOOGLE

    def __init__(
        self,
        source: Source,
        *,
        client: OAuthClientCredentials | None,
        token_store: TokenStore | None,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        full_sync_window_days: int = DEFAULT_FULL_SYNC_WINDOW_DAYS,
        fetch_horizon_days: int = 30,
    ) -> None:
        super().__init__(source, fetch_horizon_days=fetch_horizon_days)
        self._config: GoogleCalendarConfig = source.parsed_config()  # type: ignore[assignment]
        self._client = client
        self._token_store = token_store
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

    @property
    def supports_push_notifications(self) -> bool:
        return True

    async def initialize(self) -> None:
        if self._oauth is not None:
            return
        if self._client is None:
            raise ProviderInitError("Google OAuth client credentials are not configured")
        if self._token_store is None:
            raise ProviderInitError("No OAuth token store available for Google sources")
        account = self._config.account or self.source.owner_id
        if not account:
            raise ProviderInitError(
                f"Google source {self.source_id} has no account or owner to load credentials for"
            )
        session = OAuthSession(
            provider="google",
            account=account,
            token_url=GOOGLE_OAUTH_TOKEN_URL,
            client=self._client,
            token_store=self._token_store,
            http_client=self._http_client,
        )
        await session.start()
        self._oauth = session

    async def shutdown(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def fetch_events(self, window: FetchWindow | None = None) -> list[CalendarEvent]:
        window = window or self.default_window()
        params: dict[str, Any] = {
            "singleEvents": "true",
            "orderBy": "startTime",
            "showDeleted": "false",
            "maxResults": DEFAULT_PAGE_SIZE,
        }
        if window.start is not None:
            params["timeMin"] = to_rfc3339(window.start)
        if window.end is not None:
            params["timeMax"] = to_rfc3339(window.end)

        items, _ = await self._list_events(params)
        return self.normalize_many(
            item for item in items if str(item.get("status", "")).lower() != "cancelled"
        )

    async def sync(self, cursor: SyncCursor | None = None) -> SyncResult:
        token = cursor.cursor_token if cursor is not None else None
        if token is not None:
            try:
                return await self._sync_from(token)
            except CursorExpiredError:
                logger.info(
                    "Google sync token expired for source %s; performing full re-sync",
                    self.source_id,
                )
        return await self._sync_from(None)

    async def _sync_from(self, sync_token: str | None) -> SyncResult:
        params: dict[str, Any] = {
            "singleEvents": "true",
            "showDeleted": "true",
            "maxResults": DEFAULT_PAGE_SIZE,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            window_start = datetime.now(UTC) - timedelta(days=self._full_sync_window_days)
            params["timeMin"] = to_rfc3339(window_start)

        items, next_sync_token = await self._list_events(
            params, has_sync_token=sync_token is not None
        )
        if next_sync_token is None:
            raise ProviderRequestError(
                status_code=200,
                message=(
                    f"Google Calendar sync for '{self._config.calendar_id}' "
                    "returned no nextSyncToken"
                ),
            )

        deleted_ids: list[str] = []
        live_items: list[dict[str, Any]] = []
        for item in items:
            event_id = as_text(item.get("id"))
            if event_id is None:
                continue
            if str(item.get("status", "")).lower() == "cancelled":
                deleted_ids.append(event_id)
            else:
                live_items.append(item)

        return SyncResult(
            events=self.normalize_many(live_items),
            deleted_ids=deleted_ids,
            cursor_token=next_sync_token,
            full_refresh=sync_token is None,
        )

    async def _list_events(
        self,
        params: dict[str, Any],
        *,
        has_sync_token: bool = False,
    ) -> tuple[list[dict[str, Any]], str | None]:
        calendar_id = quote(self._config.calendar_id, safe="")
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/{calendar_id}/events"

        items: list[dict[str, Any]] = []
        next_sync_token: str | None = None
        page_params = dict(params)
        while True:
            payload = await self._get_json(url, page_params, has_sync_token=has_sync_token)
            raw_items = payload.get("items")
            if isinstance(raw_items, list):
                items.extend(item for item in raw_items if isinstance(item, dict))

            candidate_sync_token = as_text(payload.get("nextSyncToken"))
            if candidate_sync_token is not None:
                next_sync_token = candidate_sync_token

            next_page_token = as_text(payload.get("nextPageToken"))
            if next_page_token is None:
                break
            page_params = {**params, "pageToken": next_page_token}

        return items, next_sync_token

    async def _get_json(
        self,
        url: str,
        params: dict[str, Any],
        *,
        has_sync_token: bool,
    ) -> dict[str, Any]:
        if self._oauth is None:
            raise ProviderInitError("Google provider used before initialize()")
        oauth = self._oauth

        async def _send(force_refresh: bool = False) -> httpx.Response:
            token = await oauth.get_access_token(force_refresh=force_refresh)
            return await self._http_client.get(
                url,
                params=params,
                headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
            )

        response = await send_with_rate_limit_retry(_send, label="Google Calendar")
        if response.status_code == 401:
            response = await send_with_rate_limit_retry(
                lambda: _send(force_refresh=True), label="Google Calendar"
            )

        if response.status_code == 410 and has_sync_token:
            raise CursorExpiredError(
                f"Sync token expired for calendar '{self._config.calendar_id}'"
            )

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
                message="Invalid JSON payload from Google Calendar API",
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderRequestError(
                status_code=response.status_code,
                message="Google Calendar API payload must be a JSON object",
            )
        return payload

    def normalize_event(self, raw: Any) -> CalendarEvent:
        if not isinstance(raw, dict):
            raise MalformedEventError("Google event payload must be an object")

        start_payload = raw.get("start") if isinstance(raw.get("start"), dict) else {}
        end_payload = raw.get("end") if isinstance(raw.get("end"), dict) else {}
        starts_at, all_day = _parse_boundary(start_payload)
        if starts_at is None:
            raise MalformedEventError(f"Google event {raw.get('id')!r} has no start")
        ends_at, _ = _parse_boundary(end_payload)

        title = as_text(raw.get("summary"))
        external_id = as_text(raw.get("id")) or generated_external_id(
            self.source_id, title, starts_at
        )
        return CalendarEvent(
            external_id=external_id,
            title=title,
            description=as_text(raw.get("description")),
            location=as_text(raw.get("location")),
            starts_at=starts_at,
            ends_at=ends_at,
            all_day=all_day,
            status=parse_status(raw.get("status"), _STATUS_MAP),
            recurrence_rule=_extract_recurrence(raw.get("recurrence")),
            raw=raw,
        )


def _parse_boundary(payload: dict[str, Any]) -> tuple[datetime | None, bool]:
    """Return ``(instant, all_day)`` for a Google start/end object.

    Unparseable values are treated as absent.
    """
    date_time = as_text(payload.get("dateTime"))
    if date_time is not None:
        try:
            return parse_iso_datetime(date_time), False
        except ValueError:
            logger.debug("Ignoring invalid Google dateTime value: %s", date_time)
            return None, False

    date_value = as_text(payload.get("date"))
    if date_value is not None:
        try:
            return date_to_utc_midnight(date.fromisoformat(date_value)), True
        except ValueError:
            logger.debug("Ignoring invalid Google date value: %s", date_value)
    return None, False


def _extract_recurrence(value: Any) -> str | None:
    if not isinstance(value, list):
        return None
    rules = [line.strip() for line in value if isinstance(line, str) and line.strip()]
    return "\n".join(rules) or None
