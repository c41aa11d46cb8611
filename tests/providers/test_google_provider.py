"""Unit tests for the Google Calendar provider using a mocked HTTP transport."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from calhub.models import EventStatus, FetchWindow, SourceKind, SyncCursor
from calhub.providers import (
    GoogleCalendarProvider,
    OAuthClientCredentials,
    OAuthCredential,
    ProviderInitError,
    ProviderRequestError,
    TransientFetchError,
)
from calhub.providers.oauth import GOOGLE_OAUTH_TOKEN_URL
from tests.doubles import InMemoryTokenStore, make_source

pytestmark = pytest.mark.unit

EVENTS_PATH = "/calendar/v3/calendars/primary/events"
CLIENT = OAuthClientCredentials(client_id="client-id", client_secret="client-secret")


def _fresh_credential(access_token: str = "access-1") -> OAuthCredential:
    return OAuthCredential(
        access_token=access_token,
        refresh_token="refresh-1",
        expires_at=datetime.now(UTC) + timedelta(hours=1),
    )


def _event(event_id: str, *, status: str = "confirmed", **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": event_id,
        "status": status,
        "summary": f"Event {event_id}",
        "start": {"dateTime": "2026-03-02T09:00:00-05:00"},
        "end": {"dateTime": "2026-03-02T10:00:00-05:00"},
    }
    payload.update(extra)
    return payload


class _FakeGoogle:
    """Routes token refreshes and events.list calls to scripted responses."""

    def __init__(self) -> None:
        self.pages: list[httpx.Response] = []
        self.event_requests: list[httpx.Request] = []
        self.token_requests: list[httpx.Request] = []
        self.token_response: Callable[[], httpx.Response] = lambda: httpx.Response(
            200, json={"access_token": "access-2", "expires_in": 3600}
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if str(request.url) == GOOGLE_OAUTH_TOKEN_URL:
            self.token_requests.append(request)
            return self.token_response()
        assert request.url.path == EVENTS_PATH
        self.event_requests.append(request)
        if not self.pages:
            raise AssertionError(f"Unexpected request: {request.url}")
        return self.pages.pop(0)

    def page(self, items: list[dict[str, Any]], **markers: str) -> None:
        self.pages.append(httpx.Response(200, json={"items": items, **markers}))


@pytest.fixture
def google() -> _FakeGoogle:
    return _FakeGoogle()


@pytest.fixture
def tokens() -> InMemoryTokenStore:
    store = InMemoryTokenStore()
    store.link("owner-1", "google", _fresh_credential())
    return store


def _provider(google: _FakeGoogle, tokens: InMemoryTokenStore, **kwargs) -> GoogleCalendarProvider:
    source = make_source(11, SourceKind.GOOGLE)
    return GoogleCalendarProvider(
        source,
        client=kwargs.pop("client", CLIENT),
        token_store=tokens,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(google)),
        **kwargs,
    )


class TestInitialize:
    async def test_missing_client_credentials(self, google, tokens):
        provider = _provider(google, tokens, client=None)

        with pytest.raises(ProviderInitError, match="client credentials"):
            await provider.initialize()

    async def test_unlinked_account(self, google):
        provider = _provider(google, InMemoryTokenStore())

        with pytest.raises(ProviderInitError, match="No google OAuth credential"):
            await provider.initialize()

    async def test_expired_credential_is_refreshed_and_written_back(self, google, tokens):
        tokens.link(
            "owner-1",
            "google",
            OAuthCredential(
                access_token="stale",
                refresh_token="refresh-1",
                expires_at=datetime.now(UTC) - timedelta(minutes=1),
            ),
        )
        google.page([], nextSyncToken="sync-1")
        provider = _provider(google, tokens)

        await provider.initialize()
        await provider.sync(None)

        assert len(google.token_requests) == 1
        form = google.token_requests[0].content.decode()
        assert "grant_type=refresh_token" in form
        assert "refresh_token=refresh-1" in form
        assert tokens.updates[0][2].access_token == "access-2"
        assert tokens.updates[0][2].refresh_token == "refresh-1"
        assert google.event_requests[0].headers["Authorization"] == "Bearer access-2"

    async def test_rejected_refresh_fails_initialization(self, google, tokens):
        tokens.link(
            "owner-1",
            "google",
            OAuthCredential(access_token=None, refresh_token="revoked"),
        )
        google.token_response = lambda: httpx.Response(
            400, json={"error": "invalid_grant", "error_description": "Token has been revoked"}
        )
        provider = _provider(google, tokens)

        with pytest.raises(ProviderInitError, match="Token has been revoked"):
            await provider.initialize()
        assert tokens.updates == []


class TestSync:
    async def test_full_sync_pages_and_splits_cancellations(self, google, tokens):
        google.page([_event("a"), _event("gone", status="cancelled")], nextPageToken="p2")
        google.page([_event("b")], nextSyncToken="sync-1")
        provider = _provider(google, tokens)
        await provider.initialize()

        result = await provider.sync(None)

        assert result.full_refresh is True
        assert result.cursor_token == "sync-1"
        assert [event.external_id for event in result.events] == ["a", "b"]
        assert result.deleted_ids == ["gone"]
        first, second = google.event_requests
        assert "timeMin" in first.url.params
        assert first.url.params["showDeleted"] == "true"
        assert first.url.params["singleEvents"] == "true"
        assert second.url.params["pageToken"] == "p2"

    async def test_incremental_sync_sends_sync_token(self, google, tokens):
        google.page([_event("c"), _event("a", status="cancelled")], nextSyncToken="sync-2")
        provider = _provider(google, tokens)
        await provider.initialize()

        result = await provider.sync(SyncCursor(cursor_token="sync-1"))

        assert result.full_refresh is False
        assert result.cursor_token == "sync-2"
        assert result.deleted_ids == ["a"]
        request = google.event_requests[0]
        assert request.url.params["syncToken"] == "sync-1"
        assert "timeMin" not in request.url.params

    async def test_expired_sync_token_falls_back_to_full_refresh(self, google, tokens):
        google.pages.append(httpx.Response(410, json={"error": {"message": "Gone"}}))
        google.page([_event("a")], nextSyncToken="sync-fresh")
        provider = _provider(google, tokens)
        await provider.initialize()

        result = await provider.sync(SyncCursor(cursor_token="sync-old"))

        assert result.full_refresh is True
        assert result.cursor_token == "sync-fresh"
        assert [event.external_id for event in result.events] == ["a"]
        assert "syncToken" not in google.event_requests[1].url.params

    async def test_unauthorized_forces_refresh_and_retries(self, google, tokens):
        google.pages.append(httpx.Response(401, json={"error": {"message": "expired"}}))
        google.page([], nextSyncToken="sync-1")
        provider = _provider(google, tokens)
        await provider.initialize()

        result = await provider.sync(None)

        assert result.cursor_token == "sync-1"
        assert len(google.token_requests) == 1
        assert google.event_requests[0].headers["Authorization"] == "Bearer access-1"
        assert google.event_requests[1].headers["Authorization"] == "Bearer access-2"

    async def test_rate_limit_is_retried(self, google, tokens):
        google.pages.append(httpx.Response(429, headers={"Retry-After": "0"}))
        google.page([_event("a")], nextSyncToken="sync-1")
        provider = _provider(google, tokens)
        await provider.initialize()

        result = await provider.sync(None)

        assert len(google.event_requests) == 2
        assert result.cursor_token == "sync-1"

    async def test_persistent_rate_limit_is_transient(self, google, tokens):
        for _ in range(4):
            google.pages.append(httpx.Response(429, headers={"Retry-After": "0"}))
        provider = _provider(google, tokens)
        await provider.initialize()

        with pytest.raises(TransientFetchError):
            await provider.sync(None)

    async def test_missing_next_sync_token_is_an_error(self, google, tokens):
        google.page([_event("a")])
        provider = _provider(google, tokens)
        await provider.initialize()

        with pytest.raises(ProviderRequestError, match="nextSyncToken"):
            await provider.sync(None)

    async def test_forbidden_is_request_error(self, google, tokens):
        google.pages.append(
            httpx.Response(403, json={"error": {"message": "Calendar access denied"}})
        )
        provider = _provider(google, tokens)
        await provider.initialize()

        with pytest.raises(ProviderRequestError) as exc_info:
            await provider.sync(None)
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Calendar access denied"


class TestFetchEvents:
    async def test_window_bounds_are_sent_and_cancellations_dropped(self, google, tokens):
        google.page([_event("a"), _event("b", status="cancelled")])
        provider = _provider(google, tokens)
        await provider.initialize()
        window = FetchWindow(
            start=datetime(2026, 3, 1, tzinfo=UTC),
            end=datetime(2026, 3, 8, tzinfo=UTC),
        )

        events = await provider.fetch_events(window)

        assert [event.external_id for event in events] == ["a"]
        params = google.event_requests[0].url.params
        assert params["timeMin"] == "2026-03-01T00:00:00Z"
        assert params["timeMax"] == "2026-03-08T00:00:00Z"
        assert params["orderBy"] == "startTime"


class TestNormalizeEvent:
    def _provider(self) -> GoogleCalendarProvider:
        return GoogleCalendarProvider(
            make_source(11, SourceKind.GOOGLE), client=CLIENT, token_store=InMemoryTokenStore()
        )

    def test_timed_event(self):
        event = self._provider().normalize_event(
            _event(
                "a",
                description="Agenda",
                location="Room 4",
                recurrence=["RRULE:FREQ=WEEKLY;BYDAY=MO"],
            )
        )

        assert event.starts_at == datetime(2026, 3, 2, 14, 0, tzinfo=UTC)
        assert event.ends_at == datetime(2026, 3, 2, 15, 0, tzinfo=UTC)
        assert event.all_day is False
        assert event.description == "Agenda"
        assert event.location == "Room 4"
        assert event.recurrence_rule == "RRULE:FREQ=WEEKLY;BYDAY=MO"
        assert event.raw is not None and event.raw["id"] == "a"

    def test_all_day_event(self):
        event = self._provider().normalize_event(
            {
                "id": "holiday",
                "status": "tentative",
                "start": {"date": "2026-12-25"},
                "end": {"date": "2026-12-26"},
            }
        )

        assert event.all_day is True
        assert event.starts_at == datetime(2026, 12, 25, tzinfo=UTC)
        assert event.ends_at == datetime(2026, 12, 26, tzinfo=UTC)
        assert event.status == EventStatus.TENTATIVE

    def test_missing_id_gets_stable_generated_id(self):
        provider = self._provider()
        payload = {"summary": "Lunch", "start": {"dateTime": "2026-03-02T12:00:00Z"}}

        first = provider.normalize_event(payload)
        second = provider.normalize_event(dict(payload))

        assert first.external_id.startswith("generated-")
        assert first.external_id == second.external_id

    def test_events_without_start_are_dropped_from_batches(self):
        provider = self._provider()

        events = provider.normalize_many(
            [{"id": "broken", "start": {"dateTime": "not-a-date"}}, _event("ok")]
        )

        assert [event.external_id for event in events] == ["ok"]
