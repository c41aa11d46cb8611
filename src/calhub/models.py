"""Shared value types for calendar sources, events, and sync results.

Source descriptors carry a per-kind ``connection_config`` blob. The blob is
validated against the pydantic model registered for the source kind when a
source is created or updated; sync code never re-validates it.
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    ValidationInfo,
    field_validator,
    model_validator,
)


class SourceKind(enum.StrEnum):
    """Closed set of supported calendar source kinds."""

    GOOGLE = "remote-oauth-a"
    MICROSOFT = "remote-oauth-b"
    HTTP_FEED = "remote-http-feed"
    LOCAL_FEED = "local-file-feed"


class EventStatus(enum.StrEnum):
    """Normalized event status."""

    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class SyncStatus(enum.StrEnum):
    """Per-source sync state machine status."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class SourceConfigError(ValueError):
    """Raised when a source's connection_config does not fit its kind."""


# ---------------------------------------------------------------------------
# Per-kind connection configs
# ---------------------------------------------------------------------------


class _OAuthCalendarConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    calendar_id: str = "primary"
    account: str | None = None

    @field_validator("calendar_id")
    @classmethod
    def _normalize_calendar_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("calendar_id must be a non-empty string")
        return normalized

    @field_validator("account")
    @classmethod
    def _normalize_account(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class GoogleCalendarConfig(_OAuthCalendarConfig):
    """Connection parameters for a Google Calendar source."""


class MicrosoftCalendarConfig(_OAuthCalendarConfig):
    """Connection parameters for a Microsoft Graph calendar source."""


class HttpFeedConfig(BaseModel):
    """Connection parameters for a remote iCalendar feed."""

    model_config = ConfigDict(extra="forbid")

    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)

    @field_validator("url")
    @classmethod
    def _validate_url(cls, value: str) -> str:
        normalized = value.strip()
        # webcal:// is the conventional scheme for subscribable feeds
        if normalized.lower().startswith("webcal://"):
            normalized = "https://" + normalized[len("webcal://") :]
        if not normalized.lower().startswith(("http://", "https://")):
            raise ValueError("url must be an http(s) URL")
        return normalized


class LocalFeedConfig(BaseModel):
    """Connection parameters for an iCalendar file on local disk."""

    model_config = ConfigDict(extra="forbid")

    path: str

    @field_validator("path")
    @classmethod
    def _validate_path(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


ConnectionConfig = (
    GoogleCalendarConfig | MicrosoftCalendarConfig | HttpFeedConfig | LocalFeedConfig
)

_CONFIG_MODELS: dict[SourceKind, type[BaseModel]] = {
    SourceKind.GOOGLE: GoogleCalendarConfig,
    SourceKind.MICROSOFT: MicrosoftCalendarConfig,
    SourceKind.HTTP_FEED: HttpFeedConfig,
    SourceKind.LOCAL_FEED: LocalFeedConfig,
}


def validate_connection_config(
    kind: SourceKind | str, raw: dict[str, Any] | None
) -> dict[str, Any]:
    """Validate *raw* against the model for *kind* and return the normalized dict.

    Raises:
        SourceConfigError: When the kind is unknown or the config is invalid.
    """
    try:
        source_kind = SourceKind(kind)
    except ValueError as exc:
        raise SourceConfigError(f"Unknown source kind: {kind!r}") from exc

    model = _CONFIG_MODELS[source_kind]
    try:
        parsed = model.model_validate(raw or {})
    except ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise SourceConfigError(f"Invalid connection_config for {source_kind}: {details}") from exc
    return parsed.model_dump()


# ---------------------------------------------------------------------------
# Durable records
# ---------------------------------------------------------------------------


class Source(BaseModel):
    """Source descriptor: one configured calendar origin."""

    model_config = ConfigDict(extra="ignore")

    id: int
    owner_id: str | None = None
    name: str
    kind: SourceKind
    connection_config: dict[str, Any] = Field(default_factory=dict)
    enabled: bool = True
    display_color: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def parsed_config(self) -> ConnectionConfig:
        """Return the typed connection config for this source's kind."""
        model = _CONFIG_MODELS[self.kind]
        return model.model_validate(self.connection_config)  # type: ignore[return-value]


class SyncCursor(BaseModel):
    """Opaque progress markers handed to providers.

    Providers receive this value object, never the durable record.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    cursor_token: str | None = None
    validator: str | None = None

    @property
    def is_empty(self) -> bool:
        return self.cursor_token is None and self.validator is None


class SyncCursorRecord(BaseModel):
    """Durable per-source sync progress record."""

    model_config = ConfigDict(extra="ignore")

    source_id: int
    cursor_token: str | None = None
    validator: str | None = None
    last_sync_at: datetime | None = None
    status: SyncStatus = SyncStatus.PENDING
    last_error: str | None = None
    event_count: int = 0

    def to_cursor(self) -> SyncCursor:
        return SyncCursor(cursor_token=self.cursor_token, validator=self.validator)


class CalendarEvent(BaseModel):
    """Provider-neutral normalized event."""

    model_config = ConfigDict(extra="forbid")

    external_id: str = Field(min_length=1)
    title: str | None = None
    description: str | None = None
    location: str | None = None
    starts_at: datetime
    ends_at: datetime | None = None
    all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    recurrence_rule: str | None = None
    raw: dict[str, Any] | None = None

    @field_validator("external_id")
    @classmethod
    def _normalize_external_id(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("external_id must be a non-empty string")
        return normalized

    @field_validator("starts_at", "ends_at")
    @classmethod
    def _require_timezone(cls, value: datetime | None, info: ValidationInfo) -> datetime | None:
        if value is not None and value.tzinfo is None:
            raise ValueError(f"{info.field_name} must be timezone-aware")
        return value


class SyncResult(BaseModel):
    """Outcome of one provider sync call."""

    model_config = ConfigDict(extra="forbid")

    events: list[CalendarEvent] = Field(default_factory=list)
    deleted_ids: list[str] = Field(default_factory=list)
    cursor_token: str | None = None
    validator: str | None = None
    unchanged: bool = False
    full_refresh: bool = False

    @model_validator(mode="after")
    def _check_shape(self) -> SyncResult:
        if self.unchanged and self.full_refresh:
            raise ValueError("a sync result cannot be both unchanged and a full refresh")
        if self.unchanged and (self.events or self.deleted_ids):
            raise ValueError("an unchanged sync result cannot carry events or deletions")
        return self

    @property
    def cursor(self) -> SyncCursor:
        return SyncCursor(cursor_token=self.cursor_token, validator=self.validator)


class FetchWindow(BaseModel):
    """Time window for full event fetches."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    start: datetime | None = None
    end: datetime | None = None

    @model_validator(mode="after")
    def _check_order(self) -> FetchWindow:
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("window end must be after window start")
        return self


class SourceSyncStatus(BaseModel):
    """Per-source status row for display; ``status`` is ``None`` before the first sync."""

    model_config = ConfigDict(extra="ignore")

    source_id: int
    source_name: str
    source_kind: SourceKind
    enabled: bool = True
    cursor_token: str | None = None
    validator: str | None = None
    last_sync_at: datetime | None = None
    status: SyncStatus | None = None
    last_error: str | None = None
    event_count: int = 0
