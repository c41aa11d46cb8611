"""OAuth access-token handling for the remote calendar providers.

Providers receive a credential from a ``TokenStore`` and keep a live access
token in memory. When the stored credential is expired (or the API rejects it
with 401) the session refreshes it synchronously and hands the refreshed
credential back to the token store. The store owns persistence.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from calhub.providers.base import ProviderInitError, TokenRefreshError, safe_error_message

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
MICROSOFT_OAUTH_TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"
MICROSOFT_DEFAULT_SCOPE = "offline_access Calendars.Read"

EXPIRY_SKEW = timedelta(minutes=5)
DEFAULT_EXPIRES_IN_SECONDS = 3600


class OAuthCredential(BaseModel):
    """Stored OAuth credential for one account and provider."""

    model_config = ConfigDict(extra="ignore")

    access_token: str | None = Field(default=None, repr=False)
    refresh_token: str | None = Field(default=None, repr=False)
    expires_at: datetime | None = None
    token_type: str = "Bearer"
    scope: str | None = None

    def is_expired(self, *, now: datetime | None = None) -> bool:
        """True when the access token is missing or within five minutes of expiry."""
        if not self.access_token or self.expires_at is None:
            return True
        current = now or datetime.now(UTC)
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        return current >= expires_at - EXPIRY_SKEW


class OAuthClientCredentials(BaseModel):
    """Application client id/secret used for refresh-token exchanges."""

    model_config = ConfigDict(extra="forbid")

    client_id: str = Field(min_length=1)
    client_secret: str = Field(min_length=1, repr=False)

    @field_validator("client_id", "client_secret")
    @classmethod
    def _normalize_non_empty(cls, value: str, info: ValidationInfo) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError(f"{info.field_name} must be a non-empty string")
        return normalized


class TokenStore(Protocol):
    """Persistence interface for OAuth credentials."""

    async def load(self, *, account: str, provider: str) -> OAuthCredential | None:
        """Return the stored credential, or ``None`` when the account is not linked."""
        ...

    async def update(self, *, account: str, provider: str, credential: OAuthCredential) -> None:
        """Persist a refreshed credential."""
        ...


class OAuthSession:
    """Live access token for one linked account, refreshed on demand."""

    def __init__(
        self,
        *,
        provider: str,
        account: str,
        token_url: str,
        client: OAuthClientCredentials,
        token_store: TokenStore,
        http_client: httpx.AsyncClient,
        scope: str | None = None,
    ) -> None:
        self._provider = provider
        self._account = account
        self._token_url = token_url
        self._client = client
        self._token_store = token_store
        self._http_client = http_client
        self._scope = scope
        self._credential: OAuthCredential | None = None
        self._refresh_lock = asyncio.Lock()

    @property
    def account(self) -> str:
        return self._account

    async def start(self) -> None:
        """Load the stored credential, refreshing it immediately when expired."""
        credential = await self._token_store.load(account=self._account, provider=self._provider)
        if credential is None:
            raise ProviderInitError(
                f"No {self._provider} OAuth credential linked for account {self._account!r}"
            )
        if not credential.access_token and not credential.refresh_token:
            raise ProviderInitError(
                f"{self._provider} OAuth credential for account {self._account!r} has no tokens"
            )
        self._credential = credential
        if credential.is_expired():
            logger.info(
                "Stored %s access token for account %s is expired; refreshing",
                self._provider,
                self._account,
            )
            await self.get_access_token(force_refresh=True)

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and self._token_is_fresh():
            assert self._credential is not None and self._credential.access_token is not None
            return self._credential.access_token

        async with self._refresh_lock:
            if not force_refresh and self._token_is_fresh():
                assert self._credential is not None and self._credential.access_token is not None
                return self._credential.access_token

            await self._refresh_access_token()
            assert self._credential is not None and self._credential.access_token is not None
            return self._credential.access_token

    def _token_is_fresh(self) -> bool:
        return self._credential is not None and not self._credential.is_expired()

    async def _refresh_access_token(self) -> None:
        if self._credential is None:
            raise ProviderInitError("OAuth session used before start()")
        refresh_token = self._credential.refresh_token
        if not refresh_token:
            raise TokenRefreshError(
                f"{self._provider} access token expired and no refresh token is stored "
                f"for account {self._account!r}"
            )

        form: dict[str, str] = {
            "client_id": self._client.client_id,
            "client_secret": self._client.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        if self._scope:
            form["scope"] = self._scope

        try:
            response = await self._http_client.post(
                self._token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise TokenRefreshError(
                f"{self._provider} OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise TokenRefreshError(
                f"{self._provider} OAuth token refresh failed "
                f"({response.status_code}): {safe_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise TokenRefreshError(
                f"{self._provider} OAuth token endpoint returned invalid JSON"
            ) from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise TokenRefreshError(
                f"{self._provider} OAuth token response is missing a non-empty access_token"
            )

        expires_in = _coerce_expires_in_seconds(payload.get("expires_in"))
        rotated_refresh_token = payload.get("refresh_token")
        refreshed = self._credential.model_copy(
            update={
                "access_token": access_token.strip(),
                "expires_at": datetime.now(UTC) + timedelta(seconds=expires_in),
                "refresh_token": (
                    rotated_refresh_token.strip()
                    if isinstance(rotated_refresh_token, str) and rotated_refresh_token.strip()
                    else refresh_token
                ),
                "scope": payload.get("scope") or self._credential.scope,
            }
        )
        self._credential = refreshed
        await self._token_store.update(
            account=self._account, provider=self._provider, credential=refreshed
        )
        logger.info("Refreshed %s access token for account %s", self._provider, self._account)


def _coerce_expires_in_seconds(value: Any) -> int:
    if isinstance(value, bool):
        return DEFAULT_EXPIRES_IN_SECONDS
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int | float):
        return int(value) if value > 0 else DEFAULT_EXPIRES_IN_SECONDS
    return DEFAULT_EXPIRES_IN_SECONDS


def microsoft_token_url(tenant: str | None) -> str:
    normalized = (tenant or "").strip() or "common"
    return MICROSOFT_OAUTH_TOKEN_URL_TEMPLATE.format(tenant=normalized)
