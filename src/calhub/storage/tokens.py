"""PostgreSQL-backed OAuth token store.

The authorization-code exchange that first links an account happens outside
this package; it writes the initial row with ``save``. Providers only call
``load`` and ``update``.
"""

from __future__ import annotations

import logging

import asyncpg

from calhub.providers.oauth import OAuthCredential

logger = logging.getLogger(__name__)


class PostgresTokenStore:
    """``TokenStore`` implementation over the ``oauth_tokens`` table."""

    def __init__(self, pool: asyncpg.Pool) -> None:
        self._pool = pool

    async def load(self, *, account: str, provider: str) -> OAuthCredential | None:
        row = await self._pool.fetchrow(
            """
            SELECT access_token, refresh_token, expires_at, token_type, scope
            FROM oauth_tokens
            WHERE account = $1 AND provider = $2
            """,
            account,
            provider,
        )
        return OAuthCredential.model_validate(dict(row)) if row is not None else None

    async def save(self, *, account: str, provider: str, credential: OAuthCredential) -> None:
        await self._pool.execute(
            """
            INSERT INTO oauth_tokens
                (account, provider, access_token, refresh_token, expires_at, token_type, scope)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            ON CONFLICT (account, provider) DO UPDATE
            SET access_token = EXCLUDED.access_token,
                refresh_token = COALESCE(EXCLUDED.refresh_token, oauth_tokens.refresh_token),
                expires_at = EXCLUDED.expires_at,
                token_type = EXCLUDED.token_type,
                scope = COALESCE(EXCLUDED.scope, oauth_tokens.scope),
                updated_at = now()
            """,
            account,
            provider,
            credential.access_token,
            credential.refresh_token,
            credential.expires_at,
            credential.token_type,
            credential.scope,
        )

    async def update(self, *, account: str, provider: str, credential: OAuthCredential) -> None:
        await self.save(account=account, provider=provider, credential=credential)
        logger.debug("Stored refreshed %s credential for account %s", provider, account)

    async def delete(self, *, account: str, provider: str) -> bool:
        result = await self._pool.execute(
            "DELETE FROM oauth_tokens WHERE account = $1 AND provider = $2",
            account,
            provider,
        )
        return result.endswith(" 1")
