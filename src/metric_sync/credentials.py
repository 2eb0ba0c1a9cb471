"""Provider credential storage.

Tokens live on the ``connected_devices`` row for (user_id, source).  A
provider counts as consented when an active row with an access token exists;
disconnecting the provider in the settings UI clears ``is_active``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from uuid import UUID

from src.metric_sync.base import OAuthTokens
from src.services import supabase

logger = logging.getLogger("dailysync.credentials")


class TokenStore(ABC):
    """Load and persist provider tokens per user."""

    @abstractmethod
    async def load(self, user_id: UUID, source: str) -> OAuthTokens | None:
        """Return the stored tokens, or None if the provider is not connected."""

    @abstractmethod
    async def save(self, user_id: UUID, source: str, tokens: OAuthTokens) -> None:
        """Persist refreshed tokens."""

    @abstractmethod
    async def active_user_ids(self) -> list[UUID]:
        """Return every user with at least one connected provider."""


class PostgresTokenStore(TokenStore):
    """TokenStore backed by the connected_devices table."""

    async def load(self, user_id: UUID, source: str) -> OAuthTokens | None:
        row = await supabase.fetchrow(
            """
            SELECT access_token, refresh_token, token_expires_at
            FROM connected_devices
            WHERE user_id = $1 AND source = $2 AND is_active
              AND access_token IS NOT NULL
            """,
            user_id,
            source,
            user_id=user_id,
        )
        if row is None:
            return None
        return OAuthTokens(
            access_token=row["access_token"],
            refresh_token=row["refresh_token"],
            expires_at=row["token_expires_at"],
        )

    async def save(self, user_id: UUID, source: str, tokens: OAuthTokens) -> None:
        await supabase.execute(
            """
            UPDATE connected_devices
            SET access_token = $3, refresh_token = $4, token_expires_at = $5,
                updated_at = NOW()
            WHERE user_id = $1 AND source = $2
            """,
            user_id,
            source,
            tokens.access_token,
            tokens.refresh_token,
            tokens.expires_at,
            user_id=user_id,
        )

    async def active_user_ids(self) -> list[UUID]:
        rows = await supabase.fetch(
            "SELECT DISTINCT user_id FROM connected_devices WHERE is_active"
        )
        return [r["user_id"] for r in rows]


class InMemoryTokenStore(TokenStore):
    """Process-local TokenStore for the memory backend and tests."""

    def __init__(self, tokens: dict[tuple[UUID, str], OAuthTokens] | None = None) -> None:
        self._tokens: dict[tuple[UUID, str], OAuthTokens] = dict(tokens or {})

    async def load(self, user_id: UUID, source: str) -> OAuthTokens | None:
        return self._tokens.get((user_id, source))

    async def save(self, user_id: UUID, source: str, tokens: OAuthTokens) -> None:
        self._tokens[(user_id, source)] = tokens

    async def active_user_ids(self) -> list[UUID]:
        return sorted({user_id for user_id, _ in self._tokens}, key=str)

    def revoke(self, user_id: UUID, source: str) -> None:
        self._tokens.pop((user_id, source), None)
        logger.debug("Revoked %s credentials for %s", source, user_id)
