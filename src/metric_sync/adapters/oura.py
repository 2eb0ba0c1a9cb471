"""Oura Ring API v2 adapter.

Supports both OAuth2 (for multi-user deployments) and a personal access token
(for single-user / development use).

Environment variables:
    OURA_CLIENT_ID      — OAuth2 client ID
    OURA_CLIENT_SECRET  — OAuth2 client secret
    OURA_PERSONAL_TOKEN — Personal access token (skips OAuth2 for dev)

API base: https://api.ouraring.com

Endpoints used:
    /v2/usercollection/sleep            — Sleep periods (interval, ISO offsets)
    /v2/usercollection/daily_activity   — Daily step/calorie summary (reported day)

Oura filters collections by calendar day (``start_date``/``end_date``,
inclusive), so interval records are trimmed to the requested window after
fetching.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from uuid import UUID

import httpx

from src.config import get_settings
from src.metric_sync.base import OAuthTokens, ProviderClient, RawProviderRecord
from src.metric_sync.credentials import TokenStore
from src.metric_sync.exceptions import PermanentSyncError

logger = logging.getLogger("dailysync.providers.oura")

_OURA_API_BASE = "https://api.ouraring.com"
_OURA_TOKEN_URL = "https://api.ouraring.com/oauth/token"

_MAX_PAGES = 40

# resource → (path, interval?)
_RESOURCES: dict[str, tuple[str, bool]] = {
    "sleep": ("/v2/usercollection/sleep", True),
    "daily_activity": ("/v2/usercollection/daily_activity", False),
}


class OuraClient(ProviderClient):
    """Oura Ring API v2 provider client.

    Sleep periods carry their local offset inside ``bedtime_start`` /
    ``bedtime_end``; daily activity is already aggregated per ``day``.
    """

    SOURCE_ID = "oura"
    DISPLAY_NAME = "Oura Ring"

    def __init__(
        self,
        token_store: TokenStore,
        client_id: str | None = None,
        client_secret: str | None = None,
        personal_token: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        """Initialize the Oura client.

        Args:
            token_store:    Where per-user Oura OAuth tokens are stored.
            client_id:      OAuth2 client ID (Settings.oura_client_id).
            client_secret:  OAuth2 client secret (Settings.oura_client_secret).
            personal_token: Personal access token for single-user use.
            http_client:    Optional pre-configured httpx client (for testing).
            timeout:        Per-request timeout.
        """
        super().__init__(token_store, http_client=http_client, timeout=timeout)
        settings = get_settings()
        self._client_id = client_id if client_id is not None else settings.oura_client_id
        self._client_secret = (
            client_secret if client_secret is not None else settings.oura_client_secret
        )
        self._personal_token = (
            personal_token if personal_token is not None else settings.oura_personal_token
        )

    # ------------------------------------------------------------------
    # Consent and credentials
    # ------------------------------------------------------------------

    async def has_consent(self, user_id: UUID) -> bool:
        if await super().has_consent(user_id):
            return True
        return bool(self._personal_token)

    async def refresh_credentials(self, user_id: UUID) -> OAuthTokens:
        """Prefer the user's OAuth tokens; fall back to the personal token."""
        if await self._token_store.load(user_id, self.SOURCE_ID) is None and self._personal_token:
            return OAuthTokens(access_token=self._personal_token)
        return await super().refresh_credentials(user_id)

    async def _exchange_refresh_token(self, refresh_token: str) -> OAuthTokens:
        return await self._post_token(
            _OURA_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
            },
        )

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------

    async def fetch_window(
        self,
        resource: str,
        start: datetime,
        end: datetime,
        access_token: str,
    ) -> list[RawProviderRecord]:
        if resource not in _RESOURCES:
            raise PermanentSyncError(f"Oura has no resource '{resource}'", self.SOURCE_ID)
        path, is_interval = _RESOURCES[resource]

        # end_date is inclusive on Oura's side
        last_instant = end - timedelta(microseconds=1)
        params: dict[str, str] = {
            "start_date": start.date().isoformat(),
            "end_date": last_instant.date().isoformat(),
        }
        items: list[dict] = []
        for _ in range(_MAX_PAGES):
            body = await self._get(f"{_OURA_API_BASE}{path}", params, access_token)
            items.extend(body.get("data") or [])
            next_token = body.get("next_token")
            if not next_token:
                break
            params["next_token"] = next_token
        else:
            logger.warning("Oura %s: stopped paging after %d pages", resource, _MAX_PAGES)

        if is_interval:
            records = [self._to_interval_record(i) for i in items if isinstance(i, dict)]
            # Oura matches by day; keep only intervals ending inside the window
            return [r for r in records if r.end is None or start <= r.end < end]
        return [self._to_daily_record(i) for i in items if isinstance(i, dict)]

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _to_interval_record(self, raw: dict) -> RawProviderRecord:
        end_str = raw.get("bedtime_end")
        return RawProviderRecord(
            start=self._parse_iso_datetime(raw.get("bedtime_start")),
            end=self._parse_iso_datetime(end_str),
            timezone_offset_minutes=self._iso_offset_minutes(end_str),
            reported_day=self._parse_day(raw.get("day")),
            record_id=raw.get("id"),
            payload=raw,
        )

    def _to_daily_record(self, raw: dict) -> RawProviderRecord:
        return RawProviderRecord(
            reported_day=self._parse_day(raw.get("day")),
            record_id=raw.get("id"),
            payload=raw,
        )
