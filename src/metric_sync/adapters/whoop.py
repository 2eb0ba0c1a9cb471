"""WHOOP Developer API v2 adapter.

OAuth2 authorization code flow with refresh tokens.  Tokens are written to
``connected_devices`` by the connect flow; this adapter only refreshes them.

Environment variables:
    WHOOP_CLIENT_ID     — OAuth2 client ID
    WHOOP_CLIENT_SECRET — OAuth2 client secret

API base: https://api.prod.whoop.com/developer/v2

Endpoints used:
    /activity/sleep    — Sleep periods with stage summary and scores
    /recovery          — Daily recovery score, resting HR, HRV, skin temp, SpO2
    /activity/workout  — Workouts with heart-rate zone durations

The ``physical`` resource fetches recoveries and workouts for the same window
and hands back the recoveries with the window's workouts attached as
companions.  Recoveries carry no interval; ``created_at`` stands in for the
end instant.

Collections are paged: each response carries ``next_token`` and the next page
is requested with ``nextToken``.  All pages are merged into one record list.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

import httpx

from src.config import get_settings
from src.metric_sync.base import OAuthTokens, ProviderClient, RawProviderRecord
from src.metric_sync.credentials import TokenStore
from src.metric_sync.exceptions import PermanentSyncError

logger = logging.getLogger("dailysync.providers.whoop")

_WHOOP_API_BASE = "https://api.prod.whoop.com/developer/v2"
_WHOOP_TOKEN_URL = "https://api.prod.whoop.com/oauth/oauth2/token"

_PAGE_LIMIT = 25
# Guards against a provider that keeps handing back a next_token
_MAX_PAGES = 40

_RESOURCE_PATHS: dict[str, str] = {
    "sleep": "/activity/sleep",
    "recovery": "/recovery",
    "workout": "/activity/workout",
}

PHYSICAL_RESOURCE = "physical"


def _iso_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000Z")


class WhoopClient(ProviderClient):
    """WHOOP v2 provider client."""

    SOURCE_ID = "whoop"
    DISPLAY_NAME = "WHOOP"

    def __init__(
        self,
        token_store: TokenStore,
        client_id: str | None = None,
        client_secret: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        """Initialize the WHOOP client.

        Args:
            token_store:   Where the user's WHOOP tokens are stored.
            client_id:     OAuth2 client ID (defaults to Settings.whoop_client_id).
            client_secret: OAuth2 client secret.
            http_client:   Optional pre-configured httpx client (for testing).
            timeout:       Per-request timeout.
        """
        super().__init__(token_store, http_client=http_client, timeout=timeout)
        settings = get_settings()
        self._client_id = client_id if client_id is not None else settings.whoop_client_id
        self._client_secret = (
            client_secret if client_secret is not None else settings.whoop_client_secret
        )

    async def fetch_window(
        self,
        resource: str,
        start: datetime,
        end: datetime,
        access_token: str,
    ) -> list[RawProviderRecord]:
        if resource == PHYSICAL_RESOURCE:
            recoveries = await self._fetch_records("recovery", start, end, access_token)
            workouts = await self._fetch_records("workout", start, end, access_token)
            for recovery in recoveries:
                recovery.companions = list(workouts)
            return recoveries
        return await self._fetch_records(resource, start, end, access_token)

    async def _fetch_records(
        self,
        resource: str,
        start: datetime,
        end: datetime,
        access_token: str,
    ) -> list[RawProviderRecord]:
        path = _RESOURCE_PATHS.get(resource)
        if path is None:
            raise PermanentSyncError(f"WHOOP has no resource '{resource}'", self.SOURCE_ID)

        params: dict[str, str | int] = {
            "start": _iso_utc(start),
            "end": _iso_utc(end),
            "limit": _PAGE_LIMIT,
        }
        records: list[dict] = []
        for _ in range(_MAX_PAGES):
            body = await self._get(f"{_WHOOP_API_BASE}{path}", params, access_token)
            records.extend(body.get("records") or [])
            next_token = body.get("next_token") or body.get("nextToken")
            if not next_token:
                break
            params["nextToken"] = next_token
        else:
            logger.warning("WHOOP %s: stopped paging after %d pages", resource, _MAX_PAGES)

        logger.debug(
            "WHOOP %s %s → %s: %d records", resource, params["start"], params["end"], len(records)
        )
        return [self._to_record(r) for r in records if isinstance(r, dict)]

    async def _exchange_refresh_token(self, refresh_token: str) -> OAuthTokens:
        return await self._post_token(
            _WHOOP_TOKEN_URL,
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "scope": "offline",
            },
        )

    # ------------------------------------------------------------------
    # Decoding
    # ------------------------------------------------------------------

    def _to_record(self, raw: dict) -> RawProviderRecord:
        # Recoveries are keyed by their cycle
        record_id = raw.get("id", raw.get("cycle_id"))
        return RawProviderRecord(
            start=self._parse_iso_datetime(raw.get("start")),
            end=self._parse_iso_datetime(raw.get("end") or raw.get("created_at")),
            timezone_offset_minutes=self._offset_minutes(raw),
            record_id=str(record_id) if record_id is not None else None,
            payload=raw,
        )

    @classmethod
    def _offset_minutes(cls, raw: dict) -> int | None:
        """Read the record's UTC offset.

        WHOOP reports ``timezone_offset`` as "+HH:MM"; older payloads carried
        seconds, and some proxies add ``timezone_offset_minutes``.
        """
        if "timezone_offset_minutes" in raw:
            return cls._safe_int(raw.get("timezone_offset_minutes"))
        value = raw.get("timezone_offset")
        if value is None:
            return None
        if isinstance(value, str) and ":" in value:
            sign = -1 if value.startswith("-") else 1
            try:
                hours, minutes = value.lstrip("+-").split(":")
                return sign * (int(hours) * 60 + int(minutes))
            except ValueError:
                logger.warning("Unparseable WHOOP timezone_offset: %r", value)
                return None
        seconds = cls._safe_int(value)
        return seconds // 60 if seconds is not None else None
