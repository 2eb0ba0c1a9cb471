"""Base classes and canonical data models for the dailysync engine.

Every provider client must subclass ProviderClient and return
RawProviderRecord lists.  Records are transient: one job invocation reduces
them to zero or more DailyMeasurementRow values and discards them.  Rows are
the single source of truth consumed by the store, the API layer, and the
backfill cursor.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any
from uuid import UUID

import httpx

from src.metric_sync.exceptions import (
    CredentialsError,
    PermanentSyncError,
    ProviderError,
)

if TYPE_CHECKING:
    from src.metric_sync.credentials import TokenStore

logger = logging.getLogger("dailysync.providers")

DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=15.0)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# OAuth / Auth tokens
# ---------------------------------------------------------------------------


@dataclass
class OAuthTokens:
    """OAuth token pair returned after authentication or refresh.

    Attributes:
        access_token:  Bearer token for API calls.
        refresh_token: Long-lived token used to obtain a new access_token.
        expires_at:    UTC datetime when the access_token expires.
        token_type:    Token type, typically "Bearer".
    """

    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    token_type: str = "Bearer"

    def needs_refresh(self, buffer_seconds: int = 300, now: datetime | None = None) -> bool:
        """Return True if the access token expires within buffer_seconds."""
        if self.expires_at is None:
            return False
        now = now or utc_now()
        return (self.expires_at - now).total_seconds() < buffer_seconds


# ---------------------------------------------------------------------------
# Provider records and stored rows
# ---------------------------------------------------------------------------


@dataclass
class RawProviderRecord:
    """One raw measurement as returned by a provider API.

    Attributes:
        start:                   UTC start instant (None if absent/unparsable).
        end:                     UTC end instant (None if absent/unparsable).
        timezone_offset_minutes: Offset the provider reported for the record,
                                 None when it reported none.
        reported_day:            The provider's own calendar day, for metrics
                                 the provider already aggregates per day.
        record_id:               Provider-native identifier.
        payload:                 Exact JSON object from the API response.
        companions:              Records of another resource fetched for the
                                 same window (WHOOP workouts beside a recovery).
    """

    start: datetime | None = None
    end: datetime | None = None
    timezone_offset_minutes: int | None = None
    reported_day: date | None = None
    record_id: str | None = None
    payload: dict = field(default_factory=dict)
    companions: list[RawProviderRecord] = field(default_factory=list)

    def shift_to_offset(self, instant: datetime | None) -> datetime | None:
        """Move ``instant`` by the record's reported offset.

        The result is still a UTC-aware instant; callers express it in the
        device zone to read a local date or wall-clock time.  Records with
        no reported offset are returned unchanged.
        """
        if instant is None or self.timezone_offset_minutes is None:
            return instant
        return instant + timedelta(minutes=self.timezone_offset_minutes)


@dataclass(frozen=True)
class MetricStreamKey:
    """Identity of one metric stream: at most one row per (key, date)."""

    user_id: UUID
    metric: str
    source: str


@dataclass
class DailyMeasurementRow:
    """A stored per-day value for one metric stream.

    ``date`` is always derived by day assignment, never copied from the
    provider verbatim.  ``source_record_id`` is kept for debugging only; the
    upsert key is (user_id, metric, source, date).
    """

    user_id: UUID
    metric: str
    source: str
    date: date
    values: dict[str, Any] = field(default_factory=dict)
    source_record_id: str | None = None

    @property
    def stream(self) -> MetricStreamKey:
        return MetricStreamKey(self.user_id, self.metric, self.source)


# ---------------------------------------------------------------------------
# Abstract provider client
# ---------------------------------------------------------------------------


class ProviderClient(ABC):
    """Abstract base class for provider API clients.

    A provider client is a pure I/O boundary: it fetches and decodes raw
    records for a time window and manages the provider credentials.  Day
    assignment and value extraction happen elsewhere.

    Subclasses must implement:
        - fetch_window()
        - _exchange_refresh_token()
    """

    #: Source tag written to every row produced from this provider.
    SOURCE_ID: str = "unknown"

    #: Human-readable name for logging.
    DISPLAY_NAME: str = "Unknown Provider"

    def __init__(
        self,
        token_store: TokenStore,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self._token_store = token_store
        self._http_client = http_client
        self._timeout = timeout or DEFAULT_TIMEOUT

    @abstractmethod
    async def fetch_window(
        self,
        resource: str,
        start: datetime,
        end: datetime,
        access_token: str,
    ) -> list[RawProviderRecord]:
        """Fetch every raw record of ``resource`` inside [start, end).

        Args:
            resource:     Provider collection name (e.g. 'sleep').
            start:        Window start, UTC.
            end:          Window end, UTC.
            access_token: Valid bearer token.

        Returns:
            Decoded records in provider response order.
        """

    @abstractmethod
    async def _exchange_refresh_token(self, refresh_token: str) -> OAuthTokens:
        """POST the refresh grant to the provider token endpoint."""

    # ------------------------------------------------------------------
    # Consent and credentials
    # ------------------------------------------------------------------

    async def has_consent(self, user_id: UUID) -> bool:
        """Return True if the user connected this provider."""
        return await self._token_store.load(user_id, self.SOURCE_ID) is not None

    async def refresh_credentials(self, user_id: UUID) -> OAuthTokens:
        """Return valid tokens, refreshing and persisting them when near expiry.

        Raises:
            CredentialsError: No stored tokens, or the refresh grant failed.
        """
        tokens = await self._token_store.load(user_id, self.SOURCE_ID)
        if tokens is None:
            raise CredentialsError("No stored credentials", self.SOURCE_ID)
        if not tokens.needs_refresh():
            return tokens
        if not tokens.refresh_token:
            raise CredentialsError("Access token expired and no refresh token", self.SOURCE_ID)

        try:
            fresh = await self._exchange_refresh_token(tokens.refresh_token)
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise CredentialsError(f"Token refresh failed: {exc}", self.SOURCE_ID) from exc

        await self._token_store.save(user_id, self.SOURCE_ID, fresh)
        logger.info("%s: refreshed token for user %s", self.DISPLAY_NAME, user_id)
        return fresh

    # ------------------------------------------------------------------
    # Shared helpers — available to all providers
    # ------------------------------------------------------------------

    def _build_headers(self, access_token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
        }

    async def _get(self, url: str, params: dict, access_token: str) -> dict:
        """Make an authenticated GET request.

        Returns an empty dict for 204 No Content.

        Raises:
            ProviderError:      Transport failure, timeout, or non-2xx status.
            PermanentSyncError: The body is not JSON.
        """
        headers = self._build_headers(access_token)
        try:
            if self._http_client:
                response = await self._http_client.get(
                    url, params=params, headers=headers, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.get(url, params=params, headers=headers)
        except httpx.TransportError as exc:
            raise ProviderError(
                f"{self.DISPLAY_NAME} request to {url} failed: {exc}", self.SOURCE_ID
            ) from exc

        if response.status_code == 204:
            return {}
        if response.is_error:
            raise ProviderError(
                f"{self.DISPLAY_NAME} GET {url} -> HTTP {response.status_code}",
                self.SOURCE_ID,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise PermanentSyncError(
                f"{self.DISPLAY_NAME} returned a non-JSON body for {url}", self.SOURCE_ID
            ) from exc

    async def _post_token(self, url: str, data: dict[str, str]) -> OAuthTokens:
        """POST a form-encoded grant and decode the token response."""
        headers = {"Content-Type": "application/x-www-form-urlencoded"}
        if self._http_client:
            response = await self._http_client.post(
                url, data=data, headers=headers, timeout=self._timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, data=data, headers=headers)
        response.raise_for_status()
        body = response.json()

        expires_in = int(body.get("expires_in", 3600))
        return OAuthTokens(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token", data.get("refresh_token")),
            expires_at=utc_now() + timedelta(seconds=expires_in),
            token_type=body.get("token_type", "Bearer"),
        )

    @staticmethod
    def _safe_int(value: object) -> int | None:
        """Safely coerce a value to int, returning None on failure."""
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @staticmethod
    def _parse_iso_datetime(value: str | None) -> datetime | None:
        """Parse an ISO-8601 string to an aware UTC datetime.

        Naive strings are assumed UTC.  Returns None if the value is None or
        unparseable.
        """
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            logger.warning("Could not parse datetime string: %r", value)
            return None
        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @staticmethod
    def _iso_offset_minutes(value: str | None) -> int | None:
        """Return the UTC offset embedded in an ISO-8601 string, in minutes."""
        if not value:
            return None
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (ValueError, AttributeError):
            return None
        offset = dt.utcoffset()
        if offset is None:
            return None
        return int(offset.total_seconds() // 60)

    @staticmethod
    def _parse_day(value: str | None) -> date | None:
        if not value:
            return None
        try:
            return date.fromisoformat(value)
        except (ValueError, TypeError):
            logger.warning("Could not parse date string: %r", value)
            return None
