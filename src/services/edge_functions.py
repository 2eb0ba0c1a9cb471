"""Supabase Edge Function client.

Only used for fire-and-forget notifications after a sync wrote rows; the
edge functions do their own reads from the metric tables.
"""

from __future__ import annotations

import logging
from uuid import UUID

import httpx

from src.config import Settings, get_settings

logger = logging.getLogger("dailysync.edge_functions")

_DEFAULT_TIMEOUT = httpx.Timeout(30.0, connect=15.0)


class EdgeFunctionsClient:
    """POSTs JSON to ``{supabase_url}/functions/v1/<name>`` with the service key."""

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        s = settings or get_settings()
        self._base_url = s.supabase_url.rstrip("/")
        self._service_key = s.supabase_service_role_key
        self._http_client = http_client
        self._timeout = timeout or _DEFAULT_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self._base_url and self._service_key)

    async def invoke(self, function: str, payload: dict) -> httpx.Response:
        """Invoke an edge function.

        Raises:
            httpx.HTTPStatusError: Non-2xx response.
            httpx.TransportError:  Network failure or timeout.
        """
        url = f"{self._base_url}/functions/v1/{function}"
        headers = {
            "apikey": self._service_key,
            "Authorization": f"Bearer {self._service_key}",
            "Content-Type": "application/json",
        }
        if self._http_client:
            response = await self._http_client.post(
                url, json=payload, headers=headers, timeout=self._timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(url, json=payload, headers=headers)
        response.raise_for_status()
        logger.debug("Edge function %s → HTTP %d", function, response.status_code)
        return response

    async def trigger_recalc(self, user_id: UUID, function: str = "recalc-user-triggers") -> None:
        await self.invoke(function, {"user_id": str(user_id)})
