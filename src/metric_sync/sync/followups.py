"""Follow-up work scheduled after a job wrote rows.

Downstream trigger recalculation runs as its own scheduled task in the
``recalc:<user>`` slot, with its own retry backoff.  Its failures never
change the outcome of the sync job that queued it.
"""

from __future__ import annotations

import logging
from uuid import UUID

import httpx

from src.metric_sync.config_loader import FollowupConfig
from src.metric_sync.sync.job import JobOutcome
from src.services.edge_functions import EdgeFunctionsClient

logger = logging.getLogger("dailysync.sync.followups")


def recalc_slot(user_id: UUID) -> str:
    return f"recalc:{user_id}"


class TriggerRecalcTask:
    """Asks the recalc edge function to re-derive a user's triggers."""

    def __init__(self, client: EdgeFunctionsClient, config: FollowupConfig) -> None:
        self._client = client
        self._config = config

    @property
    def enabled(self) -> bool:
        return self._config.enabled and self._client.configured

    async def run(self, user_id: UUID) -> JobOutcome:
        if not self.enabled:
            logger.debug("Recalc follow-up disabled; skipping for %s", user_id)
            return JobOutcome.NOOP
        try:
            await self._client.trigger_recalc(user_id, self._config.function)
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status == 429 or status >= 500:
                logger.warning("Recalc for %s failed (HTTP %d); will retry", user_id, status)
                return JobOutcome.RETRYABLE
            logger.error("Recalc for %s rejected (HTTP %d)", user_id, status)
            return JobOutcome.PERMANENT
        except httpx.TransportError as exc:
            logger.warning("Recalc for %s failed: %s; will retry", user_id, exc)
            return JobOutcome.RETRYABLE
        logger.info("Recalc triggered for %s", user_id)
        return JobOutcome.SUCCESS
