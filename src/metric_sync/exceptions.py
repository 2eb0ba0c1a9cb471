"""Exception hierarchy for the sync engine.

The job state machine maps these onto its outcome taxonomy: retryable errors
re-arm the slot with backoff, permanent errors are logged and resolve as
success from the scheduler's point of view.
"""

from __future__ import annotations


class SyncError(Exception):
    """Base exception for all sync engine errors."""

    def __init__(self, message: str, source: str | None = None) -> None:
        self.message = message
        self.source = source
        super().__init__(message)


class RetryableSyncError(SyncError):
    """Transient failure (network, credential refresh, store hiccup)."""


class PermanentSyncError(SyncError):
    """Malformed local state or an undecodable provider response."""


class ProviderError(RetryableSyncError):
    """Provider API returned a non-2xx response or could not be reached."""

    def __init__(
        self,
        message: str,
        source: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, source)
        self.status_code = status_code


class CredentialsError(RetryableSyncError):
    """Token refresh failed."""


class UnknownJobError(SyncError):
    """A job name that is not present in sync_config.yaml."""
