"""Error taxonomy for pricebook synchronization.

Per-entity errors (TransientNetworkError, ValidationError, ConflictError)
are caught by bulk runs and recorded in the pending-sync queue. Job-level
errors (ConfigurationError) abort a run. RateLimited is never retried
immediately -- callers wait out ``remaining_seconds``.
"""

from __future__ import annotations


class PricebookSyncError(Exception):
    """Base class for all pricebook sync failures."""


class TransientNetworkError(PricebookSyncError):
    """Network failure or 5xx from the external system. Retryable."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RateLimited(PricebookSyncError):
    """Outbound call suppressed while the external system cooldown is active."""

    def __init__(self, remaining_seconds: float) -> None:
        super().__init__(f"Rate limited, retry in {remaining_seconds:.1f}s")
        self.remaining_seconds = remaining_seconds


class ValidationError(PricebookSyncError):
    """Entity payload is malformed or rejected by the external system."""


class ConflictError(PricebookSyncError):
    """Optimistic concurrency check failed -- the record changed underneath us."""

    def __init__(self, entity_id: str, expected_version: int, actual_version: int | None = None) -> None:
        super().__init__(
            f"Record {entity_id} changed (expected version {expected_version}, "
            f"found {actual_version}); re-fetch and retry"
        )
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class ConfigurationError(PricebookSyncError):
    """Missing credentials or tenant configuration. Fatal for a sync job."""


class EntityNotFound(PricebookSyncError):
    """Requested record does not exist locally or externally."""


class JobAlreadyRunning(PricebookSyncError):
    """A sync job of the same entity type and scope class is already running."""

    def __init__(self, entity_type: str, scope_class: str, job_id: str | None = None) -> None:
        super().__init__(f"A {scope_class} sync for {entity_type} is already running")
        self.entity_type = entity_type
        self.scope_class = scope_class
        self.job_id = job_id
