"""Custom exception hierarchy for pyfleettrack."""

from __future__ import annotations

from typing import Any


class TrackingError(Exception):
    """Base exception for all pyfleettrack errors."""


class TrackingConfigError(TrackingError):
    """Invalid or missing configuration."""


class TrackingValidationError(TrackingError, ValueError):
    """Malformed position sample or request parameter.

    Raised at ingestion before anything is persisted.
    """

    def __init__(self, message: str, *, field: str = "") -> None:
        self.field = field
        super().__init__(message)


class TrackingConflictError(TrackingError):
    """Duplicate write under the ``(entity_id, recorded_at, source_log_id)`` constraint.

    Callers on the write path treat this as a benign no-op.
    """

    def __init__(self, message: str, *, key: tuple[Any, ...] = ()) -> None:
        self.key = key
        super().__init__(message)


class TrackingNotFoundError(TrackingError):
    """Requested entity or load is unknown to the system."""

    def __init__(self, message: str, *, resource: str = "", resource_id: str = "") -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(message)


class TrackingTimeoutError(TrackingError, TimeoutError):
    """Deadline exceeded on a store or routing call."""

    def __init__(self, message: str, *, operation: str = "", timeout: float | None = None) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(message)


class PositionUnavailableError(TrackingError):
    """No current position exists to compute an ETA from."""

    def __init__(self, message: str, *, entity_id: str = "", entity_type: str = "") -> None:
        self.entity_id = entity_id
        self.entity_type = entity_type
        super().__init__(message)


class TrackingConnectionError(TrackingError, ConnectionError):
    """Transport-level failure on the push channel or a collaborator."""

    def __init__(self, message: str, *, endpoint: str = "") -> None:
        self.endpoint = endpoint
        super().__init__(message)


class PartitionMissingError(TrackingError):
    """A write would land outside every existing history partition.

    Only raised when automatic partition creation is disabled; run
    partition maintenance before writing into a new month.
    """
