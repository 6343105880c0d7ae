"""Client configuration for pyfleettrack."""

from __future__ import annotations

import dataclasses
import os
from typing import Any

from pyfleettrack.exceptions import TrackingConfigError


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "y", "on"}:
        return True
    if normalized in {"0", "false", "no", "n", "off"}:
        return False
    return default


@dataclasses.dataclass(frozen=True)
class TrackingConfig:
    """Tracking configuration.

    All values are fixed for the lifetime of a client; TTLs are not
    renegotiated at runtime.

    Parameters
    ----------
    push_url : str or None
        WebSocket URL of the upstream push channel. Without it,
        subscriptions require an explicitly injected transport.
    routing_url : str or None
        Base URL of the optional HTTP routing service.
    routing_api_key : str or None
        Bearer token sent to the routing service.
    position_cache_ttl : float
        Seconds a cached current position stays valid.
    trajectory_cache_ttl : float
        Seconds a cached trajectory stays valid.
    store_timeout : float
        Deadline in seconds for position store calls.
    routing_timeout : float
        Deadline in seconds for routing service calls.
    max_reconnect_attempts : int
        Consecutive failed connection attempts before the hub gives up.
    reconnect_base_delay : float
        First backoff delay in seconds; doubles per failed attempt.
    reconnect_max_delay : float
        Upper bound for the backoff delay.
    ws_heartbeat : float
        WebSocket ping interval in seconds.
    default_tolerance : float
        Douglas-Peucker tolerance in degrees used when none is given.
    trajectory_window_hours : float
        Trailing window used by load tracking to build a trajectory.
    default_speed_kmh : float
        Speed assumed by the ETA engine when no speed data exists.
    min_effective_speed_kmh : float
        Lower clamp on the effective ETA speed.
    speed_sample_count : int
        Number of trailing samples used for historical average speed.
    speed_window_minutes : float
        How far back to look for those trailing samples.
    partition_retention_months : int
        Months of history kept by partition pruning.
    enforce_source_log_uniqueness : bool
        Reject duplicate ``(entity_id, recorded_at, source_log_id)`` writes.
    auto_create_partitions : bool
        Create missing month partitions on write instead of raising.
    """

    push_url: str | None = None
    routing_url: str | None = None
    routing_api_key: str | None = None
    position_cache_ttl: float = 30.0
    trajectory_cache_ttl: float = 60.0
    store_timeout: float = 10.0
    routing_timeout: float = 5.0
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 5.0
    ws_heartbeat: float = 30.0
    default_tolerance: float = 0.0001
    trajectory_window_hours: float = 24.0
    default_speed_kmh: float = 65.0
    min_effective_speed_kmh: float = 5.0
    speed_sample_count: int = 10
    speed_window_minutes: float = 120.0
    partition_retention_months: int = 3
    enforce_source_log_uniqueness: bool = False
    auto_create_partitions: bool = True

    def __post_init__(self) -> None:
        if self.position_cache_ttl <= 0 or self.trajectory_cache_ttl <= 0:
            raise TrackingConfigError("Cache TTLs must be positive")
        if self.store_timeout <= 0 or self.routing_timeout <= 0:
            raise TrackingConfigError("Timeouts must be positive")
        if self.max_reconnect_attempts < 1:
            raise TrackingConfigError("max_reconnect_attempts must be at least 1")
        if self.reconnect_base_delay < 0 or self.reconnect_max_delay < self.reconnect_base_delay:
            raise TrackingConfigError("reconnect_max_delay must be >= reconnect_base_delay >= 0")
        if self.default_tolerance < 0:
            raise TrackingConfigError("default_tolerance must not be negative")
        if self.min_effective_speed_kmh <= 0 or self.default_speed_kmh <= 0:
            raise TrackingConfigError("Speeds must be positive")
        if self.speed_sample_count < 1:
            raise TrackingConfigError("speed_sample_count must be at least 1")
        if self.partition_retention_months < 1:
            raise TrackingConfigError("partition_retention_months must be at least 1")

    @classmethod
    def from_env(cls, **overrides: Any) -> TrackingConfig:
        """Create configuration from environment variables.

        Reads optional ``TRACKING_*`` variables named after the fields
        (``TRACKING_PUSH_URL``, ``TRACKING_POSITION_CACHE_TTL``, ...).
        Explicit keyword arguments override environment values.

        Parameters
        ----------
        **overrides
            Explicit field values that take precedence over env vars.

        Returns
        -------
        TrackingConfig
            Populated configuration.

        Raises
        ------
        TrackingConfigError
            If a numeric variable cannot be parsed or a value is out of range.
        """
        env = os.environ
        config_kwargs: dict[str, Any] = {}

        for field in dataclasses.fields(cls):
            if field.name in overrides:
                continue
            raw = env.get(f"TRACKING_{field.name.upper()}")
            if raw is None:
                continue
            if field.type == "bool":
                config_kwargs[field.name] = _env_bool(raw, field.default)  # type: ignore[arg-type]
                continue
            try:
                if field.type == "int":
                    config_kwargs[field.name] = int(raw)
                elif field.type == "float":
                    config_kwargs[field.name] = float(raw)
                else:
                    config_kwargs[field.name] = raw or None
            except ValueError as exc:
                raise TrackingConfigError(f"Invalid value for TRACKING_{field.name.upper()}: {raw!r}") from exc

        config_kwargs.update(overrides)

        return cls(**config_kwargs)
