"""Month-partitioned position history store.

:class:`PositionStore` is the structural interface the rest of the
library talks to. :class:`InMemoryPositionStore` is the reference
implementation: samples live in per-month partitions whose ranges are
always ``[month_start, next_month_start)``, non-overlapping and
contiguous. A production deployment backs the same protocol with the
PostgreSQL layout rendered by :mod:`pyfleettrack.storage.ddl`.
"""

from __future__ import annotations

import bisect
import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import Protocol

import pydantic

from pyfleettrack.exceptions import (
    PartitionMissingError,
    TrackingConflictError,
    TrackingNotFoundError,
    TrackingValidationError,
)
from pyfleettrack.models._base import parse_timestamp, utcnow
from pyfleettrack.models.position import EntityType, PositionSample
from pyfleettrack.storage.partitions import PartitionRange, add_months, month_start, months_between

_logger = logging.getLogger(__name__)


def _sort_key(sample: PositionSample) -> datetime:
    return sample.recorded_at


class PositionStore(Protocol):
    """Durable, time-partitioned position history."""

    async def append(self, sample: PositionSample) -> PositionSample:
        """Persist *sample* and return it stamped with ``created_at``."""
        ...

    async def query_range(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[PositionSample]:
        ...

    async def latest(self, entity_id: str, entity_type: EntityType) -> PositionSample | None:
        ...

    async def ensure_upcoming_partition(self, now: datetime) -> list[PartitionRange]:
        ...

    async def prune_old_partitions(self, now: datetime, retention_months: int) -> list[PartitionRange]:
        ...


class InMemoryPositionStore:
    """Process-local :class:`PositionStore`.

    Rows inside a partition are kept sorted by ``recorded_at`` (ties in
    insertion order). A single lock guards partitions, the entity
    registry and the uniqueness index.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        enforce_source_log_uniqueness: bool = False,
        auto_create_partitions: bool = True,
    ) -> None:
        self._clock = clock
        self._enforce_unique = enforce_source_log_uniqueness
        self._auto_create = auto_create_partitions
        self._partitions: dict[PartitionRange, list[PositionSample]] = {}
        self._known: set[tuple[EntityType, str]] = set()
        self._unique_keys: set[tuple[str, datetime, str]] = set()
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Entity registry
    # ------------------------------------------------------------------

    def register_entity(self, entity_id: str, entity_type: EntityType) -> None:
        """Mark an entity as known even before its first sample arrives."""
        with self._lock:
            self._known.add((EntityType(entity_type), entity_id))

    def is_known(self, entity_id: str, entity_type: EntityType) -> bool:
        with self._lock:
            return (EntityType(entity_type), entity_id) in self._known

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def append(self, sample: PositionSample) -> PositionSample:
        try:
            stored = sample.persisted(self._clock())
        except pydantic.ValidationError as exc:
            raise TrackingValidationError(
                f"Invalid position sample for {sample.entity_type}_{sample.entity_id}: {exc}"
            ) from exc

        target = PartitionRange.for_instant(stored.recorded_at)
        with self._lock:
            rows = self._partitions.get(target)
            if rows is None:
                if not self._auto_create:
                    raise PartitionMissingError(
                        f"No partition covers {stored.recorded_at.isoformat()}; expected {target.name()}"
                    )
                self._create_covering(target)
                rows = self._partitions[target]

            if self._enforce_unique and stored.source_log_id is not None:
                unique_key = (stored.entity_id, stored.recorded_at, stored.source_log_id)
                if unique_key in self._unique_keys:
                    raise TrackingConflictError(
                        f"Duplicate position for {stored.entity_id} at {stored.recorded_at.isoformat()}",
                        key=unique_key,
                    )
                self._unique_keys.add(unique_key)

            bisect.insort_right(rows, stored, key=_sort_key)
            self._known.add(stored.key)

        _logger.debug(
            "Stored position %s_%s at %s in %s",
            stored.entity_type,
            stored.entity_id,
            stored.recorded_at.isoformat(),
            target.name(),
        )
        return stored

    def _create_covering(self, target: PartitionRange) -> None:
        """Create *target* plus any months needed to keep ranges contiguous.

        Caller holds the lock.
        """
        if not self._partitions:
            created = [target]
        else:
            oldest = min(self._partitions)
            newest = max(self._partitions)
            if target > newest:
                created = months_between(newest.next(), target)
            else:
                created = months_between(target, oldest.previous())
        for partition in created:
            self._partitions[partition] = []
        _logger.info("Created partitions on write: %s", ", ".join(p.name() for p in created))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query_range(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[PositionSample]:
        """Samples with ``start <= recorded_at <= end`` in ascending order.

        Raises
        ------
        TrackingNotFoundError
            If the entity has never been registered or written.
        TrackingValidationError
            If the window or paging arguments are invalid.
        """
        entity_type = EntityType(entity_type)
        window_start = parse_timestamp(start)
        window_end = parse_timestamp(end)
        if window_start is None or window_end is None or window_start > window_end:
            raise TrackingValidationError("start must not be later than end", field="start")
        if offset < 0:
            raise TrackingValidationError("offset must not be negative", field="offset")
        if limit is not None and limit < 0:
            raise TrackingValidationError("limit must not be negative", field="limit")

        with self._lock:
            if (entity_type, entity_id) not in self._known:
                raise TrackingNotFoundError(
                    f"Unknown entity {entity_type}_{entity_id}",
                    resource=str(entity_type),
                    resource_id=entity_id,
                )
            matches: list[PositionSample] = []
            for partition in sorted(self._partitions):
                if not partition.overlaps(window_start, window_end):
                    continue
                rows = self._partitions[partition]
                lo = bisect.bisect_left(rows, window_start, key=_sort_key)
                hi = bisect.bisect_right(rows, window_end, key=_sort_key)
                matches.extend(
                    row
                    for row in rows[lo:hi]
                    if row.entity_id == entity_id and row.entity_type == entity_type
                )

        if limit is None:
            return matches[offset:]
        return matches[offset : offset + limit]

    async def latest(self, entity_id: str, entity_type: EntityType) -> PositionSample | None:
        entity_type = EntityType(entity_type)
        with self._lock:
            for partition in sorted(self._partitions, reverse=True):
                for row in reversed(self._partitions[partition]):
                    if row.entity_id == entity_id and row.entity_type == entity_type:
                        return row
        return None

    # ------------------------------------------------------------------
    # Partition maintenance
    # ------------------------------------------------------------------

    def partitions(self) -> list[PartitionRange]:
        with self._lock:
            return sorted(self._partitions)

    async def ensure_upcoming_partition(self, now: datetime) -> list[PartitionRange]:
        """Create partitions through the month after *now*.

        Fills every missing month between the newest existing partition
        (or the current month) and ``now + 1 month``. Idempotent.
        """
        current = PartitionRange.for_instant(now)
        upcoming = current.next()
        with self._lock:
            # Start right after the newest partition so a missed run leaves no gap.
            first = max(self._partitions).next() if self._partitions else current
            created = [p for p in months_between(first, upcoming) if p not in self._partitions]
            for partition in created:
                self._partitions[partition] = []
        if created:
            _logger.info("Created partitions: %s", ", ".join(p.name() for p in created))
        return created

    async def prune_old_partitions(self, now: datetime, retention_months: int) -> list[PartitionRange]:
        """Drop partitions whose whole range ends before the retention window.

        The window keeps the current month plus *retention_months* full
        months before it. Idempotent.
        """
        if retention_months < 1:
            raise TrackingValidationError("retention_months must be at least 1", field="retention_months")
        cutoff = add_months(month_start(now), -retention_months)
        with self._lock:
            dropped = sorted(p for p in self._partitions if p.end <= cutoff)
            for partition in dropped:
                rows = self._partitions.pop(partition)
                for row in rows:
                    if row.source_log_id is not None:
                        self._unique_keys.discard((row.entity_id, row.recorded_at, row.source_log_id))
        if dropped:
            _logger.info("Dropped partitions: %s", ", ".join(p.name() for p in dropped))
        return dropped
