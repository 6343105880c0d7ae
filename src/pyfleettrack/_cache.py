"""In-memory TTL caches for current positions and trajectories.

Entries are replaced wholesale, never mutated. Expired entries read as
absent and are dropped on the next write (or an explicit
:meth:`TtlCache.purge_expired`). Each cache guards its map with a
single lock so key insertion/removal is atomic with respect to reads.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from datetime import datetime
from typing import Generic, TypeVar

from pyfleettrack.models.position import EntityType, PositionSample
from pyfleettrack.models.trajectory import Trajectory

_logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class _Entry(Generic[V]):
    value: V
    inserted_at: float


class TtlCache(Generic[K, V]):
    """Keyed cache where an entry is valid while ``now - inserted_at < ttl``."""

    def __init__(self, ttl: float, *, clock: Callable[[], float] = time.monotonic) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self._ttl = ttl
        self._clock = clock
        self._entries: dict[K, _Entry[V]] = {}
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def _is_fresh(self, entry: _Entry[V], now: float) -> bool:
        return now - entry.inserted_at < self._ttl

    def get(self, key: K) -> V | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry, now):
            return None
        return entry.value

    def put(self, key: K, value: V) -> None:
        now = self._clock()
        with self._lock:
            self._drop_expired(now)
            self._entries[key] = _Entry(value, now)

    def invalidate(self, key: K) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_where(self, predicate: Callable[[K], bool]) -> int:
        """Drop every key matching *predicate*; returns the number removed."""
        with self._lock:
            doomed = [key for key in self._entries if predicate(key)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._drop_expired(now)

    def _drop_expired(self, now: float) -> int:
        """Caller holds the lock."""
        doomed = [key for key, entry in self._entries.items() if not self._is_fresh(entry, now)]
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class PositionCache:
    """Current position per ``(entity_id, entity_type)``.

    Last writer wins; a racing push may overwrite a fresher store read.
    """

    def __init__(self, ttl: float = 30.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._cache: TtlCache[tuple[str, EntityType], PositionSample] = TtlCache(ttl, clock=clock)

    def get(self, entity_id: str, entity_type: EntityType) -> PositionSample | None:
        position = self._cache.get((entity_id, EntityType(entity_type)))
        _logger.debug(
            "Position cache %s for %s_%s",
            "hit" if position is not None else "miss",
            entity_type,
            entity_id,
        )
        return position

    def put(self, entity_id: str, entity_type: EntityType, position: PositionSample) -> None:
        self._cache.put((entity_id, EntityType(entity_type)), position)

    def invalidate(self, entity_id: str, entity_type: EntityType) -> None:
        self._cache.invalidate((entity_id, EntityType(entity_type)))

    def purge_expired(self) -> int:
        return self._cache.purge_expired()

    def clear(self) -> None:
        self._cache.clear()


TrajectoryKey = tuple[EntityType, str, datetime, datetime, float]


class TrajectoryCache:
    """Short-lived cache of built trajectories keyed by entity, window and tolerance."""

    def __init__(self, ttl: float = 60.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._cache: TtlCache[TrajectoryKey, Trajectory] = TtlCache(ttl, clock=clock)

    @staticmethod
    def _key(
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
        tolerance: float,
    ) -> TrajectoryKey:
        return (EntityType(entity_type), entity_id, start, end, tolerance)

    def get(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
        tolerance: float,
    ) -> Trajectory | None:
        return self._cache.get(self._key(entity_id, entity_type, start, end, tolerance))

    def put(self, trajectory: Trajectory) -> None:
        key = self._key(
            trajectory.entity_id,
            trajectory.entity_type,
            trajectory.start,
            trajectory.end,
            trajectory.tolerance,
        )
        self._cache.put(key, trajectory)

    def invalidate_entity(self, entity_id: str, entity_type: EntityType) -> int:
        """Drop every cached window/tolerance variant for one entity."""
        wanted = EntityType(entity_type)
        return self._cache.invalidate_where(lambda key: key[0] == wanted and key[1] == entity_id)

    def purge_expired(self) -> int:
        return self._cache.purge_expired()

    def clear(self) -> None:
        self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)
