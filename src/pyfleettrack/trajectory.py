"""Trajectory building and Douglas-Peucker simplification."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import datetime

from pyfleettrack._deadline import with_deadline
from pyfleettrack.exceptions import TrackingNotFoundError, TrackingValidationError
from pyfleettrack.geo import segment_distance
from pyfleettrack.models._base import parse_timestamp
from pyfleettrack.models.position import EntityType, PositionSample
from pyfleettrack.models.trajectory import Trajectory
from pyfleettrack.storage.store import PositionStore

_logger = logging.getLogger(__name__)


def simplify_polyline(points: Sequence[PositionSample], tolerance: float) -> list[PositionSample]:
    """Douglas-Peucker over ``(latitude, longitude)`` in degree space.

    Keeps the first and last point, returns a subsequence of *points* in
    order, and every dropped point lies within *tolerance* of the kept
    segment spanning it. Uses an explicit stack so long tracks do not
    hit the recursion limit.
    """
    if tolerance < 0:
        raise ValueError("tolerance must not be negative")
    count = len(points)
    if count <= 2:
        return list(points)

    keep = [False] * count
    keep[0] = keep[-1] = True
    stack = [(0, count - 1)]
    while stack:
        first, last = stack.pop()
        if last - first < 2:
            continue
        anchor = points[first].coordinates
        floater = points[last].coordinates
        max_distance = -1.0
        split = first
        for index in range(first + 1, last):
            distance = segment_distance(points[index].coordinates, anchor, floater)
            if distance > max_distance:
                max_distance = distance
                split = index
        if max_distance > tolerance:
            keep[split] = True
            stack.append((first, split))
            stack.append((split, last))

    return [point for point, kept in zip(points, keep) if kept]


class TrajectoryEngine:
    """Builds simplified trajectories from stored history."""

    def __init__(
        self,
        store: PositionStore,
        *,
        default_tolerance: float = 0.0001,
        timeout: float | None = None,
    ) -> None:
        self._store = store
        self._default_tolerance = default_tolerance
        self._timeout = timeout

    async def build_trajectory(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
        tolerance: float | None = None,
    ) -> Trajectory:
        """Fetch ``[start, end]`` from the store and simplify it.

        An empty range yields an empty trajectory, and so does an entity
        the store has never seen.
        """
        tol = self._default_tolerance if tolerance is None else tolerance
        if tol < 0:
            raise TrackingValidationError("tolerance must not be negative", field="tolerance")
        entity_type = EntityType(entity_type)

        try:
            raw = await with_deadline(
                self._store.query_range(entity_id, entity_type, start, end),
                self._timeout,
                operation="query_range",
            )
        except TrackingNotFoundError:
            _logger.debug("No history for %s_%s; empty trajectory", entity_type, entity_id)
            raw = []
        simplified = simplify_polyline(raw, tol)
        _logger.debug(
            "Trajectory %s_%s: %d raw points -> %d (tolerance=%s)",
            entity_type,
            entity_id,
            len(raw),
            len(simplified),
            tol,
        )
        return Trajectory(
            entity_id=entity_id,
            entity_type=entity_type,
            start=parse_timestamp(start),
            end=parse_timestamp(end),
            tolerance=tol,
            points=tuple(simplified),
            raw_point_count=len(raw),
        )
