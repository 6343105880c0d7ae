"""Simplified trajectory model."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from pyfleettrack.models._base import TrackingBaseModel, UtcDatetime
from pyfleettrack.models.position import EntityType, PositionSample


class Trajectory(TrackingBaseModel):
    """Time-ascending simplified polyline of one entity over a window.

    Derived data; never persisted.
    """

    entity_id: str
    entity_type: EntityType
    start: UtcDatetime
    end: UtcDatetime
    tolerance: float = Field(ge=0.0)
    points: tuple[PositionSample, ...] = ()
    raw_point_count: int = 0
    """Number of stored samples the simplification started from."""

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return not self.points

    @property
    def first(self) -> PositionSample | None:
        return self.points[0] if self.points else None

    @property
    def last(self) -> PositionSample | None:
        return self.points[-1] if self.points else None

    def to_geojson(self) -> dict[str, Any]:
        """GeoJSON ``LineString`` with ``[longitude, latitude]`` coordinates."""
        return {
            "type": "LineString",
            "coordinates": [[p.longitude, p.latitude] for p in self.points],
        }
