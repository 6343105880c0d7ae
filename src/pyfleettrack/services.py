"""Collaborator interfaces consumed by the tracking core."""

from __future__ import annotations

from typing import Protocol

from pydantic import Field

from pyfleettrack.geo import Coordinate
from pyfleettrack.models._base import TrackingBaseModel
from pyfleettrack.models.load import LoadWithAssignments


class RouteLeg(TrackingBaseModel):
    """Road distance and drive time between two points."""

    distance_km: float = Field(ge=0.0)
    duration_min: float = Field(ge=0.0)


class RoutingService(Protocol):
    async def route_distance(self, origin: Coordinate, destination: Coordinate) -> RouteLeg:
        ...


class LoadService(Protocol):
    """Read-only access to loads; the tracking core never mutates load state."""

    async def get_load_by_id(self, load_id: str) -> LoadWithAssignments:
        ...
