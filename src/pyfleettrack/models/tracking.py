"""Composite results returned by the tracking client."""

from __future__ import annotations

from typing import Any

from pydantic import Field

from pyfleettrack.models._base import TrackingBaseModel
from pyfleettrack.models.eta import EtaEstimate
from pyfleettrack.models.load import LoadStatus, LocationType
from pyfleettrack.models.position import PositionSample
from pyfleettrack.models.trajectory import Trajectory


class LoadTracking(TrackingBaseModel):
    """Comprehensive tracking for a load.

    ``position``, ``eta`` and ``trajectory`` are independently nullable:
    a failure in one sub-computation leaves that field ``None`` and
    records the reason in ``errors`` keyed by field name.
    """

    load_id: str
    status: LoadStatus
    vehicle_id: str | None = None
    position: PositionSample | None = None
    eta: EtaEstimate | None = None
    trajectory: Trajectory | None = None
    errors: dict[str, str] = Field(default_factory=dict)


class MapMarker(TrackingBaseModel):
    marker_id: str
    latitude: float
    longitude: float
    kind: str
    """``"current"`` for the vehicle, otherwise a :class:`LocationType` value."""
    facility_name: str | None = None
    stop_number: int | None = None
    position: PositionSample | None = None


class RouteVisualization(TrackingBaseModel):
    load_id: str
    route: dict[str, Any]
    """GeoJSON ``LineString``."""
    markers: tuple[MapMarker, ...] = ()
    is_estimated_route: bool = False
    """``True`` when ``route`` is a straight pickup-to-delivery line."""

    def markers_of(self, kind: LocationType | str) -> list[MapMarker]:
        return [m for m in self.markers if m.kind == str(kind)]
