"""ETA request options and results."""

from __future__ import annotations

from pydantic import Field

from pyfleettrack.models._base import TrackingBaseModel, TrackingEnum, UtcDatetime
from pyfleettrack.models.load import LoadStatus
from pyfleettrack.models.position import EntityType, PositionSample


class DistanceSource(TrackingEnum):
    """Where the remaining distance came from."""

    HAVERSINE = "haversine"
    ROUTE_POINTS = "route_points"
    ROUTING_SERVICE = "routing_service"


class EtaOptions(TrackingBaseModel):
    """Modifiers for :meth:`EtaEngine.estimate`.

    An empty ``EtaOptions()`` yields a plain speed-based estimate over
    great-circle distance.
    """

    consider_traffic: bool = False
    consider_weather: bool = False
    consider_hos: bool = False
    consider_driver_patterns: bool = False
    weather_factor: float = Field(default=1.0, gt=0.0)
    """Duration multiplier applied when ``consider_weather`` is set."""
    driver_factor: float = Field(default=1.0, gt=0.0)
    """Duration multiplier applied when ``consider_driver_patterns`` is set."""
    hos_remaining_drive_minutes: float | None = Field(default=None, ge=0.0)
    """Driving time left before the next mandatory rest; ``None`` means a fresh driver."""
    route_points: tuple[tuple[float, float], ...] = ()
    """Planned route as ``(latitude, longitude)`` pairs."""
    load_status: LoadStatus | None = None


class EtaFactors(TrackingBaseModel):
    """Inputs that went into an estimate, for display and debugging."""

    current_speed_kmh: float | None = None
    historical_speed_kmh: float | None = None
    traffic_factor: float | None = None
    weather_factor: float | None = None
    driver_factor: float | None = None
    hos_rest_minutes: float = 0.0


class EtaEstimate(TrackingBaseModel):
    entity_id: str
    entity_type: EntityType
    destination_latitude: float
    destination_longitude: float
    remaining_distance_km: float = Field(ge=0.0)
    estimated_minutes: float = Field(ge=0.0)
    estimated_arrival: UtcDatetime
    effective_speed_kmh: float = Field(gt=0.0)
    confidence: float = Field(ge=0.0, le=1.0)
    distance_source: DistanceSource = DistanceSource.HAVERSINE
    factors: EtaFactors = Field(default_factory=EtaFactors)
    position: PositionSample
    """Position the estimate was computed from."""
