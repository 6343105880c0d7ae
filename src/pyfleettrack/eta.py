"""ETA and remaining-distance estimation.

Time is ``distance / effective_speed`` where the effective speed blends
the entity's current speed with its trailing average and is clamped to
a floor so a stationary entity never divides by zero. Optional
modifiers (traffic, weather, driver patterns, hours-of-service) scale
or extend the resulting duration.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from pyfleettrack import _constants as c
from pyfleettrack._cache import PositionCache
from pyfleettrack._deadline import with_deadline
from pyfleettrack.exceptions import PositionUnavailableError, TrackingNotFoundError, TrackingValidationError
from pyfleettrack.geo import Coordinate, haversine_km, nearest_index, polyline_length_km
from pyfleettrack.models._base import utcnow
from pyfleettrack.models.eta import DistanceSource, EtaEstimate, EtaFactors, EtaOptions
from pyfleettrack.models.load import LoadStatus
from pyfleettrack.models.position import EntityType, PositionSample
from pyfleettrack.services import RouteLeg, RoutingService
from pyfleettrack.storage.store import PositionStore

_logger = logging.getLogger(__name__)

_LOAD_STATUS_CONFIDENCE: dict[LoadStatus, float] = {
    LoadStatus.IN_TRANSIT: 0.05,
    LoadStatus.LOADED: 0.05,
    LoadStatus.AT_PICKUP: 0.02,
    LoadStatus.AT_DROPOFF: 0.02,
    LoadStatus.DELAYED: -0.1,
    LoadStatus.EXCEPTION: -0.1,
}


def remaining_distance_km(
    position: Coordinate,
    destination: Coordinate,
    route_points: Sequence[Coordinate] = (),
) -> float:
    """Distance left to *destination*.

    Without *route_points* this is the great-circle distance. With a
    route it is: position → nearest route vertex, then along the route
    from that vertex, then last vertex → destination.
    """
    if not route_points:
        return haversine_km(position[0], position[1], destination[0], destination[1])
    nearest = nearest_index(position, route_points)
    remaining_route = route_points[nearest:]
    last = remaining_route[-1]
    return (
        haversine_km(position[0], position[1], remaining_route[0][0], remaining_route[0][1])
        + polyline_length_km(remaining_route)
        + haversine_km(last[0], last[1], destination[0], destination[1])
    )


def blend_speed(
    current_speed: float | None,
    historical_speed: float | None,
    *,
    default_speed: float,
    min_speed: float,
) -> float:
    """Weighted mean of current and historical speed, clamped to *min_speed*.

    Falls back to whichever is available, then to *default_speed* when
    the entity has reported no speed at all. A stationary entity
    (reported speed 0) ends up at *min_speed*.
    """
    if current_speed is not None and historical_speed is not None:
        speed = (current_speed * c.CURRENT_SPEED_WEIGHT + historical_speed * c.HISTORICAL_SPEED_WEIGHT) / (
            c.CURRENT_SPEED_WEIGHT + c.HISTORICAL_SPEED_WEIGHT
        )
    elif historical_speed is not None:
        speed = historical_speed
    elif current_speed is not None:
        speed = current_speed
    else:
        speed = default_speed
    return max(speed, min_speed)


def hos_rest_minutes(drive_minutes: float, remaining_drive_minutes: float | None) -> float:
    """Mandatory rest time needed to cover *drive_minutes* of driving."""
    available = c.HOS_MAX_DRIVING_MINUTES if remaining_drive_minutes is None else remaining_drive_minutes
    overflow = drive_minutes - available
    if overflow <= 0:
        return 0.0
    return math.ceil(overflow / c.HOS_MAX_DRIVING_MINUTES) * float(c.HOS_REST_MINUTES)


def confidence_level(
    *,
    has_current_speed: bool,
    has_historical_speed: bool,
    has_traffic_data: bool,
    has_driver_behavior: bool,
    has_route_data: bool,
    distance_km: float,
    load_status: LoadStatus | None = None,
) -> float:
    confidence = c.CONFIDENCE_BASE
    if has_current_speed:
        confidence += 0.05
    if has_historical_speed:
        confidence += 0.1
    if has_traffic_data:
        confidence += 0.1
    if has_driver_behavior:
        confidence += 0.05
    if has_route_data:
        confidence += 0.1
    if distance_km < c.SHORT_TRIP_KM:
        confidence += 0.1
    elif distance_km > c.LONG_TRIP_KM:
        confidence -= 0.1
    if load_status is not None:
        confidence += _LOAD_STATUS_CONFIDENCE.get(load_status, 0.0)
    return max(c.CONFIDENCE_MIN, min(c.CONFIDENCE_MAX, round(confidence, 4)))


def _check_destination(latitude: float, longitude: float) -> None:
    if not -90.0 <= latitude <= 90.0:
        raise TrackingValidationError(f"Destination latitude out of range: {latitude}", field="latitude")
    if not -180.0 <= longitude <= 180.0:
        raise TrackingValidationError(f"Destination longitude out of range: {longitude}", field="longitude")


class EtaEngine:
    """Estimates arrival at a destination from an entity's current position."""

    def __init__(
        self,
        store: PositionStore,
        cache: PositionCache | None = None,
        *,
        routing: RoutingService | None = None,
        clock: Callable[[], datetime] = utcnow,
        default_speed_kmh: float = 65.0,
        min_speed_kmh: float = 5.0,
        speed_sample_count: int = 10,
        speed_window: timedelta = timedelta(hours=2),
        store_timeout: float | None = None,
        routing_timeout: float | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._routing = routing
        self._clock = clock
        self._default_speed = default_speed_kmh
        self._min_speed = min_speed_kmh
        self._speed_sample_count = speed_sample_count
        self._speed_window = speed_window
        self._store_timeout = store_timeout
        self._routing_timeout = routing_timeout

    async def current_position(self, entity_id: str, entity_type: EntityType) -> PositionSample | None:
        """Cached position, else the store's latest (which then warms the cache)."""
        if self._cache is not None:
            cached = self._cache.get(entity_id, entity_type)
            if cached is not None:
                return cached
        latest = await with_deadline(
            self._store.latest(entity_id, entity_type),
            self._store_timeout,
            operation="latest",
        )
        if latest is not None and self._cache is not None:
            self._cache.put(entity_id, entity_type, latest)
        return latest

    async def _require_position(self, entity_id: str, entity_type: EntityType) -> PositionSample:
        position = await self.current_position(entity_id, entity_type)
        if position is None:
            raise PositionUnavailableError(
                f"No current position for {entity_type}_{entity_id}",
                entity_id=entity_id,
                entity_type=str(entity_type),
            )
        return position

    async def historical_speed(self, entity_id: str, entity_type: EntityType) -> float | None:
        """Mean reported speed over the trailing samples, or ``None`` without data."""
        now = self._clock()
        try:
            samples = await with_deadline(
                self._store.query_range(entity_id, entity_type, now - self._speed_window, now),
                self._store_timeout,
                operation="query_range",
            )
        except TrackingNotFoundError:
            return None
        speeds = [s.speed for s in samples if s.speed is not None]
        speeds = speeds[-self._speed_sample_count :]
        if not speeds:
            return None
        return sum(speeds) / len(speeds)

    async def remaining_distance(
        self,
        entity_id: str,
        entity_type: EntityType,
        dest_lat: float,
        dest_lon: float,
        options: EtaOptions | None = None,
    ) -> float:
        """Kilometers left to the destination, without a time estimate."""
        entity_type = EntityType(entity_type)
        _check_destination(dest_lat, dest_lon)
        position = await self._require_position(entity_id, entity_type)
        distance, _source, _leg = await self._distance(position, (dest_lat, dest_lon), options or EtaOptions())
        return distance

    async def _distance(
        self,
        position: PositionSample,
        destination: Coordinate,
        options: EtaOptions,
    ) -> tuple[float, DistanceSource, RouteLeg | None]:
        if self._routing is not None:
            leg = await with_deadline(
                self._routing.route_distance(position.coordinates, destination),
                self._routing_timeout,
                operation="route_distance",
            )
            return leg.distance_km, DistanceSource.ROUTING_SERVICE, leg
        if options.route_points:
            distance = remaining_distance_km(position.coordinates, destination, options.route_points)
            return distance, DistanceSource.ROUTE_POINTS, None
        return remaining_distance_km(position.coordinates, destination), DistanceSource.HAVERSINE, None

    async def estimate(
        self,
        entity_id: str,
        entity_type: EntityType,
        dest_lat: float,
        dest_lon: float,
        options: EtaOptions | None = None,
    ) -> EtaEstimate:
        """Estimate arrival at ``(dest_lat, dest_lon)``.

        Raises
        ------
        PositionUnavailableError
            If neither the cache nor the store has a position for the entity.
        TrackingTimeoutError
            If a store or routing call exceeds its deadline.
        """
        entity_type = EntityType(entity_type)
        opts = options or EtaOptions()
        _check_destination(dest_lat, dest_lon)
        position = await self._require_position(entity_id, entity_type)

        distance, source, leg = await self._distance(position, (dest_lat, dest_lon), opts)

        current_speed = position.speed
        historical = await self.historical_speed(entity_id, entity_type)
        speed = blend_speed(
            current_speed,
            historical,
            default_speed=self._default_speed,
            min_speed=self._min_speed,
        )
        drive_minutes = distance / speed * 60.0

        traffic_factor: float | None = None
        if opts.consider_traffic and leg is not None and drive_minutes > 0:
            traffic_factor = max(
                c.TRAFFIC_FACTOR_MIN,
                min(c.TRAFFIC_FACTOR_MAX, leg.duration_min / drive_minutes),
            )
            drive_minutes *= traffic_factor

        weather_factor = opts.weather_factor if opts.consider_weather else None
        if weather_factor is not None:
            drive_minutes *= weather_factor

        driver_factor = opts.driver_factor if opts.consider_driver_patterns else None
        if driver_factor is not None:
            drive_minutes *= driver_factor

        rest_minutes = hos_rest_minutes(drive_minutes, opts.hos_remaining_drive_minutes) if opts.consider_hos else 0.0
        total_minutes = drive_minutes + rest_minutes

        confidence = confidence_level(
            has_current_speed=bool(current_speed),
            has_historical_speed=historical is not None and historical > 0,
            has_traffic_data=traffic_factor is not None,
            has_driver_behavior=driver_factor is not None,
            has_route_data=source is not DistanceSource.HAVERSINE,
            distance_km=distance,
            load_status=opts.load_status,
        )

        _logger.debug(
            "ETA %s_%s: %.2f km at %.1f km/h -> %.1f min (confidence=%.2f, source=%s)",
            entity_type,
            entity_id,
            distance,
            speed,
            total_minutes,
            confidence,
            source,
        )

        return EtaEstimate(
            entity_id=entity_id,
            entity_type=entity_type,
            destination_latitude=dest_lat,
            destination_longitude=dest_lon,
            remaining_distance_km=distance,
            estimated_minutes=total_minutes,
            estimated_arrival=self._clock() + timedelta(minutes=total_minutes),
            effective_speed_kmh=speed,
            confidence=confidence,
            distance_source=source,
            factors=EtaFactors(
                current_speed_kmh=current_speed,
                historical_speed_kmh=historical,
                traffic_factor=traffic_factor,
                weather_factor=weather_factor,
                driver_factor=driver_factor,
                hos_rest_minutes=rest_minutes,
            ),
            position=position,
        )
