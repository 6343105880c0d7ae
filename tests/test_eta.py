from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import pytest

from pyfleettrack._cache import PositionCache
from pyfleettrack.eta import EtaEngine, blend_speed, confidence_level, hos_rest_minutes, remaining_distance_km
from pyfleettrack.exceptions import PositionUnavailableError, TrackingTimeoutError, TrackingValidationError
from pyfleettrack.geo import Coordinate, haversine_km
from pyfleettrack.models import EntityType, EtaOptions, LoadStatus, PositionSample
from pyfleettrack.models.eta import DistanceSource
from pyfleettrack.services import RouteLeg
from pyfleettrack.storage import InMemoryPositionStore

T = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
NOW = T + timedelta(minutes=1)

# One degree of latitude.
ONE_DEGREE_KM = 111.19492664455873


class FakeRouting:
    def __init__(self, leg: RouteLeg, *, delay: float = 0.0) -> None:
        self.leg = leg
        self.delay = delay
        self.calls: list[tuple[Coordinate, Coordinate]] = []

    async def route_distance(self, origin: Coordinate, destination: Coordinate) -> RouteLeg:
        self.calls.append((origin, destination))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.leg


async def _store_with(speed: float | None = 60.0) -> InMemoryPositionStore:
    store = InMemoryPositionStore(clock=lambda: NOW)
    await store.append(
        PositionSample(
            entity_id="v1",
            entity_type=EntityType.VEHICLE,
            latitude=40.0,
            longitude=-75.0,
            speed=speed,
            recorded_at=T,
        )
    )
    return store


def _engine(store: InMemoryPositionStore, **kwargs: object) -> EtaEngine:
    return EtaEngine(store, clock=lambda: NOW, **kwargs)  # type: ignore[arg-type]


# ------------------------------------------------------------------
# Pure helpers
# ------------------------------------------------------------------


class TestHelpers:
    def test_blend_speed(self) -> None:
        assert blend_speed(80.0, 50.0, default_speed=65.0, min_speed=5.0) == pytest.approx(44.0 / 0.7)
        assert blend_speed(None, 40.0, default_speed=65.0, min_speed=5.0) == 40.0
        assert blend_speed(30.0, None, default_speed=65.0, min_speed=5.0) == 30.0
        assert blend_speed(None, None, default_speed=65.0, min_speed=5.0) == 65.0

    def test_stationary_entity_clamped_to_minimum(self) -> None:
        assert blend_speed(0.0, 0.0, default_speed=65.0, min_speed=5.0) == 5.0
        assert blend_speed(2.0, None, default_speed=65.0, min_speed=5.0) == 5.0

    @pytest.mark.parametrize(
        ("drive", "remaining", "expected"),
        [(100.0, None, 0.0), (660.0, None, 0.0), (700.0, None, 600.0), (1400.0, None, 1200.0), (90.0, 60.0, 600.0)],
    )
    def test_hos_rest_minutes(self, drive: float, remaining: float | None, expected: float) -> None:
        assert hos_rest_minutes(drive, remaining) == expected

    def test_confidence_bounds(self) -> None:
        low = confidence_level(
            has_current_speed=False,
            has_historical_speed=False,
            has_traffic_data=False,
            has_driver_behavior=False,
            has_route_data=False,
            distance_km=900.0,
            load_status=LoadStatus.DELAYED,
        )
        high = confidence_level(
            has_current_speed=True,
            has_historical_speed=True,
            has_traffic_data=True,
            has_driver_behavior=True,
            has_route_data=True,
            distance_km=10.0,
            load_status=LoadStatus.IN_TRANSIT,
        )
        assert low == 0.5
        assert high == 0.95

    def test_remaining_distance_straight_line(self) -> None:
        assert remaining_distance_km((40.0, -75.0), (41.0, -75.0)) == pytest.approx(ONE_DEGREE_KM)

    def test_remaining_distance_along_route(self) -> None:
        route = [(40.0, -74.9), (40.0, -74.8)]
        expected = (
            haversine_km(40.0, -75.0, 40.0, -74.9)
            + haversine_km(40.0, -74.9, 40.0, -74.8)
            + haversine_km(40.0, -74.8, 40.0, -74.7)
        )
        assert remaining_distance_km((40.0, -75.0), (40.0, -74.7), route) == pytest.approx(expected)

    def test_remaining_distance_skips_passed_route_vertices(self) -> None:
        route = [(40.0, -75.0), (40.0, -74.9), (40.0, -74.8)]
        expected = haversine_km(40.0, -74.8, 40.0, -74.7)
        assert remaining_distance_km((40.0, -74.8), (40.0, -74.7), route) == pytest.approx(expected)


# ------------------------------------------------------------------
# EtaEngine
# ------------------------------------------------------------------


class TestEtaEngine:
    @pytest.mark.asyncio
    async def test_no_position_raises_unavailable(self) -> None:
        engine = _engine(InMemoryPositionStore(clock=lambda: NOW))
        with pytest.raises(PositionUnavailableError) as exc_info:
            await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0)
        assert exc_info.value.entity_id == "v1"

    @pytest.mark.asyncio
    async def test_great_circle_estimate(self) -> None:
        engine = _engine(await _store_with(speed=60.0))
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0)

        assert eta.distance_source is DistanceSource.HAVERSINE
        assert eta.remaining_distance_km == pytest.approx(ONE_DEGREE_KM)
        assert eta.effective_speed_kmh == pytest.approx(60.0)
        assert eta.estimated_minutes == pytest.approx(ONE_DEGREE_KM)
        assert eta.estimated_arrival == NOW + timedelta(minutes=eta.estimated_minutes)
        assert eta.confidence == pytest.approx(0.65)
        assert eta.factors.historical_speed_kmh == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_stationary_entity_uses_minimum_speed(self) -> None:
        engine = _engine(await _store_with(speed=0.0), min_speed_kmh=5.0)
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0)
        assert eta.effective_speed_kmh == 5.0
        assert eta.estimated_minutes == pytest.approx(ONE_DEGREE_KM / 5.0 * 60.0)

    @pytest.mark.asyncio
    async def test_no_speed_data_uses_default(self) -> None:
        engine = _engine(await _store_with(speed=None), default_speed_kmh=50.0)
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0)
        assert eta.effective_speed_kmh == 50.0
        assert eta.factors.current_speed_kmh is None

    @pytest.mark.asyncio
    async def test_route_points_raise_confidence(self) -> None:
        engine = _engine(await _store_with())
        options = EtaOptions(route_points=((40.5, -75.0),))
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0, options)
        assert eta.distance_source is DistanceSource.ROUTE_POINTS
        assert eta.confidence == pytest.approx(0.75)

    @pytest.mark.asyncio
    async def test_routing_service_with_traffic(self) -> None:
        routing = FakeRouting(RouteLeg(distance_km=120.0, duration_min=180.0))
        engine = _engine(await _store_with(), routing=routing)

        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0, EtaOptions(consider_traffic=True))

        assert routing.calls == [((40.0, -75.0), (41.0, -75.0))]
        assert eta.distance_source is DistanceSource.ROUTING_SERVICE
        assert eta.remaining_distance_km == 120.0
        assert eta.factors.traffic_factor == pytest.approx(1.5)
        assert eta.estimated_minutes == pytest.approx(180.0)
        assert eta.confidence == pytest.approx(0.85)

    @pytest.mark.asyncio
    async def test_traffic_factor_is_clamped(self) -> None:
        routing = FakeRouting(RouteLeg(distance_km=60.0, duration_min=1000.0))
        engine = _engine(await _store_with(), routing=routing)
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0, EtaOptions(consider_traffic=True))
        assert eta.factors.traffic_factor == 2.0
        assert eta.estimated_minutes == pytest.approx(120.0)

    @pytest.mark.asyncio
    async def test_routing_distance_without_traffic(self) -> None:
        routing = FakeRouting(RouteLeg(distance_km=60.0, duration_min=1000.0))
        engine = _engine(await _store_with(), routing=routing)
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0)
        assert eta.factors.traffic_factor is None
        assert eta.estimated_minutes == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_weather_and_hos_modifiers(self) -> None:
        engine = _engine(await _store_with())
        options = EtaOptions(consider_weather=True, weather_factor=1.5, consider_hos=True, hos_remaining_drive_minutes=60)
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0, options)

        drive = ONE_DEGREE_KM * 1.5
        assert eta.factors.weather_factor == 1.5
        assert eta.factors.hos_rest_minutes == 600.0
        assert eta.estimated_minutes == pytest.approx(drive + 600.0)

    @pytest.mark.asyncio
    async def test_unset_modifiers_are_ignored(self) -> None:
        engine = _engine(await _store_with())
        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0, EtaOptions(weather_factor=3.0))
        assert eta.factors.weather_factor is None
        assert eta.estimated_minutes == pytest.approx(ONE_DEGREE_KM)

    @pytest.mark.asyncio
    async def test_routing_timeout_propagates(self) -> None:
        routing = FakeRouting(RouteLeg(distance_km=1.0, duration_min=1.0), delay=1.0)
        engine = _engine(await _store_with(), routing=routing, routing_timeout=0.01)
        with pytest.raises(TrackingTimeoutError):
            await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0)

    @pytest.mark.asyncio
    async def test_invalid_destination_rejected(self) -> None:
        engine = _engine(await _store_with())
        with pytest.raises(TrackingValidationError):
            await engine.estimate("v1", EntityType.VEHICLE, 91.0, -75.0)

    @pytest.mark.asyncio
    async def test_remaining_distance(self) -> None:
        engine = _engine(await _store_with())
        distance = await engine.remaining_distance("v1", EntityType.VEHICLE, 41.0, -75.0)
        assert distance == pytest.approx(ONE_DEGREE_KM)

    @pytest.mark.asyncio
    async def test_store_read_warms_cache(self) -> None:
        cache = PositionCache(30.0, clock=lambda: 0.0)
        engine = _engine(await _store_with(), cache=cache)

        assert cache.get("v1", EntityType.VEHICLE) is None
        position = await engine.current_position("v1", EntityType.VEHICLE)
        assert position is not None
        assert cache.get("v1", EntityType.VEHICLE) == position

    @pytest.mark.asyncio
    async def test_cached_position_preferred_over_store(self) -> None:
        cache = PositionCache(30.0, clock=lambda: 0.0)
        pushed = PositionSample(
            entity_id="v1",
            entity_type=EntityType.VEHICLE,
            latitude=40.5,
            longitude=-75.0,
            recorded_at=T + timedelta(seconds=30),
        )
        cache.put("v1", EntityType.VEHICLE, pushed)
        engine = _engine(await _store_with(), cache=cache)

        eta = await engine.estimate("v1", EntityType.VEHICLE, 41.0, -75.0)
        assert eta.position == pushed
        assert eta.remaining_distance_km == pytest.approx(ONE_DEGREE_KM / 2, rel=1e-3)
