"""High-level async tracking client."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

import aiohttp
import pydantic

from pyfleettrack._cache import PositionCache, TrajectoryCache
from pyfleettrack._deadline import with_deadline
from pyfleettrack._push import LoadStatusEvent
from pyfleettrack._routing import HttpRoutingService
from pyfleettrack._transport import PushTransport, WebSocketPushTransport
from pyfleettrack.config import TrackingConfig
from pyfleettrack.eta import EtaEngine
from pyfleettrack.exceptions import (
    TrackingConfigError,
    TrackingConflictError,
    TrackingError,
    TrackingValidationError,
)
from pyfleettrack.geo import polyline_length_km
from pyfleettrack.hub import ErrorListener, HubState, PositionListener, SubscriptionHub, Unsubscribe
from pyfleettrack.ingestion import parse_position, parse_positions
from pyfleettrack.models._base import parse_timestamp, utcnow
from pyfleettrack.models.eta import EtaEstimate, EtaOptions
from pyfleettrack.models.load import TRACKABLE_LOAD_STATUSES, LoadWithAssignments, LocationType
from pyfleettrack.models.position import EntityType, PositionSample
from pyfleettrack.models.tracking import LoadTracking, MapMarker, RouteVisualization
from pyfleettrack.models.trajectory import Trajectory
from pyfleettrack.services import LoadService, RoutingService
from pyfleettrack.storage.partitions import PartitionRange
from pyfleettrack.storage.store import InMemoryPositionStore, PositionStore
from pyfleettrack.trajectory import TrajectoryEngine

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceReport:
    created: list[PartitionRange] = field(default_factory=list)
    dropped: list[PartitionRange] = field(default_factory=list)


class TrackingClient:
    """Async facade over position storage, caching, trajectories, ETA and push subscriptions.

    Usage::

        async with TrackingClient(config, load_service=loads) as client:
            position = await client.get_current_position("truck-1", EntityType.VEHICLE)
            tracking = await client.get_load_tracking("load-42")

    Storage, routing and the push transport are injectable; by default an
    :class:`InMemoryPositionStore` is used, and the routing client and
    WebSocket transport are created from ``config`` on ``__aenter__``.
    """

    def __init__(
        self,
        config: TrackingConfig | None = None,
        *,
        store: PositionStore | None = None,
        load_service: LoadService | None = None,
        routing: RoutingService | None = None,
        push_transport: PushTransport | None = None,
        session: aiohttp.ClientSession | None = None,
        clock: Callable[[], datetime] = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config or TrackingConfig()
        self._clock = clock
        self._sleep = sleep
        self._external_session = session is not None
        self._http_session = session
        self._load_service = load_service
        self._routing = routing
        self._push_transport = push_transport

        self._store: PositionStore = store or InMemoryPositionStore(
            clock=clock,
            enforce_source_log_uniqueness=self._config.enforce_source_log_uniqueness,
            auto_create_partitions=self._config.auto_create_partitions,
        )
        self._position_cache = PositionCache(self._config.position_cache_ttl, clock=monotonic)
        self._trajectory_cache = TrajectoryCache(self._config.trajectory_cache_ttl, clock=monotonic)
        self._trajectories = TrajectoryEngine(
            self._store,
            default_tolerance=self._config.default_tolerance,
            timeout=self._config.store_timeout,
        )
        self._eta = self._build_eta_engine()
        self._hub: SubscriptionHub | None = None
        if push_transport is not None:
            self._hub = self._build_hub(push_transport)

    def _build_eta_engine(self) -> EtaEngine:
        return EtaEngine(
            self._store,
            self._position_cache,
            routing=self._routing,
            clock=self._clock,
            default_speed_kmh=self._config.default_speed_kmh,
            min_speed_kmh=self._config.min_effective_speed_kmh,
            speed_sample_count=self._config.speed_sample_count,
            speed_window=timedelta(minutes=self._config.speed_window_minutes),
            store_timeout=self._config.store_timeout,
            routing_timeout=self._config.routing_timeout,
        )

    def _build_hub(self, transport: PushTransport) -> SubscriptionHub:
        return SubscriptionHub(
            transport,
            self._position_cache,
            max_reconnect_attempts=self._config.max_reconnect_attempts,
            reconnect_base_delay=self._config.reconnect_base_delay,
            reconnect_max_delay=self._config.reconnect_max_delay,
            sleep=self._sleep,
        )

    # ------------------------------------------------------------------
    # Context manager lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> TrackingClient:
        needs_http = (self._hub is None and self._config.push_url) or (
            self._routing is None and self._config.routing_url
        )
        if needs_http and self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        if self._routing is None and self._config.routing_url and self._http_session is not None:
            self._routing = HttpRoutingService(
                self._config.routing_url,
                self._http_session,
                api_key=self._config.routing_api_key,
                timeout=self._config.routing_timeout,
            )
            self._eta = self._build_eta_engine()
        if self._hub is None and self._config.push_url and self._http_session is not None:
            self._push_transport = WebSocketPushTransport(
                self._config.push_url,
                self._http_session,
                heartbeat=self._config.ws_heartbeat,
            )
            self._hub = self._build_hub(self._push_transport)
        return self

    async def __aexit__(self, *exc: Any) -> None:
        if self._hub is not None:
            await self._hub.stop()
        if not self._external_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    @property
    def store(self) -> PositionStore:
        return self._store

    @property
    def hub(self) -> SubscriptionHub | None:
        return self._hub

    @property
    def position_cache(self) -> PositionCache:
        return self._position_cache

    @property
    def trajectory_cache(self) -> TrajectoryCache:
        return self._trajectory_cache

    def _require_hub(self) -> SubscriptionHub:
        if self._hub is None:
            raise TrackingConfigError(
                "Subscriptions need a push transport. Set push_url and use 'async with TrackingClient(...)'"
            )
        return self._hub

    def _store_call(self, awaitable: Awaitable[Any], operation: str) -> Awaitable[Any]:
        return with_deadline(awaitable, self._config.store_timeout, operation=operation)

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def record_position(self, sample: PositionSample | Mapping[str, Any]) -> PositionSample | None:
        """Persist one sample and warm the position cache.

        Returns the stored sample, or ``None`` when the write was a
        duplicate under the source-log uniqueness constraint.
        """
        parsed = parse_position(sample)
        try:
            stored: PositionSample = await self._store_call(self._store.append(parsed), "append")
        except TrackingConflictError as exc:
            _logger.warning("Ignoring duplicate position write: %s", exc)
            return None
        self._warm_cache(stored)
        return stored

    async def record_positions(
        self, batch: Iterable[PositionSample | Mapping[str, Any]]
    ) -> list[PositionSample]:
        """Persist a batch after validating every entry; duplicates are skipped."""
        samples = parse_positions(batch)
        stored_samples: list[PositionSample] = []
        for sample in samples:
            try:
                stored: PositionSample = await self._store_call(self._store.append(sample), "append")
            except TrackingConflictError as exc:
                _logger.warning("Ignoring duplicate position write: %s", exc)
                continue
            self._warm_cache(stored)
            stored_samples.append(stored)
        return stored_samples

    def _warm_cache(self, stored: PositionSample) -> None:
        cached = self._position_cache.get(stored.entity_id, stored.entity_type)
        if cached is None or cached.recorded_at <= stored.recorded_at:
            self._position_cache.put(stored.entity_id, stored.entity_type, stored)
        self._trajectory_cache.invalidate_entity(stored.entity_id, stored.entity_type)

    # ------------------------------------------------------------------
    # Entity reads
    # ------------------------------------------------------------------

    async def get_current_position(
        self,
        entity_id: str,
        entity_type: EntityType,
        *,
        bypass_cache: bool = False,
    ) -> PositionSample | None:
        """Most recent known position, served from cache when fresh."""
        entity_type = EntityType(entity_type)
        if bypass_cache:
            self._position_cache.invalidate(entity_id, entity_type)
        return await self._eta.current_position(entity_id, entity_type)

    async def get_position_history(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
        *,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[PositionSample]:
        result: list[PositionSample] = await self._store_call(
            self._store.query_range(entity_id, EntityType(entity_type), start, end, limit=limit, offset=offset),
            "query_range",
        )
        return result

    def _default_window_end(self) -> datetime:
        """End of the next trajectory-cache-TTL bucket after now, so repeated calls share a cache key."""
        step = self._config.trajectory_cache_ttl
        bucket = (math.floor(self._clock().timestamp() / step) + 1) * step
        return datetime.fromtimestamp(bucket, UTC)

    def _default_window(self, start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
        window_end = parse_timestamp(end) if end is not None else self._default_window_end()
        window_start = (
            parse_timestamp(start)
            if start is not None
            else window_end - timedelta(hours=self._config.trajectory_window_hours)
        )
        if window_start is None or window_end is None:
            raise TrackingValidationError("Invalid trajectory window", field="start")
        return window_start, window_end

    async def get_trajectory(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime | None = None,
        end: datetime | None = None,
        tolerance: float | None = None,
    ) -> Trajectory:
        """Simplified trajectory; the window defaults to the trailing ``trajectory_window_hours``."""
        entity_type = EntityType(entity_type)
        window_start, window_end = self._default_window(start, end)
        tol = self._config.default_tolerance if tolerance is None else tolerance

        cached = self._trajectory_cache.get(entity_id, entity_type, window_start, window_end, tol)
        if cached is not None:
            _logger.debug("Trajectory cache hit for %s_%s", entity_type, entity_id)
            return cached

        trajectory = await self._trajectories.build_trajectory(entity_id, entity_type, window_start, window_end, tol)
        self._trajectory_cache.put(trajectory)
        return trajectory

    async def estimate_eta(
        self,
        entity_id: str,
        entity_type: EntityType,
        dest_lat: float,
        dest_lon: float,
        options: EtaOptions | None = None,
    ) -> EtaEstimate:
        return await self._eta.estimate(entity_id, entity_type, dest_lat, dest_lon, options)

    async def get_remaining_distance(
        self,
        entity_id: str,
        entity_type: EntityType,
        dest_lat: float,
        dest_lon: float,
        options: EtaOptions | None = None,
    ) -> float:
        return await self._eta.remaining_distance(entity_id, entity_type, dest_lat, dest_lon, options)

    async def get_traveled_distance(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
    ) -> float:
        """Kilometers along the raw (unsimplified) track in ``[start, end]``."""
        samples = await self.get_position_history(entity_id, entity_type, start, end)
        return polyline_length_km([s.coordinates for s in samples])

    async def get_average_speed(
        self,
        entity_id: str,
        entity_type: EntityType,
        start: datetime,
        end: datetime,
    ) -> float:
        """Traveled distance divided by the window length, in km/h."""
        window_start, window_end = self._default_window(start, end)
        hours = (window_end - window_start).total_seconds() / 3600.0
        if hours <= 0:
            return 0.0
        distance = await self.get_traveled_distance(entity_id, entity_type, window_start, window_end)
        return distance / hours

    # ------------------------------------------------------------------
    # Load composition
    # ------------------------------------------------------------------

    async def _get_load(self, load_id: str) -> LoadWithAssignments:
        if self._load_service is None:
            raise TrackingConfigError("No load service configured")
        load = await self._load_service.get_load_by_id(load_id)
        if isinstance(load, LoadWithAssignments):
            return load
        try:
            return LoadWithAssignments.model_validate(load)
        except pydantic.ValidationError as exc:
            raise TrackingValidationError(f"Invalid load {load_id}: {exc}", field="load") from exc

    async def get_load_tracking(self, load_id: str) -> LoadTracking:
        """Current position, ETA to delivery and trajectory for a load's active vehicle.

        The load lookup itself must succeed. After that every
        sub-computation is independent: a failure leaves its field
        ``None`` and records the reason under ``errors``.
        """
        load = await self._get_load(load_id)
        base: dict[str, Any] = {"load_id": load.load_id, "status": load.status}

        if load.status not in TRACKABLE_LOAD_STATUSES:
            _logger.debug("Load %s status=%s is not trackable", load_id, load.status)
            return LoadTracking(**base)

        assignment = load.active_assignment()
        if assignment is None or not assignment.vehicle_id:
            return LoadTracking(**base, errors={"vehicle": "Load has no active vehicle assignment"})
        vehicle_id = assignment.vehicle_id
        errors: dict[str, str] = {}

        position: PositionSample | None = None
        try:
            position = await self.get_current_position(vehicle_id, EntityType.VEHICLE)
        except TrackingError as exc:
            _logger.warning("Position lookup failed for load %s: %s", load_id, exc)
            errors["position"] = str(exc)

        eta: EtaEstimate | None = None
        delivery = load.delivery_location()
        if delivery is None:
            errors["eta"] = "Load has no delivery location"
        elif position is None:
            errors.setdefault("eta", f"No current position for vehicle {vehicle_id}")
        else:
            options = EtaOptions(
                consider_traffic=True,
                consider_weather=True,
                consider_hos=True,
                load_status=load.status,
            )
            try:
                eta = await self.estimate_eta(
                    vehicle_id, EntityType.VEHICLE, delivery.latitude, delivery.longitude, options
                )
            except TrackingError as exc:
                _logger.warning("ETA failed for load %s: %s", load_id, exc)
                errors["eta"] = str(exc)

        trajectory: Trajectory | None = None
        try:
            trajectory = await self.get_trajectory(vehicle_id, EntityType.VEHICLE)
        except TrackingError as exc:
            _logger.warning("Trajectory failed for load %s: %s", load_id, exc)
            errors["trajectory"] = str(exc)

        return LoadTracking(
            **base,
            vehicle_id=vehicle_id,
            position=position,
            eta=eta,
            trajectory=trajectory,
            errors=errors,
        )

    async def get_route_visualization(
        self,
        load_id: str,
        *,
        include_stops: bool = False,
        tolerance: float | None = None,
    ) -> RouteVisualization:
        """Route polyline and map markers for a load.

        Falls back to a straight pickup-to-delivery line when no vehicle
        trajectory is available.
        """
        load = await self._get_load(load_id)
        origin = load.pickup_location()
        destination = load.delivery_location()
        if origin is None or destination is None:
            raise TrackingValidationError(f"Load {load_id} is missing a pickup or delivery location", field="locations")

        markers: list[MapMarker] = []
        route: dict[str, Any] | None = None

        assignment = load.active_assignment()
        if assignment is not None and assignment.vehicle_id:
            vehicle_id = assignment.vehicle_id
            try:
                current = await self.get_current_position(vehicle_id, EntityType.VEHICLE)
            except TrackingError as exc:
                _logger.warning("Position lookup failed for load %s: %s", load_id, exc)
                current = None
            if current is not None:
                markers.append(
                    MapMarker(
                        marker_id=f"current_{vehicle_id}",
                        latitude=current.latitude,
                        longitude=current.longitude,
                        kind="current",
                        position=current,
                    )
                )
            try:
                trajectory = await self.get_trajectory(vehicle_id, EntityType.VEHICLE, tolerance=tolerance)
            except TrackingError as exc:
                _logger.warning("Trajectory failed for load %s: %s", load_id, exc)
            else:
                # A LineString needs at least two positions.
                if len(trajectory) >= 2:
                    route = trajectory.to_geojson()

        estimated = route is None
        if route is None:
            route = {
                "type": "LineString",
                "coordinates": [
                    [origin.longitude, origin.latitude],
                    [destination.longitude, destination.latitude],
                ],
            }

        markers.append(
            MapMarker(
                marker_id=f"origin_{load_id}",
                latitude=origin.latitude,
                longitude=origin.longitude,
                kind=LocationType.PICKUP.value,
                facility_name=origin.facility_name,
            )
        )
        markers.append(
            MapMarker(
                marker_id=f"destination_{load_id}",
                latitude=destination.latitude,
                longitude=destination.longitude,
                kind=LocationType.DELIVERY.value,
                facility_name=destination.facility_name,
            )
        )
        if include_stops:
            for index, stop in enumerate(load.stops()):
                markers.append(
                    MapMarker(
                        marker_id=f"stop_{index}_{load_id}",
                        latitude=stop.latitude,
                        longitude=stop.longitude,
                        kind=LocationType.STOP.value,
                        facility_name=stop.facility_name,
                        stop_number=index + 1,
                    )
                )

        return RouteVisualization(
            load_id=load_id,
            route=route,
            markers=tuple(markers),
            is_estimated_route=estimated,
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    @property
    def subscription_state(self) -> HubState:
        return self._hub.state if self._hub is not None else HubState.DISCONNECTED

    def subscribe_to_position_updates(
        self,
        entity_id: str,
        entity_type: EntityType,
        on_update: PositionListener,
        on_error: ErrorListener | None = None,
    ) -> Unsubscribe:
        """Live position updates for one entity; call the result to stop."""
        return self._require_hub().subscribe(entity_id, entity_type, on_update, on_error)

    async def subscribe_to_load_updates(
        self,
        load_id: str,
        on_status: Callable[[LoadStatusEvent], Any],
        on_position: PositionListener | None = None,
        on_error: ErrorListener | None = None,
    ) -> Unsubscribe:
        """Load status changes, plus the active vehicle's positions when *on_position* is given.

        Returns one function that cancels both subscriptions.
        """
        hub = self._require_hub()
        # Resolve the load before registering anything so a failed lookup
        # leaves no subscription behind.
        vehicle_id: str | None = None
        if on_position is not None:
            load = await self._get_load(load_id)
            assignment = load.active_assignment()
            if assignment is not None and assignment.vehicle_id:
                vehicle_id = assignment.vehicle_id
            else:
                _logger.debug("Load %s has no active vehicle; status updates only", load_id)

        unsubscribers = [hub.subscribe_load_status(load_id, on_status, on_error)]
        if on_position is not None and vehicle_id is not None:
            unsubscribers.append(hub.subscribe(vehicle_id, EntityType.VEHICLE, on_position, on_error))

        def unsubscribe() -> None:
            for fn in unsubscribers:
                fn()

        return unsubscribe

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def clear_position_cache(self, entity_id: str, entity_type: EntityType) -> None:
        self._position_cache.invalidate(entity_id, entity_type)

    def clear_trajectory_cache(self, entity_id: str, entity_type: EntityType) -> None:
        self._trajectory_cache.invalidate_entity(entity_id, entity_type)

    async def run_partition_maintenance(self, now: datetime | None = None) -> MaintenanceReport:
        """Create the upcoming month partition and prune expired ones.

        Safe to call repeatedly, e.g. from a daily scheduler.
        """
        at = now if now is not None else self._clock()
        created = await self._store_call(self._store.ensure_upcoming_partition(at), "ensure_upcoming_partition")
        dropped = await self._store_call(
            self._store.prune_old_partitions(at, self._config.partition_retention_months),
            "prune_old_partitions",
        )
        self._position_cache.purge_expired()
        self._trajectory_cache.purge_expired()
        return MaintenanceReport(created=list(created), dropped=list(dropped))
