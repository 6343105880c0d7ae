"""Load and assignment models returned by the load service."""

from __future__ import annotations

from pydantic import Field

from pyfleettrack.models._base import TrackingBaseModel, TrackingEnum


class LoadStatus(TrackingEnum):
    CREATED = "created"
    PENDING = "pending"
    AVAILABLE = "available"
    ASSIGNED = "assigned"
    AT_PICKUP = "at_pickup"
    LOADED = "loaded"
    IN_TRANSIT = "in_transit"
    AT_DROPOFF = "at_dropoff"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DELAYED = "delayed"
    EXCEPTION = "exception"


# Statuses for which a vehicle is expected to be moving the load.
TRACKABLE_LOAD_STATUSES = frozenset(
    {
        LoadStatus.ASSIGNED,
        LoadStatus.AT_PICKUP,
        LoadStatus.LOADED,
        LoadStatus.IN_TRANSIT,
        LoadStatus.AT_DROPOFF,
        LoadStatus.DELAYED,
    }
)


class AssignmentStatus(TrackingEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class LocationType(TrackingEnum):
    PICKUP = "pickup"
    DELIVERY = "delivery"
    STOP = "stop"


class LoadAssignment(TrackingBaseModel):
    assignment_id: str | None = None
    driver_id: str | None = None
    vehicle_id: str | None = None
    status: AssignmentStatus = AssignmentStatus.PENDING

    @property
    def is_active(self) -> bool:
        return self.status not in (AssignmentStatus.COMPLETED, AssignmentStatus.CANCELLED)


class LoadLocation(TrackingBaseModel):
    location_type: LocationType
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    facility_name: str | None = None
    sequence: int = 0


class LoadWithAssignments(TrackingBaseModel):
    """Read-only view of a load as needed for tracking composition."""

    load_id: str
    status: LoadStatus
    assignments: tuple[LoadAssignment, ...] = ()
    locations: tuple[LoadLocation, ...] = ()

    def active_assignment(self) -> LoadAssignment | None:
        """First assignment that is neither completed nor cancelled."""
        for assignment in self.assignments:
            if assignment.is_active:
                return assignment
        return None

    def _first_location(self, location_type: LocationType) -> LoadLocation | None:
        for location in self.locations:
            if location.location_type == location_type:
                return location
        return None

    def pickup_location(self) -> LoadLocation | None:
        return self._first_location(LocationType.PICKUP)

    def delivery_location(self) -> LoadLocation | None:
        return self._first_location(LocationType.DELIVERY)

    def stops(self) -> list[LoadLocation]:
        return sorted(
            (loc for loc in self.locations if loc.location_type == LocationType.STOP),
            key=lambda loc: loc.sequence,
        )
