"""Pydantic models for tracking data."""

from pyfleettrack.models._base import TrackingBaseModel, TrackingEnum, UtcDatetime, parse_timestamp
from pyfleettrack.models.eta import DistanceSource, EtaEstimate, EtaFactors, EtaOptions
from pyfleettrack.models.load import (
    TRACKABLE_LOAD_STATUSES,
    AssignmentStatus,
    LoadAssignment,
    LoadLocation,
    LoadStatus,
    LoadWithAssignments,
    LocationType,
)
from pyfleettrack.models.position import EntityType, PositionSample, PositionSource
from pyfleettrack.models.tracking import LoadTracking, MapMarker, RouteVisualization
from pyfleettrack.models.trajectory import Trajectory

__all__ = [
    "AssignmentStatus",
    "DistanceSource",
    "EntityType",
    "EtaEstimate",
    "EtaFactors",
    "EtaOptions",
    "LoadAssignment",
    "LoadLocation",
    "LoadStatus",
    "LoadTracking",
    "LoadWithAssignments",
    "LocationType",
    "MapMarker",
    "PositionSample",
    "PositionSource",
    "RouteVisualization",
    "TRACKABLE_LOAD_STATUSES",
    "TrackingBaseModel",
    "TrackingEnum",
    "Trajectory",
    "UtcDatetime",
    "parse_timestamp",
]
