"""pyfleettrack - Async real-time position tracking for fleet entities."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("pyfleettrack")
except PackageNotFoundError:
    __version__ = "0+local"
from pyfleettrack._cache import PositionCache, TrajectoryCache
from pyfleettrack._push import LoadStatusEvent, SubscriptionKey
from pyfleettrack.client import MaintenanceReport, TrackingClient
from pyfleettrack.config import TrackingConfig
from pyfleettrack.eta import EtaEngine, remaining_distance_km
from pyfleettrack.exceptions import (
    PartitionMissingError,
    PositionUnavailableError,
    TrackingConfigError,
    TrackingConflictError,
    TrackingConnectionError,
    TrackingError,
    TrackingNotFoundError,
    TrackingTimeoutError,
    TrackingValidationError,
)
from pyfleettrack.hub import HubState, SubscriptionHub
from pyfleettrack.models import (
    EntityType,
    EtaEstimate,
    EtaOptions,
    LoadStatus,
    LoadTracking,
    LoadWithAssignments,
    PositionSample,
    PositionSource,
    RouteVisualization,
    Trajectory,
)
from pyfleettrack.storage import InMemoryPositionStore, PartitionRange, PositionStore
from pyfleettrack.trajectory import TrajectoryEngine, simplify_polyline

__all__ = [
    "__version__",
    "EntityType",
    "EtaEngine",
    "EtaEstimate",
    "EtaOptions",
    "HubState",
    "InMemoryPositionStore",
    "LoadStatus",
    "LoadStatusEvent",
    "LoadTracking",
    "LoadWithAssignments",
    "MaintenanceReport",
    "PartitionMissingError",
    "PartitionRange",
    "PositionCache",
    "PositionSample",
    "PositionSource",
    "PositionStore",
    "PositionUnavailableError",
    "RouteVisualization",
    "SubscriptionHub",
    "SubscriptionKey",
    "TrackingClient",
    "TrackingConfig",
    "TrackingConfigError",
    "TrackingConflictError",
    "TrackingConnectionError",
    "TrackingError",
    "TrackingNotFoundError",
    "TrackingTimeoutError",
    "TrackingValidationError",
    "Trajectory",
    "TrajectoryCache",
    "TrajectoryEngine",
    "remaining_distance_km",
    "simplify_polyline",
]
