"""Shared numeric constants."""

from __future__ import annotations

# Mean Earth radius used by the haversine formula.
EARTH_RADIUS_KM = 6371.0

# Coordinates are stored with 6 decimal places (~0.11 m).
COORDINATE_PRECISION = 6

# Historical/current speed blending weights.
CURRENT_SPEED_WEIGHT = 0.3
HISTORICAL_SPEED_WEIGHT = 0.4

# Hours-of-service: maximum driving block and mandatory rest, in minutes.
HOS_MAX_DRIVING_MINUTES = 11 * 60
HOS_REST_MINUTES = 10 * 60

# Routing-service duration is trusted only within these ratios of the
# speed-based estimate.
TRAFFIC_FACTOR_MIN = 0.5
TRAFFIC_FACTOR_MAX = 2.0

CONFIDENCE_BASE = 0.5
CONFIDENCE_MIN = 0.5
CONFIDENCE_MAX = 0.95
SHORT_TRIP_KM = 50.0
LONG_TRIP_KM = 500.0

USER_AGENT = "pyfleettrack"
