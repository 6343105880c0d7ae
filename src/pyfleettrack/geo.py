"""Geometry helpers.

Great-circle distances are in kilometers. Polyline simplification works
in planar degree space, matching how the tolerance is expressed.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from pyfleettrack._constants import EARTH_RADIUS_KM

Coordinate = tuple[float, float]
"""``(latitude, longitude)`` in decimal degrees."""


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    # Clamp guards against a > 1 from floating point error on antipodal points.
    c = 2 * math.atan2(math.sqrt(min(a, 1.0)), math.sqrt(max(1.0 - a, 0.0)))
    return EARTH_RADIUS_KM * c


def polyline_length_km(points: Sequence[Coordinate]) -> float:
    """Sum of haversine legs along *points*."""
    total = 0.0
    for (lat1, lon1), (lat2, lon2) in zip(points, points[1:]):
        total += haversine_km(lat1, lon1, lat2, lon2)
    return total


def nearest_index(point: Coordinate, points: Sequence[Coordinate]) -> int:
    """Index of the vertex in *points* closest to *point*.

    Raises ``ValueError`` for an empty sequence.
    """
    if not points:
        raise ValueError("points must not be empty")
    lat, lon = point
    best_index = 0
    best_distance = math.inf
    for index, (p_lat, p_lon) in enumerate(points):
        distance = haversine_km(lat, lon, p_lat, p_lon)
        if distance < best_distance:
            best_distance = distance
            best_index = index
    return best_index


def segment_distance(point: Coordinate, start: Coordinate, end: Coordinate) -> float:
    """Planar distance in degrees from *point* to the segment *start*–*end*.

    Degenerate segments fall back to point-to-point distance.
    """
    px, py = point[1], point[0]
    ax, ay = start[1], start[0]
    bx, by = end[1], end[0]
    dx = bx - ax
    dy = by - ay
    length_sq = dx * dx + dy * dy
    if length_sq == 0.0:
        return math.hypot(px - ax, py - ay)
    t = ((px - ax) * dx + (py - ay) * dy) / length_sq
    t = max(0.0, min(1.0, t))
    return math.hypot(px - (ax + t * dx), py - (ay + t * dy))


def distance_to_polyline(point: Coordinate, polyline: Sequence[Coordinate]) -> float:
    """Planar distance in degrees from *point* to the nearest segment of *polyline*."""
    if not polyline:
        raise ValueError("polyline must not be empty")
    if len(polyline) == 1:
        return segment_distance(point, polyline[0], polyline[0])
    return min(segment_distance(point, a, b) for a, b in zip(polyline, polyline[1:]))
