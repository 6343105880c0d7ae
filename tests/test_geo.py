from __future__ import annotations

import math

import pytest

from pyfleettrack.geo import (
    distance_to_polyline,
    haversine_km,
    nearest_index,
    polyline_length_km,
    segment_distance,
)


def test_haversine_known_distance() -> None:
    # One degree of latitude is ~111.19 km on a 6371 km sphere.
    assert haversine_km(0.0, 0.0, 1.0, 0.0) == pytest.approx(111.195, abs=0.01)


def test_haversine_is_symmetric_and_zero_on_identity() -> None:
    a = haversine_km(40.0, -75.0, 40.5, -75.5)
    b = haversine_km(40.5, -75.5, 40.0, -75.0)
    assert a == pytest.approx(b)
    assert haversine_km(40.0, -75.0, 40.0, -75.0) == 0.0


def test_haversine_antipodal_points() -> None:
    assert haversine_km(0.0, 0.0, 0.0, 180.0) == pytest.approx(math.pi * 6371.0, rel=1e-9)


def test_polyline_length_sums_legs() -> None:
    points = [(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)]
    assert polyline_length_km(points) == pytest.approx(2 * haversine_km(0.0, 0.0, 1.0, 0.0))
    assert polyline_length_km(points[:1]) == 0.0


def test_nearest_index() -> None:
    points = [(0.0, 0.0), (1.0, 1.0), (2.0, 2.0)]
    assert nearest_index((1.1, 0.9), points) == 1
    with pytest.raises(ValueError):
        nearest_index((0.0, 0.0), [])


def test_segment_distance_projection_and_clamping() -> None:
    # Perpendicular foot inside the segment.
    assert segment_distance((1.0, 0.5), (0.0, 0.0), (0.0, 1.0)) == pytest.approx(1.0)
    # Beyond the end: distance to the endpoint.
    assert segment_distance((0.0, 2.0), (0.0, 0.0), (0.0, 1.0)) == pytest.approx(1.0)
    # Degenerate segment.
    assert segment_distance((3.0, 4.0), (0.0, 0.0), (0.0, 0.0)) == pytest.approx(5.0)


def test_distance_to_polyline_uses_nearest_segment() -> None:
    line = [(0.0, 0.0), (0.0, 1.0), (1.0, 1.0)]
    assert distance_to_polyline((0.5, 1.2), line) == pytest.approx(0.2)
