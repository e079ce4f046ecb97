"""
Great-circle distance tests.
"""

import pytest

from tripmerge.app.services.geo import (
    coordinates_of,
    distance,
    estimate_duration_minutes,
    haversine_distance,
    path_distance,
    zone_of,
)

from factories import KM_LAT, location


def test_distance_to_self_is_zero():
    assert distance((25.1, 55.2), (25.1, 55.2)) == 0


def test_distance_is_symmetric():
    a, b = (25.10, 55.20), (25.30, 55.10)
    assert distance(a, b) == pytest.approx(distance(b, a))


def test_one_degree_of_latitude():
    assert haversine_distance(0, 0, 1, 0) == pytest.approx(111.195, rel=1e-3)


def test_known_city_pair():
    # Dubai to Abu Dhabi, roughly 123 km
    assert distance((25.2048, 55.2708), (24.4539, 54.3773)) == pytest.approx(123, abs=3)


def test_path_distance_sums_legs():
    points = [(25.0, 55.0), (25.0 + KM_LAT, 55.0), (25.0 + 3 * KM_LAT, 55.0)]
    assert path_distance(points) == pytest.approx(3.0, rel=1e-3)
    assert path_distance(points[:1]) == 0


def test_duration_estimate_uses_average_speed():
    assert estimate_duration_minutes(40) == pytest.approx(60)


def test_location_accessors():
    doc = location(25.1, 55.2, zone="Marina")
    assert coordinates_of(doc) == (25.1, 55.2)
    assert zone_of(doc) == "Marina"
    assert zone_of({"coordinates": {"lat": 1, "lng": 2}}) is None
