"""Tests for geo.py: haversine distance and the bounding-box pre-filter."""

import math

import pytest

from geo import EARTH_RADIUS_M, bounding_box, haversine_meters


class TestHaversine:
    def test_same_point_is_zero(self):
        assert haversine_meters(40.7128, -74.0060, 40.7128, -74.0060) == pytest.approx(0.0, abs=1e-9)

    def test_symmetric(self):
        a = (51.5074, -0.1278)
        b = (48.8566, 2.3522)
        assert haversine_meters(*a, *b) == pytest.approx(haversine_meters(*b, *a), rel=1e-12)

    def test_london_to_paris(self):
        # ~343.5 km great-circle
        d = haversine_meters(51.5074, -0.1278, 48.8566, 2.3522)
        assert 340_000 < d < 347_000

    def test_one_degree_latitude(self):
        d = haversine_meters(0.0, 0.0, 1.0, 0.0)
        assert d == pytest.approx(EARTH_RADIUS_M * math.pi / 180, rel=1e-9)

    def test_antipodal(self):
        d = haversine_meters(0.0, 0.0, 0.0, 180.0)
        assert d == pytest.approx(math.pi * EARTH_RADIUS_M, rel=1e-9)

    def test_uses_degrees_not_raw_pi_multiples(self):
        # A tiny offset must give a tiny distance (~111 m for 0.001 deg).
        d = haversine_meters(10.0, 10.0, 10.001, 10.0)
        assert 100 < d < 120


def _destination(lat, lng, bearing_deg, distance_m):
    """Point distance_m from (lat, lng) along bearing_deg on the haversine sphere."""
    d = distance_m / EARTH_RADIUS_M
    phi1, lam1, theta = math.radians(lat), math.radians(lng), math.radians(bearing_deg)
    phi2 = math.asin(math.sin(phi1) * math.cos(d) + math.cos(phi1) * math.sin(d) * math.cos(theta))
    lam2 = lam1 + math.atan2(
        math.sin(theta) * math.sin(d) * math.cos(phi1),
        math.cos(d) - math.sin(phi1) * math.sin(phi2),
    )
    lng2 = (math.degrees(lam2) + 540.0) % 360.0 - 180.0
    return math.degrees(phi2), lng2


def _in_box(box, lat, lng):
    min_lat, max_lat, ranges = box
    return min_lat <= lat <= max_lat and any(lo <= lng <= hi for lo, hi in ranges)


class TestBoundingBox:
    @pytest.mark.parametrize("lat", [0.0, 40.0, 60.0, -75.0])
    def test_contains_radius(self, lat):
        lng, radius = -74.0, 5000
        min_lat, max_lat, ranges = bounding_box(lat, lng, radius)
        assert len(ranges) == 1
        lo, hi = ranges[0]
        assert haversine_meters(lat, lng, max_lat, lng) >= radius
        assert haversine_meters(lat, lng, min_lat, lng) >= radius
        assert haversine_meters(lat, lng, lat, hi) >= radius
        assert haversine_meters(lat, lng, lat, lo) >= radius

    @pytest.mark.parametrize("lat", [0.0, 45.0, 60.0, 80.0])
    def test_every_point_on_circle_inside(self, lat):
        radius = 10000
        box = bounding_box(lat, 10.0, radius)
        for bearing in range(0, 360, 5):
            point = _destination(lat, 10.0, bearing, radius)
            assert _in_box(box, *point), (bearing, point)

    def test_equator_edge_point_kept(self):
        # 0.0899 deg north is ~9996 m on the haversine sphere
        assert haversine_meters(0.0, 0.0, 0.0899, 0.0) < 10000
        assert _in_box(bounding_box(0.0, 0.0, 10000), 0.0899, 0.0)

    def test_wraps_antimeridian(self):
        _, _, ranges = bounding_box(0.0, 179.99, 5000)
        assert len(ranges) == 2
        assert ranges[0][1] == 180.0
        assert ranges[1][0] == -180.0
        assert ranges[1][1] < -179.9

    def test_wraps_antimeridian_west(self):
        _, _, ranges = bounding_box(0.0, -179.99, 5000)
        assert len(ranges) == 2
        assert ranges[0][0] > 179.9
        assert ranges[1][0] == -180.0

    def test_near_pole_spans_all_longitudes(self):
        min_lat, max_lat, ranges = bounding_box(89.99, 0.0, 5000)
        assert max_lat == 90.0
        assert ranges == [(-180.0, 180.0)]
