"""
Geospatial primitive tests: haversine distance, variance and the GPS quality gate.
"""

import math

import pytest

from gate_discovery.utils.exceptions import InvalidCoordinateError
from gate_discovery.utils.geo import (
    EARTH_RADIUS_M, centroid, distance, grid_cell, is_valid_location, neighbouring_cells,
    offset, spatial_variance, weighted_centroid,
)

from conftest import VENUE_CENTER


# ============================================================================
# TEST: DISTANCE
# ============================================================================

class TestDistance:

    def test_identical_points_are_zero(self):
        assert distance(VENUE_CENTER, VENUE_CENTER) == 0.0

    def test_one_degree_of_latitude(self):
        expected = EARTH_RADIUS_M * math.pi / 180
        assert distance((0.0, 10.0), (1.0, 10.0)) == pytest.approx(expected, rel=1e-9)

    def test_antipodal_points_do_not_produce_nan(self):
        d = distance((0.0, 0.0), (0.0, 180.0))
        assert not math.isnan(d)
        assert d == pytest.approx(math.pi * EARTH_RADIUS_M, rel=1e-9)

    @pytest.mark.parametrize("meters", [10, 50, 250, 2000])
    def test_venue_scale_accuracy(self, meters):
        """Offsets laid out on a local grid match haversine within 0.5%."""
        north = offset(VENUE_CENTER, meters, 0)
        east = offset(VENUE_CENTER, 0, meters)
        assert distance(VENUE_CENTER, north) == pytest.approx(meters, rel=0.005)
        assert distance(VENUE_CENTER, east) == pytest.approx(meters, rel=0.005)

    def test_symmetric(self):
        other = offset(VENUE_CENTER, 30, -12)
        assert distance(VENUE_CENTER, other) == pytest.approx(distance(other, VENUE_CENTER))

    @pytest.mark.parametrize("bad", [
        (float("nan"), 0.0),
        (0.0, float("nan")),
        (91.0, 0.0),
        (0.0, -180.5),
    ])
    def test_invalid_coordinates_raise(self, bad):
        with pytest.raises(InvalidCoordinateError):
            distance(bad, VENUE_CENTER)


# ============================================================================
# TEST: CENTROID / VARIANCE
# ============================================================================

class TestSpatialStatistics:

    def test_variance_of_single_point_is_zero(self):
        assert spatial_variance([VENUE_CENTER]) == 0.0
        assert spatial_variance([]) == 0.0

    def test_variance_of_two_points(self):
        """Two points 10m apart sit 5m from their centroid: variance 25 m^2."""
        a = VENUE_CENTER
        b = offset(VENUE_CENTER, 10, 0)
        assert spatial_variance([a, b]) == pytest.approx(25.0, rel=0.01)

    def test_centroid_of_empty_set_raises(self):
        with pytest.raises(ValueError):
            centroid([])

    def test_weighted_centroid_leans_to_heavier_point(self):
        a = VENUE_CENTER
        b = offset(VENUE_CENTER, 40, 0)
        lat, lon = weighted_centroid([(a, 3), (b, 1)])
        assert distance(a, (lat, lon)) == pytest.approx(10.0, rel=0.01)


# ============================================================================
# TEST: GPS QUALITY GATE
# ============================================================================

class TestLocationValidity:

    def test_good_fix(self):
        assert is_valid_location(6.9, 79.8, 8.0)

    @pytest.mark.parametrize("lat,lon,acc", [
        (None, 79.8, 5.0),
        (6.9, 79.8, None),
        (6.9, 79.8, 0.0),
        (6.9, 79.8, 250.0),
        (0.0, 0.0, 5.0),
        (95.0, 79.8, 5.0),
        (float("nan"), 79.8, 5.0),
    ])
    def test_rejected_fixes(self, lat, lon, acc):
        assert not is_valid_location(lat, lon, acc)


# ============================================================================
# TEST: GRID PREFILTER
# ============================================================================

class TestGrid:

    def test_nearby_points_share_or_neighbour_cells(self):
        cell_size = 20.0
        a = grid_cell(*VENUE_CENTER, cell_size)
        b = grid_cell(*offset(VENUE_CENTER, 15, 15), cell_size)
        assert b in neighbouring_cells(a)

    def test_far_points_are_not_neighbours(self):
        cell_size = 20.0
        a = grid_cell(*VENUE_CENTER, cell_size)
        b = grid_cell(*offset(VENUE_CENTER, 200, 0), cell_size)
        assert b not in neighbouring_cells(a)

    def test_neighbourhood_is_three_by_three(self):
        assert len(set(neighbouring_cells((4, -2)))) == 9
