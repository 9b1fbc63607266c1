"""Tests for H3 sampling: resolution selection, coverage, antimeridian-safe geometry."""

import h3
import pytest

from hilalgrid.grid import (
    boundary,
    cell_feature,
    cells_covering,
    cells_in_viewport,
    centroid,
    crosses_antimeridian,
    select_resolution,
    split_antimeridian,
)
from hilalgrid.models import QualitativeCode, VisibilityResult, Viewport


def _lng_span(ring):
    lngs = [lng for lng, _ in ring]
    return max(lngs) - min(lngs)


class TestSelectResolution:

    @pytest.mark.parametrize(
        "zoom, expected",
        [
            (0, 1), (2.9, 1), (3.0, 1),
            (3.01, 2), (4.5, 2),
            (4.51, 3), (6.0, 3),
            (6.5, 4), (8.0, 4),
            (8.01, 5), (18, 5),
        ],
    )
    def test_zoom_ladder(self, zoom, expected):
        assert select_resolution(zoom) == expected

    def test_monotonic_in_zoom(self):
        zooms = [z / 4 for z in range(0, 80)]
        resolutions = [select_resolution(z) for z in zooms]
        assert resolutions == sorted(resolutions)

    def test_manual_override_wins(self):
        assert select_resolution(12, manual=0) == 0
        assert select_resolution(1, manual=7) == 7

    @pytest.mark.parametrize("bad", [-1, 16])
    def test_override_out_of_range(self, bad):
        with pytest.raises(ValueError):
            select_resolution(5, manual=bad)


class TestCellsCovering:

    RING = [(10.0, 10.0), (10.0, 30.0), (25.0, 30.0), (25.0, 10.0), (10.0, 10.0)]

    def test_contains_centroid_cells(self):
        cells = cells_covering(self.RING, 2)
        assert h3.latlng_to_cell(17.5, 20.0, 2) in cells

    def test_includes_corner_cells(self):
        cells = cells_covering(self.RING, 2)
        for lat, lng in self.RING[:-1]:
            assert h3.latlng_to_cell(lat, lng, 2) in cells

    def test_superset_of_center_containment(self):
        cells = cells_covering(self.RING, 3)
        assert set(h3.polygon_to_cells(h3.LatLngPoly(self.RING[:-1]), 3)) <= cells

    def test_coarser_covering_contains_fewer_cells(self):
        counts = [len(cells_covering(self.RING, r)) for r in range(0, 5)]
        assert counts == sorted(counts)
        assert counts[-1] > counts[0]

    def test_all_cells_at_requested_resolution(self):
        assert {h3.get_resolution(c) for c in cells_covering(self.RING, 3)} == {3}

    def test_zero_area_ring_is_empty(self):
        assert cells_covering([(10.0, 10.0), (10.0, 20.0), (10.0, 30.0)], 3) == set()

    def test_repeated_point_ring_is_empty(self):
        assert cells_covering([(5.0, 5.0)] * 4, 3) == set()


class TestCellsInViewport:

    def test_matches_ring_covering_for_plain_view(self):
        view = Viewport(south=10, west=10, north=25, east=30)
        assert cells_in_viewport(view, 2) == cells_covering(view.ring(), 2)

    def test_flat_viewport_is_empty(self):
        assert cells_in_viewport(Viewport(south=10, west=10, north=10, east=20), 3) == set()
        assert cells_in_viewport(Viewport(south=10, west=20, north=30, east=20), 3) == set()

    def test_antimeridian_view_covers_both_sides(self):
        cells = cells_in_viewport(Viewport(south=-10, west=170, north=10, east=-170), 2)
        lngs = [centroid(c)[1] for c in cells]
        assert any(lng > 170 for lng in lngs)
        assert any(lng < -170 for lng in lngs)
        assert not any(-160 < lng < 160 for lng in lngs)

    def test_unwrapped_longitudes_are_normalized(self):
        wrapped = cells_in_viewport(Viewport(south=-10, west=170, north=10, east=190), 1)
        plain = cells_in_viewport(Viewport(south=-10, west=170, north=10, east=-170), 1)
        assert wrapped == plain

    def test_whole_world(self):
        cells = cells_in_viewport(Viewport(south=-85, west=-180, north=85, east=180), 0)
        assert len(cells) >= 100  # 122 cells at resolution 0, polar caps partly outside

    def test_viewport_monotonic_in_resolution(self):
        view = Viewport(south=20, west=35, north=30, east=50)
        counts = [len(cells_in_viewport(view, r)) for r in range(1, 5)]
        assert counts == sorted(counts)


class TestSplitAntimeridian:

    def test_single_polygon_when_not_crossing(self):
        ring = [(0.0, 10.0), (5.0, 15.0), (0.0, 20.0), (-5.0, 15.0)]
        geometry = split_antimeridian(ring)
        assert geometry["type"] == "Polygon"
        coords = geometry["coordinates"][0]
        assert coords[0] == coords[-1]
        assert coords[0] == [10.0, 0.0]  # (lng, lat)
        assert len(coords) == len(ring) + 1

    def test_crossing_becomes_two_parts(self):
        ring = [(0.0, 179.0), (1.0, 179.5), (1.0, -179.5), (0.0, -179.0), (-1.0, -179.5), (-1.0, 179.5)]
        assert crosses_antimeridian(ring)
        geometry = split_antimeridian(ring)
        assert geometry["type"] == "MultiPolygon"
        left, right = (part[0] for part in geometry["coordinates"])
        assert all(lng >= 0 for lng, _ in left)
        assert all(lng <= 0 for lng, _ in right)
        for part in (left, right):
            assert part[0] == part[-1]
            assert _lng_span(part) <= 180

    def test_wraparound_pair_is_checked(self):
        # Only the closing edge (last -> first) jumps the antimeridian
        ring = [(0.0, -179.5), (1.0, 0.0), (0.0, 179.5)]
        assert crosses_antimeridian(ring)
        assert not crosses_antimeridian(ring[:2])

    def test_real_cells_on_antimeridian(self):
        cells = cells_in_viewport(Viewport(south=-10, west=175, north=10, east=-175), 2)
        geometries = [split_antimeridian(boundary(c)) for c in cells]
        assert any(g["type"] == "MultiPolygon" for g in geometries)
        for g in geometries:
            parts = [g["coordinates"]] if g["type"] == "Polygon" else g["coordinates"]
            for part in parts:
                assert _lng_span(part[0]) <= 180


class TestCellGeometry:

    def test_centroid_round_trips(self):
        cell = h3.latlng_to_cell(21.4225, 39.8262, 4)
        lat, lng = centroid(cell)
        assert h3.latlng_to_cell(lat, lng, 4) == cell

    def test_boundary_is_hexagon(self):
        cell = h3.latlng_to_cell(21.4225, 39.8262, 4)
        assert len(boundary(cell)) == 6

    def test_feature_carries_color_and_code(self):
        cell = h3.latlng_to_cell(21.4225, 39.8262, 3)
        feature = cell_feature(VisibilityResult(code=QualitativeCode.C, cell_id=cell))
        assert feature.fill_color == "#2dd4bf"
        assert feature.geometry["type"] == "Polygon"
        assert feature.to_geojson()["properties"] == {"color": "#2dd4bf", "code": "C"}

    def test_feature_requires_cell(self):
        with pytest.raises(ValueError):
            cell_feature(VisibilityResult(code=QualitativeCode.A))
