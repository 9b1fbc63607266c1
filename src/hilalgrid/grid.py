"""Hexagonal spatial sampling on H3: viewport coverage and antimeridian-safe cell geometry."""

import math
from collections.abc import Iterable, Sequence
from typing import Any

import h3

from hilalgrid.models import GridFeature, VisibilityResult, Viewport

MIN_RESOLUTION = 0
MAX_RESOLUTION = 15

# (zoom upper bound, resolution); zoom above the last bound gets _FINEST_AUTO_RESOLUTION
_ZOOM_LADDER: tuple[tuple[float, int], ...] = ((3.0, 1), (4.5, 2), (6.0, 3), (8.0, 4))
_FINEST_AUTO_RESOLUTION = 5

_MAX_STRIP_DEGREES = 90.0
_KM_PER_DEGREE = 111.32
_AREA_EPSILON = 1e-12

LatLng = tuple[float, float]


def select_resolution(zoom: float, manual: int | None = None) -> int:
    """Map zoom to an H3 resolution, unless a manual override is set.

    Raises:
        ValueError: When the override is outside 0-15.
    """
    if manual is not None:
        if not MIN_RESOLUTION <= manual <= MAX_RESOLUTION:
            raise ValueError(f"resolution must be within 0-15, got {manual}")
        return manual
    for upper, resolution in _ZOOM_LADDER:
        if zoom <= upper:
            return resolution
    return _FINEST_AUTO_RESOLUTION


def _open_ring(ring: Sequence[LatLng]) -> list[LatLng]:
    points = [(float(lat), float(lng)) for lat, lng in ring]
    if len(points) > 1 and points[0] == points[-1]:
        points.pop()
    return points


def _signed_area(points: Sequence[LatLng]) -> float:
    """Shoelace area in square degrees (lat/lng plane)."""
    total = 0.0
    for (lat0, lng0), (lat1, lng1) in zip(points, points[1:] + points[:1]):
        total += lng0 * lat1 - lng1 * lat0
    return total / 2.0


def _edge_cells(points: Sequence[LatLng], resolution: int) -> set[str]:
    """Cells crossed by the ring's edges, found by sampling finer than the cell edge length."""
    step = h3.average_hexagon_edge_length(resolution, unit="km") / _KM_PER_DEGREE / 4.0
    cells: set[str] = set()
    for (lat0, lng0), (lat1, lng1) in zip(points, points[1:] + points[:1]):
        n = max(1, math.ceil(math.hypot(lat1 - lat0, lng1 - lng0) / step))
        for i in range(n + 1):
            f = i / n
            lat = max(-90.0, min(90.0, lat0 + (lat1 - lat0) * f))
            cells.add(h3.latlng_to_cell(lat, lng0 + (lng1 - lng0) * f, resolution))
    return cells


def cells_covering(ring: Sequence[LatLng], resolution: int) -> set[str]:
    """Every cell at resolution that intersects the (lat, lng) ring.

    The ring must not cross the antimeridian; use cells_in_viewport for map
    bounds. A ring with zero area yields an empty set.
    """
    points = _open_ring(ring)
    if len(set(points)) < 3 or abs(_signed_area(points)) < _AREA_EPSILON:
        return set()
    cells = set(h3.polygon_to_cells(h3.LatLngPoly(points), resolution))
    cells.update(_edge_cells(points, resolution))
    return cells


def _split_at_antimeridian(a: float, b: float) -> list[tuple[float, float]]:
    # a in [-180, 540), b - a <= _MAX_STRIP_DEGREES
    if b <= 180.0:
        return [(a, b)]
    if a >= 180.0:
        return [(a - 360.0, b - 360.0)]
    return [(a, 180.0), (-180.0, b - 360.0)]


def _lng_strips(west: float, east: float) -> list[tuple[float, float]]:
    """Split [west, east] (east < west wraps) into strips within [-180, 180]."""
    width = east - west
    if width < 0:
        width += 360.0
    if width >= 360.0:
        west, width = -180.0, 360.0
    else:
        west = (west + 180.0) % 360.0 - 180.0
    if width == 0:
        return []
    n = math.ceil(width / _MAX_STRIP_DEGREES)
    edges = [west + width * i / n for i in range(n + 1)]
    strips: list[tuple[float, float]] = []
    for a, b in zip(edges, edges[1:]):
        strips.extend(_split_at_antimeridian(a, b))
    return strips


def cells_in_viewport(viewport: Viewport, resolution: int) -> set[str]:
    """Cells covering map bounds, including views that wrap the antimeridian or the whole globe."""
    south = max(-90.0, min(90.0, viewport.south))
    north = max(-90.0, min(90.0, viewport.north))
    if north <= south:
        return set()
    cells: set[str] = set()
    for west, east in _lng_strips(viewport.west, viewport.east):
        strip = Viewport(south=south, west=west, north=north, east=east)
        cells |= cells_covering(strip.ring(), resolution)
    return cells


def is_valid_cell(cell_id: str) -> bool:
    return isinstance(cell_id, str) and h3.is_valid_cell(cell_id)


def centroid(cell_id: str) -> LatLng:
    lat, lng = h3.cell_to_latlng(cell_id)
    return lat, lng


def boundary(cell_id: str) -> tuple[LatLng, ...]:
    """Cell vertices as (lat, lng), not closed."""
    return tuple((lat, lng) for lat, lng in h3.cell_to_boundary(cell_id))


def crosses_antimeridian(points: Sequence[LatLng]) -> bool:
    """True when two consecutive vertices (wrapping around) jump more than 180° of longitude."""
    lngs = [lng for _, lng in points]
    return any(abs(lng - nxt) > 180.0 for lng, nxt in zip(lngs, lngs[1:] + lngs[:1]))


def _closed(coords: list[list[float]]) -> list[list[float]]:
    return coords + [list(coords[0])]


def split_antimeridian(points: Sequence[LatLng]) -> dict[str, Any]:
    """GeoJSON geometry for a cell boundary, in (lng, lat) order.

    A boundary that wraps is emitted as a MultiPolygon of two copies: one with
    negative longitudes shifted +360, one with positive longitudes shifted
    -360. Otherwise a single closed Polygon.
    """
    if not crosses_antimeridian(points):
        coords = [[lng, lat] for lat, lng in points]
        return {"type": "Polygon", "coordinates": [_closed(coords)]}
    left = [[lng + 360.0 if lng < 0 else lng, lat] for lat, lng in points]
    right = [[lng - 360.0 if lng > 0 else lng, lat] for lat, lng in points]
    return {
        "type": "MultiPolygon",
        "coordinates": [[_closed(left)], [_closed(right)]],
    }


def cell_feature(result: VisibilityResult) -> GridFeature:
    """Renderable feature for a cell-tagged result."""
    if result.cell_id is None:
        raise ValueError("result is not tagged with a cell id")
    return GridFeature(
        cell_id=result.cell_id,
        geometry=split_antimeridian(boundary(result.cell_id)),
        fill_color=result.color,
        code=result.code,
    )


def features(results: Iterable[VisibilityResult]) -> tuple[GridFeature, ...]:
    return tuple(cell_feature(r) for r in results)
