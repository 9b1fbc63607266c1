"""Value types passed between the compute, cache, grid and controller layers."""

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from pytz import utc


class QualitativeCode(Enum):
    """Crescent visibility classification, from easily visible (A) to the not-visible reasons."""

    A = "A"
    B = "B"
    C = "C"
    D = "D"
    E = "E"
    F = "F"
    G = "G"
    H = "H"
    I = "I"  # noqa: E741
    J = "J"

    @property
    def color(self) -> str:
        return _CODE_STYLES[self][0]

    @property
    def description(self) -> str:
        return _CODE_STYLES[self][1]

    @classmethod
    def legend(cls) -> tuple[tuple[str, str, str], ...]:
        """(code, color, description) rows in ladder order, for a map legend."""
        return tuple((c.value, c.color, c.description) for c in cls)


_TRANSPARENT = "rgba(0, 0, 0, 0)"

_CODE_STYLES: dict[QualitativeCode, tuple[str, str]] = {
    QualitativeCode.A: ("#22c55e", "Hilal easily visible"),
    QualitativeCode.B: ("#84cc16", "Hilal visible under perfect conditions"),
    QualitativeCode.C: ("#2dd4bf", "May need optical aid to find crescent"),
    QualitativeCode.D: ("#facc15", "Will need optical aid to find crescent"),
    QualitativeCode.E: ("#fb923c", "Crescent not visible with telescope"),
    QualitativeCode.F: (_TRANSPARENT, "Hilal not visible - below the Danjon limit (7°)"),
    QualitativeCode.G: ("#a855f7", "Hilal not visible - sunset is before new moon"),
    QualitativeCode.H: ("#3b82f6", "Hilal not visible - no moonset on location"),
    QualitativeCode.I: ("#ef4444", "Hilal not visible - moonset before sunset"),
    QualitativeCode.J: (
        _TRANSPARENT,
        "Hilal not visible - moonset before sunset, sunset before new moon",
    ),
}


@dataclass(frozen=True)
class VisibilityOptions:
    """Evaluator switches."""

    evening: bool = True  # True: sunset/moonset search, False: sunrise/moonrise
    yallop: bool = True  # True: Yallop q-test, False: Odeh criterion


@dataclass(frozen=True)
class VisibilityResult:
    """Classification plus the geometry it was derived from.

    Angles are degrees unless noted. Code H results carry no diagnostics.
    """

    code: QualitativeCode
    cell_id: str | None = None  # Set when the result belongs to a grid cell
    lag_minutes: float | None = None  # Moon event minus sun event (sign-flipped for morning)
    sun_event: datetime | None = None  # Sunset (evening) or sunrise (morning), UTC
    moon_event: datetime | None = None  # Moonset (evening) or moonrise (morning), UTC
    best_time: datetime | None = None  # Sun event + 4/9 of the lag, UTC
    new_moon_prev: datetime | None = None
    new_moon_next: datetime | None = None
    moon_age_prev_hours: float | None = None  # best_time - new_moon_prev
    moon_age_next_hours: float | None = None  # best_time - new_moon_next (negative)
    value: float | None = None  # Yallop q or Odeh V
    arcl: float | None = None  # Sun-Moon elongation
    arcv: float | None = None  # Moon altitude - Sun altitude
    daz: float | None = None  # Sun azimuth - Moon azimuth
    w_topo: float | None = None  # Topocentric crescent width (arcmin)
    sd: float | None = None  # Geocentric semi-diameter (arcmin)
    sd_topo: float | None = None  # Topocentric semi-diameter (arcmin)
    lunar_parallax: float | None = None  # Horizontal parallax (arcmin)
    moon_azimuth: float | None = None
    moon_altitude: float | None = None
    moon_ra: float | None = None  # Hours
    moon_dec: float | None = None
    sun_azimuth: float | None = None
    sun_altitude: float | None = None
    sun_ra: float | None = None  # Hours
    sun_dec: float | None = None

    @property
    def color(self) -> str:
        return self.code.color

    @property
    def description(self) -> str:
        return self.code.description


def utc_day(when: date | datetime) -> date:
    """Calendar day of a date or datetime; aware datetimes are taken in UTC."""
    if isinstance(when, datetime):
        if when.tzinfo is not None:
            when = when.astimezone(utc)
        return when.date()
    return when


@dataclass(frozen=True)
class CacheKey:
    """Identity of a cached result: (cell, UTC day, whole metres)."""

    cell_id: str
    day: date
    elevation: int

    @classmethod
    def build(cls, cell_id: str, when: date | datetime, elevation: float) -> "CacheKey":
        return cls(cell_id=cell_id, day=utc_day(when), elevation=int(round(elevation)))


@dataclass(frozen=True)
class Epoch:
    """The key space a working set belongs to. Any field change invalidates the display."""

    day: date
    elevation: int
    resolution: int


@dataclass(frozen=True)
class Viewport:
    """Visible map bounds in decimal degrees. east < west means the view crosses the antimeridian."""

    south: float
    west: float
    north: float
    east: float

    def ring(self) -> tuple[tuple[float, float], ...]:
        """Closed (lat, lng) ring: NW, NE, SE, SW, NW."""
        return (
            (self.north, self.west),
            (self.north, self.east),
            (self.south, self.east),
            (self.south, self.west),
            (self.north, self.west),
        )


@dataclass(frozen=True)
class GridFeature:
    """One renderable cell."""

    cell_id: str
    geometry: dict[str, Any]  # GeoJSON Polygon or MultiPolygon, (lng, lat) order
    fill_color: str
    code: QualitativeCode

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "Feature",
            "id": self.cell_id,
            "properties": {"color": self.fill_color, "code": self.code.value},
            "geometry": self.geometry,
        }


@dataclass(frozen=True)
class GridSnapshot:
    """The sole output to renderers: current cells plus the computing flag."""

    features: tuple[GridFeature, ...]
    computing: bool
    resolution: int
    day: date
    elevation: int

    def to_geojson(self) -> dict[str, Any]:
        return {
            "type": "FeatureCollection",
            "features": [f.to_geojson() for f in self.features],
        }


@dataclass(frozen=True)
class MoonStatus:
    """Geocentric phase of the Moon at an instant."""

    phase_angle: float  # Moon minus Sun ecliptic longitude, 0-360
    illuminated_percent: float  # 0-100

    @property
    def waning(self) -> bool:
        """Past full moon; crescent sighting is about the waxing crescent."""
        return self.phase_angle > 180


@dataclass(frozen=True)
class PointInspection:
    """Evaluation of a single location with event times in its local zone."""

    lat: float
    lng: float
    elevation: float
    result: VisibilityResult
    timezone: str | None  # IANA zone name, None over open ocean
    local_sun_event: datetime | None = None
    local_moon_event: datetime | None = None
    local_best_time: datetime | None = None
