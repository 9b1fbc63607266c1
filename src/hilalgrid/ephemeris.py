"""Skyfield-backed ephemeris capability: rise/set search, new moons, Sun/Moon positions.

All instants cross this boundary as timezone-aware UTC datetimes, so the
evaluator never touches skyfield Time objects directly.
"""

import functools
import math
from dataclasses import dataclass
from datetime import datetime, timedelta

from skyfield import almanac
from skyfield.api import Loader, wgs84

from hilalgrid.config import Settings, load_settings

SUN = "sun"
MOON = "moon"

_MOON_RADIUS_KM = 1737.4


@dataclass(frozen=True)
class BodyPosition:
    """Apparent place of a body for one observer at one instant (no refraction)."""

    ra_hours: float  # Right ascension of date (hours)
    dec_deg: float  # Declination of date (degrees)
    azimuth: float  # Degrees from north, eastward
    altitude: float  # Degrees above the horizon
    vector: tuple[float, float, float]  # Observer-to-body direction (au)


class Ephemeris:
    """Sun and Moon ephemeris for ground observers, backed by a JPL kernel."""

    def __init__(self, settings: Settings | None = None) -> None:
        settings = settings or load_settings()
        settings.data_dir.mkdir(parents=True, exist_ok=True)
        loader = Loader(str(settings.data_dir))
        self._eph = loader(settings.ephemeris)
        self._ts = loader.timescale()
        self._earth = self._eph["earth"]

    def _time(self, when: datetime):
        return self._ts.from_datetime(when)

    def _observer(self, lat: float, lng: float, elevation: float):
        return self._earth + wgs84.latlon(
            latitude_degrees=lat, longitude_degrees=lng, elevation_m=elevation
        )

    def find_event(
        self,
        body: str,
        lat: float,
        lng: float,
        elevation: float,
        kind: str,
        start: datetime,
        days: float = 1.0,
    ) -> datetime | None:
        """First rise or set of body within [start, start + days].

        Args:
            body: SUN or MOON.
            kind: "rise" or "set".
            days: Length of the forward search window.

        Returns:
            UTC datetime of the event, or None when the body does not cross
            the horizon inside the window (polar day/night).
        """
        finder = almanac.find_risings if kind == "rise" else almanac.find_settings
        observer = self._observer(lat, lng, elevation)
        t0 = self._time(start)
        t1 = self._time(start + timedelta(days=days))
        times, crossed = finder(observer, self._eph[body], t0, t1)
        for t, ok in zip(times, crossed):
            if ok:
                return t.utc_datetime()
        return None

    def find_new_moon(self, start: datetime, days: float) -> datetime | None:
        """Nearest new moon from start, forward (days > 0) or backward (days < 0)."""
        if days >= 0:
            t0, t1 = self._time(start), self._time(start + timedelta(days=days))
        else:
            t0, t1 = self._time(start + timedelta(days=days)), self._time(start)
        times, phases = almanac.find_discrete(t0, t1, almanac.moon_phases(self._eph))
        new_moons = [t for t, phase in zip(times, phases) if phase == 0]
        if not new_moons:
            return None
        chosen = new_moons[0] if days >= 0 else new_moons[-1]
        return chosen.utc_datetime()

    def topocentric(
        self, body: str, lat: float, lng: float, elevation: float, when: datetime
    ) -> BodyPosition:
        """Apparent equatorial and horizontal coordinates seen from the observer."""
        t = self._time(when)
        apparent = self._observer(lat, lng, elevation).at(t).observe(self._eph[body]).apparent()
        ra, dec, _ = apparent.radec(epoch="date")
        alt, az, _ = apparent.altaz()
        x, y, z = apparent.position.au
        return BodyPosition(
            ra_hours=float(ra.hours),
            dec_deg=float(dec.degrees),
            azimuth=float(az.degrees),
            altitude=float(alt.degrees),
            vector=(float(x), float(y), float(z)),
        )

    def geocentric_altitude(
        self, body: str, lat: float, lng: float, when: datetime
    ) -> float:
        """Altitude of the body's geocentric apparent place on the observer's horizon."""
        t = self._time(when)
        apparent = self._earth.at(t).observe(self._eph[body]).apparent()
        ra, dec, _ = apparent.radec(epoch="date")
        hour_angle = math.radians((float(t.gast) + lng / 15.0 - float(ra.hours)) * 15.0)
        phi = math.radians(lat)
        delta = math.radians(float(dec.degrees))
        sin_alt = math.sin(phi) * math.sin(delta) + math.cos(phi) * math.cos(
            delta
        ) * math.cos(hour_angle)
        return math.degrees(math.asin(max(-1.0, min(1.0, sin_alt))))

    def elongation(self, when: datetime) -> float:
        """Geocentric Sun-Moon angular separation (degrees)."""
        e = self._earth.at(self._time(when))
        sun = e.observe(self._eph[SUN]).apparent()
        moon = e.observe(self._eph[MOON]).apparent()
        return float(moon.separation_from(sun).degrees)

    def moon_diameter(self, when: datetime) -> float:
        """Geocentric apparent diameter of the Moon (degrees)."""
        moon = self._earth.at(self._time(when)).observe(self._eph[MOON]).apparent()
        distance_km = float(moon.distance().km)
        return 2.0 * math.degrees(math.asin(_MOON_RADIUS_KM / distance_km))

    def moon_phase_angle(self, when: datetime) -> float:
        """Moon minus Sun ecliptic longitude, 0-360 degrees."""
        return float(almanac.moon_phase(self._eph, self._time(when)).degrees)

    def illuminated_fraction(self, when: datetime) -> float:
        return float(almanac.fraction_illuminated(self._eph, MOON, self._time(when)))


@functools.lru_cache(maxsize=1)
def default_ephemeris() -> Ephemeris:
    """Process-wide Ephemeris, loaded on first use (downloads the kernel once)."""
    return Ephemeris()
