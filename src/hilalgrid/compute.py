"""Crescent visibility computation layer: Yallop/Odeh classification over skyfield ephemeris."""

import logging
import math
from datetime import date, datetime, timedelta

import numpy as np
from pytz import timezone, utc
from timezonefinder import TimezoneFinder

from hilalgrid.ephemeris import MOON, SUN, Ephemeris, default_ephemeris
from hilalgrid.models import (
    MoonStatus,
    PointInspection,
    QualitativeCode,
    VisibilityOptions,
    VisibilityResult,
)

logger = logging.getLogger(__name__)

_tf = TimezoneFinder()

_DEFAULT_OPTIONS = VisibilityOptions()
_EVENT_WINDOW_DAYS = 1.0
_NEW_MOON_WINDOW_DAYS = 35.0
_BEST_TIME_FRACTION = 4.0 / 9.0
_SD_TO_PARALLAX = 0.27245  # Moon semi-diameter / horizontal parallax

# Lower bounds, checked top to bottom. Yallop cut points are strict, Odeh's inclusive.
_YALLOP_LADDER: tuple[tuple[float, QualitativeCode], ...] = (
    (0.216, QualitativeCode.A),
    (-0.014, QualitativeCode.B),
    (-0.16, QualitativeCode.C),
    (-0.232, QualitativeCode.D),
    (-0.293, QualitativeCode.E),
)
_ODEH_LADDER: tuple[tuple[float, QualitativeCode], ...] = (
    (5.65, QualitativeCode.A),
    (2.0, QualitativeCode.C),
    (-0.96, QualitativeCode.E),
)


def _base_instant(when: date | datetime) -> datetime:
    """A date means 00:00 UTC of that day; naive datetimes are taken as UTC."""
    if isinstance(when, datetime):
        return when if when.tzinfo is not None else utc.localize(when)
    return utc.localize(datetime(when.year, when.month, when.day))


def _arcv_threshold(w_topo: float, constant: float) -> float:
    """Empirical minimum ARCV for crescent width W (arcmin)."""
    return constant - 6.3226 * w_topo + 0.7319 * w_topo**2 - 0.1018 * w_topo**3


def yallop_code(arcv: float, w_topo: float) -> tuple[float, QualitativeCode]:
    """Yallop q-test: q = (ARCV - f(W)) / 10 bucketed into A-F."""
    q = (arcv - _arcv_threshold(w_topo, 11.8371)) / 10
    for bound, code in _YALLOP_LADDER:
        if q > bound:
            return q, code
    return q, QualitativeCode.F


def odeh_code(arcv: float, w_topo: float) -> tuple[float, QualitativeCode]:
    """Odeh criterion: V = ARCV - f(W). Only A, C, E and F are reachable."""
    v = arcv - _arcv_threshold(w_topo, 7.1651)
    for bound, code in _ODEH_LADDER:
        if v >= bound:
            return v, code
    return v, QualitativeCode.F


def apply_precedence(
    geometric: QualitativeCode, moon_first: bool, before_new_moon: bool
) -> QualitativeCode:
    """J beats I beats G beats the geometric letter."""
    if moon_first and before_new_moon:
        return QualitativeCode.J
    if moon_first:
        return QualitativeCode.I
    if before_new_moon:
        return QualitativeCode.G
    return geometric


def angle_between(u: tuple[float, float, float], v: tuple[float, float, float]) -> float:
    """Angle between two direction vectors (degrees)."""
    a = np.asarray(u, dtype=float)
    b = np.asarray(v, dtype=float)
    cos_angle = np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b))
    return float(np.degrees(np.arccos(np.clip(cos_angle, -1.0, 1.0))))


def _arcv_from_arcl(arcl: float, daz: float) -> float:
    cos_daz = math.cos(math.radians(daz))
    cos_arcl = math.cos(math.radians(arcl))
    ratio = cos_arcl / cos_daz if cos_daz else math.copysign(1.0, cos_arcl)
    return math.degrees(math.acos(max(-1.0, min(1.0, ratio))))


def _nearest(
    origin: datetime, prev: datetime | None, next_: datetime | None
) -> datetime | None:
    if prev is None or next_ is None:
        return prev or next_
    return prev if origin - prev <= next_ - origin else next_


def _hours(delta: timedelta) -> float:
    return delta.total_seconds() / 3600.0


def evaluate(
    lat: float,
    lng: float,
    elevation: float,
    when: date | datetime,
    options: VisibilityOptions = _DEFAULT_OPTIONS,
    ephemeris: Ephemeris | None = None,
) -> VisibilityResult:
    """Classify young-crescent visibility for one observer on one day.

    The search starts near local midnight (the base instant shifted by the
    observer's longitude) and looks forward one day for the first sunset and
    moonset (or sunrise and moonrise for a morning search). The Moon is
    examined at the best time, 4/9 of the lag after the sun event.

    Args:
        lat: Latitude (decimal degrees).
        lng: Longitude (decimal degrees, east positive).
        elevation: Observer height above the ellipsoid (metres).
        when: Calendar day (00:00 UTC) or an exact instant.
        options: Evening/morning search and Yallop/Odeh criterion.
        ephemeris: Ephemeris capability; the process-wide one if None.

    Returns:
        VisibilityResult with code A-J and all intermediate geometry.
        Code H (no sun or moon event in the window) carries no diagnostics.
    """
    eph = ephemeris or default_ephemeris()
    direction = 1 if options.evening else -1
    kind = "set" if options.evening else "rise"

    start = _base_instant(when) - timedelta(days=lng / 360.0)
    sun_event = eph.find_event(SUN, lat, lng, elevation, kind, start, _EVENT_WINDOW_DAYS)
    moon_event = eph.find_event(MOON, lat, lng, elevation, kind, start, _EVENT_WINDOW_DAYS)
    if sun_event is None or moon_event is None:
        logger.debug("no %s event at (%.4f, %.4f) from %s", kind, lat, lng, start)
        return VisibilityResult(code=QualitativeCode.H)

    lag = (moon_event - sun_event) * direction
    moon_first = lag < timedelta(0)
    best_time = sun_event if moon_first else sun_event + lag * _BEST_TIME_FRACTION * direction

    new_moon_prev = eph.find_new_moon(sun_event, -_NEW_MOON_WINDOW_DAYS)
    new_moon_next = eph.find_new_moon(sun_event, _NEW_MOON_WINDOW_DAYS)
    new_moon = _nearest(sun_event, new_moon_prev, new_moon_next)
    before_new_moon = (
        new_moon is not None and (sun_event - new_moon) * direction < timedelta(0)
    )

    sun = eph.topocentric(SUN, lat, lng, elevation, best_time)
    moon = eph.topocentric(MOON, lat, lng, elevation, best_time)

    sd = eph.moon_diameter(best_time) * 60 / 2
    lunar_parallax = sd / _SD_TO_PARALLAX
    sd_topo = sd * (
        1
        + math.sin(math.radians(moon.altitude))
        * math.sin(math.radians(lunar_parallax / 60))
    )

    if options.yallop:
        arcl = eph.elongation(best_time)
    else:
        arcl = angle_between(sun.vector, moon.vector)
    daz = sun.azimuth - moon.azimuth

    if options.yallop:
        arcv = eph.geocentric_altitude(MOON, lat, lng, best_time) - eph.geocentric_altitude(
            SUN, lat, lng, best_time
        )
    else:
        arcv = _arcv_from_arcl(arcl, daz)

    w_topo = sd_topo * (1 - math.cos(math.radians(arcl)))
    value, geometric = (yallop_code if options.yallop else odeh_code)(arcv, w_topo)

    return VisibilityResult(
        code=apply_precedence(geometric, moon_first, before_new_moon),
        lag_minutes=lag.total_seconds() / 60.0,
        sun_event=sun_event,
        moon_event=moon_event,
        best_time=best_time,
        new_moon_prev=new_moon_prev,
        new_moon_next=new_moon_next,
        moon_age_prev_hours=_hours(best_time - new_moon_prev) if new_moon_prev else None,
        moon_age_next_hours=_hours(best_time - new_moon_next) if new_moon_next else None,
        value=value,
        arcl=arcl,
        arcv=arcv,
        daz=daz,
        w_topo=w_topo,
        sd=sd,
        sd_topo=sd_topo,
        lunar_parallax=lunar_parallax,
        moon_azimuth=moon.azimuth,
        moon_altitude=moon.altitude,
        moon_ra=moon.ra_hours,
        moon_dec=moon.dec_deg,
        sun_azimuth=sun.azimuth,
        sun_altitude=sun.altitude,
        sun_ra=sun.ra_hours,
        sun_dec=sun.dec_deg,
    )


def moon_status(when: date | datetime, ephemeris: Ephemeris | None = None) -> MoonStatus:
    """Phase angle and illuminated percentage of the Moon at the base instant."""
    eph = ephemeris or default_ephemeris()
    instant = _base_instant(when)
    fraction = eph.illuminated_fraction(instant)
    return MoonStatus(
        phase_angle=eph.moon_phase_angle(instant),
        illuminated_percent=max(0.0, min(100.0, fraction * 100)),
    )


def inspect_point(
    lat: float,
    lng: float,
    elevation: float,
    when: date | datetime,
    options: VisibilityOptions = _DEFAULT_OPTIONS,
    ephemeris: Ephemeris | None = None,
) -> PointInspection:
    """Evaluate one clicked location and express its event times in local time.

    Event times stay in UTC when no time zone is known for the location.
    """
    result = evaluate(lat, lng, elevation, when, options, ephemeris)
    tz_str = _tf.timezone_at(lat=lat, lng=lng)
    local_tz = timezone(tz_str) if tz_str is not None else utc

    def _local(dt: datetime | None) -> datetime | None:
        return dt.astimezone(local_tz) if dt is not None else None

    return PointInspection(
        lat=lat,
        lng=lng,
        elevation=elevation,
        result=result,
        timezone=tz_str,
        local_sun_event=_local(result.sun_event),
        local_moon_event=_local(result.moon_event),
        local_best_time=_local(result.best_time),
    )
