"""Shared fixtures: a scripted ephemeris, an in-memory cache, a thread-backed dispatcher."""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import h3
import pytest

from hilalgrid.cache import ResultCache
from hilalgrid.config import Settings
from hilalgrid.dispatch import BatchComputeDispatcher
from hilalgrid.ephemeris import MOON, SUN, BodyPosition
from hilalgrid.models import QualitativeCode, VisibilityResult

SUNSET = datetime(2024, 4, 10, 18, 0, tzinfo=timezone.utc)


class ScriptedEphemeris:
    """Ephemeris stand-in returning fixed events and positions."""

    def __init__(
        self,
        sun_event=SUNSET,
        moon_event=SUNSET + timedelta(minutes=90),
        new_moon_prev=SUNSET - timedelta(days=2),
        new_moon_next=SUNSET + timedelta(days=27),
        moon_altitude=15.0,
        sun_altitude=-10.0,
        elongation=24.0,
        moon_diameter=0.52,
    ):
        self.sun_event = sun_event
        self.moon_event = moon_event
        self.new_moon_prev = new_moon_prev
        self.new_moon_next = new_moon_next
        self.moon_altitude = moon_altitude
        self.sun_altitude = sun_altitude
        self._elongation = elongation
        self._moon_diameter = moon_diameter
        self.event_calls = []

    def find_event(self, body, lat, lng, elevation, kind, start, days=1.0):
        self.event_calls.append((body, kind, start))
        return self.sun_event if body == SUN else self.moon_event

    def find_new_moon(self, start, days):
        return self.new_moon_prev if days < 0 else self.new_moon_next

    def topocentric(self, body, lat, lng, elevation, when):
        if body == MOON:
            return BodyPosition(1.5, 10.0, 280.0, self.moon_altitude, (0.0, 0.9, 0.4))
        return BodyPosition(1.0, 8.0, 285.0, self.sun_altitude, (0.0, 1.0, 0.0))

    def geocentric_altitude(self, body, lat, lng, when):
        return self.moon_altitude if body == MOON else self.sun_altitude

    def elongation(self, when):
        return self._elongation

    def moon_diameter(self, when):
        return self._moon_diameter

    def moon_phase_angle(self, when):
        return 25.0

    def illuminated_fraction(self, when):
        return 0.05


def fake_evaluate(lat, lng, elevation, when, options):
    """Cheap evaluator: code A everywhere, latitude echoed in value."""
    return VisibilityResult(code=QualitativeCode.A, value=lat, arcl=lng)


@pytest.fixture
def scripted_ephemeris():
    return ScriptedEphemeris()


@pytest.fixture
def make_ephemeris():
    return ScriptedEphemeris


@pytest.fixture
def settings():
    return Settings()


@pytest.fixture
def cache(settings):
    store = ResultCache(path=":memory:", init_timeout=5.0, settings=settings)
    store.initialize()
    yield store
    store.close()


@pytest.fixture
def executor():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=True)


@pytest.fixture
def dispatcher(cache, executor, settings):
    return BatchComputeDispatcher(
        cache, executor=executor, evaluator=fake_evaluate, settings=settings
    )


@pytest.fixture
def mecca_cells():
    """Ten distinct resolution-3 cells around Mecca."""
    center = h3.latlng_to_cell(21.4225, 39.8262, 3)
    return sorted(h3.grid_disk(center, 2))[:10]
