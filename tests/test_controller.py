"""Tests for GridController: event handling, epochs, snapshots."""

import threading
from datetime import date, datetime, timezone

import pytest

from hilalgrid import grid
from hilalgrid.controller import GridController
from hilalgrid.dispatch import BatchComputeDispatcher
from hilalgrid.models import QualitativeCode, VisibilityResult, Viewport

DAY = date(2024, 4, 10)
MECCA_VIEW = Viewport(south=20.0, west=38.0, north=23.0, east=42.0)


class Recorder:
    """Snapshot listener that can wait for a settled (not computing) snapshot."""

    def __init__(self):
        self.snapshots = []
        self.settled = threading.Event()

    def __call__(self, snapshot):
        self.snapshots.append(snapshot)
        if not snapshot.computing and snapshot.features:
            self.settled.set()


class Gate:
    """Evaluator blocked until released."""

    def __init__(self):
        self.release = threading.Event()
        self.started = threading.Event()

    def __call__(self, lat, lng, elevation, when, options):
        self.started.set()
        self.release.wait(10)
        return VisibilityResult(code=QualitativeCode.B)


@pytest.fixture
def gate():
    g = Gate()
    yield g
    g.release.set()


@pytest.fixture
def gated_dispatcher(cache, executor, settings, gate):
    return BatchComputeDispatcher(cache, executor=executor, evaluator=gate, settings=settings)


class TestInitialState:

    def test_no_viewport_no_dispatch(self, dispatcher):
        controller = GridController(dispatcher, day=DAY)
        assert controller.refresh() is None
        assert controller.snapshot().features == ()
        assert not controller.computing

    def test_epoch_from_arguments(self, dispatcher):
        controller = GridController(dispatcher, day=DAY, elevation=349.6, manual_resolution=2)
        assert controller.epoch.day == DAY
        assert controller.epoch.elevation == 350
        assert controller.epoch.resolution == 2

    def test_datetime_day_taken_in_utc(self, dispatcher):
        controller = GridController(
            dispatcher, day=datetime(2024, 4, 10, 23, 0, tzinfo=timezone.utc)
        )
        assert controller.epoch.day == DAY

    def test_invalid_override_rejected(self, dispatcher):
        with pytest.raises(ValueError):
            GridController(dispatcher, day=DAY, manual_resolution=16)


class TestViewport:

    def test_snapshot_covers_viewport(self, dispatcher):
        recorder = Recorder()
        controller = GridController(dispatcher, day=DAY, on_update=recorder)
        future = controller.viewport_settled(MECCA_VIEW, zoom=6)
        future.result(timeout=10)
        assert recorder.settled.wait(10)

        expected = grid.cells_in_viewport(MECCA_VIEW, 3)
        snapshot = controller.snapshot()
        assert controller.resolution == 3
        assert {f.cell_id for f in snapshot.features} == expected
        assert not snapshot.computing
        assert snapshot.to_geojson()["type"] == "FeatureCollection"

    def test_zoom_picks_resolution(self, dispatcher):
        controller = GridController(dispatcher, day=DAY)
        controller.viewport_settled(MECCA_VIEW, zoom=2).result(timeout=10)
        assert controller.resolution == 1
        controller.viewport_settled(MECCA_VIEW, zoom=5).result(timeout=10)
        assert controller.resolution == 3

    def test_pan_keeps_cells_and_adds_new(self, dispatcher):
        controller = GridController(dispatcher, day=DAY, manual_resolution=3)
        controller.viewport_settled(MECCA_VIEW, zoom=6).result(timeout=10)
        first = {r.cell_id for r in controller.working_set.values()}
        moved = Viewport(south=20.0, west=41.0, north=23.0, east=45.0)
        controller.viewport_settled(moved, zoom=6).result(timeout=10)
        current = {r.cell_id for r in controller.working_set.values()}
        assert first <= current
        assert grid.cells_in_viewport(moved, 3) <= current

    def test_revisit_is_served_from_cache(self, dispatcher):
        controller = GridController(dispatcher, day=DAY)
        controller.viewport_settled(MECCA_VIEW, zoom=6).result(timeout=10)
        outcome = controller.viewport_settled(MECCA_VIEW, zoom=6).result(timeout=10)
        assert outcome.computed == ()
        assert len(outcome.cached) == len(grid.cells_in_viewport(MECCA_VIEW, 3))


class TestEpochChanges:

    def test_date_change_clears_display(self, gated_dispatcher, gate):
        recorder = Recorder()
        controller = GridController(gated_dispatcher, day=DAY, on_update=recorder)
        gate.release.set()
        controller.viewport_settled(MECCA_VIEW, zoom=6).result(timeout=10)
        assert len(controller.working_set) > 0

        gate.release.clear()
        future = controller.set_date(date(2024, 4, 11))
        latest = recorder.snapshots[-1]
        assert latest.day == date(2024, 4, 11)
        assert latest.features == ()
        assert latest.computing
        gate.release.set()
        future.result(timeout=10)

    def test_elevation_change_supersedes_batch(self, gated_dispatcher, gate):
        controller = GridController(gated_dispatcher, day=DAY)
        stale = controller.viewport_settled(MECCA_VIEW, zoom=6)
        assert gate.started.wait(10)
        current = controller.set_elevation(100.4)
        assert controller.epoch.elevation == 100
        gate.release.set()

        assert not stale.result(timeout=10).merged
        assert current.result(timeout=10).merged
        assert {r.cell_id for r in controller.working_set.values()} == grid.cells_in_viewport(
            MECCA_VIEW, 3
        )

    def test_resolution_override(self, dispatcher):
        controller = GridController(dispatcher, day=DAY)
        controller.viewport_settled(MECCA_VIEW, zoom=6).result(timeout=10)
        controller.set_resolution(2).result(timeout=10)
        assert controller.epoch.resolution == 2
        assert {r.cell_id for r in controller.working_set.values()} == grid.cells_in_viewport(
            MECCA_VIEW, 2
        )
        controller.set_resolution(None).result(timeout=10)
        assert controller.epoch.resolution == 3

    def test_invalid_override_keeps_state(self, dispatcher):
        controller = GridController(dispatcher, day=DAY)
        with pytest.raises(ValueError):
            controller.set_resolution(-1)
        assert controller.epoch.resolution == 1


def test_moon_status_uses_current_day(dispatcher, scripted_ephemeris):
    controller = GridController(dispatcher, day=DAY, ephemeris=scripted_ephemeris)
    status = controller.moon_status()
    assert status.phase_angle == 25.0
    assert not status.waning
