"""Top-level driver: turns viewport/date/elevation/resolution events into grid snapshots."""

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from datetime import date, datetime

from pytz import utc

from hilalgrid import grid
from hilalgrid.compute import moon_status
from hilalgrid.dispatch import BatchComputeDispatcher, BatchOutcome, WorkingSet
from hilalgrid.ephemeris import Ephemeris
from hilalgrid.models import Epoch, GridSnapshot, MoonStatus, Viewport, utc_day

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[GridSnapshot], None]


class GridController:
    """Owns the working set and the latest view parameters.

    Every event stores its parameter (last write wins) and re-derives the
    full cell set for the current viewport. Cached cells are emitted at once;
    computed cells are emitted when their batch completes, unless a later
    event has moved the epoch on. Listeners may be called from a worker
    callback thread.
    """

    def __init__(
        self,
        dispatcher: BatchComputeDispatcher,
        day: date | datetime | None = None,
        elevation: float = 0,
        manual_resolution: int | None = None,
        on_update: SnapshotListener | None = None,
        ephemeris: Ephemeris | None = None,
    ) -> None:
        if manual_resolution is not None:
            grid.select_resolution(0, manual_resolution)
        self._dispatcher = dispatcher
        self._on_update = on_update
        self._ephemeris = ephemeris
        self._lock = threading.RLock()
        self._viewport: Viewport | None = None
        self._zoom = 0.0
        self._day = utc_day(day) if day is not None else datetime.now(utc).date()
        self._elevation = int(round(elevation))
        self._manual_resolution = manual_resolution
        self._resolution = grid.select_resolution(self._zoom, manual_resolution)
        self.working_set = WorkingSet(self.epoch)

    @property
    def epoch(self) -> Epoch:
        with self._lock:
            return Epoch(day=self._day, elevation=self._elevation, resolution=self._resolution)

    @property
    def resolution(self) -> int:
        return self._resolution

    @property
    def computing(self) -> bool:
        return self._dispatcher.is_computing(self.epoch)

    def viewport_settled(self, viewport: Viewport, zoom: float) -> "Future[BatchOutcome] | None":
        with self._lock:
            self._viewport = viewport
            self._zoom = zoom
        return self.refresh()

    def set_date(self, day: date | datetime) -> "Future[BatchOutcome] | None":
        with self._lock:
            self._day = utc_day(day)
        return self.refresh()

    def set_elevation(self, elevation: float) -> "Future[BatchOutcome] | None":
        with self._lock:
            self._elevation = int(round(elevation))
        return self.refresh()

    def set_resolution(self, resolution: int | None) -> "Future[BatchOutcome] | None":
        """Set (or clear, with None) the manual resolution override.

        Raises:
            ValueError: When the override is outside 0-15.
        """
        if resolution is not None:
            grid.select_resolution(0, resolution)
        with self._lock:
            self._manual_resolution = resolution
        return self.refresh()

    def refresh(self) -> "Future[BatchOutcome] | None":
        """Re-derive the cell set for the latest parameters and dispatch it.

        Returns:
            The dispatch future, or None before the first viewport is known.
        """
        with self._lock:
            self._resolution = grid.select_resolution(self._zoom, self._manual_resolution)
            epoch = Epoch(day=self._day, elevation=self._elevation, resolution=self._resolution)
            if epoch != self.working_set.epoch:
                logger.debug("epoch %s -> %s; clearing displayed cells", self.working_set.epoch, epoch)
                self.working_set.reset(epoch)
            if self._viewport is None:
                return None
            cells = grid.cells_in_viewport(self._viewport, epoch.resolution)
            future = self._dispatcher.dispatch(
                cells, epoch.day, epoch.elevation, self.working_set
            )
        self._emit()
        future.add_done_callback(self._on_batch_done)
        return future

    def _on_batch_done(self, future: "Future[BatchOutcome]") -> None:
        if future.exception() is not None:
            return
        outcome = future.result()
        if (outcome.computed or outcome.failed) and outcome.epoch == self.epoch:
            self._emit()

    def snapshot(self) -> GridSnapshot:
        epoch = self.epoch
        return GridSnapshot(
            features=grid.features(self.working_set.values()),
            computing=self._dispatcher.is_computing(epoch),
            resolution=epoch.resolution,
            day=epoch.day,
            elevation=epoch.elevation,
        )

    def _emit(self) -> None:
        if self._on_update is not None:
            self._on_update(self.snapshot())

    def moon_status(self) -> MoonStatus:
        """Phase of the Moon on the current date; waning means no crescent to seek."""
        status = moon_status(self.epoch.day, self._ephemeris)
        if status.waning:
            logger.info("waning phase on %s; sighting concerns the waxing crescent", self.epoch.day)
        return status
