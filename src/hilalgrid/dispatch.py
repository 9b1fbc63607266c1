"""Batch computation of cache misses on a worker pool.

A batch is split into one chunk per worker; each chunk job evaluates its
cells and returns every result at once. Results are always
persisted, but only merged into the working set when the set is still on
the epoch the batch was dispatched for.
"""

import dataclasses
import functools
import logging
import os
import threading
from collections import Counter
from collections.abc import Callable, Iterable, Sequence
from concurrent.futures import Executor, Future, ProcessPoolExecutor
from dataclasses import dataclass
from datetime import date, datetime

from hilalgrid import grid
from hilalgrid.cache import ResultCache
from hilalgrid.compute import evaluate
from hilalgrid.config import Settings, load_settings
from hilalgrid.ephemeris import default_ephemeris
from hilalgrid.models import CacheKey, Epoch, VisibilityOptions, VisibilityResult, utc_day

logger = logging.getLogger(__name__)

Evaluator = Callable[..., VisibilityResult]


@dataclass(frozen=True)
class CellPoint:
    """A cell's centroid, the payload a worker evaluates."""

    cell_id: str
    lat: float
    lng: float


@dataclass(frozen=True)
class BatchResult:
    """Worker output: tagged results plus the cells that could not be evaluated."""

    results: tuple[VisibilityResult, ...]
    failed: tuple[str, ...]


@dataclass(frozen=True)
class BatchOutcome:
    """What a dispatch produced, once persisted and (maybe) merged."""

    epoch: Epoch
    cached: tuple[str, ...]  # Served from the cache
    computed: tuple[VisibilityResult, ...]  # Freshly evaluated
    failed: tuple[str, ...]  # Reported missing
    merged: bool  # False when the epoch moved on before completion
    deferred: tuple[str, ...] = ()  # Left to a batch already computing them


def evaluate_batch(
    points: Sequence[CellPoint],
    when: date | datetime,
    elevation: float,
    options: VisibilityOptions,
    evaluator: Evaluator = evaluate,
) -> BatchResult:
    """Evaluate every point; a failing cell is reported, never fatal to the batch."""
    results: list[VisibilityResult] = []
    failed: list[str] = []
    for point in points:
        try:
            result = evaluator(point.lat, point.lng, elevation, when, options)
        except Exception:
            logger.warning("evaluation failed for cell %s", point.cell_id, exc_info=True)
            failed.append(point.cell_id)
            continue
        results.append(dataclasses.replace(result, cell_id=point.cell_id))
    return BatchResult(results=tuple(results), failed=tuple(failed))


class WorkingSet:
    """Cells currently intended for display, for exactly one epoch."""

    def __init__(self, epoch: Epoch) -> None:
        self._lock = threading.Lock()
        self._epoch = epoch
        self._results: dict[str, VisibilityResult] = {}

    @property
    def epoch(self) -> Epoch:
        return self._epoch

    def reset(self, epoch: Epoch) -> None:
        with self._lock:
            self._epoch = epoch
            self._results.clear()

    def merge(self, results: Iterable[VisibilityResult], epoch: Epoch) -> bool:
        """Add results dispatched under epoch. Returns False (and adds nothing) for a stale epoch."""
        with self._lock:
            if epoch != self._epoch:
                return False
            for result in results:
                if result.cell_id is not None:
                    self._results[result.cell_id] = result
            return True

    def values(self) -> tuple[VisibilityResult, ...]:
        with self._lock:
            return tuple(self._results.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._results)

    def __contains__(self, cell_id: object) -> bool:
        with self._lock:
            return cell_id in self._results


class _JobGroup:
    """Chunk jobs of one dispatch; calls back once, after the last one completes."""

    def __init__(
        self,
        chunks: Sequence[tuple[CellPoint, ...]],
        jobs: Sequence["Future[BatchResult]"],
        on_done: Callable[["_JobGroup"], None],
    ) -> None:
        self.chunks = tuple(chunks)
        self.jobs = tuple(jobs)
        self._on_done = on_done
        self._remaining = len(self.jobs)
        self._lock = threading.Lock()
        for job in self.jobs:
            job.add_done_callback(self._job_done)

    def _job_done(self, job: "Future[BatchResult]") -> None:
        with self._lock:
            self._remaining -= 1
            last = self._remaining == 0
        if last:
            self._on_done(self)

    def collect(self) -> BatchResult:
        """Results of every chunk; a crashed chunk reports all its cells failed."""
        results: list[VisibilityResult] = []
        failed: list[str] = []
        for chunk, job in zip(self.chunks, self.jobs):
            try:
                batch = job.result()
            except Exception:
                logger.exception("batch chunk of %d cells crashed", len(chunk))
                failed.extend(p.cell_id for p in chunk)
                continue
            results.extend(batch.results)
            failed.extend(batch.failed)
        return BatchResult(results=tuple(results), failed=tuple(failed))


def _split(points: Sequence[CellPoint], parts: int) -> list[tuple[CellPoint, ...]]:
    """Up to `parts` contiguous chunks of near-equal size."""
    parts = max(1, min(parts, len(points)))
    size, extra = divmod(len(points), parts)
    chunks = []
    start = 0
    for i in range(parts):
        end = start + size + (1 if i < extra else 0)
        chunks.append(tuple(points[start:end]))
        start = end
    return chunks


Waiter = tuple[WorkingSet, Epoch]


class BatchComputeDispatcher:
    """Splits cells into cache hits and misses and computes the misses off-thread.

    The misses of one dispatch are split into one chunk per worker. A cell
    already being computed for the same (day, elevation) is not submitted
    again; its result is merged into every working set that asked for it.
    """

    def __init__(
        self,
        cache: ResultCache,
        executor: Executor | None = None,
        evaluator: Evaluator = evaluate,
        options: VisibilityOptions = VisibilityOptions(),
        max_workers: int | None = None,
        settings: Settings | None = None,
    ) -> None:
        settings = settings or load_settings()
        self._cache = cache
        self.evaluator = evaluator
        self.options = options
        self.workers = max_workers or settings.max_workers or os.cpu_count() or 1
        self._owns_executor = executor is None
        if executor is None:
            if evaluator is evaluate:
                default_ephemeris()  # kernel on disk before workers open it
            executor = ProcessPoolExecutor(max_workers=self.workers)
        self._executor = executor
        self._pending: Counter[Epoch] = Counter()
        self._inflight: dict[CacheKey, list[Waiter]] = {}
        self._pending_lock = threading.Lock()

    def __enter__(self) -> "BatchComputeDispatcher":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def is_computing(self, epoch: Epoch | None = None) -> bool:
        """True while a batch is outstanding (for epoch, or for any epoch)."""
        with self._pending_lock:
            if epoch is None:
                return any(self._pending.values())
            return self._pending[epoch] > 0

    def _begin(self, epoch: Epoch) -> None:
        with self._pending_lock:
            self._pending[epoch] += 1

    def _end(self, epoch: Epoch) -> None:
        with self._pending_lock:
            self._pending[epoch] -= 1
            if self._pending[epoch] <= 0:
                del self._pending[epoch]

    def _claim(
        self, cell_ids: Sequence[str], day: date, elevation: int, waiter: Waiter
    ) -> tuple[list[str], list[str]]:
        """Register waiter on each cell; returns (cells to compute, cells already in flight)."""
        owned: list[str] = []
        deferred: list[str] = []
        with self._pending_lock:
            for cell_id in cell_ids:
                key = CacheKey(cell_id=cell_id, day=day, elevation=elevation)
                waiters = self._inflight.get(key)
                if waiters is None:
                    self._inflight[key] = [waiter]
                    owned.append(cell_id)
                else:
                    if waiter not in waiters:
                        waiters.append(waiter)
                    deferred.append(cell_id)
        return owned, deferred

    def _release(
        self, cell_ids: Iterable[str], day: date, elevation: int
    ) -> dict[Waiter, set[str]]:
        """Drop the in-flight entries of cell_ids; returns who was waiting for which cells."""
        by_waiter: dict[Waiter, set[str]] = {}
        with self._pending_lock:
            for cell_id in cell_ids:
                key = CacheKey(cell_id=cell_id, day=day, elevation=elevation)
                for waiter in self._inflight.pop(key, ()):
                    by_waiter.setdefault(waiter, set()).add(cell_id)
        return by_waiter

    def resolve_missing(
        self, cell_ids: Iterable[str], when: date | datetime, elevation: float
    ) -> tuple[dict[str, VisibilityResult], list[str]]:
        """Split cell ids into cached results and ids that must be computed."""
        ids = list(dict.fromkeys(cell_ids))
        cached = self._cache.lookup_many(ids, when, elevation)
        missing = [cell_id for cell_id in ids if cell_id not in cached]
        return cached, missing

    def dispatch(
        self,
        cell_ids: Iterable[str],
        when: date | datetime,
        elevation: float,
        working_set: WorkingSet,
    ) -> "Future[BatchOutcome]":
        """Merge hits now, compute misses on the pool, persist and merge them later.

        Returns:
            A future resolved after the computed results are persisted and
            merged (or dropped as stale). Already resolved when nothing was
            left to compute. Cells another dispatch is computing are listed
            as deferred and merged when that dispatch completes.
        """
        epoch = working_set.epoch
        day = utc_day(when)
        elevation = int(round(elevation))
        cached, missing = self.resolve_missing(cell_ids, day, elevation)
        working_set.merge(cached.values(), epoch)

        valid: list[str] = []
        invalid: list[str] = []
        for cell_id in missing:
            if grid.is_valid_cell(cell_id):
                valid.append(cell_id)
            else:
                logger.warning("skipping malformed cell id %r", cell_id)
                invalid.append(cell_id)
        owned, deferred = self._claim(valid, day, elevation, (working_set, epoch))
        points = [CellPoint(c, *grid.centroid(c)) for c in owned]

        done: Future[BatchOutcome] = Future()
        if not points:
            done.set_result(
                BatchOutcome(
                    epoch=epoch,
                    cached=tuple(cached),
                    computed=(),
                    failed=tuple(invalid),
                    merged=True,
                    deferred=tuple(deferred),
                )
            )
            return done

        chunks = _split(points, self.workers)
        logger.debug(
            "dispatching %d cells in %d chunks for %s (%d cached, %d in flight)",
            len(points),
            len(chunks),
            epoch,
            len(cached),
            len(deferred),
        )
        self._begin(epoch)
        jobs: list[Future[BatchResult]] = []
        for chunk in chunks:
            try:
                job = self._executor.submit(
                    evaluate_batch, chunk, day, elevation, self.options, self.evaluator
                )
            except RuntimeError as exc:
                if not jobs:
                    self._release(owned, day, elevation)
                    self._end(epoch)
                    raise
                job = Future()
                job.set_exception(exc)
            jobs.append(job)
        _JobGroup(
            chunks,
            jobs,
            functools.partial(
                self._finish,
                done=done,
                cached=tuple(cached),
                invalid=tuple(invalid),
                deferred=tuple(deferred),
                day=day,
                elevation=elevation,
                working_set=working_set,
                epoch=epoch,
            ),
        )
        return done

    def _finish(
        self,
        group: _JobGroup,
        *,
        done: "Future[BatchOutcome]",
        cached: tuple[str, ...],
        invalid: tuple[str, ...],
        deferred: tuple[str, ...],
        day: date,
        elevation: int,
        working_set: WorkingSet,
        epoch: Epoch,
    ) -> None:
        try:
            outcome = self._settle(
                group, cached, invalid, deferred, day, elevation, working_set, epoch
            )
        except Exception as exc:
            logger.exception("failed to settle batch for %s", epoch)
            done.set_exception(exc)
        else:
            done.set_result(outcome)

    def _settle(
        self,
        group: _JobGroup,
        cached: tuple[str, ...],
        invalid: tuple[str, ...],
        deferred: tuple[str, ...],
        day: date,
        elevation: int,
        working_set: WorkingSet,
        epoch: Epoch,
    ) -> BatchOutcome:
        owned = [p.cell_id for chunk in group.chunks for p in chunk]
        merged = False
        try:
            batch = group.collect()
            self._cache.insert_many(batch.results, day, elevation)
            for (ws, ws_epoch), cells in self._release(owned, day, elevation).items():
                accepted = ws.merge(
                    [r for r in batch.results if r.cell_id in cells], ws_epoch
                )
                if ws is working_set and ws_epoch == epoch:
                    merged = accepted
            if not merged:
                logger.info(
                    "epoch %s superseded; %d results cached but not displayed",
                    epoch,
                    len(batch.results),
                )
        finally:
            self._release(owned, day, elevation)
            self._end(epoch)
        return BatchOutcome(
            epoch=epoch,
            cached=cached,
            computed=batch.results,
            failed=invalid + batch.failed,
            merged=merged,
            deferred=deferred,
        )
