"""Windowed, concurrent range fetching.

A replay range can hold far more points than a backend accepts in one range
query, so the aligned range is cut into windows of at most
``max_points_per_query`` points that are queried in parallel and merged into a
single table keyed by timestamp.
"""
from __future__ import annotations

import datetime as _dt
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence, Tuple

from alertreplay.errors import QueryError
from alertreplay.labels import Sample
from alertreplay.prometheus import Series
from alertreplay.settings import QUERY_LIMITS, REPLAY_DEFAULTS

logger = logging.getLogger(__name__)

_EPOCH = _dt.datetime(1970, 1, 1, tzinfo=_dt.timezone.utc)
_MILLISECOND = _dt.timedelta(milliseconds=1)

TimestampTable = Dict[int, List[Sample]]


class RangeQuerier(Protocol):
    def query_range(
        self, expr: str, start: _dt.datetime, end: _dt.datetime, step: _dt.timedelta
    ) -> Sequence[Series]:
        ...


@dataclass(frozen=True)
class TimeWindow:
    start: _dt.datetime
    end: _dt.datetime


def to_millis(moment: _dt.datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=_dt.timezone.utc)
    return (moment - _EPOCH) // _MILLISECOND


def from_millis(millis: int) -> _dt.datetime:
    return _EPOCH + _dt.timedelta(milliseconds=millis)


def _step_millis(step: _dt.timedelta) -> int:
    millis = step // _MILLISECOND
    if millis < 1:
        raise ValueError("step must be at least 1ms")
    return millis


def align_to_step(moment: _dt.datetime, step: _dt.timedelta) -> _dt.datetime:
    """Floor ``moment`` to a multiple of ``step`` since the epoch."""

    step_ms = _step_millis(step)
    return from_millis((to_millis(moment) // step_ms) * step_ms)


def generate_timestamps(start: _dt.datetime, end: _dt.datetime, step: _dt.timedelta) -> List[_dt.datetime]:
    timestamps: List[_dt.datetime] = []
    current = start
    while current <= end:
        timestamps.append(current)
        current += step
    return timestamps


def split_time_range(
    start: _dt.datetime,
    end: _dt.datetime,
    step: _dt.timedelta,
    max_points: int = QUERY_LIMITS.max_points_per_query,
) -> List[TimeWindow]:
    """Cut ``[start, end]`` into contiguous windows of at most ``max_points`` steps.

    Windows do not share timestamps; the last one is clamped to ``end``.
    """

    span = step * max(max_points - 1, 0)
    windows: List[TimeWindow] = []
    window_start = start
    while window_start < end:
        window_end = min(window_start + span, end)
        windows.append(TimeWindow(window_start, window_end))
        window_start = window_end + step
    if not windows:
        windows.append(TimeWindow(start, end))
    return windows


class RangeFetcher:
    def __init__(
        self,
        client: RangeQuerier,
        parallelism: int = REPLAY_DEFAULTS.parallelism,
        max_points: int = QUERY_LIMITS.max_points_per_query,
    ) -> None:
        if parallelism < 1:
            raise ValueError("parallelism must be at least 1")
        if max_points < 1:
            raise ValueError("max_points must be at least 1")
        self._client = client
        self._parallelism = parallelism
        self._max_points = max_points

    def fetch(
        self,
        expr: str,
        start: _dt.datetime,
        end: _dt.datetime,
        step: _dt.timedelta,
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[TimestampTable, List[_dt.datetime]]:
        """Run ``expr`` over ``[start, end]`` and index the samples by timestamp.

        Every aligned timestamp gets an entry, empty when nothing was returned
        for it. The first failing window cancels the windows that have not
        started yet; the call returns only after running windows finished.
        """

        start = align_to_step(start, step)
        end = align_to_step(end, step)
        step_ms = _step_millis(step)
        timestamps = generate_timestamps(start, end, step)
        table: TimestampTable = {to_millis(ts): [] for ts in timestamps}
        table_lock = threading.Lock()
        stopped = threading.Event()

        def cancelled() -> bool:
            return stopped.is_set() or (cancel is not None and cancel.is_set())

        windows = split_time_range(start, end, step, self._max_points)
        logger.debug("split time range into %d windows", len(windows))

        def run_window(number: int, window: TimeWindow) -> None:
            if cancelled():
                return
            logger.debug(
                "executing query %r window %d/%d from %s to %s",
                expr,
                number,
                len(windows),
                window.start.isoformat(),
                window.end.isoformat(),
            )
            series = self._client.query_range(expr, window.start, window.end, step)
            if cancelled():
                return
            first_ms = to_millis(window.start)
            last_ms = to_millis(window.end)
            accepted: List[Sample] = []
            for entry in series:
                labels = dict(entry.labels)
                for timestamp_ms, value in entry.samples:
                    # Backends may hand back boundary points outside the window.
                    if timestamp_ms < first_ms or timestamp_ms > last_ms:
                        continue
                    if (timestamp_ms - first_ms) % step_ms:
                        continue
                    accepted.append(Sample(labels=labels, value=value, timestamp_ms=timestamp_ms))
            with table_lock:
                for sample in accepted:
                    table[sample.timestamp_ms].append(sample)

        failure: Optional[Tuple[int, TimeWindow, BaseException]] = None
        with ThreadPoolExecutor(max_workers=min(self._parallelism, len(windows))) as executor:
            futures: Dict[Future, Tuple[int, TimeWindow]] = {
                executor.submit(run_window, number, window): (number, window)
                for number, window in enumerate(windows, start=1)
            }
            try:
                for future in as_completed(futures):
                    if future.cancelled():
                        continue
                    error = future.exception()
                    if error is None or failure is not None:
                        continue
                    number, window = futures[future]
                    failure = (number, window, error)
                    stopped.set()
                    for pending in futures:
                        pending.cancel()
            except BaseException:
                stopped.set()
                for pending in futures:
                    pending.cancel()
                raise

        if failure is not None:
            number, window, error = failure
            raise QueryError(
                f"querying window {number}/{len(windows)} "
                f"({window.start.isoformat()} - {window.end.isoformat()}): {error}"
            ) from error
        if cancel is not None and cancel.is_set():
            raise QueryError("fetch cancelled")
        return table, timestamps
