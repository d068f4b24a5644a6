from __future__ import annotations

import datetime as dt
import threading
import time
from typing import Dict, List, Optional, Tuple

import pytest

from alertreplay.errors import QueryError
from alertreplay.fetcher import to_millis
from alertreplay.prometheus import Series
from alertreplay.rules import AlertRule
from alertreplay.runner import Target, TargetError, discover_targets, fan_out, replay, replay_pair
from alertreplay.settings import ReplayConfig

T0 = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
MINUTE = dt.timedelta(minutes=1)


class _FakeBackend:
    """``up == 0`` holds for ``<cluster>-1`` between the given step offsets."""

    def __init__(self, active: Dict[str, Tuple[int, int]], failing_cluster: Optional[str] = None) -> None:
        self._active = active
        self._failing_cluster = failing_cluster
        self._lock = threading.Lock()
        self.exprs: List[str] = []
        self.label_calls: List[Tuple[str, dt.datetime]] = []
        self._in_flight = 0
        self.peak_in_flight = 0

    def label_values(self, label: str, at: dt.datetime) -> List[str]:
        self.label_calls.append((label, at))
        return sorted(self._active)

    def query_range(self, expr: str, start: dt.datetime, end: dt.datetime, step: dt.timedelta) -> List[Series]:
        with self._lock:
            self.exprs.append(expr)
            self._in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self._in_flight)
        try:
            time.sleep(0.005)
            return self._series(expr, start, end, step)
        finally:
            with self._lock:
                self._in_flight -= 1

    def _series(self, expr: str, start: dt.datetime, end: dt.datetime, step: dt.timedelta) -> List[Series]:
        series = []
        for cluster, (first, last) in self._active.items():
            if "cluster=" in expr and f'cluster="{cluster}"' not in expr:
                continue
            if cluster == self._failing_cluster:
                raise QueryError("backend unavailable")
            samples = []
            moment = start
            while moment <= end:
                if first <= (moment - T0) // step <= last:
                    samples.append((to_millis(moment), 0.0))
                moment += step
            series.append(Series(labels={"__name__": "up", "instance": f"{cluster}-1"}, samples=samples))
        return series


def _config(**overrides) -> ReplayConfig:
    values = dict(prometheus_url="http://prometheus:9090", start=T0, end=T0 + 10 * MINUTE, step=MINUTE, parallelism=2)
    values.update(overrides)
    return ReplayConfig(**values)


def _rule(for_duration: dt.timedelta = MINUTE) -> AlertRule:
    return AlertRule(name="InstanceDown", expr="up == 0", for_duration=for_duration, labels={"severity": "page"})


def test_target_scopes_expression() -> None:
    assert Target().scope("up == 0") == "up == 0"
    assert Target("cluster", "eu").scope("up == 0") == 'up{cluster="eu"} == 0'
    assert str(Target("cluster", "eu")) == "cluster=eu"
    assert str(Target()) == "all"


def test_discover_targets_queries_label_values_at_end() -> None:
    backend = _FakeBackend({"eu": (0, 1), "us": (0, 1)})

    assert discover_targets(backend, _config()) == [Target()]
    assert discover_targets(backend, _config(by="cluster")) == [Target("cluster", "eu"), Target("cluster", "us")]
    assert backend.label_calls == [("cluster", T0 + 10 * MINUTE)]


def test_replay_produces_sorted_alerts() -> None:
    backend = _FakeBackend({"us": (6, 20), "eu": (2, 4)})

    alerts = replay(backend, _rule(), _config())

    assert [(alert.opened_at, alert.resolved_at, alert.labels["instance"]) for alert in alerts] == [
        (T0 + 3 * MINUTE, T0 + 5 * MINUTE, "eu-1"),
        (T0 + 7 * MINUTE, None, "us-1"),
    ]
    assert alerts[0].labels == {"instance": "eu-1", "severity": "page", "alertname": "InstanceDown"}
    assert backend.exprs == ["up == 0"]


def test_replay_fans_out_per_label_value() -> None:
    backend = _FakeBackend({"eu": (2, 4), "us": (6, 20)})

    alerts = replay(backend, _rule(), _config(by="cluster"))

    assert [(alert.labels["cluster"], alert.labels["instance"]) for alert in alerts] == [("eu", "eu-1"), ("us", "us-1")]
    assert sorted(backend.exprs) == ['up{cluster="eu"} == 0', 'up{cluster="us"} == 0']


def test_failing_target_aborts_the_replay() -> None:
    backend = _FakeBackend({"eu": (2, 4), "us": (6, 20)}, failing_cluster="us")

    with pytest.raises(TargetError, match="target cluster=us: querying window 1/1"):
        replay(backend, _rule(), _config(by="cluster"))


def test_replay_pair_runs_both_rules_over_the_same_targets() -> None:
    backend = _FakeBackend({"eu": (2, 4), "us": (6, 20)})

    first, second = replay_pair(backend, _rule(dt.timedelta(0)), _rule(3 * MINUTE), _config())

    assert [(alert.opened_at, alert.labels["instance"]) for alert in first] == [
        (T0 + 2 * MINUTE, "eu-1"),
        (T0 + 6 * MINUTE, "us-1"),
    ]
    assert [(alert.opened_at, alert.labels["instance"]) for alert in second] == [(T0 + 9 * MINUTE, "us-1")]


def test_fan_out_bounds_concurrent_targets() -> None:
    lock = threading.Lock()
    running = 0
    peak = 0

    def job(target: Target, cancel: threading.Event):
        nonlocal running, peak
        with lock:
            running += 1
            peak = max(peak, running)
        time.sleep(0.02)
        with lock:
            running -= 1
        return [[]]

    targets = [Target("cluster", str(index)) for index in range(32)]

    fan_out(targets, job, max_workers=4)

    assert 1 <= peak <= 4


def test_replay_limits_targets_to_parallelism() -> None:
    backend = _FakeBackend({f"c{index}": (2, 4) for index in range(12)})

    alerts = replay(backend, _rule(), _config(by="cluster", parallelism=3))

    assert len(alerts) == 12
    assert backend.peak_in_flight <= 3
