"""Replay pipelines: fetch, evaluate and combine, once per fan-out target."""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from alertreplay.alerts import Alert, URLBuilder, add_label, combine_events, sort_alerts
from alertreplay.errors import AlertReplayError
from alertreplay.evaluator import Evaluator, cached_lookup
from alertreplay.fetcher import RangeFetcher, RangeQuerier
from alertreplay.promql import rewrite_expr
from alertreplay.rules import AlertRule
from alertreplay.settings import REPLAY_DEFAULTS, ReplayConfig

logger = logging.getLogger(__name__)


class TargetError(AlertReplayError, RuntimeError):
    def __init__(self, target: "Target", error: BaseException) -> None:
        super().__init__(f"target {target}: {error}")
        self.target = target


@dataclass(frozen=True)
class Target:
    """A slice of the data selected by one label value; empty means everything."""

    label: str = ""
    value: str = ""

    def __str__(self) -> str:
        if self.label:
            return f"{self.label}={self.value}"
        return "all"

    def scope(self, expr: str) -> str:
        if not self.label:
            return expr
        return rewrite_expr(expr, {self.label: self.value})


def discover_targets(client, config: ReplayConfig) -> List[Target]:
    if not config.by:
        return [Target()]
    values = client.label_values(config.by, config.end)
    logger.debug("running alert once per %s value: %s", config.by, ", ".join(values))
    return [Target(config.by, value) for value in values]


def replay_rule(
    client: RangeQuerier,
    rule: AlertRule,
    target: Target,
    config: ReplayConfig,
    url_builder: Optional[URLBuilder] = None,
    cancel: Optional[threading.Event] = None,
) -> List[Alert]:
    expr = target.scope(rule.expr)
    evaluator = Evaluator(rule.name, expr, rule.for_duration, rule.labels)
    fetcher = RangeFetcher(client, parallelism=config.parallelism)
    table, timestamps = fetcher.fetch(expr, config.start, config.end, config.step, cancel)
    events = evaluator.evaluate(timestamps, cached_lookup(table))
    alerts = combine_events(events, expr, url_builder)
    return add_label(alerts, target.label, target.value)


TargetJob = Callable[[Target, threading.Event], Sequence[List[Alert]]]


def fan_out(
    targets: Sequence[Target],
    job: TargetJob,
    outputs: int = 1,
    max_workers: int = REPLAY_DEFAULTS.parallelism,
) -> List[List[Alert]]:
    """Run ``job`` for every target and merge its alert lists.

    At most ``max_workers`` targets run at once. ``job`` returns ``outputs``
    lists; list ``i`` of every target is merged into result ``i``. The first
    failure cancels the other targets and is raised once all of them have
    stopped.
    """

    merged: List[List[Alert]] = [[] for _ in range(outputs)]
    merged_lock = threading.Lock()
    cancel = threading.Event()

    def run(target: Target) -> None:
        if cancel.is_set():
            return
        results = job(target, cancel)
        with merged_lock:
            for bucket, alerts in zip(merged, results):
                bucket.extend(alerts)

    failure: Optional[Tuple[Target, BaseException]] = None
    with ThreadPoolExecutor(max_workers=max(min(max_workers, len(targets)), 1)) as executor:
        futures: Dict[Future, Target] = {executor.submit(run, target): target for target in targets}
        for future in as_completed(futures):
            if future.cancelled():
                continue
            error = future.exception()
            if error is None or failure is not None:
                continue
            failure = (futures[future], error)
            cancel.set()
            for pending in futures:
                pending.cancel()

    if failure is not None:
        target, error = failure
        raise TargetError(target, error) from error
    for bucket in merged:
        sort_alerts(bucket)
    return merged


def replay(
    client,
    rule: AlertRule,
    config: ReplayConfig,
    url_builder: Optional[URLBuilder] = None,
) -> List[Alert]:
    targets = discover_targets(client, config)

    def job(target: Target, cancel: threading.Event) -> Sequence[List[Alert]]:
        return [replay_rule(client, rule, target, config, url_builder, cancel)]

    return fan_out(targets, job, max_workers=config.parallelism)[0]


def replay_pair(
    client,
    first: AlertRule,
    second: AlertRule,
    config: ReplayConfig,
    url_builder: Optional[URLBuilder] = None,
) -> Tuple[List[Alert], List[Alert]]:
    """Replay two versions of a rule over the same targets and range."""

    targets = discover_targets(client, config)

    def job(target: Target, cancel: threading.Event) -> Sequence[List[Alert]]:
        return [
            replay_rule(client, first, target, config, url_builder, cancel),
            replay_rule(client, second, target, config, url_builder, cancel),
        ]

    first_alerts, second_alerts = fan_out(targets, job, outputs=2, max_workers=config.parallelism)
    return first_alerts, second_alerts
