from __future__ import annotations

import datetime as _dt
import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from alertreplay.errors import EvaluationError
from alertreplay.fetcher import TimestampTable, to_millis
from alertreplay.labels import ALERT_NAME_LABEL, METRIC_NAME_LABEL, Sample, format_labels
from alertreplay.promql import validate_expr

logger = logging.getLogger(__name__)

Lookup = Callable[[_dt.datetime], Sequence[Sample]]


class EventKind(enum.Enum):
    OPENED = "opened"
    RESOLVED = "resolved"


@dataclass(frozen=True)
class Event:
    time: _dt.datetime
    labels: Dict[str, str]
    kind: EventKind


class _State(enum.Enum):
    PENDING = "pending"
    FIRING = "firing"


@dataclass
class _ActiveAlert:
    labels: Dict[str, str]
    state: _State
    active_at: _dt.datetime
    fired_at: Optional[_dt.datetime] = None


def cached_lookup(table: TimestampTable) -> Lookup:
    """Serve vectors from a pre-fetched table; missing timestamps are empty."""

    def lookup(timestamp: _dt.datetime) -> Sequence[Sample]:
        return table.get(to_millis(timestamp), [])

    return lookup


class Evaluator:
    """Replays one alerting rule over a sequence of evaluation timestamps.

    Every label set in the vector returned by the lookup is an active alert.
    It goes pending when first seen and fires once it has been present at
    every tick for at least ``for_duration``. A tick without it resets the
    alert entirely, so a pending timer never survives a gap.
    """

    def __init__(
        self,
        name: str,
        expr: str,
        for_duration: _dt.timedelta,
        labels: Optional[Mapping[str, str]] = None,
    ) -> None:
        if for_duration < _dt.timedelta(0):
            raise ValueError("for duration must not be negative")
        validate_expr(expr)
        self.name = name
        self.expr = expr
        self.for_duration = for_duration
        self._rule_labels = dict(labels or {})

    def _alert_labels(self, sample_labels: Mapping[str, str]) -> Dict[str, str]:
        labels = {key: value for key, value in sample_labels.items() if key != METRIC_NAME_LABEL}
        labels.update(self._rule_labels)
        labels[ALERT_NAME_LABEL] = self.name
        return labels

    def evaluate(self, timestamps: Sequence[_dt.datetime], lookup: Lookup) -> List[Event]:
        events: List[Event] = []
        active: Dict[str, _ActiveAlert] = {}
        previous: Optional[_dt.datetime] = None

        for timestamp in timestamps:
            if previous is not None and timestamp <= previous:
                raise ValueError(
                    f"timestamps must be strictly increasing ({timestamp.isoformat()} after {previous.isoformat()})"
                )
            previous = timestamp

            try:
                vector = lookup(timestamp)
            except Exception as exc:
                raise EvaluationError(f"evaluating at {timestamp.isoformat()}: {exc}") from exc

            present: Dict[str, Dict[str, str]] = {}
            for sample in vector:
                labels = self._alert_labels(sample.labels)
                key = format_labels(labels)
                if key in present:
                    raise EvaluationError(
                        f"evaluating at {timestamp.isoformat()}: vector contains metrics with the "
                        f"same labelset after applying alert labels: {key}"
                    )
                present[key] = labels

            for key, labels in present.items():
                alert = active.get(key)
                if alert is None:
                    alert = _ActiveAlert(labels=labels, state=_State.PENDING, active_at=timestamp)
                    active[key] = alert
                if alert.state is _State.PENDING and timestamp - alert.active_at >= self.for_duration:
                    alert.state = _State.FIRING
                    alert.fired_at = timestamp
                    events.append(Event(time=timestamp, labels=dict(alert.labels), kind=EventKind.OPENED))
                    logger.debug("alert opened at %s: %s", timestamp.isoformat(), key)

            for key in [key for key in active if key not in present]:
                alert = active.pop(key)
                if alert.state is _State.FIRING:
                    events.append(Event(time=timestamp, labels=dict(alert.labels), kind=EventKind.RESOLVED))
                    logger.debug("alert resolved at %s: %s", timestamp.isoformat(), key)

        return events
