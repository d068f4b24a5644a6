from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, replace
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

from alertreplay.evaluator import Event, EventKind
from alertreplay.labels import format_labels
from alertreplay.settings import DIFF_TOLERANCE


class URLBuilder(Protocol):
    def build_url(self, expr: str, start: _dt.datetime, end: Optional[_dt.datetime]) -> str:
        ...


@dataclass
class Alert:
    """One firing episode of one alert instance."""

    opened_at: _dt.datetime
    labels: Dict[str, str]
    resolved_at: Optional[_dt.datetime] = None
    url: str = ""
    source: str = ""

    @property
    def duration(self) -> Optional[_dt.timedelta]:
        if self.resolved_at is None:
            return None
        return self.resolved_at - self.opened_at

    def matches(self, other: "Alert", threshold: _dt.timedelta = DIFF_TOLERANCE.match_threshold) -> bool:
        if self.labels != other.labels:
            return False
        return abs(self.opened_at - other.opened_at) <= threshold


def sort_alerts(alerts: List[Alert]) -> None:
    """Sort in place by open time; ties keep their current order."""

    alerts.sort(key=lambda alert: alert.opened_at)


def combine_events(
    events: Iterable[Event],
    expr: str,
    url_builder: Optional[URLBuilder] = None,
) -> List[Alert]:
    """Fold an event stream into intervals, one per label set per firing episode.

    Intervals still open after the last event are returned without a
    ``resolved_at``. A resolve for a label set that is not open is ignored.
    """

    open_alerts: Dict[str, Tuple[int, Alert]] = {}
    finished: List[Tuple[int, Alert]] = []
    sequence = 0
    for event in events:
        key = format_labels(event.labels)
        if event.kind is EventKind.OPENED:
            open_alerts[key] = (sequence, Alert(opened_at=event.time, labels=dict(event.labels)))
            sequence += 1
        elif event.kind is EventKind.RESOLVED:
            entry = open_alerts.pop(key, None)
            if entry is None:
                continue
            entry[1].resolved_at = event.time
            finished.append(entry)
    finished.extend(open_alerts.values())

    finished.sort(key=lambda entry: (entry[1].opened_at, entry[0]))
    result = [alert for _, alert in finished]
    if url_builder is not None:
        for alert in result:
            alert.url = url_builder.build_url(expr, alert.opened_at, alert.resolved_at)
    return result


def add_label(alerts: List[Alert], name: str, value: str) -> List[Alert]:
    """Set ``name=value`` on every alert that does not carry ``name`` already."""

    if not name:
        return alerts
    for alert in alerts:
        alert.labels.setdefault(name, value)
    return alerts


def strip_labels(alerts: Sequence[Alert], names: Iterable[str]) -> List[Alert]:
    """Copies of ``alerts`` without the label keys in ``names``."""

    ignored = set(names)
    return [
        replace(alert, labels={key: value for key, value in alert.labels.items() if key not in ignored})
        for alert in alerts
    ]

