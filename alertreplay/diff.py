from __future__ import annotations

import datetime as _dt
from dataclasses import replace
from typing import Iterable, List, Sequence, Set

from alertreplay.alerts import Alert, sort_alerts, strip_labels
from alertreplay.settings import DIFF_TOLERANCE


def find_matching_alert(
    alert: Alert,
    candidates: Sequence[Alert],
    used: Set[int],
    threshold: _dt.timedelta = DIFF_TOLERANCE.match_threshold,
) -> int:
    """Index of the first unused candidate matching ``alert``, or -1."""

    for index, candidate in enumerate(candidates):
        if index in used:
            continue
        if alert.matches(candidate, threshold):
            return index
    return -1


def diff_alerts(
    source_a: str,
    source_b: str,
    alerts_a: Sequence[Alert],
    alerts_b: Sequence[Alert],
    ignore_labels: Iterable[str] = (),
    threshold: _dt.timedelta = DIFF_TOLERANCE.match_threshold,
) -> List[Alert]:
    """Alerts present on only one side, tagged with the side they came from.

    Matching is greedy: each alert of ``alerts_a``, in order, takes the first
    unused alert of ``alerts_b`` with equal labels opened within
    ``threshold``. Matched pairs are dropped.
    """

    ignored = list(ignore_labels)
    left = strip_labels(alerts_a, ignored)
    right = strip_labels(alerts_b, ignored)

    discrepancies: List[Alert] = []
    used: Set[int] = set()
    for alert in left:
        index = find_matching_alert(alert, right, used, threshold)
        if index == -1:
            discrepancies.append(replace(alert, source=source_a))
        else:
            used.add(index)
    for index, alert in enumerate(right):
        if index not in used:
            discrepancies.append(replace(alert, source=source_b))

    sort_alerts(discrepancies)
    return discrepancies
