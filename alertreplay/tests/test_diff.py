from __future__ import annotations

import datetime as dt

from alertreplay.alerts import Alert
from alertreplay.diff import diff_alerts, find_matching_alert

T0 = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
MINUTE = dt.timedelta(minutes=1)


def _alert(offset: dt.timedelta, **labels: str) -> Alert:
    return Alert(opened_at=T0 + offset, labels={"alertname": "HighLatency", **labels})


def test_identical_lists_produce_empty_diff() -> None:
    alerts = [_alert(0 * MINUTE, service="api"), _alert(10 * MINUTE, service="db")]

    assert diff_alerts("old.yaml", "new.yaml", alerts, list(alerts)) == []


def test_alert_only_in_one_list_is_tagged_with_its_source() -> None:
    shared = _alert(0 * MINUTE, service="api")

    only_old = diff_alerts("old.yaml", "new.yaml", [shared, _alert(5 * MINUTE, service="db")], [shared])
    only_new = diff_alerts("old.yaml", "new.yaml", [shared], [shared, _alert(5 * MINUTE, service="db")])

    assert [(alert.source, alert.labels["service"]) for alert in only_old] == [("old.yaml", "db")]
    assert [(alert.source, alert.labels["service"]) for alert in only_new] == [("new.yaml", "db")]


def test_match_threshold_is_inclusive() -> None:
    first = [_alert(0 * MINUTE, service="api")]

    assert diff_alerts("a", "b", first, [_alert(2 * MINUTE, service="api")]) == []
    result = diff_alerts("a", "b", first, [_alert(2 * MINUTE + dt.timedelta(seconds=1), service="api")])
    assert [alert.source for alert in result] == ["a", "b"]


def test_matching_is_greedy_first_fit() -> None:
    # An optimal assignment would pair both; first-fit leaves one on each side.
    left = [_alert(1 * MINUTE, service="api"), _alert(3 * MINUTE, service="api")]
    right = [_alert(2 * MINUTE, service="api"), _alert(-1 * MINUTE, service="api")]

    result = diff_alerts("a", "b", left, right)

    assert [(alert.source, alert.opened_at) for alert in result] == [
        ("b", T0 - MINUTE),
        ("a", T0 + 3 * MINUTE),
    ]


def test_ignored_labels_do_not_prevent_matches() -> None:
    left = [_alert(0 * MINUTE, service="api", pod="api-1")]
    right = [_alert(1 * MINUTE, service="api", pod="api-2")]

    assert len(diff_alerts("a", "b", left, right)) == 2
    assert diff_alerts("a", "b", left, right, ignore_labels=["pod"]) == []


def test_diff_output_is_sorted_by_open_time() -> None:
    left = [_alert(10 * MINUTE, service="api")]
    right = [_alert(0 * MINUTE, service="db")]

    result = diff_alerts("a", "b", left, right)

    assert [alert.source for alert in result] == ["b", "a"]


def test_find_matching_alert_skips_used_candidates() -> None:
    alert = _alert(0 * MINUTE, service="api")
    candidates = [_alert(0 * MINUTE, service="api"), _alert(1 * MINUTE, service="api")]

    assert find_matching_alert(alert, candidates, set()) == 0
    assert find_matching_alert(alert, candidates, {0}) == 1
    assert find_matching_alert(alert, candidates, {0, 1}) == -1
