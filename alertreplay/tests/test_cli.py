from __future__ import annotations

import datetime as dt
import threading
from pathlib import Path
from typing import Dict, List

import pytest
import yaml

from alertreplay import cli
from alertreplay.fetcher import to_millis
from alertreplay.prometheus import Series

T0 = dt.datetime(2024, 1, 1, tzinfo=dt.timezone.utc)
MINUTE = dt.timedelta(minutes=1)
RANGE_ARGS = ["--from", "2024-01-01 00:00:00", "--to", "2024-01-01 00:10:00", "--interval", "1m"]


class _FakeClient:
    """``up == 0`` holds for instance ``a`` at minutes 2-4 and instance ``b`` from minute 6 onward."""

    instances: List["_FakeClient"] = []

    def __init__(self, base_url: str, **options) -> None:
        self.base_url = base_url
        self.options = options
        self._lock = threading.Lock()
        self.exprs: List[str] = []
        _FakeClient.instances.append(self)

    def label_values(self, label: str, at: dt.datetime) -> List[str]:
        return ["eu"]

    def query_range(self, expr: str, start: dt.datetime, end: dt.datetime, step: dt.timedelta) -> List[Series]:
        with self._lock:
            self.exprs.append(expr)
        windows = {"a": (2, 4), "b": (6, 99)}
        series = []
        for instance, (first, last) in windows.items():
            samples = []
            moment = start
            while moment <= end:
                if first <= (moment - T0) // MINUTE <= last:
                    samples.append((to_millis(moment), 0.0))
                moment += step
            series.append(Series(labels={"instance": instance}, samples=samples))
        return series


@pytest.fixture(autouse=True)
def fake_client(monkeypatch: pytest.MonkeyPatch):
    _FakeClient.instances = []
    monkeypatch.setattr(cli, "PrometheusClient", _FakeClient)
    monkeypatch.delenv("PROMETHEUS_URL", raising=False)
    monkeypatch.delenv("PROMETHEUS_BEARER_TOKEN", raising=False)
    return _FakeClient


def _rules_file(path: Path, for_duration: str) -> Path:
    document: Dict[str, object] = {
        "groups": [{"name": "availability", "rules": [{"alert": "InstanceDown", "expr": "up == 0", "for": for_duration}]}]
    }
    path.write_text(yaml.safe_dump(document), encoding="utf-8")
    return path


def test_replay_prints_markdown_table(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rules = _rules_file(tmp_path / "rules.yaml", "1m")

    exit_code = cli.main(["replay", str(rules), "InstanceDown", "--prometheus-url", "http://prom:9090", *RANGE_ARGS])

    assert exit_code == 0
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "| Opened | Resolved | Duration | Labels |"
    assert lines[2] == '| 2024-01-01 00:03 UTC | 2024-01-01 00:05 UTC | 2m0s | {instance="a"} |'
    assert lines[3] == '| 2024-01-01 00:07 UTC | UNRESOLVED | -- | {instance="b"} |'


def test_replay_passes_connection_options_to_client(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    rules = _rules_file(tmp_path / "rules.yaml", "1m")
    monkeypatch.setenv("PROMETHEUS_URL", "http://from-env:9090")
    monkeypatch.setenv("PROMETHEUS_BEARER_TOKEN", "secret")

    exit_code = cli.main(
        ["replay", str(rules), "InstanceDown", "--filters", "namespace=prod", "--by", "cluster", *RANGE_ARGS]
    )

    assert exit_code == 0
    client = _FakeClient.instances[0]
    assert client.base_url == "http://from-env:9090"
    assert client.options["token"] == "secret"
    assert client.options["extra_filters"] == {"namespace": "prod"}
    assert client.exprs == ['up{cluster="eu"} == 0']


def test_replay_attaches_dashboard_links(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rules = _rules_file(tmp_path / "rules.yaml", "1m")

    exit_code = cli.main(
        [
            "replay",
            str(rules),
            "InstanceDown",
            "--prometheus-url",
            "http://prom:9090",
            "--dashboard-type",
            "prometheus",
            "--dashboard-url",
            "http://prom:9090/graph",
            *RANGE_ARGS,
        ]
    )

    assert exit_code == 0
    output = capsys.readouterr().out
    assert output.count("http://prom:9090/graph?") == 2


def test_diff_prints_only_discrepancies(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    old = _rules_file(tmp_path / "old.yaml", "0")
    new = _rules_file(tmp_path / "new.yaml", "3m")

    exit_code = cli.main(
        ["diff", str(old), str(new), "InstanceDown", "--prometheus-url", "http://prom:9090", *RANGE_ARGS]
    )

    assert exit_code == 0
    rows = capsys.readouterr().out.splitlines()[2:]
    assert [row.split(" | ")[0:2] for row in rows] == [
        ["| old.yaml", "2024-01-01 00:02 UTC"],
        ["| old.yaml", "2024-01-01 00:06 UTC"],
        ["| new.yaml", "2024-01-01 00:09 UTC"],
    ]


def test_diff_ignores_nothing_when_rules_match(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    old = _rules_file(tmp_path / "old.yaml", "1m")
    new = _rules_file(tmp_path / "new.yaml", "1m")

    exit_code = cli.main(
        [
            "diff",
            str(old),
            str(new),
            "InstanceDown",
            "--prometheus-url",
            "http://prom:9090",
            "--ignore-labels",
            "instance,pod",
            *RANGE_ARGS,
        ]
    )

    assert exit_code == 0
    assert capsys.readouterr().out == ""


def test_missing_prometheus_url_is_reported(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    rules = _rules_file(tmp_path / "rules.yaml", "1m")

    exit_code = cli.main(["replay", str(rules), "InstanceDown", *RANGE_ARGS])

    assert exit_code == 1
    assert capsys.readouterr().err.strip() == "error: --prometheus-url is required (or set PROMETHEUS_URL)"
    assert _FakeClient.instances == []


def test_unknown_alert_in_diff_names_the_file(tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
    old = _rules_file(tmp_path / "old.yaml", "1m")
    new = tmp_path / "new.yaml"
    new.write_text(yaml.safe_dump({"groups": [{"name": "g", "rules": []}]}), encoding="utf-8")

    exit_code = cli.main(["diff", str(old), str(new), "InstanceDown", "--prometheus-url", "http://prom", *RANGE_ARGS])

    assert exit_code == 1
    assert capsys.readouterr().err.startswith(f"error: file2 ({new}): alert 'InstanceDown' not found")


def test_invalid_filter_is_rejected_by_argument_parser(tmp_path: Path) -> None:
    rules = _rules_file(tmp_path / "rules.yaml", "1m")

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["replay", str(rules), "InstanceDown", "--filters", "namespace", *RANGE_ARGS])
    assert excinfo.value.code == 2


def test_source_names_fall_back_to_full_paths() -> None:
    assert cli._source_names(Path("a/rules.yaml"), Path("b/rules.yaml")) == ("a/rules.yaml", "b/rules.yaml")
    assert cli._source_names(Path("a/old.yaml"), Path("b/new.yaml")) == ("old.yaml", "new.yaml")
