#!/usr/bin/env python3
"""Replay or compare alert rules against historical Prometheus data.

``replay`` reproduces which alert instances a rule would have fired over a
time range and when they resolved. ``diff`` replays two versions of a rule
over the same range and lists only the alerts that differ between them.
"""
from __future__ import annotations

import argparse
import datetime as _dt
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from alertreplay.alerts import Alert
from alertreplay.dashboard import DashboardType, new_url_builder
from alertreplay.diff import diff_alerts
from alertreplay.errors import AlertReplayError
from alertreplay.output import print_alerts
from alertreplay.prometheus import PrometheusClient
from alertreplay.relativetime import parse_duration, parse_time, utc_now
from alertreplay.rules import AlertRule, RuleFileError, load_alert_rule
from alertreplay.runner import replay, replay_pair
from alertreplay.settings import QUERY_LIMITS, REPLAY_DEFAULTS, ReplayConfig

logger = logging.getLogger("alertreplay")


def _filter(value: str) -> Tuple[str, str]:
    key, separator, filter_value = value.partition("=")
    if not separator or not key:
        raise argparse.ArgumentTypeError(f"unable to parse {value!r} as a key-value expression")
    return key, filter_value


def _label_list(value: str) -> List[str]:
    return [label.strip() for label in value.split(",") if label.strip()]


def _build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--prometheus-url",
        default=os.getenv("PROMETHEUS_URL"),
        help="Prometheus API URL (default: $PROMETHEUS_URL)",
    )
    common.add_argument(
        "--from",
        dest="start",
        required=True,
        metavar="TIME",
        help="Start time: 'YYYY-MM-DD HH:MM:SS' or relative like '30 days ago'",
    )
    common.add_argument(
        "--to",
        dest="end",
        default=REPLAY_DEFAULTS.to,
        metavar="TIME",
        help="End time: 'YYYY-MM-DD HH:MM:SS' or relative like 'now' (default: now)",
    )
    common.add_argument("--interval", default="30s", help="Query interval (default: 30s)")
    common.add_argument(
        "--parallelism",
        type=int,
        default=REPLAY_DEFAULTS.parallelism,
        help=f"Number of parallel queries (default: {REPLAY_DEFAULTS.parallelism})",
    )
    common.add_argument(
        "--filters",
        type=_filter,
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Append filters via VictoriaMetrics extra_filters[] (repeatable)",
    )
    common.add_argument("--by", help="Discover values of this label and run the alert once per value")
    common.add_argument(
        "--token",
        default=os.getenv("PROMETHEUS_BEARER_TOKEN"),
        help="Bearer token for Prometheus (default: $PROMETHEUS_BEARER_TOKEN)",
    )
    common.add_argument(
        "--timeout-seconds",
        type=float,
        default=QUERY_LIMITS.timeout_seconds,
        help="HTTP timeout per query (default: 120)",
    )
    common.add_argument(
        "--dashboard-type",
        choices=[kind.value for kind in DashboardType],
        help="UI used for alert deep links",
    )
    common.add_argument("--dashboard-url", help="Base URL of the UI used for alert deep links")
    common.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    parser = argparse.ArgumentParser(prog="alertreplay", description=__doc__)
    subcommands = parser.add_subparsers(dest="command", required=True)

    replay_parser = subcommands.add_parser(
        "replay", parents=[common], help="Replay an alert rule against historical data"
    )
    replay_parser.add_argument("alert_file", type=Path, help="Alert rules file (Prometheus or VMRule format)")
    replay_parser.add_argument("alert_name", help="Name of the alert to replay")

    diff_parser = subcommands.add_parser("diff", parents=[common], help="Compare an alert rule between two files")
    diff_parser.add_argument("file1", type=Path, help="First alert rules file (Prometheus or VMRule format)")
    diff_parser.add_argument("file2", type=Path, help="Second alert rules file (Prometheus or VMRule format)")
    diff_parser.add_argument("alert_name", help="Name of the alert to compare")
    diff_parser.add_argument(
        "--ignore-labels",
        type=_label_list,
        action="append",
        default=[],
        metavar="LABEL[,LABEL...]",
        help="Labels to ignore when comparing alerts",
    )
    return parser


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    return _build_parser().parse_args(argv)


def config_from_args(args: argparse.Namespace, now: _dt.datetime) -> ReplayConfig:
    config = ReplayConfig(
        prometheus_url=args.prometheus_url or "",
        start=parse_time(args.start, now),
        end=parse_time(args.end, now),
        step=parse_duration(args.interval),
        parallelism=args.parallelism,
        filters=dict(args.filters),
        by=args.by,
        token=args.token,
        timeout_seconds=args.timeout_seconds,
        dashboard_type=args.dashboard_type,
        dashboard_url=args.dashboard_url,
    )
    config.validate()
    return config


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _load_rule(path: Path, alert_name: str, label: Optional[str] = None) -> AlertRule:
    try:
        rule = load_alert_rule(path, alert_name)
    except RuleFileError as exc:
        if label is None:
            raise
        raise RuleFileError(f"{label} ({path}): {exc}") from exc
    logger.debug("parsed alert rule %s: expr=%r for=%s", rule.name, rule.expr, rule.for_duration)
    return rule


def _source_names(first: Path, second: Path) -> Tuple[str, str]:
    if first.name != second.name:
        return first.name, second.name
    return str(first), str(second)


def run(args: argparse.Namespace, now: _dt.datetime) -> List[Alert]:
    config = config_from_args(args, now)
    url_builder = None
    if config.dashboard_type and config.dashboard_url:
        url_builder = new_url_builder(config.dashboard_type, config.dashboard_url)
    client = PrometheusClient(
        config.prometheus_url,
        token=config.token,
        timeout_seconds=config.timeout_seconds,
        extra_filters=config.filters,
    )

    if args.command == "replay":
        rule = _load_rule(args.alert_file, args.alert_name)
        return replay(client, rule, config, url_builder)

    first = _load_rule(args.file1, args.alert_name, "file1")
    second = _load_rule(args.file2, args.alert_name, "file2")
    first_alerts, second_alerts = replay_pair(client, first, second, config, url_builder)
    ignore_labels = [label for labels in args.ignore_labels for label in labels]
    first_name, second_name = _source_names(args.file1, args.file2)
    return diff_alerts(first_name, second_name, first_alerts, second_alerts, ignore_labels)


def main(argv: Optional[Sequence[str]] = None) -> int:
    now = utc_now()
    args = _parse_args(argv)
    _configure_logging(args.verbose)
    try:
        alerts = run(args, now)
    except AlertReplayError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    print_alerts(alerts)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
