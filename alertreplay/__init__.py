"""Replay alerting rules against historical Prometheus data."""

from .alerts import Alert, combine_events
from .diff import diff_alerts
from .errors import AlertReplayError, ConfigError, EvaluationError, ParseError, QueryError
from .evaluator import Evaluator, Event, EventKind
from .fetcher import RangeFetcher, split_time_range
from .prometheus import PrometheusClient
from .rules import AlertRule, load_alert_rule
from .runner import replay, replay_pair
from .settings import ReplayConfig

__all__ = [
    "Alert",
    "AlertReplayError",
    "AlertRule",
    "ConfigError",
    "EvaluationError",
    "Evaluator",
    "Event",
    "EventKind",
    "ParseError",
    "PrometheusClient",
    "QueryError",
    "RangeFetcher",
    "ReplayConfig",
    "combine_events",
    "diff_alerts",
    "load_alert_rule",
    "replay",
    "replay_pair",
    "split_time_range",
]
