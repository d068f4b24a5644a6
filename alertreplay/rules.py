from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

import yaml

from alertreplay.errors import AlertReplayError, ConfigError
from alertreplay.relativetime import parse_duration

AlertGroups = List[Dict[str, Any]]


class RuleFileError(AlertReplayError, RuntimeError):
    pass


@dataclass(frozen=True)
class AlertRule:
    name: str
    expr: str
    for_duration: _dt.timedelta = _dt.timedelta(0)
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)


def _load_groups(path: Path) -> AlertGroups:
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except OSError as exc:
        raise RuleFileError(f"reading {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise RuleFileError(f"{path} is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise RuleFileError(f"{path} is missing a groups list")
    if "groups" in data:
        groups = data["groups"]
    else:
        groups = (data.get("spec") or {}).get("groups")
    if not isinstance(groups, list):
        raise RuleFileError(f"{path} is missing a groups list")
    return groups


def _string_map(value: Any, context: str) -> Dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise RuleFileError(f"{context} must be a mapping")
    return {str(key): str(item) for key, item in value.items()}


def load_alert_rule(path: Path, alert_name: str) -> AlertRule:
    """Find ``alert_name`` in a Prometheus rule file or a VMRule resource."""

    for group in _load_groups(path):
        rules = group.get("rules") if isinstance(group, dict) else None
        if not isinstance(rules, list):
            raise RuleFileError(f"{path} group missing rules array")
        for rule in rules:
            if not isinstance(rule, dict) or rule.get("alert") != alert_name:
                continue
            expr = rule.get("expr")
            if expr is None or not str(expr).strip():
                raise RuleFileError(f"{path} alert {alert_name} has no expr")
            raw_for = rule.get("for")
            for_duration = _dt.timedelta(0)
            if raw_for not in (None, ""):
                try:
                    for_duration = parse_duration(str(raw_for))
                except ConfigError as exc:
                    raise RuleFileError(f"{path} alert {alert_name}: parsing for duration: {exc}") from exc
            return AlertRule(
                name=alert_name,
                expr=str(expr).strip(),
                for_duration=for_duration,
                labels=_string_map(rule.get("labels"), f"{path} alert {alert_name} labels"),
                annotations=_string_map(rule.get("annotations"), f"{path} alert {alert_name} annotations"),
            )
    raise RuleFileError(f"alert {alert_name!r} not found in {path}")
