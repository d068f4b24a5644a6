from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping

METRIC_NAME_LABEL = "__name__"
ALERT_NAME_LABEL = "alertname"

_HIDDEN_LABELS = (METRIC_NAME_LABEL, ALERT_NAME_LABEL)

Labels = Dict[str, str]


def quote_label_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


@dataclass(frozen=True)
class Sample:
    """One series present in a result vector at a single instant."""

    labels: Mapping[str, str]
    value: float
    timestamp_ms: int


def format_labels(labels: Mapping[str, str]) -> str:
    """Render labels as ``{k="v", ...}`` with sorted keys.

    The metric name and the alert name are left out; the rendering doubles as
    the lookup key for one alert instance.
    """

    parts = [
        f"{key}={quote_label_value(labels[key])}"
        for key in sorted(labels)
        if key not in _HIDDEN_LABELS
    ]
    return "{" + ", ".join(parts) + "}"
