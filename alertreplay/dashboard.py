"""Deep links into the UI used to investigate a replayed alert."""
from __future__ import annotations

import datetime as _dt
import enum
import json
from typing import Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from alertreplay.alerts import URLBuilder
from alertreplay.errors import ConfigError
from alertreplay.fetcher import to_millis
from alertreplay.settings import DASHBOARD_PADDING

_INPUT_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


class DashboardType(str, enum.Enum):
    PROMETHEUS = "prometheus"
    VMUI = "vmui"
    GRAFANA = "grafana"


def pad_range(start: _dt.datetime, end: Optional[_dt.datetime]) -> Tuple[_dt.datetime, _dt.datetime]:
    padded_end = start if end is None else end
    return start - DASHBOARD_PADDING.before, padded_end + DASHBOARD_PADDING.after


def format_range(span: _dt.timedelta) -> str:
    seconds = int(span.total_seconds())
    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        return f"{seconds // 60}m"
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    if minutes == 0:
        return f"{hours}h"
    return f"{hours}h{minutes}m"


def _input_time(moment: _dt.datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(_dt.timezone.utc)
    return moment.strftime(_INPUT_TIME_FORMAT)


class _BaseURL:
    def __init__(self, base_url: str) -> None:
        parts = urlsplit(base_url)
        if not parts.scheme or not parts.netloc:
            raise ConfigError(f"invalid dashboard base URL {base_url!r}")
        self._parts = parts

    def with_params(self, params: Dict[str, str]) -> str:
        query: List[Tuple[str, str]] = [
            (key, value) for key, value in parse_qsl(self._parts.query, keep_blank_values=True) if key not in params
        ]
        query.extend(params.items())
        query.sort(key=lambda item: item[0])
        return urlunsplit(self._parts._replace(query=urlencode(query)))


class PrometheusURLBuilder:
    def __init__(self, base_url: str) -> None:
        self._base = _BaseURL(base_url)

    def build_url(self, expr: str, start: _dt.datetime, end: Optional[_dt.datetime]) -> str:
        padded_start, padded_end = pad_range(start, end)
        return self._base.with_params(
            {
                "g0.expr": expr,
                "g0.tab": "0",
                "g0.range_input": format_range(padded_end - padded_start),
                "g0.end_input": _input_time(padded_end),
                "g0.moment_input": _input_time(padded_end),
            }
        )


class VMUIURLBuilder:
    def __init__(self, base_url: str) -> None:
        self._base = _BaseURL(base_url)

    def build_url(self, expr: str, start: _dt.datetime, end: Optional[_dt.datetime]) -> str:
        padded_start, padded_end = pad_range(start, end)
        return self._base.with_params(
            {
                "g0.expr": expr,
                "g0.range_input": format_range(padded_end - padded_start),
                "g0.end_input": _input_time(padded_end),
            }
        )


class GrafanaURLBuilder:
    def __init__(self, base_url: str) -> None:
        self._base = _BaseURL(base_url)

    def build_url(self, expr: str, start: _dt.datetime, end: Optional[_dt.datetime]) -> str:
        padded_start, padded_end = pad_range(start, end)
        left = {
            "queries": [{"refId": "A", "expr": expr}],
            "range": {"from": str(to_millis(padded_start)), "to": str(to_millis(padded_end))},
        }
        return self._base.with_params({"left": json.dumps(left, separators=(",", ":"))})


_BUILDERS: Dict[DashboardType, Callable[[str], URLBuilder]] = {
    DashboardType.PROMETHEUS: PrometheusURLBuilder,
    DashboardType.VMUI: VMUIURLBuilder,
    DashboardType.GRAFANA: GrafanaURLBuilder,
}


def new_url_builder(dashboard_type: str, base_url: str) -> URLBuilder:
    try:
        kind = DashboardType(dashboard_type)
    except ValueError:
        raise ConfigError(
            f"unknown type: {dashboard_type!r} (must be prometheus, vmui, or grafana)"
        ) from None
    return _BUILDERS[kind](base_url)
