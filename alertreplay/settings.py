from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass, field
from typing import Dict, Optional

from alertreplay.errors import ConfigError


@dataclass(frozen=True)
class QueryLimits:
    max_points_per_query: int
    timeout_seconds: float


QUERY_LIMITS = QueryLimits(
    max_points_per_query=10000,
    timeout_seconds=120.0,
)


@dataclass(frozen=True)
class ReplayDefaults:
    step: _dt.timedelta
    parallelism: int
    to: str


REPLAY_DEFAULTS = ReplayDefaults(
    step=_dt.timedelta(seconds=30),
    parallelism=10,
    to="now",
)


@dataclass(frozen=True)
class DiffTolerance:
    match_threshold: _dt.timedelta


DIFF_TOLERANCE = DiffTolerance(match_threshold=_dt.timedelta(minutes=2))


@dataclass(frozen=True)
class DashboardPadding:
    before: _dt.timedelta
    after: _dt.timedelta


DASHBOARD_PADDING = DashboardPadding(
    before=_dt.timedelta(minutes=5),
    after=_dt.timedelta(minutes=5),
)

_MIN_STEP = _dt.timedelta(milliseconds=1)


@dataclass
class ReplayConfig:
    """Run-wide settings resolved once from the command line."""

    prometheus_url: str
    start: _dt.datetime
    end: _dt.datetime
    step: _dt.timedelta = REPLAY_DEFAULTS.step
    parallelism: int = REPLAY_DEFAULTS.parallelism
    filters: Dict[str, str] = field(default_factory=dict)
    by: Optional[str] = None
    token: Optional[str] = None
    timeout_seconds: float = QUERY_LIMITS.timeout_seconds
    dashboard_type: Optional[str] = None
    dashboard_url: Optional[str] = None

    def validate(self) -> None:
        if not self.prometheus_url:
            raise ConfigError("--prometheus-url is required (or set PROMETHEUS_URL)")
        if self.by and self.filters.get(self.by):
            raise ConfigError("--by and --filters for the same key are mutually exclusive")
        if self.parallelism < 1:
            raise ConfigError("--parallelism must be at least 1")
        if self.step < _MIN_STEP:
            raise ConfigError("--interval must be at least 1ms")
        if not self.start < self.end:
            raise ConfigError("--from must be before --to")
        if bool(self.dashboard_type) != bool(self.dashboard_url):
            raise ConfigError("--dashboard-type and --dashboard-url must be given together")
