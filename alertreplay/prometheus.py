from __future__ import annotations

import datetime as _dt
import json
import logging
import urllib.error
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import urlencode
from urllib.request import Request, urlopen

from alertreplay.errors import QueryError
from alertreplay.promql import format_matchers
from alertreplay.settings import QUERY_LIMITS

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Series:
    """One labelled series of a range query, samples as ``(unix_ms, value)``."""

    labels: Dict[str, str]
    samples: List[Tuple[int, float]]


def _format_seconds(seconds: float) -> str:
    text = f"{seconds:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def _unix_seconds(moment: _dt.datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=_dt.timezone.utc)
    return _format_seconds(moment.timestamp())


def _to_millis(raw_timestamp: object) -> int:
    return int(round(float(raw_timestamp) * 1000))  # type: ignore[arg-type]


class PrometheusClient:
    """Minimal client for the Prometheus-compatible HTTP query API."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout_seconds: float = QUERY_LIMITS.timeout_seconds,
        extra_filters: Optional[Mapping[str, str]] = None,
    ) -> None:
        if base_url.endswith("/"):
            self._base_url = base_url[:-1]
        else:
            self._base_url = base_url
        self._token = token
        self._timeout_seconds = timeout_seconds
        self._extra_filters = dict(extra_filters or {})

    def query_range(
        self, expr: str, start: _dt.datetime, end: _dt.datetime, step: _dt.timedelta
    ) -> List[Series]:
        data = self._get(
            "/api/v1/query_range",
            [
                ("query", expr),
                ("start", _unix_seconds(start)),
                ("end", _unix_seconds(end)),
                ("step", _format_seconds(step.total_seconds())),
            ],
        )
        if data.get("resultType") != "matrix":
            raise QueryError(f"unexpected result type: {data.get('resultType')}")
        series: List[Series] = []
        for entry in data.get("result") or []:
            samples = [(_to_millis(ts), float(value)) for ts, value in entry.get("values", [])]
            series.append(Series(labels=dict(entry.get("metric", {})), samples=samples))
        return series

    def query(self, expr: str, at: _dt.datetime) -> List[Tuple[Dict[str, str], float]]:
        data = self._get("/api/v1/query", [("query", expr), ("time", _unix_seconds(at))])
        if data.get("resultType") != "vector":
            raise QueryError(f"unexpected result type for instant query: {data.get('resultType')}")
        vector: List[Tuple[Dict[str, str], float]] = []
        for entry in data.get("result") or []:
            _, value = entry.get("value", [0, "NaN"])
            vector.append((dict(entry.get("metric", {})), float(value)))
        return vector

    def label_values(self, label: str, at: _dt.datetime) -> List[str]:
        """Values of ``label`` across every scraped target at ``at``, sorted."""

        query = f"clamp_max(count(up) by ({label}), 1)"
        values = {labels.get(label, "") for labels, _ in self.query(query, at)}
        values.discard("")
        if not values:
            raise QueryError(f"no values found with query {query!r}")
        return sorted(values)

    def _get(self, path: str, params: Sequence[Tuple[str, str]]) -> Dict[str, object]:
        query = list(params)
        for name, value in self._extra_filters.items():
            query.append(("extra_filters[]", "{" + format_matchers({name: value}) + "}"))
        request = Request(f"{self._base_url}{path}?{urlencode(query)}")
        if self._token:
            request.add_header("Authorization", f"Bearer {self._token}")
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                payload = json.loads(response.read().decode("utf-8"))
        except urllib.error.HTTPError as exc:
            raise QueryError(f"{path} returned HTTP {exc.code}: {_error_detail(exc)}") from exc
        except urllib.error.URLError as exc:
            raise QueryError(f"{path} request failed: {exc.reason}") from exc
        except (OSError, ValueError) as exc:
            raise QueryError(f"{path} request failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise QueryError(f"{path} returned a non-object payload")
        status = payload.get("status")
        if status != "success":
            raise QueryError(f"{path} failed with status {status}: {payload.get('error', payload)}")
        for warning in payload.get("warnings") or []:
            logger.warning("query warning: %s", warning)
        data = payload.get("data")
        if not isinstance(data, dict):
            raise QueryError(f"{path} response missing data object")
        return data


def _error_detail(exc: urllib.error.HTTPError) -> str:
    try:
        body = json.loads(exc.read().decode("utf-8"))
    except (OSError, ValueError):
        return str(exc.reason)
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return str(exc.reason)
