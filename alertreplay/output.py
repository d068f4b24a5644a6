from __future__ import annotations

import datetime as _dt
import logging
import sys
from typing import List, Optional, Sequence, TextIO

from alertreplay.alerts import Alert
from alertreplay.labels import format_labels

logger = logging.getLogger(__name__)

OUTPUT_TIME_FORMAT = "%Y-%m-%d %H:%M UTC"


def format_time(moment: _dt.datetime) -> str:
    if moment.tzinfo is not None:
        moment = moment.astimezone(_dt.timezone.utc)
    return moment.strftime(OUTPUT_TIME_FORMAT)


def format_elapsed(span: _dt.timedelta) -> str:
    """Whole-second rendering such as ``45s``, ``5m0s`` or ``1h2m3s``."""

    total = int(round(span.total_seconds()))
    sign = "-" if total < 0 else ""
    hours, remainder = divmod(abs(total), 3600)
    minutes, seconds = divmod(remainder, 60)
    if hours:
        return f"{sign}{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{sign}{minutes}m{seconds}s"
    return f"{sign}{seconds}s"


def _has_source(alerts: Sequence[Alert]) -> bool:
    return any(alert.source for alert in alerts)


def _has_url(alerts: Sequence[Alert]) -> bool:
    return any(alert.url for alert in alerts)


def _row(alert: Alert, with_source: bool, with_url: bool) -> List[str]:
    if alert.resolved_at is None:
        resolved, duration = "UNRESOLVED", "--"
    else:
        resolved = format_time(alert.resolved_at)
        duration = format_elapsed(alert.resolved_at - alert.opened_at)
    row = [format_time(alert.opened_at), resolved, duration, format_labels(alert.labels)]
    if with_source:
        row.insert(0, alert.source)
    if with_url:
        row.append(alert.url)
    return row


def _headers(with_source: bool, with_url: bool) -> List[str]:
    headers = ["Opened", "Resolved", "Duration", "Labels"]
    if with_source:
        headers.insert(0, "Source")
    if with_url:
        headers.append("URL")
    return headers


def render_markdown(alerts: Sequence[Alert]) -> str:
    with_source = _has_source(alerts)
    with_url = _has_url(alerts)
    headers = _headers(with_source, with_url)
    lines = [
        "| " + " | ".join(headers) + " |",
        "| " + " | ".join("---" for _ in headers) + " |",
    ]
    for alert in alerts:
        cells = [cell.replace("|", "\\|") for cell in _row(alert, with_source, with_url)]
        lines.append("| " + " | ".join(cells) + " |")
    return "\n".join(lines)


def render_table(alerts: Sequence[Alert]) -> str:
    with_source = _has_source(alerts)
    with_url = _has_url(alerts)
    rows = [_headers(with_source, with_url)] + [_row(alert, with_source, with_url) for alert in alerts]
    widths = [max(len(row[column]) for row in rows) for column in range(len(rows[0]))]

    def line(cells: Sequence[str]) -> str:
        return "  ".join(cell.ljust(width) for cell, width in zip(cells, widths)).rstrip()

    output = [line(rows[0]), line(["-" * width for width in widths])]
    output.extend(line(row) for row in rows[1:])
    return "\n".join(output)


def print_alerts(alerts: Sequence[Alert], stream: Optional[TextIO] = None) -> None:
    stream = stream or sys.stdout
    if not alerts:
        logger.info("No alert events found.")
        return
    isatty = getattr(stream, "isatty", None)
    if isatty is not None and isatty():
        stream.write(render_table(alerts) + "\n")
    else:
        stream.write(render_markdown(alerts) + "\n")
