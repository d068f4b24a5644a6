from __future__ import annotations

import calendar
import datetime as _dt
import re

from alertreplay.errors import ConfigError

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

_RELATIVE_RE = re.compile(r"^(\d+)\s*(second|minute|hour|day|week|month|year)s?\s+ago$", re.IGNORECASE)
_DURATION_RE = re.compile(
    r"^(?:(?P<y>\d+)y)?(?:(?P<w>\d+)w)?(?:(?P<d>\d+)d)?(?:(?P<h>\d+)h)?"
    r"(?:(?P<m>\d+)m)?(?:(?P<s>\d+)s)?(?:(?P<ms>\d+)ms)?$"
)
_FIXED_UNITS = {
    "second": _dt.timedelta(seconds=1),
    "minute": _dt.timedelta(minutes=1),
    "hour": _dt.timedelta(hours=1),
    "day": _dt.timedelta(days=1),
    "week": _dt.timedelta(weeks=1),
}
_DURATION_UNITS = {
    "y": _dt.timedelta(days=365),
    "w": _dt.timedelta(weeks=1),
    "d": _dt.timedelta(days=1),
    "h": _dt.timedelta(hours=1),
    "m": _dt.timedelta(minutes=1),
    "s": _dt.timedelta(seconds=1),
    "ms": _dt.timedelta(milliseconds=1),
}


def utc_now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc)


def _shift_months(moment: _dt.datetime, months: int) -> _dt.datetime:
    index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def parse_time(value: str, now: _dt.datetime) -> _dt.datetime:
    """Resolve ``now``, ``N <unit>s ago`` or ``YYYY-MM-DD HH:MM:SS`` (UTC).

    Relative values are computed from ``now`` so that every time string of a
    run refers to the same instant.
    """

    text = value.strip()
    if text.lower() == "now":
        return now
    match = _RELATIVE_RE.match(text)
    if match:
        amount = int(match.group(1))
        unit = match.group(2).lower()
        if unit == "month":
            return _shift_months(now, amount)
        if unit == "year":
            return _shift_months(now, amount * 12)
        return now - _FIXED_UNITS[unit] * amount
    try:
        parsed = _dt.datetime.strptime(text, TIME_FORMAT)
    except ValueError as exc:
        raise ConfigError(f"unable to parse time {value!r}: expected 'now', 'N units ago' or '{TIME_FORMAT}'") from exc
    return parsed.replace(tzinfo=_dt.timezone.utc)


def parse_duration(value: str) -> _dt.timedelta:
    """Parse a Prometheus duration such as ``1h30m``, ``90s`` or ``250ms``."""

    text = value.strip()
    if text == "0":
        return _dt.timedelta(0)
    match = _DURATION_RE.match(text)
    if not text or match is None:
        raise ConfigError(f"invalid duration {value!r}")
    total = _dt.timedelta(0)
    for unit, amount in match.groupdict().items():
        if amount is not None:
            total += _DURATION_UNITS[unit] * int(amount)
    return total
