from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

RELATIVE_RANGE_PATTERN = re.compile(r"^-(\d+)\s*([smhdw])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400, "w": 604800}

# epoch values above this are milliseconds
_EPOCH_MS_THRESHOLD = 1e11


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"range start {self.start.isoformat()} is after end {self.end.isoformat()}")

    def contains(self, value: datetime) -> bool:
        return self.start <= value <= self.end

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime:
    """Coerce epoch seconds, epoch milliseconds or ISO-8601 text into an aware UTC datetime.

    Raises ValueError for anything else, including booleans and non-finite numbers.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, bool) or value is None:
        raise ValueError(f"invalid timestamp: {value!r}")
    elif isinstance(value, (int, float)):
        dt = _from_epoch(float(value))
    else:
        raw = str(value).strip()
        if not raw:
            raise ValueError("empty timestamp")
        try:
            dt = _from_epoch(float(raw))
        except ValueError:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_epoch(value: float) -> datetime:
    if not math.isfinite(value):
        raise ValueError(f"invalid timestamp: {value!r}")
    if abs(value) > _EPOCH_MS_THRESHOLD:
        value /= 1000.0
    try:
        return datetime.fromtimestamp(value, tz=timezone.utc)
    except (OverflowError, OSError) as exc:
        raise ValueError(f"timestamp out of range: {value!r}") from exc


def is_relative_range(value: str) -> bool:
    return bool(RELATIVE_RANGE_PATTERN.fullmatch(str(value).strip().lower()))


def parse_relative_range(value: str, now: datetime | None = None) -> TimeRange:
    match = RELATIVE_RANGE_PATTERN.fullmatch(str(value).strip().lower())
    if match is None:
        raise ValueError(f"unsupported time range: {value!r} (expected e.g. '-1h', '-30m', '-7d')")
    amount = int(match.group(1))
    if amount <= 0:
        raise ValueError(f"time range must be positive: {value!r}")
    end = now or utc_now()
    return TimeRange(start=end - timedelta(seconds=amount * _UNIT_SECONDS[match.group(2)]), end=end)


def resolve_range(value: TimeRange | str, now: datetime | None = None) -> TimeRange:
    if isinstance(value, TimeRange):
        return value
    return parse_relative_range(value, now=now)


def format_timestamp(value: datetime | None) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")
