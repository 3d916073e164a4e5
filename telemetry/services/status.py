from __future__ import annotations

import itertools
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from telemetry.models import CanonicalSample, SourceType, StatusReading


class OperationalState(str, Enum):
    OFFLINE = "offline"
    ONLINE = "online"
    PRODUCTION = "production"
    WARNING = "warning"


class Freshness(str, Enum):
    NO_DATA = "no-data"
    FRESH = "fresh"
    AGING = "aging"
    STALE = "stale"


STATUS_CODES: dict[int, OperationalState] = {
    0: OperationalState.OFFLINE,
    1: OperationalState.ONLINE,
    2: OperationalState.PRODUCTION,
    3: OperationalState.WARNING,
}


def derive_state(code: Any) -> OperationalState:
    # anything outside the table, including None and bools, reads as offline
    if isinstance(code, bool) or not isinstance(code, int):
        return OperationalState.OFFLINE
    return STATUS_CODES.get(code, OperationalState.OFFLINE)


def data_age(latest: CanonicalSample | None, now: datetime) -> float | None:
    if latest is None:
        return None
    return max((now - latest.timestamp).total_seconds(), 0.0)


def classify_freshness(age: float | None, aging_after: float = 5.0, stale_after: float = 10.0) -> Freshness:
    if age is None:
        return Freshness.NO_DATA
    if age > stale_after:
        return Freshness.STALE
    if age > aging_after:
        return Freshness.AGING
    return Freshness.FRESH


@dataclass(frozen=True)
class DeviceStatus:
    device_id: str
    state: OperationalState
    code: int | None
    operation_mode: int | None
    timestamp: datetime | None
    source: str
    sequence: int = 0


class StatusTracker:
    """Last-writer-wins status per device, ordered by normalization sequence.

    Realtime samples and status frames both feed it. Whichever was normalized
    most recently wins, regardless of its source timestamp or kind.
    Historical backfill never overrides live status.
    """

    def __init__(self) -> None:
        self._sequence = itertools.count(1)
        self._current: dict[str, DeviceStatus] = {}

    def observe_sample(self, sample: CanonicalSample) -> DeviceStatus | None:
        if sample.source_type is not SourceType.REALTIME or sample.status is None:
            return None
        return self._record(
            sample.device_id, sample.status, sample.operation_mode, sample.timestamp, SourceType.REALTIME.value
        )

    def observe_status(self, reading: StatusReading) -> DeviceStatus:
        return self._record(reading.device_id, reading.status, reading.operation_mode, reading.timestamp, "status")

    def current(self, device_id: str, fallback: CanonicalSample | None = None) -> DeviceStatus:
        status = self._current.get(device_id)
        if status is not None:
            return status
        if fallback is not None:
            return DeviceStatus(
                device_id=device_id,
                state=derive_state(fallback.status),
                code=fallback.status,
                operation_mode=fallback.operation_mode,
                timestamp=fallback.timestamp,
                source=fallback.source_type.value,
            )
        return DeviceStatus(
            device_id=device_id,
            state=OperationalState.OFFLINE,
            code=None,
            operation_mode=None,
            timestamp=None,
            source="none",
        )

    def forget(self, device_id: str) -> None:
        self._current.pop(device_id, None)

    def clear(self) -> None:
        self._current.clear()

    def _record(
        self,
        device_id: str,
        code: int | None,
        operation_mode: int | None,
        timestamp: datetime,
        source: str,
    ) -> DeviceStatus:
        status = DeviceStatus(
            device_id=device_id,
            state=derive_state(code),
            code=code,
            operation_mode=operation_mode,
            timestamp=timestamp,
            source=source,
            sequence=next(self._sequence),
        )
        self._current[device_id] = status
        return status
