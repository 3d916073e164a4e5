from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping


class SourceType(str, Enum):
    REALTIME = "realtime"
    SPC = "spc"
    HISTORICAL = "historical"


@dataclass(frozen=True)
class CanonicalSample:
    device_id: str
    timestamp: datetime
    source_type: SourceType
    temperatures: Mapping[str, float] = field(default_factory=dict)
    oil_temp: float | None = None
    status: int | None = None
    operation_mode: int | None = None
    cycle_number: int | None = None
    auto_start: int | None = None
    metrics: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # freeze the mappings so snapshots handed to consumers cannot mutate store state
        object.__setattr__(self, "temperatures", MappingProxyType(dict(self.temperatures)))
        object.__setattr__(self, "metrics", MappingProxyType(dict(self.metrics)))

    @property
    def is_live(self) -> bool:
        return self.source_type is not SourceType.HISTORICAL

    def to_message(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "timestamp": self.timestamp.isoformat(),
            "sourceType": self.source_type.value,
            "temperatures": dict(self.temperatures),
            "oilTemp": self.oil_temp,
            "status": self.status,
            "operationMode": self.operation_mode,
            "cycleNumber": self.cycle_number,
            "autoStart": self.auto_start,
            "metrics": dict(self.metrics),
        }


@dataclass(frozen=True)
class StatusReading:
    device_id: str
    timestamp: datetime
    status: int | None
    operation_mode: int | None = None


@dataclass(frozen=True)
class Alert:
    device_id: str
    timestamp: datetime
    type: str
    message: str
    severity: str


@dataclass(frozen=True)
class SubscriptionAck:
    device_id: str
    accepted: bool
    message: str | None = None


@dataclass(frozen=True)
class NormalizedFrame:
    kind: str
    device_id: str
    samples: tuple[CanonicalSample, ...] = ()
    status: StatusReading | None = None
    alert: Alert | None = None
    ack: SubscriptionAck | None = None
    rejected: int = 0


@dataclass
class StoreChange:
    device_id: str
    inserted: int = 0
    replaced: int = 0
    skipped: int = 0
    evicted: int = 0
    retained: int = 0
    latest: CanonicalSample | None = None
    source_types: set[SourceType] = field(default_factory=set)

    @property
    def changed(self) -> bool:
        return bool(self.inserted or self.replaced or self.evicted)
