from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from telemetry.time_utils import is_relative_range


FrameKind = Literal[
    "realtime",
    "spc",
    "status",
    "alert",
    "historical-batch",
    "subscription-confirmed",
    "subscription-rejected",
]
ControlAction = Literal["subscribe", "unsubscribe", "requestStatus"]


def _normalize_device_id(value: Any) -> str:
    if value is None or isinstance(value, bool):
        raise ValueError("deviceId is required")
    device_id = str(value).strip()
    if not device_id:
        raise ValueError("deviceId is required")
    return device_id


class RawFrame(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    kind: FrameKind
    device_id: str = Field(alias="deviceId")
    timestamp: Any = None
    data: Any = Field(default_factory=dict)

    @field_validator("device_id", mode="before")
    @classmethod
    def validate_device_id(cls, value: Any) -> str:
        return _normalize_device_id(value)


class ControlMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    action: ControlAction
    device_id: str = Field(alias="deviceId")

    @field_validator("device_id", mode="before")
    @classmethod
    def validate_device_id(cls, value: Any) -> str:
        return _normalize_device_id(value)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class HistoryQuery(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    device_id: str = Field(alias="deviceId")
    range_start: datetime = Field(alias="rangeStart")
    range_end: datetime = Field(alias="rangeEnd")
    limit: int = Field(default=1000, gt=0)

    def to_params(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "rangeStart": self.range_start.isoformat(),
            "rangeEnd": self.range_end.isoformat(),
            "limit": self.limit,
        }


class HistoryResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    rows: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("rows", mode="before")
    @classmethod
    def validate_rows(cls, value: Any) -> list[Any]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("rows must be a list")
        return value


class AlertPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    type: Literal["warning", "error", "info"] = "info"
    message: str
    severity: Literal["high", "medium", "low"] = "medium"


class ConsumerOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    auto_subscribe: bool = True
    historical_range: str = "-1h"
    enable_realtime: bool = True
    enable_spc: bool = True

    @field_validator("historical_range")
    @classmethod
    def validate_historical_range(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not is_relative_range(normalized):
            raise ValueError("historical_range must look like '-1h', '-30m' or '-7d'")
        return normalized
