from __future__ import annotations

import json
import logging
import math
import re
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from telemetry.api.schemas import AlertPayload, RawFrame
from telemetry.errors import NormalizationError
from telemetry.models import (
    Alert,
    CanonicalSample,
    NormalizedFrame,
    SourceType,
    StatusReading,
    SubscriptionAck,
)
from telemetry.time_utils import parse_timestamp

logger = logging.getLogger(__name__)

REALTIME_ZONE_PATTERN = re.compile(r"^T(\d+)$")
SPC_ZONE_PATTERN = re.compile(r"^ET(\d+)$")
HISTORICAL_ZONE_PATTERN = re.compile(r"^temp_(\d+)$")

SPC_METRIC_FIELDS = {
    "ECYCT": "cycle_time",
    "EISS": "injection_start",
    "EIVM": "injection_velocity_max",
    "EIPM": "injection_pressure_max",
    "ESIPT": "switch_pack_time",
    "ESIPP": "switch_pack_position",
    "ESIPS": "switch_pack_speed",
    "EIPT": "injection_time",
    "EIPSE": "injection_start_end",
    "EPLST": "plasticizing_time",
    "EPLSSE": "plasticizing_start_end",
    "EPLSPM": "plasticizing_pressure_max",
}

_FRAME_TIMESTAMP_FALLBACKS = ("timestamp", "sendStamp", "sendTime", "time")


def _to_float(value: Any, field_name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise NormalizationError(f"unparseable {field_name}: {value!r}")
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise NormalizationError(f"unparseable {field_name}: {value!r}") from exc
    if not math.isfinite(number):
        return None
    return number


def _to_int(value: Any, field_name: str) -> int | None:
    number = _to_float(value, field_name)
    if number is None:
        return None
    if not number.is_integer():
        raise NormalizationError(f"{field_name} is not an integer: {value!r}")
    return int(number)


def _zones(data: Mapping[str, Any], pattern: re.Pattern[str]) -> dict[str, float]:
    zones: dict[str, float] = {}
    for key, raw in data.items():
        match = pattern.match(str(key))
        if match is None:
            continue
        reading = _to_float(raw, str(key))
        if reading is not None:
            zones[f"T{int(match.group(1))}"] = reading
    return dict(sorted(zones.items(), key=lambda item: int(item[0][1:])))


def _first_present(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


class Normalizer:
    """Turns raw channel frames and historical rows into canonical samples.

    Source type always follows the frame kind. Non-finite readings are treated
    as absent, any other unparseable value rejects the whole frame or row.
    """

    def normalize(self, raw: str | bytes | Mapping[str, Any]) -> NormalizedFrame:
        payload = self._decode(raw)
        try:
            frame = RawFrame.model_validate(payload)
        except ValidationError as exc:
            errors = "; ".join(
                f"{'.'.join(str(part) for part in error['loc']) or 'frame'}: {error['msg']}"
                for error in exc.errors()
            )
            device_id = payload.get("deviceId") if isinstance(payload, Mapping) else None
            raise NormalizationError(f"invalid frame: {errors}", device_id=device_id) from exc

        handler = getattr(self, f"_normalize_{frame.kind.replace('-', '_')}")
        return handler(frame)

    def normalize_row(self, device_id: str, row: Mapping[str, Any]) -> CanonicalSample:
        if not isinstance(row, Mapping):
            raise NormalizationError(f"historical row is not an object: {row!r}", device_id=device_id)
        timestamp = self._timestamp(_first_present(row, "_time", "time", "timestamp"), device_id)
        return CanonicalSample(
            device_id=device_id,
            timestamp=timestamp,
            source_type=SourceType.HISTORICAL,
            temperatures=_zones(row, HISTORICAL_ZONE_PATTERN),
            oil_temp=_to_float(row.get("oil_temp"), "oil_temp"),
            status=_to_int(row.get("status"), "status"),
            operation_mode=_to_int(row.get("operate_mode"), "operate_mode"),
            auto_start=_to_int(row.get("auto_start"), "auto_start"),
        )

    def normalize_rows(self, device_id: str, rows: Iterable[Any]) -> tuple[list[CanonicalSample], int]:
        samples: list[CanonicalSample] = []
        rejected = 0
        for index, row in enumerate(rows):
            try:
                samples.append(self.normalize_row(device_id, row))
            except NormalizationError as exc:
                rejected += 1
                logger.warning("Dropped historical row device_id=%s index=%s: %s", device_id, index, exc.reason)
        return samples, rejected

    def _decode(self, raw: str | bytes | Mapping[str, Any]) -> Any:
        if isinstance(raw, Mapping):
            return raw
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError as exc:
                raise NormalizationError("frame is not valid utf-8") from exc
        try:
            payload = json.loads(raw)
        except (TypeError, json.JSONDecodeError) as exc:
            raise NormalizationError(f"frame is not valid json: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise NormalizationError("frame is not a json object")
        return payload

    def _timestamp(self, value: Any, device_id: str) -> datetime:
        try:
            return parse_timestamp(value)
        except (TypeError, ValueError) as exc:
            raise NormalizationError(f"invalid timestamp {value!r}", device_id=device_id) from exc

    def _frame_timestamp(self, frame: RawFrame, data: Mapping[str, Any]) -> datetime:
        value = frame.timestamp
        if value is None:
            value = _first_present(data, *_FRAME_TIMESTAMP_FALLBACKS)
        return self._timestamp(value, frame.device_id)

    def _payload(self, frame: RawFrame) -> tuple[Mapping[str, Any], Mapping[str, Any]]:
        # returns (envelope, readings); readings may be nested under "Data"
        if not isinstance(frame.data, Mapping):
            raise NormalizationError(f"{frame.kind} frame data is not an object", device_id=frame.device_id)
        nested = frame.data.get("Data")
        if isinstance(nested, Mapping):
            return frame.data, nested
        return frame.data, frame.data

    def _normalize_realtime(self, frame: RawFrame) -> NormalizedFrame:
        envelope, data = self._payload(frame)
        try:
            sample = CanonicalSample(
                device_id=frame.device_id,
                timestamp=self._frame_timestamp(frame, envelope),
                source_type=SourceType.REALTIME,
                temperatures=_zones(data, REALTIME_ZONE_PATTERN),
                oil_temp=_to_float(_first_present(data, "OT", "oilTemp"), "OT"),
                status=_to_int(_first_present(data, "STS", "status"), "STS"),
                operation_mode=_to_int(_first_present(data, "OPM", "operationMode"), "OPM"),
                auto_start=_to_int(_first_present(data, "ATST", "autoStart"), "ATST"),
            )
        except NormalizationError as exc:
            exc.device_id = frame.device_id
            raise
        return NormalizedFrame(kind=frame.kind, device_id=frame.device_id, samples=(sample,))

    def _normalize_spc(self, frame: RawFrame) -> NormalizedFrame:
        envelope, data = self._payload(frame)
        try:
            cycle_number = _to_int(_first_present(data, "CYCN", "cycleNumber"), "CYCN")
            if cycle_number is None:
                raise NormalizationError("spc frame without cycle number")
            metrics = {}
            for wire_name, metric_name in SPC_METRIC_FIELDS.items():
                value = _to_float(data.get(wire_name), wire_name)
                if value is not None:
                    metrics[metric_name] = value
            sample = CanonicalSample(
                device_id=frame.device_id,
                timestamp=self._frame_timestamp(frame, envelope),
                source_type=SourceType.SPC,
                temperatures=_zones(data, SPC_ZONE_PATTERN),
                cycle_number=cycle_number,
                metrics=metrics,
            )
        except NormalizationError as exc:
            exc.device_id = frame.device_id
            raise
        return NormalizedFrame(kind=frame.kind, device_id=frame.device_id, samples=(sample,))

    def _normalize_status(self, frame: RawFrame) -> NormalizedFrame:
        envelope, data = self._payload(frame)
        try:
            status = _to_int(_first_present(data, "STS", "status"), "STS")
            if status is None:
                raise NormalizationError("status frame without status code")
            reading = StatusReading(
                device_id=frame.device_id,
                timestamp=self._frame_timestamp(frame, envelope),
                status=status,
                operation_mode=_to_int(_first_present(data, "OPM", "operationMode"), "OPM"),
            )
        except NormalizationError as exc:
            exc.device_id = frame.device_id
            raise
        return NormalizedFrame(kind=frame.kind, device_id=frame.device_id, status=reading)

    def _normalize_alert(self, frame: RawFrame) -> NormalizedFrame:
        envelope = frame.data if isinstance(frame.data, Mapping) else {}
        body = envelope.get("alert", envelope)
        try:
            payload = AlertPayload.model_validate(body)
        except ValidationError as exc:
            raise NormalizationError(f"invalid alert: {exc.errors()[0]['msg']}", device_id=frame.device_id) from exc
        alert = Alert(
            device_id=frame.device_id,
            timestamp=self._frame_timestamp(frame, envelope),
            type=payload.type,
            message=payload.message,
            severity=payload.severity,
        )
        return NormalizedFrame(kind=frame.kind, device_id=frame.device_id, alert=alert)

    def _normalize_historical_batch(self, frame: RawFrame) -> NormalizedFrame:
        rows = frame.data
        if isinstance(rows, Mapping):
            rows = rows.get("rows", rows.get("realtime"))
        if not isinstance(rows, list):
            raise NormalizationError("historical-batch frame without a row list", device_id=frame.device_id)
        samples, rejected = self.normalize_rows(frame.device_id, rows)
        return NormalizedFrame(kind=frame.kind, device_id=frame.device_id, samples=tuple(samples), rejected=rejected)

    def _normalize_subscription_confirmed(self, frame: RawFrame) -> NormalizedFrame:
        ack = SubscriptionAck(device_id=frame.device_id, accepted=True)
        return NormalizedFrame(kind=frame.kind, device_id=frame.device_id, ack=ack)

    def _normalize_subscription_rejected(self, frame: RawFrame) -> NormalizedFrame:
        data = frame.data if isinstance(frame.data, Mapping) else {}
        message = _first_present(data, "message", "reason", "error") or "rejected by server"
        ack = SubscriptionAck(device_id=frame.device_id, accepted=False, message=str(message))
        return NormalizedFrame(kind=frame.kind, device_id=frame.device_id, ack=ack)
