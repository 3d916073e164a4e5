#!/usr/bin/env python3
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import random
import zlib
from collections.abc import Collection
from datetime import datetime, timedelta, timezone
from typing import Any

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Security, WebSocket, WebSocketDisconnect, status
from fastapi.security.api_key import APIKeyHeader

from config.settings import settings
from telemetry.time_utils import parse_timestamp, utc_now

logger = logging.getLogger(__name__)

ZONE_COUNT = 7
SPC_EVERY = 5

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def _rng(device_id: str, salt: int = 0) -> random.Random:
    return random.Random(zlib.crc32(device_id.encode("utf-8")) + salt)


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def realtime_frame(device_id: str, now: datetime, rng: random.Random, status_code: int = 2) -> dict[str, Any]:
    readings: dict[str, Any] = {f"T{zone}": round(200 + zone * 5 + rng.uniform(-2, 2), 1) for zone in range(1, ZONE_COUNT + 1)}
    readings.update({"OT": round(45 + rng.uniform(-1, 1), 1), "STS": status_code, "OPM": 1, "ATST": 1})
    return {"kind": "realtime", "deviceId": device_id, "timestamp": _epoch_ms(now), "data": {"Data": readings}}


def spc_frame(device_id: str, now: datetime, cycle: int, rng: random.Random) -> dict[str, Any]:
    data: dict[str, Any] = {"CYCN": cycle}
    data.update({f"ET{zone}": round(200 + zone * 5 + rng.uniform(-2, 2), 1) for zone in range(1, ZONE_COUNT + 1)})
    data.update(
        {
            "ECYCT": round(28 + rng.uniform(-0.5, 0.5), 2),
            "EIPM": round(120 + rng.uniform(-3, 3), 1),
            "EIPT": round(2.1 + rng.uniform(-0.1, 0.1), 2),
            "EPLST": round(7.5 + rng.uniform(-0.3, 0.3), 2),
        }
    )
    return {"kind": "spc", "deviceId": device_id, "timestamp": _epoch_ms(now), "data": data}


def status_frame(device_id: str, now: datetime, status_code: int = 2) -> dict[str, Any]:
    return {"kind": "status", "deviceId": device_id, "timestamp": _epoch_ms(now), "data": {"STS": status_code, "OPM": 1}}


def history_rows(
    device_id: str,
    start: datetime,
    end: datetime,
    limit: int,
    step: timedelta = timedelta(seconds=60),
) -> list[dict[str, Any]]:
    # aligned to the step grid so repeated requests return identical instants
    step_seconds = int(step.total_seconds())
    first = int(start.timestamp()) // step_seconds * step_seconds
    if first < start.timestamp():
        first += step_seconds
    stamps = list(range(first, int(end.timestamp()) + 1, step_seconds))[-limit:]

    rows = []
    for stamp in stamps:
        rng = _rng(device_id, stamp)
        row: dict[str, Any] = {"_time": datetime.fromtimestamp(stamp, tz=timezone.utc).isoformat()}
        row.update({f"temp_{zone}": round(200 + zone * 5 + rng.uniform(-2, 2), 1) for zone in range(1, ZONE_COUNT + 1)})
        row.update({"oil_temp": round(45 + rng.uniform(-1, 1), 1), "status": 2, "operate_mode": 1, "auto_start": 1})
        rows.append(row)
    return rows


def create_app(
    api_key: str | None = None,
    interval: float = 1.0,
    devices: Collection[str] | None = None,
) -> FastAPI:
    expected_key = settings.api_key if api_key is None else api_key
    known_devices = set(devices) if devices is not None else None

    def verify_api_key_value(value: str | None) -> bool:
        if not expected_key:
            return True
        return value == expected_key

    def require_api_key(
        header_key: str | None = Security(api_key_header),
        query_key: str | None = Query(default=None, alias="api_key"),
    ) -> str:
        value = header_key or query_key
        if not verify_api_key_value(value):
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")
        return value or ""

    app = FastAPI(title="Telemetry Simulator", version="0.1.0")

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/history", dependencies=[Depends(require_api_key)])
    def history(
        device_id: str = Query(alias="deviceId"),
        range_start: str = Query(alias="rangeStart"),
        range_end: str = Query(alias="rangeEnd"),
        limit: int = Query(default=1000, gt=0, le=10000),
    ) -> dict[str, Any]:
        try:
            start = parse_timestamp(range_start)
            end = parse_timestamp(range_end)
        except ValueError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
        if start > end:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="rangeStart is after rangeEnd")
        if known_devices is not None and device_id not in known_devices:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown device: {device_id}")
        return {"rows": history_rows(device_id, start, end, limit)}

    @app.websocket("/ws")
    async def websocket_stream(websocket: WebSocket) -> None:
        if not verify_api_key_value(websocket.query_params.get("api_key")):
            await websocket.close(code=4401)
            return

        await websocket.accept()
        outbound: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        subscribed: dict[str, int] = {}

        async def sender() -> None:
            while True:
                await websocket.send_json(await outbound.get())

        async def ticker() -> None:
            while True:
                await asyncio.sleep(interval)
                now = utc_now()
                for device_id in list(subscribed):
                    rng = _rng(device_id, _epoch_ms(now))
                    outbound.put_nowait(realtime_frame(device_id, now, rng))
                    subscribed[device_id] += 1
                    if subscribed[device_id] % SPC_EVERY == 0:
                        cycle = subscribed[device_id] // SPC_EVERY
                        outbound.put_nowait(spc_frame(device_id, now, cycle, rng))

        def handle_control(message: Any) -> None:
            if not isinstance(message, dict):
                return
            action = message.get("action")
            device_id = str(message.get("deviceId") or "").strip()
            if action == "subscribe":
                if not device_id or (known_devices is not None and device_id not in known_devices):
                    outbound.put_nowait(
                        {
                            "kind": "subscription-rejected",
                            "deviceId": device_id or "-",
                            "data": {"message": f"Unknown device: {device_id or '-'}"},
                        }
                    )
                    return
                outbound.put_nowait({"kind": "subscription-confirmed", "deviceId": device_id})
                subscribed.setdefault(device_id, 0)
            elif action == "unsubscribe":
                subscribed.pop(device_id, None)
            elif action == "requestStatus" and device_id in subscribed:
                outbound.put_nowait(status_frame(device_id, utc_now()))
            else:
                logger.debug("Ignored control message %s", message)

        tasks = [asyncio.create_task(sender()), asyncio.create_task(ticker())]
        try:
            while True:
                text = await websocket.receive_text()
                try:
                    handle_control(json.loads(text))
                except json.JSONDecodeError:
                    logger.debug("Ignored non-json control message")
        except WebSocketDisconnect:
            pass
        finally:
            for task in tasks:
                task.cancel()
            for task in tasks:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as exc:
                    logger.debug("Simulator task ended: %s", exc)

    return app


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Telemetry channel and history simulator.")
    parser.add_argument("--host", default=settings.simulator_host, help="Bind host")
    parser.add_argument("--port", type=int, default=settings.simulator_port, help="Bind port")
    parser.add_argument("--api-key", default=settings.api_key, help="API key for /ws and /history")
    parser.add_argument("--interval", type=float, default=1.0, help="Seconds between realtime frames")
    parser.add_argument("--device", action="append", default=None, help="Restrict to these device ids")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    app = create_app(api_key=args.api_key, interval=args.interval, devices=args.device)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
