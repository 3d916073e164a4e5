from __future__ import annotations

import asyncio
import json
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
import pytest_asyncio

from config.settings import settings
from telemetry.api.schemas import HistoryQuery, HistoryResponse
from telemetry.channel.base import ChannelTransport
from telemetry.errors import ChannelConnectionError, QueryError
from telemetry.services.runtime import TelemetryRuntime

NOW = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


def epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def realtime_frame(device_id: str, at: datetime, status: int = 2, **readings: Any) -> dict[str, Any]:
    data = {"T1": 210.5, "T2": 215.0, "OT": 45.2, "STS": status, "OPM": 1, "ATST": 1}
    data.update(readings)
    return {"kind": "realtime", "deviceId": device_id, "timestamp": epoch_ms(at), "data": {"Data": data}}


def history_row(at: datetime, status: int = 2, **readings: Any) -> dict[str, Any]:
    row = {"_time": at.isoformat(), "temp_1": 200.0, "temp_2": 205.0, "oil_temp": 44.0, "status": status}
    row.update(readings)
    return row


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


class FakeTransport(ChannelTransport):
    def __init__(self, server: FakeChannelServer):
        super().__init__({"url": "ws://fake/ws"})
        self._server = server
        self.inbound: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = False

    async def open(self) -> None:
        self._server.opens += 1
        if self._server.fail_opens > 0:
            self._server.fail_opens -= 1
            raise ChannelConnectionError("connection refused")
        self._server.current = self

    async def close(self) -> None:
        self.closed = True
        self.inbound.put_nowait(ChannelConnectionError("closed"))

    async def send(self, payload: str) -> None:
        if self.closed:
            raise ChannelConnectionError("closed")
        if self._server.fail_sends:
            raise ChannelConnectionError("send failed")
        self._server.sent.append(json.loads(payload))

    async def recv(self) -> str | bytes:
        item = await self.inbound.get()
        if isinstance(item, Exception):
            raise item
        return item


class FakeChannelServer:
    """Stands in for the remote channel; hands out one FakeTransport per connection attempt."""

    def __init__(self, fail_opens: int = 0):
        self.fail_opens = fail_opens
        self.fail_sends = False
        self.opens = 0
        self.sent: list[dict[str, Any]] = []
        self.current: FakeTransport | None = None

    def factory(self) -> FakeTransport:
        return FakeTransport(self)

    def push(self, frame: dict[str, Any] | str) -> None:
        assert self.current is not None, "no open connection"
        self.current.inbound.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        assert self.current is not None, "no open connection"
        self.current.inbound.put_nowait(ChannelConnectionError("connection reset"))

    def actions(self, action: str) -> list[str]:
        return [message["deviceId"] for message in self.sent if message["action"] == action]


class FakeHistoryClient:
    def __init__(self, rows: dict[str, list[dict[str, Any]]] | None = None):
        self.rows = rows or {}
        self.calls: list[HistoryQuery] = []
        self.failures: list[Exception] = []
        self.delay = 0.0
        self.closed = False

    async def fetch(self, query: HistoryQuery) -> HistoryResponse:
        self.calls.append(query)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures:
            raise self.failures.pop(0)
        return HistoryResponse(rows=self.rows.get(query.device_id, []))

    def close(self) -> None:
        self.closed = True


def retryable_error(status_code: int = 503) -> QueryError:
    return QueryError(f"history request failed: {status_code}", retryable=True, status_code=status_code)


@pytest.fixture
def channel_server() -> FakeChannelServer:
    return FakeChannelServer()


@pytest.fixture
def history_client() -> FakeHistoryClient:
    return FakeHistoryClient()


@pytest.fixture
def fast_settings():
    return replace(
        settings,
        channel_initial_backoff=0.01,
        channel_max_backoff=0.04,
        query_backoff=0.001,
    )


@pytest_asyncio.fixture
async def runtime(fast_settings, channel_server, history_client):
    rt = TelemetryRuntime(
        fast_settings,
        transport_factory=channel_server.factory,
        history_client=history_client,
        clock=lambda: NOW + timedelta(seconds=1),
    )
    yield rt
    await rt.shutdown()
