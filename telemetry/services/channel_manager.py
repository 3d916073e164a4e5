from __future__ import annotations

import asyncio
import inspect
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any

from telemetry.api.schemas import ControlMessage
from telemetry.channel.base import ChannelTransport
from telemetry.time_utils import utc_now

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    last_error: str | None = None
    reconnect_attempts: int = 0
    connected_at: datetime | None = None

    @property
    def is_connected(self) -> bool:
        return self.status is ConnectionStatus.CONNECTED


@dataclass(frozen=True)
class SendResult:
    ok: bool
    error: str | None = None


MessageHandler = Callable[[str | bytes], None]
StateListener = Callable[[ConnectionState, ConnectionState], Awaitable[None] | None]


class ChannelManager:
    def __init__(
        self,
        transport_factory: Callable[[], ChannelTransport],
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
    ) -> None:
        self._transport_factory = transport_factory
        self.initial_backoff = initial_backoff
        self.max_backoff = max(max_backoff, initial_backoff)
        self._state = ConnectionState()
        self._transport: ChannelTransport | None = None
        self._task: asyncio.Task[Any] | None = None
        self._first_attempt: asyncio.Event | None = None
        self._stopping = False
        self._handlers: list[MessageHandler] = []
        self._listeners: list[StateListener] = []

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    def on_message(self, handler: MessageHandler) -> Callable[[], None]:
        self._handlers.append(handler)
        return _remover(self._handlers, handler)

    def on_state_change(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return _remover(self._listeners, listener)

    async def connect(self) -> bool:
        if self._task is not None and not self._task.done():
            if self._first_attempt is not None:
                await self._first_attempt.wait()
            return self._state.is_connected

        self._stopping = False
        self._first_attempt = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="telemetry-channel")
        await self._first_attempt.wait()
        return self._state.is_connected

    async def disconnect(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as exc:  # pragma: no cover
                logger.exception("Channel task shutdown failed: %s", exc)
        if self._first_attempt is not None:
            self._first_attempt.set()
        if self._state.status is not ConnectionStatus.DISCONNECTED:
            await self._set_state(status=ConnectionStatus.DISCONNECTED, connected_at=None)

    async def send(self, message: ControlMessage | Mapping[str, Any]) -> SendResult:
        transport = self._transport
        if transport is None or not self._state.is_connected:
            return SendResult(ok=False, error="not connected")

        wire = message.to_wire() if isinstance(message, ControlMessage) else dict(message)
        try:
            await transport.send(json.dumps(wire))
        except Exception as exc:
            logger.warning("Channel send failed action=%s: %s", wire.get("action"), exc)
            return SendResult(ok=False, error=str(exc))
        return SendResult(ok=True)

    async def _run(self) -> None:
        backoff = self.initial_backoff

        while not self._stopping:
            await self._set_state(status=ConnectionStatus.CONNECTING)
            transport = self._transport_factory()
            try:
                await transport.open()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                attempts = self._state.reconnect_attempts + 1
                logger.warning("Channel connect failed (attempt %s): %s; retry in %.1fs", attempts, exc, backoff)
                await self._set_state(
                    status=ConnectionStatus.DISCONNECTED,
                    last_error=str(exc),
                    reconnect_attempts=attempts,
                )
                self._release_connect_waiters()
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, self.max_backoff)
                continue

            backoff = self.initial_backoff
            self._transport = transport
            logger.info("Channel connected")
            await self._set_state(
                status=ConnectionStatus.CONNECTED,
                last_error=None,
                reconnect_attempts=0,
                connected_at=utc_now(),
            )
            self._release_connect_waiters()

            error = "connection closed"
            try:
                while True:
                    payload = await transport.recv()
                    self._dispatch(payload)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = str(exc)
            finally:
                self._transport = None
                await self._close_quietly(transport)

            if self._stopping:
                break
            attempts = self._state.reconnect_attempts + 1
            logger.warning("Channel dropped: %s; reconnect in %.1fs", error, backoff)
            await self._set_state(
                status=ConnectionStatus.DISCONNECTED,
                last_error=error,
                reconnect_attempts=attempts,
                connected_at=None,
            )
            await asyncio.sleep(backoff)
            backoff = min(backoff * 2, self.max_backoff)

    def _dispatch(self, payload: str | bytes) -> None:
        for handler in list(self._handlers):
            try:
                handler(payload)
            except Exception:
                logger.exception("Channel message handler failed")

    async def _set_state(self, **changes: Any) -> None:
        previous = self._state
        self._state = replace(previous, **changes)
        if self._state == previous:
            return
        for listener in list(self._listeners):
            try:
                result = listener(self._state, previous)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connection state listener failed")

    def _release_connect_waiters(self) -> None:
        if self._first_attempt is not None:
            self._first_attempt.set()

    async def _close_quietly(self, transport: ChannelTransport) -> None:
        try:
            await transport.close()
        except Exception as exc:
            logger.debug("Channel close failed: %s", exc)


def _remover(items: list[Any], item: Any) -> Callable[[], None]:
    def remove() -> None:
        if item in items:
            items.remove(item)

    return remove
