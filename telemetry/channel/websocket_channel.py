from __future__ import annotations

from typing import Any
from urllib.parse import urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from telemetry.channel.base import ChannelTransport
from telemetry.errors import ChannelConnectionError


def build_ws_url(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parts = urlsplit(url)
    query = f"{parts.query}&" if parts.query else ""
    return urlunsplit(parts._replace(query=query + urlencode({"api_key": api_key})))


class WebSocketTransport(ChannelTransport):
    def __init__(self, connection_params: dict[str, Any]):
        super().__init__(connection_params)
        self._ws = None

    @property
    def url(self) -> str:
        return build_ws_url(str(self.connection_params["url"]), self.connection_params.get("api_key"))

    async def open(self) -> None:
        try:
            self._ws = await websockets.connect(
                self.url,
                ping_interval=float(self.connection_params.get("ping_interval", 20)),
                ping_timeout=float(self.connection_params.get("ping_timeout", 20)),
                open_timeout=float(self.connection_params.get("open_timeout", 10)),
            )
        except (OSError, TimeoutError, InvalidHandshake, InvalidURI) as exc:
            self._ws = None
            raise ChannelConnectionError(f"connect failed: {exc}") from exc

    async def close(self) -> None:
        if self._ws is not None:
            ws, self._ws = self._ws, None
            await ws.close()

    async def send(self, payload: str) -> None:
        if self._ws is None:
            raise ChannelConnectionError("websocket is not open")
        try:
            await self._ws.send(payload)
        except ConnectionClosed as exc:
            raise ChannelConnectionError(f"send failed: {exc}") from exc

    async def recv(self) -> str | bytes:
        if self._ws is None:
            raise ChannelConnectionError("websocket is not open")
        try:
            return await self._ws.recv()
        except ConnectionClosed as exc:
            raise ChannelConnectionError(f"connection closed: {exc}") from exc
