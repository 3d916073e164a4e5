from __future__ import annotations

from typing import Any

from telemetry.channel.base import ChannelTransport
from telemetry.channel.websocket_channel import WebSocketTransport


def build_transport(connection_params: dict[str, Any]) -> ChannelTransport:
    url = str(connection_params.get("url", ""))
    scheme = url.split("://", 1)[0].lower()
    if scheme in {"ws", "wss"}:
        return WebSocketTransport(connection_params)
    raise ValueError(f"Unsupported channel url: {url}")


__all__ = ["build_transport", "ChannelTransport"]
