from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class ChannelTransport(ABC):
    """One physical duplex connection. Opened and closed by the channel manager only."""

    def __init__(self, connection_params: dict[str, Any]):
        self.connection_params = connection_params

    @abstractmethod
    async def open(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def close(self) -> None:
        raise NotImplementedError

    @abstractmethod
    async def send(self, payload: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def recv(self) -> str | bytes:
        """Wait for the next frame. Raises ChannelConnectionError once the connection is gone."""
        raise NotImplementedError
