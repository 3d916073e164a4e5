from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from telemetry.api.schemas import ControlMessage
from telemetry.errors import SubscriptionError
from telemetry.models import SubscriptionAck
from telemetry.services.channel_manager import ChannelManager, ConnectionState, ConnectionStatus, SendResult
from telemetry.time_utils import TimeRange

logger = logging.getLogger(__name__)


@dataclass
class SubscriptionRecord:
    device_id: str
    ref_count: int = 0
    live_active: bool = False
    last_requested_range: TimeRange | str | None = None
    error: SubscriptionError | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "ref_count": self.ref_count,
            "live_active": self.live_active,
            "last_requested_range": self.last_requested_range,
            "error": str(self.error) if self.error else None,
        }


class SubscriptionRegistry:
    """Ref-counted live subscriptions shared by every consumer of the channel.

    Ref-count changes are applied before any network call. A release that
    drops a device to zero yields once before unsubscribing, so a same-tick
    re-acquire keeps the existing live subscription instead of flickering.
    """

    def __init__(self, channel: ChannelManager) -> None:
        self._channel = channel
        self._records: dict[str, SubscriptionRecord] = {}
        self._remove_listener = channel.on_state_change(self._on_state_change)

    def get(self, device_id: str) -> SubscriptionRecord | None:
        return self._records.get(device_id)

    def ref_count(self, device_id: str) -> int:
        record = self._records.get(device_id)
        return record.ref_count if record is not None else 0

    def active_devices(self) -> list[str]:
        return [device_id for device_id, record in self._records.items() if record.ref_count > 0]

    def error_for(self, device_id: str) -> SubscriptionError | None:
        record = self._records.get(device_id)
        return record.error if record is not None else None

    def snapshot(self) -> list[dict[str, Any]]:
        return [record.to_dict() for record in self._records.values()]

    async def acquire(self, device_id: str) -> SubscriptionRecord:
        record = self._records.get(device_id)
        if record is None:
            record = SubscriptionRecord(device_id=device_id)
            self._records[device_id] = record
        record.ref_count += 1

        if not record.live_active:
            await self._subscribe(record)
        return record

    async def release(self, device_id: str) -> None:
        record = self._records.get(device_id)
        if record is None or record.ref_count <= 0:
            logger.warning("Release without matching acquire device_id=%s", device_id)
            return
        record.ref_count -= 1
        if record.ref_count > 0:
            return

        # let acquirers scheduled in the same tick land before deciding
        await asyncio.sleep(0)
        if record.ref_count > 0 or self._records.get(device_id) is not record:
            return

        del self._records[device_id]
        if record.live_active:
            record.live_active = False
            result = await self._channel.send(ControlMessage(action="unsubscribe", device_id=device_id))
            if not result.ok:
                logger.info("Unsubscribe not delivered device_id=%s: %s", device_id, result.error)

    def set_requested_range(self, device_id: str, time_range: TimeRange | str) -> None:
        record = self._records.get(device_id)
        if record is not None:
            record.last_requested_range = time_range

    def handle_ack(self, ack: SubscriptionAck) -> None:
        record = self._records.get(ack.device_id)
        if record is None:
            return
        if ack.accepted:
            record.error = None
            return
        record.live_active = False
        record.error = SubscriptionError(ack.device_id, ack.message or "rejected by server")
        logger.warning("%s", record.error)

    async def resubscribe_all(self) -> int:
        sent = 0
        for record in list(self._records.values()):
            if record.ref_count <= 0:
                continue
            if await self._subscribe(record):
                sent += 1
        return sent

    def clear(self) -> None:
        self._records.clear()

    def close(self) -> None:
        self._remove_listener()
        self._records.clear()

    async def _subscribe(self, record: SubscriptionRecord) -> bool:
        # optimistic so that concurrent acquirers do not double-subscribe
        record.live_active = True
        result = await self._send(ControlMessage(action="subscribe", device_id=record.device_id))
        if not result.ok:
            record.live_active = False
            if self._channel.is_connected:
                record.error = SubscriptionError(record.device_id, result.error or "send failed")
            return False
        record.error = None
        await self._send(ControlMessage(action="requestStatus", device_id=record.device_id))
        return True

    async def _send(self, message: ControlMessage) -> SendResult:
        result = await self._channel.send(message)
        if not result.ok:
            logger.debug("Control message %s for %s not sent: %s", message.action, message.device_id, result.error)
        return result

    async def _on_state_change(self, state: ConnectionState, previous: ConnectionState) -> None:
        if state.status is ConnectionStatus.DISCONNECTED:
            for record in self._records.values():
                record.live_active = False
            return
        if state.status is ConnectionStatus.CONNECTED and previous.status is not ConnectionStatus.CONNECTED:
            count = await self.resubscribe_all()
            if count:
                logger.info("Re-issued %s live subscriptions after connect", count)
