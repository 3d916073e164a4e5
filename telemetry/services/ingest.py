from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from telemetry.errors import NormalizationError
from telemetry.models import NormalizedFrame
from telemetry.services.alerts import AlertFeed
from telemetry.services.event_bus import EventBus
from telemetry.services.normalizer import Normalizer
from telemetry.services.series_store import SeriesStore
from telemetry.services.status import DeviceStatus, StatusTracker
from telemetry.services.subscription_registry import SubscriptionRegistry

logger = logging.getLogger(__name__)


def status_message(status: DeviceStatus) -> dict[str, Any]:
    return {
        "type": "status_update",
        "device_id": status.device_id,
        "state": status.state.value,
        "code": status.code,
        "operation_mode": status.operation_mode,
        "timestamp": status.timestamp.isoformat() if status.timestamp else None,
        "source": status.source,
    }


class FrameIngestor:
    """Routes every inbound channel frame, in arrival order, to the component that owns it."""

    def __init__(
        self,
        normalizer: Normalizer,
        store: SeriesStore,
        tracker: StatusTracker,
        alerts: AlertFeed,
        registry: SubscriptionRegistry,
        bus: EventBus,
    ) -> None:
        self._normalizer = normalizer
        self._store = store
        self._tracker = tracker
        self._alerts = alerts
        self._registry = registry
        self._bus = bus
        self.accepted = 0
        self.dropped = 0

    def stats(self) -> dict[str, int]:
        return {"accepted": self.accepted, "dropped": self.dropped}

    def handle(self, payload: str | bytes | Mapping[str, Any]) -> NormalizedFrame | None:
        try:
            frame = self._normalizer.normalize(payload)
        except NormalizationError as exc:
            self.dropped += 1
            logger.warning("Dropped frame device_id=%s: %s", exc.device_id or "-", exc.reason)
            return None

        self.accepted += 1

        if frame.samples:
            # status first, so series listeners observe the matching state
            for sample in frame.samples:
                status = self._tracker.observe_sample(sample)
                if status is not None:
                    self._bus.publish(status_message(status), topic=frame.device_id)
            self._store.insert_many(frame.device_id, frame.samples)

        if frame.status is not None:
            status = self._tracker.observe_status(frame.status)
            self._bus.publish(status_message(status), topic=frame.device_id)

        if frame.alert is not None:
            self._alerts.add(frame.alert)
            self._bus.publish(
                {
                    "type": "alert",
                    "device_id": frame.alert.device_id,
                    "timestamp": frame.alert.timestamp.isoformat(),
                    "alert_type": frame.alert.type,
                    "message": frame.alert.message,
                    "severity": frame.alert.severity,
                },
                topic=frame.device_id,
            )

        if frame.ack is not None:
            self._registry.handle_ack(frame.ack)
            self._bus.publish(
                {
                    "type": "subscription",
                    "device_id": frame.ack.device_id,
                    "accepted": frame.ack.accepted,
                    "message": frame.ack.message,
                },
                topic=frame.device_id,
            )
        return frame
