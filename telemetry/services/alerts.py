from __future__ import annotations

from collections import deque

from telemetry.models import Alert


class AlertFeed:
    def __init__(self, max_alerts: int = 50) -> None:
        self._alerts: deque[Alert] = deque(maxlen=max_alerts)

    def add(self, alert: Alert) -> None:
        self._alerts.appendleft(alert)

    def recent(self, device_id: str | None = None) -> list[Alert]:
        """Newest first, optionally for one device."""
        if device_id is None:
            return list(self._alerts)
        return [alert for alert in self._alerts if alert.device_id == device_id]

    def remove(self, index: int) -> None:
        del self._alerts[index]

    def clear(self) -> None:
        self._alerts.clear()

    def __len__(self) -> int:
        return len(self._alerts)
