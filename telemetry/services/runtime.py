from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from config.settings import Settings, settings as default_settings
from telemetry.api.schemas import ConsumerOptions
from telemetry.channel import build_transport
from telemetry.channel.base import ChannelTransport
from telemetry.channel.history_client import HistoryClient
from telemetry.models import StoreChange
from telemetry.services.alerts import AlertFeed
from telemetry.services.channel_manager import ChannelManager, ConnectionState
from telemetry.services.consumer import ConsumerHandle, TelemetryConsumer
from telemetry.services.event_bus import EventBus
from telemetry.services.ingest import FrameIngestor
from telemetry.services.normalizer import Normalizer
from telemetry.services.query_facade import HistorySource, QueryFacade
from telemetry.services.series_store import SeriesStore
from telemetry.services.status import StatusTracker
from telemetry.services.subscription_registry import SubscriptionRegistry
from telemetry.time_utils import utc_now

logger = logging.getLogger(__name__)


class TelemetryRuntime:
    """Owns the one channel and every component that shares it."""

    def __init__(
        self,
        config: Settings | None = None,
        transport_factory: Callable[[], ChannelTransport] | None = None,
        history_client: HistorySource | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = config or default_settings
        cfg = self.settings

        self.bus = EventBus()
        self.normalizer = Normalizer()
        self.store = SeriesStore(
            max_points=cfg.series_max_points,
            retention=timedelta(seconds=cfg.series_retention_seconds) if cfg.series_retention_seconds > 0 else None,
            clock=clock,
        )
        self.tracker = StatusTracker()
        self.alerts = AlertFeed(cfg.alert_history_size)
        self.channel = ChannelManager(
            transport_factory or self._build_transport,
            initial_backoff=cfg.channel_initial_backoff,
            max_backoff=cfg.channel_max_backoff,
        )
        self.registry = SubscriptionRegistry(self.channel)
        self.history_client = history_client or HistoryClient(cfg.api_base, cfg.api_key, timeout=cfg.query_timeout)
        self.query = QueryFacade(
            self.history_client,
            self.normalizer,
            self.store,
            max_attempts=cfg.query_max_attempts,
            backoff=cfg.query_backoff,
            row_limit=cfg.query_row_limit,
            clock=clock,
        )
        self.ingestor = FrameIngestor(self.normalizer, self.store, self.tracker, self.alerts, self.registry, self.bus)
        self.consumer = TelemetryConsumer(
            self.channel,
            self.registry,
            self.store,
            self.query,
            self.tracker,
            self.bus,
            aging_after=cfg.freshness_aging_seconds,
            stale_after=cfg.freshness_stale_seconds,
            clock=clock,
        )
        self._unhooks = [
            self.channel.on_message(self.ingestor.handle),
            self.channel.on_state_change(self._publish_connection),
            self.store.add_listener(self._publish_change),
        ]

    async def startup(self) -> bool:
        connected = await self.channel.connect()
        if not connected:
            logger.warning("Telemetry channel not connected yet: %s", self.channel.state.last_error)
        return connected

    async def shutdown(self) -> None:
        await self.consumer.close_all()
        await self.query.close()
        await self.channel.disconnect()
        self.registry.close()
        for unhook in self._unhooks:
            unhook()
        self._unhooks.clear()
        self.bus.clear()
        close = getattr(self.history_client, "close", None)
        if callable(close):
            close()

    async def subscribe(
        self,
        device_id: str,
        options: ConsumerOptions | Mapping[str, Any] | None = None,
    ) -> ConsumerHandle:
        return await self.consumer.subscribe(device_id, options)

    def health(self) -> dict[str, Any]:
        state = self.channel.state
        return {
            "connection": {
                "status": state.status.value,
                "last_error": state.last_error,
                "reconnect_attempts": state.reconnect_attempts,
                "connected_at": state.connected_at.isoformat() if state.connected_at else None,
            },
            "subscriptions": self.registry.snapshot(),
            "ingest": self.ingestor.stats(),
            "devices": {device_id: self.store.summary(device_id)["total"] for device_id in self.store.devices()},
            "inflight_queries": self.query.inflight_count(),
            "alerts": len(self.alerts),
        }

    def _build_transport(self) -> ChannelTransport:
        return build_transport(
            {
                "url": self.settings.ws_url,
                "api_key": self.settings.api_key,
                "open_timeout": self.settings.channel_open_timeout,
            }
        )

    def _publish_change(self, change: StoreChange) -> None:
        self.bus.publish(
            {
                "type": "series_update",
                "device_id": change.device_id,
                "inserted": change.inserted,
                "replaced": change.replaced,
                "evicted": change.evicted,
                "source_types": sorted(source.value for source in change.source_types),
                "latest": change.latest.to_message() if change.latest else None,
            },
            topic=change.device_id,
        )

    def _publish_connection(self, state: ConnectionState, previous: ConnectionState) -> None:
        self.bus.publish(
            {
                "type": "connection",
                "status": state.status.value,
                "previous": previous.status.value,
                "last_error": state.last_error,
                "reconnect_attempts": state.reconnect_attempts,
            }
        )


_runtime: TelemetryRuntime | None = None


def get_runtime() -> TelemetryRuntime:
    global _runtime
    if _runtime is None:
        _runtime = TelemetryRuntime()
    return _runtime


async def reset_runtime() -> None:
    global _runtime
    runtime, _runtime = _runtime, None
    if runtime is not None:
        await runtime.shutdown()
