from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from datetime import datetime
from typing import Any

from telemetry.api.schemas import ConsumerOptions, ControlMessage
from telemetry.errors import ChannelConnectionError, QueryError, TelemetryError
from telemetry.models import CanonicalSample, SourceType
from telemetry.services.channel_manager import ChannelManager
from telemetry.services.event_bus import EventBus, offer
from telemetry.services.query_facade import QueryFacade, QueryResult
from telemetry.services.series_store import SeriesStore
from telemetry.services.status import DeviceStatus, Freshness, StatusTracker, classify_freshness, data_age
from telemetry.services.subscription_registry import SubscriptionRegistry
from telemetry.time_utils import TimeRange, utc_now

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[dict[str, Any]], None]

# ends an updates() iterator
_CLOSED = object()


class ConsumerHandle:
    """One consumer's view of a device: merged samples, status and health.

    Every handle must be closed (or used as an async context manager) so its
    share of the live subscription is released.
    """

    def __init__(self, consumer: TelemetryConsumer, device_id: str, options: ConsumerOptions) -> None:
        self._consumer = consumer
        self.device_id = device_id
        self.options = options
        self._active = False
        self._closed = False
        self._query_error: QueryError | None = None
        self._backfill: asyncio.Task[QueryResult] | None = None
        self._unlisteners: list[Callable[[], None]] = []
        self._queues: set[asyncio.Queue[Any]] = set()

    @property
    def source_types(self) -> frozenset[SourceType]:
        sources = {SourceType.HISTORICAL}
        if self.options.enable_realtime:
            sources.add(SourceType.REALTIME)
        if self.options.enable_spc:
            sources.add(SourceType.SPC)
        return frozenset(sources)

    @property
    def active(self) -> bool:
        return self._active

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def samples(self) -> tuple[CanonicalSample, ...]:
        return self._consumer.store.read(self.device_id, source_types=self.source_types)

    def read(self, time_range: TimeRange | None = None) -> tuple[CanonicalSample, ...]:
        return self._consumer.store.read(self.device_id, time_range=time_range, source_types=self.source_types)

    @property
    def latest(self) -> CanonicalSample | None:
        return self._consumer.store.latest_of(self.device_id, self.source_types)

    @property
    def status(self) -> DeviceStatus:
        fallback = self._consumer.store.latest_of(self.device_id, (SourceType.REALTIME, SourceType.HISTORICAL))
        return self._consumer.tracker.current(self.device_id, fallback=fallback)

    @property
    def is_connected(self) -> bool:
        return self._consumer.channel.is_connected

    @property
    def error(self) -> TelemetryError | None:
        subscription_error = self._consumer.registry.error_for(self.device_id)
        if subscription_error is not None:
            return subscription_error
        if self._query_error is not None:
            return self._query_error
        state = self._consumer.channel.state
        if not state.is_connected and state.last_error:
            return ChannelConnectionError(state.last_error)
        return None

    @property
    def backfill(self) -> asyncio.Task[QueryResult] | None:
        return self._backfill

    def data_age(self, now: datetime | None = None) -> float | None:
        return data_age(self.latest, now or self._consumer.clock())

    def freshness(self, now: datetime | None = None) -> Freshness:
        return classify_freshness(
            self.data_age(now),
            aging_after=self._consumer.aging_after,
            stale_after=self._consumer.stale_after,
        )

    async def activate(self) -> None:
        if self._active or self._closed:
            return
        self._active = True
        await self._consumer.registry.acquire(self.device_id)
        self._backfill = asyncio.create_task(
            self.request_range(self.options.historical_range),
            name=f"backfill-{self.device_id}",
        )

    async def request_range(self, time_range: TimeRange | str) -> QueryResult:
        self._consumer.registry.set_requested_range(self.device_id, time_range)
        result = await self._consumer.query.fetch_range(self.device_id, time_range, owner=self)
        if result.ok:
            self._query_error = None
        elif result.error is not None:
            self._query_error = result.error
        return result

    async def refresh(self) -> QueryResult:
        if self.is_connected:
            await self._consumer.channel.send(ControlMessage(action="requestStatus", device_id=self.device_id))
        return await self.request_range(self.options.historical_range)

    def on_update(self, callback: UpdateCallback) -> Callable[[], None]:
        """Call ``callback`` for this device's events and for connection changes."""

        def deliver(event: dict[str, Any]) -> None:
            if self._accepts(event):
                callback(event)

        remove_device = self._consumer.bus.listen(deliver, topic=self.device_id)
        remove_connection = self._listen_connection(callback)

        def remove() -> None:
            remove_device()
            remove_connection()

        self._unlisteners.append(remove)
        return remove

    async def updates(self) -> AsyncIterator[dict[str, Any]]:
        """Iterate this device's events and connection changes until the handle closes."""
        if self._closed:
            return
        bus = self._consumer.bus
        queue = bus.subscribe(self.device_id)
        remove_connection = self._listen_connection(lambda event: offer(queue, event))
        self._queues.add(queue)
        try:
            while True:
                event = await queue.get()
                if event is _CLOSED or self._closed:
                    break
                if self._accepts(event):
                    yield event
        finally:
            self._queues.discard(queue)
            remove_connection()
            bus.unsubscribe(queue, self.device_id)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for remove in self._unlisteners:
            remove()
        self._unlisteners.clear()
        for queue in list(self._queues):
            offer(queue, _CLOSED)
        if self._backfill is not None and not self._backfill.done():
            self._backfill.cancel()
        self._consumer.query.cancel_owner(self)
        if self._active:
            self._active = False
            await self._consumer.registry.release(self.device_id)
        self._consumer.detach(self)

    async def __aenter__(self) -> ConsumerHandle:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _listen_connection(self, callback: UpdateCallback) -> Callable[[], None]:
        # connection events are published without a topic
        def deliver(event: dict[str, Any]) -> None:
            if event.get("type") == "connection":
                callback(event)

        return self._consumer.bus.listen(deliver)

    def _accepts(self, event: Mapping[str, Any]) -> bool:
        if event.get("type") != "series_update":
            return True
        sources = event.get("source_types") or ()
        return any(SourceType(source) in self.source_types for source in sources)


class TelemetryConsumer:
    def __init__(
        self,
        channel: ChannelManager,
        registry: SubscriptionRegistry,
        store: SeriesStore,
        query: QueryFacade,
        tracker: StatusTracker,
        bus: EventBus,
        aging_after: float = 5.0,
        stale_after: float = 10.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.channel = channel
        self.registry = registry
        self.store = store
        self.query = query
        self.tracker = tracker
        self.bus = bus
        self.aging_after = aging_after
        self.stale_after = stale_after
        self.clock = clock
        self._handles: set[ConsumerHandle] = set()

    @property
    def handles(self) -> list[ConsumerHandle]:
        return list(self._handles)

    async def subscribe(
        self,
        device_id: str,
        options: ConsumerOptions | Mapping[str, Any] | None = None,
    ) -> ConsumerHandle:
        normalized_id = str(device_id or "").strip()
        if not normalized_id:
            raise ValueError("device_id is required")
        if options is None:
            options = ConsumerOptions()
        elif not isinstance(options, ConsumerOptions):
            options = ConsumerOptions.model_validate(dict(options))

        handle = ConsumerHandle(self, normalized_id, options)
        self._handles.add(handle)
        if options.auto_subscribe:
            await handle.activate()
        return handle

    def detach(self, handle: ConsumerHandle) -> None:
        self._handles.discard(handle)

    async def close_all(self) -> None:
        for handle in list(self._handles):
            await handle.close()
