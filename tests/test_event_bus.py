from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW
from telemetry.models import Alert
from telemetry.services.alerts import AlertFeed
from telemetry.services.event_bus import EventBus


class TestEventBus:
    @pytest.mark.asyncio
    async def test_topic_and_wildcard_delivery(self):
        bus = EventBus()
        everything = bus.subscribe()
        device = bus.subscribe("m-1")
        other = bus.subscribe("m-2")

        bus.publish({"type": "series_update"}, topic="m-1")

        assert everything.qsize() == 1
        assert device.qsize() == 1
        assert other.empty()

    @pytest.mark.asyncio
    async def test_full_queue_drops_oldest(self):
        bus = EventBus(maxsize=2)
        queue = bus.subscribe("m-1")
        for seq in range(3):
            bus.publish({"seq": seq}, topic="m-1")

        assert [queue.get_nowait()["seq"] for _ in range(queue.qsize())] == [1, 2]

    def test_listeners_and_removal(self):
        bus = EventBus()
        seen = []
        remove = bus.listen(seen.append, topic="m-1")

        bus.publish({"n": 1}, topic="m-1")
        bus.publish({"n": 2}, topic="m-2")
        remove()
        bus.publish({"n": 3}, topic="m-1")

        assert seen == [{"n": 1}]

    def test_failing_listener_does_not_stop_delivery(self):
        bus = EventBus()
        seen = []

        def explode(message):
            raise RuntimeError("boom")

        bus.listen(explode)
        bus.listen(seen.append)
        bus.publish({"type": "alert"})

        assert seen == [{"type": "alert"}]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        queue = bus.subscribe("m-1")
        bus.unsubscribe(queue, "m-1")
        bus.publish({"type": "x"}, topic="m-1")
        assert queue.empty()
        assert bus.subscriber_count("m-1") == 0


class TestAlertFeed:
    def alert(self, n, device_id="m-1"):
        return Alert(device_id, NOW + timedelta(seconds=n), "warning", f"alert {n}", "medium")

    def test_newest_first_and_bounded(self):
        feed = AlertFeed(max_alerts=3)
        for n in range(5):
            feed.add(self.alert(n))

        assert len(feed) == 3
        assert [a.message for a in feed.recent()] == ["alert 4", "alert 3", "alert 2"]

    def test_filter_and_remove(self):
        feed = AlertFeed()
        feed.add(self.alert(1))
        feed.add(self.alert(2, device_id="m-2"))

        assert [a.device_id for a in feed.recent("m-2")] == ["m-2"]
        feed.remove(0)
        assert [a.device_id for a in feed.recent()] == ["m-1"]
        feed.clear()
        assert len(feed) == 0
