from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW
from telemetry.models import CanonicalSample, SourceType
from telemetry.services.series_store import SeriesStore
from telemetry.time_utils import TimeRange


def sample(
    at,
    source=SourceType.REALTIME,
    device_id="m-1",
    cycle=None,
    t1=200.0,
    status=2,
) -> CanonicalSample:
    return CanonicalSample(
        device_id=device_id,
        timestamp=at,
        source_type=source,
        temperatures={"T1": t1},
        status=status,
        cycle_number=cycle,
    )


@pytest.fixture
def store() -> SeriesStore:
    return SeriesStore(max_points=1000, retention=timedelta(hours=4), clock=lambda: NOW)


class TestOrdering:
    def test_distinct_timestamps_are_kept_in_ascending_order(self, store):
        stamps = [NOW - timedelta(seconds=s) for s in (5, 1, 9, 3, 7, 0, 2)]
        for at in stamps:
            store.insert("m-1", sample(at))

        result = store.read("m-1")
        assert len(result) == len(stamps)
        assert [s.timestamp for s in result] == sorted(stamps)

    def test_read_of_unknown_device_is_empty(self, store):
        assert store.read("nope") == ()
        assert store.latest("nope") is None

    def test_read_by_range_is_inclusive(self, store):
        store.insert_many("m-1", [sample(NOW - timedelta(minutes=m)) for m in range(10)])
        window = TimeRange(NOW - timedelta(minutes=3), NOW - timedelta(minutes=1))
        assert len(store.read("m-1", window)) == 3

    def test_latest_is_newest_sample(self, store):
        store.insert_many("m-1", [sample(NOW), sample(NOW - timedelta(seconds=30))])
        assert store.latest("m-1").timestamp == NOW

    def test_samples_for_another_device_are_skipped(self, store):
        change = store.insert("m-1", sample(NOW, device_id="m-2"))
        assert change.skipped == 1
        assert store.read("m-1") == ()


class TestMergeRules:
    def test_spc_replaces_same_cycle(self, store):
        store.insert("m-1", sample(NOW - timedelta(seconds=10), SourceType.SPC, cycle=7, t1=1.0))
        change = store.insert("m-1", sample(NOW, SourceType.SPC, cycle=7, t1=2.0))

        result = store.read("m-1")
        assert change.replaced == 1
        assert len(result) == 1
        assert result[0].temperatures["T1"] == 2.0
        assert result[0].timestamp == NOW

    def test_realtime_replaces_realtime_at_same_instant(self, store):
        store.insert("m-1", sample(NOW, t1=1.0))
        store.insert("m-1", sample(NOW, t1=2.0))
        (only,) = store.read("m-1")
        assert only.temperatures["T1"] == 2.0

    def test_live_frame_wins_over_backfilled_rows(self, store):
        rows = [sample(NOW - timedelta(minutes=m), SourceType.HISTORICAL, t1=100.0) for m in range(50)]
        store.insert_many("m-1", rows)
        collision = NOW - timedelta(minutes=17)

        store.insert("m-1", sample(collision, SourceType.REALTIME, t1=250.0))

        result = store.read("m-1")
        matching = [s for s in result if s.timestamp == collision]
        assert len(result) == 50
        assert len(matching) == 1
        assert matching[0].source_type is SourceType.REALTIME
        assert matching[0].temperatures["T1"] == 250.0

    def test_late_backfill_does_not_displace_live_sample(self, store):
        store.insert("m-1", sample(NOW, SourceType.REALTIME, t1=250.0))
        change = store.insert("m-1", sample(NOW, SourceType.HISTORICAL, t1=100.0))

        assert change.skipped == 1
        assert not change.changed
        (only,) = store.read("m-1")
        assert only.source_type is SourceType.REALTIME

    def test_historical_refreshes_historical(self, store):
        store.insert("m-1", sample(NOW, SourceType.HISTORICAL, t1=1.0))
        store.insert("m-1", sample(NOW, SourceType.HISTORICAL, t1=2.0))
        (only,) = store.read("m-1")
        assert only.temperatures["T1"] == 2.0

    def test_spc_and_realtime_at_same_instant_coexist(self, store):
        store.insert_many("m-1", [sample(NOW), sample(NOW, SourceType.SPC, cycle=1)])
        assert len(store.read("m-1")) == 2
        assert store.latest_of("m-1", {SourceType.REALTIME}).source_type is SourceType.REALTIME

    def test_read_filters_source_types(self, store):
        store.insert_many(
            "m-1",
            [
                sample(NOW - timedelta(seconds=2), SourceType.HISTORICAL),
                sample(NOW - timedelta(seconds=1), SourceType.SPC, cycle=3),
                sample(NOW),
            ],
        )
        result = store.read("m-1", source_types={SourceType.HISTORICAL, SourceType.REALTIME})
        assert [s.source_type for s in result] == [SourceType.HISTORICAL, SourceType.REALTIME]


class TestBounds:
    def test_count_cap_evicts_oldest(self):
        store = SeriesStore(max_points=5, retention=None)
        change = store.insert_many("m-1", [sample(NOW + timedelta(seconds=s)) for s in range(8)])

        result = store.read("m-1")
        assert change.evicted == 3
        assert len(result) == 5
        assert result[0].timestamp == NOW + timedelta(seconds=3)

    def test_retention_window_is_measured_from_newest_sample(self):
        store = SeriesStore(max_points=100, retention=timedelta(hours=4))
        store.insert("m-1", sample(NOW - timedelta(hours=5)))
        store.insert("m-1", sample(NOW - timedelta(hours=3)))
        store.insert("m-1", sample(NOW))

        assert [s.timestamp for s in store.read("m-1")] == [NOW - timedelta(hours=3), NOW]

    def test_retention_window_leaves_backfilled_rows_alone(self):
        store = SeriesStore(max_points=100, retention=timedelta(hours=4))
        store.insert("m-1", sample(NOW - timedelta(hours=6)))
        store.insert("m-1", sample(NOW - timedelta(hours=5), SourceType.SPC, cycle=1))
        backfill = [sample(NOW - timedelta(hours=h), SourceType.HISTORICAL) for h in (20, 10, 2)]
        store.insert_many("m-1", backfill)

        change = store.insert("m-1", sample(NOW))

        assert change.evicted == 2
        assert [(s.source_type, s.timestamp) for s in store.read("m-1")] == [
            (SourceType.HISTORICAL, NOW - timedelta(hours=20)),
            (SourceType.HISTORICAL, NOW - timedelta(hours=10)),
            (SourceType.HISTORICAL, NOW - timedelta(hours=2)),
            (SourceType.REALTIME, NOW),
        ]
        # the cycle slot is free again
        store.insert("m-1", sample(NOW, SourceType.SPC, cycle=1))
        assert store.summary("m-1")["spc"] == 1

    def test_retained_counts_batch_rows_that_survive_pruning(self):
        store = SeriesStore(max_points=3, retention=timedelta(hours=4))
        store.insert("m-1", sample(NOW))
        change = store.insert_many(
            "m-1",
            [sample(NOW - timedelta(hours=h), SourceType.HISTORICAL) for h in (1, 2, 30)]
            + [sample(NOW, SourceType.HISTORICAL)],
        )

        assert change.inserted == 3
        assert change.skipped == 1
        assert change.evicted == 1
        assert change.retained == 2
        assert [s.timestamp for s in store.read("m-1")] == [
            NOW - timedelta(hours=2),
            NOW - timedelta(hours=1),
            NOW,
        ]

    def test_evicted_slot_accepts_new_sample(self):
        store = SeriesStore(max_points=1, retention=None)
        store.insert("m-1", sample(NOW))
        store.insert("m-1", sample(NOW + timedelta(seconds=1)))
        change = store.insert("m-1", sample(NOW, SourceType.HISTORICAL))
        # the re-added oldest sample is evicted again straight away
        assert change.inserted == 1
        assert change.evicted == 1
        assert store.latest("m-1").timestamp == NOW + timedelta(seconds=1)

    def test_explicit_prune(self, store):
        store.insert_many("m-1", [sample(NOW + timedelta(seconds=s)) for s in range(10)])
        assert store.prune("m-1", max_size=4) == 6
        assert len(store.read("m-1")) == 4


class TestListenersAndSummary:
    def test_listener_sees_changes_only(self, store):
        changes = []
        remove = store.add_listener(changes.append)

        store.insert("m-1", sample(NOW))
        store.insert("m-1", sample(NOW, SourceType.HISTORICAL))
        remove()
        store.insert("m-1", sample(NOW + timedelta(seconds=1)))

        assert len(changes) == 1
        assert changes[0].inserted == 1
        assert changes[0].source_types == {SourceType.REALTIME}

    def test_summary_counts_by_source(self, store):
        store.insert_many(
            "m-1",
            [sample(NOW - timedelta(seconds=1), SourceType.HISTORICAL), sample(NOW), sample(NOW, SourceType.SPC, cycle=1)],
        )
        summary = store.summary("m-1")
        assert summary["total"] == 3
        assert summary["historical"] == 1
        assert summary["realtime"] == 1
        assert summary["spc"] == 1
        assert summary["last_update"] == NOW

    def test_returned_samples_are_immutable(self, store):
        store.insert("m-1", sample(NOW))
        (only,) = store.read("m-1")
        with pytest.raises(TypeError):
            only.temperatures["T1"] = 0.0
