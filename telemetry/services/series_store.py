from __future__ import annotations

import logging
from bisect import bisect_left, bisect_right
from collections.abc import Callable, Collection, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from telemetry.models import CanonicalSample, SourceType, StoreChange
from telemetry.time_utils import TimeRange, utc_now

logger = logging.getLogger(__name__)

StoreListener = Callable[[StoreChange], None]

DEFAULT_MAX_POINTS = 1000
DEFAULT_RETENTION = timedelta(hours=4)


@dataclass
class DeviceSeries:
    device_id: str
    samples: list[CanonicalSample] = field(default_factory=list)
    timestamps: list[datetime] = field(default_factory=list)
    # realtime and historical samples share one slot per instant, spc samples one slot per cycle
    measurements: dict[datetime, CanonicalSample] = field(default_factory=dict)
    cycles: dict[int, CanonicalSample] = field(default_factory=dict)
    last_update: datetime | None = None

    def add(self, sample: CanonicalSample) -> None:
        index = bisect_right(self.timestamps, sample.timestamp)
        self.timestamps.insert(index, sample.timestamp)
        self.samples.insert(index, sample)

    def remove(self, sample: CanonicalSample) -> None:
        lo = bisect_left(self.timestamps, sample.timestamp)
        hi = bisect_right(self.timestamps, sample.timestamp)
        for index in range(lo, hi):
            if self.samples[index] is sample:
                del self.samples[index]
                del self.timestamps[index]
                return

    def holds(self, sample: CanonicalSample) -> bool:
        if sample.source_type is SourceType.SPC:
            return self.cycles.get(sample.cycle_number) is sample
        return self.measurements.get(sample.timestamp) is sample

    def evict(self, sample: CanonicalSample) -> None:
        self.remove(sample)
        self._unindex(sample)

    def pop_oldest(self) -> CanonicalSample:
        sample = self.samples.pop(0)
        self.timestamps.pop(0)
        self._unindex(sample)
        return sample

    def _unindex(self, sample: CanonicalSample) -> None:
        if self.measurements.get(sample.timestamp) is sample:
            del self.measurements[sample.timestamp]
        if sample.cycle_number is not None and self.cycles.get(sample.cycle_number) is sample:
            del self.cycles[sample.cycle_number]


class SeriesStore:
    """Ordered, de-duplicated, bounded sample series per device.

    Merge rules:
      * spc samples replace an earlier sample with the same cycle number;
      * realtime samples take the slot of any realtime or historical sample at the same instant;
      * historical samples never displace a realtime sample at the same instant,
        but do refresh an older historical row.

    After every insert batch the series is pruned to ``max_points`` entries.
    Realtime and spc samples are also aged out past the ``retention`` window
    measured back from the newest sample; historical rows are only dropped by
    the count cap, so a requested range older than the window stays readable.
    """

    def __init__(
        self,
        max_points: int = DEFAULT_MAX_POINTS,
        retention: timedelta | None = DEFAULT_RETENTION,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_points <= 0:
            raise ValueError("max_points must be positive")
        self.max_points = max_points
        self.retention = retention
        self._clock = clock
        self._series: dict[str, DeviceSeries] = {}
        self._listeners: list[StoreListener] = []

    def add_listener(self, listener: StoreListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def insert(self, device_id: str, sample: CanonicalSample) -> StoreChange:
        return self.insert_many(device_id, (sample,))

    def insert_many(self, device_id: str, samples: Iterable[CanonicalSample]) -> StoreChange:
        change = StoreChange(device_id=device_id)
        series = self._series.get(device_id)
        accepted: list[CanonicalSample] = []
        for sample in samples:
            if sample.device_id != device_id:
                logger.warning(
                    "Skipped sample for device_id=%s inserted under device_id=%s", sample.device_id, device_id
                )
                change.skipped += 1
                continue
            if series is None:
                series = self._series.setdefault(device_id, DeviceSeries(device_id=device_id))
            if self._merge(series, sample, change):
                accepted.append(sample)

        if series is None:
            return change

        change.evicted = self.prune(device_id, self.max_points)
        change.retained = sum(1 for sample in accepted if series.holds(sample))
        if change.changed:
            series.last_update = self._clock()
        change.latest = series.samples[-1] if series.samples else None
        if change.changed:
            self._notify(change)
        return change

    def prune(self, device_id: str, max_size: int | None = None) -> int:
        series = self._series.get(device_id)
        if series is None or not series.samples:
            return 0
        limit = self.max_points if max_size is None else max_size
        evicted = 0
        if self.retention is not None:
            # the window only ages out live data; backfilled rows are bounded by the count cap
            cutoff = series.timestamps[-1] - self.retention
            stale = [
                sample
                for sample in series.samples[: bisect_left(series.timestamps, cutoff)]
                if sample.is_live
            ]
            for sample in stale:
                series.evict(sample)
            evicted += len(stale)
        while len(series.samples) > max(limit, 0):
            series.pop_oldest()
            evicted += 1
        if evicted:
            logger.debug("Pruned %s samples for device_id=%s", evicted, device_id)
        return evicted

    def read(
        self,
        device_id: str,
        time_range: TimeRange | None = None,
        source_types: Collection[SourceType] | None = None,
    ) -> tuple[CanonicalSample, ...]:
        series = self._series.get(device_id)
        if series is None:
            return ()
        if time_range is None:
            selected = series.samples
        else:
            lo = bisect_left(series.timestamps, time_range.start)
            hi = bisect_right(series.timestamps, time_range.end)
            selected = series.samples[lo:hi]
        if source_types is not None:
            return tuple(sample for sample in selected if sample.source_type in source_types)
        return tuple(selected)

    def latest(self, device_id: str) -> CanonicalSample | None:
        series = self._series.get(device_id)
        if series is None or not series.samples:
            return None
        return series.samples[-1]

    def latest_of(self, device_id: str, source_types: Collection[SourceType]) -> CanonicalSample | None:
        series = self._series.get(device_id)
        if series is None:
            return None
        for sample in reversed(series.samples):
            if sample.source_type in source_types:
                return sample
        return None

    def devices(self) -> list[str]:
        return list(self._series)

    def summary(self, device_id: str) -> dict[str, Any]:
        series = self._series.get(device_id)
        samples = series.samples if series is not None else []
        counts = {source.value: 0 for source in SourceType}
        for sample in samples:
            counts[sample.source_type.value] += 1
        return {
            "device_id": device_id,
            "total": len(samples),
            **counts,
            "start": samples[0].timestamp if samples else None,
            "end": samples[-1].timestamp if samples else None,
            "last_update": series.last_update if series is not None else None,
        }

    def clear(self, device_id: str | None = None) -> None:
        if device_id is None:
            self._series.clear()
            return
        self._series.pop(device_id, None)

    def _merge(self, series: DeviceSeries, sample: CanonicalSample, change: StoreChange) -> bool:
        if sample.source_type is SourceType.SPC:
            if sample.cycle_number is None:
                change.skipped += 1
                return False
            previous = series.cycles.get(sample.cycle_number)
            series.cycles[sample.cycle_number] = sample
        else:
            previous = series.measurements.get(sample.timestamp)
            if (
                sample.source_type is SourceType.HISTORICAL
                and previous is not None
                and previous.source_type is SourceType.REALTIME
            ):
                change.skipped += 1
                return False
            series.measurements[sample.timestamp] = sample

        if previous is not None:
            series.remove(previous)
            change.replaced += 1
        else:
            change.inserted += 1
        series.add(sample)
        change.source_types.add(sample.source_type)
        return True

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Store listener failed for device_id=%s", change.device_id)
