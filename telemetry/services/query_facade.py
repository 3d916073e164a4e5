from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Hashable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from telemetry.api.schemas import HistoryQuery, HistoryResponse
from telemetry.errors import QueryError
from telemetry.services.normalizer import Normalizer
from telemetry.services.series_store import SeriesStore
from telemetry.time_utils import TimeRange, resolve_range, utc_now

logger = logging.getLogger(__name__)


class HistorySource(Protocol):
    async def fetch(self, query: HistoryQuery) -> HistoryResponse: ...


@dataclass(frozen=True)
class QueryResult:
    device_id: str
    requested: TimeRange | str
    ok: bool
    time_range: TimeRange | None = None
    received: int = 0
    inserted: int = 0
    replaced: int = 0
    # rows still held by the store once the batch has been pruned
    retained: int = 0
    skipped: int = 0
    rejected: int = 0
    attempts: int = 0
    error: QueryError | None = None
    cancelled: bool = False


@dataclass
class _InflightQuery:
    task: asyncio.Task[QueryResult]
    # one detach future per waiting call, grouped by owner
    waiters: dict[Hashable, list[asyncio.Future[None]]] = field(default_factory=dict)

    def join(self, owner: Hashable) -> asyncio.Future[None]:
        detached = asyncio.get_running_loop().create_future()
        self.waiters.setdefault(owner, []).append(detached)
        return detached

    def leave(self, owner: Hashable, detached: asyncio.Future[None]) -> None:
        futures = self.waiters.get(owner)
        if futures is None or detached not in futures:
            return
        futures.remove(detached)
        if not futures:
            del self.waiters[owner]

    def detach(self, owner: Hashable) -> bool:
        futures = self.waiters.pop(owner, None)
        if not futures:
            return False
        for detached in futures:
            if not detached.done():
                detached.set_result(None)
        return True


class QueryFacade:
    def __init__(
        self,
        client: HistorySource,
        normalizer: Normalizer,
        store: SeriesStore,
        max_attempts: int = 3,
        backoff: float = 0.5,
        row_limit: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._normalizer = normalizer
        self._store = store
        self.max_attempts = max(max_attempts, 1)
        self.backoff = backoff
        self.row_limit = row_limit
        self._clock = clock
        self._inflight: dict[tuple[str, TimeRange | str], _InflightQuery] = {}

    def inflight_count(self) -> int:
        return len(self._inflight)

    async def fetch_range(
        self,
        device_id: str,
        time_range: TimeRange | str,
        owner: Hashable | None = None,
    ) -> QueryResult:
        if isinstance(time_range, str):
            time_range = time_range.strip().lower()
        key = (device_id, time_range)
        owner_key: Hashable = owner if owner is not None else object()

        entry = self._inflight.get(key)
        if entry is None:
            task = asyncio.create_task(self._run(device_id, time_range), name=f"history-{device_id}")
            entry = _InflightQuery(task=task)
            self._inflight[key] = entry
            task.add_done_callback(lambda _task, key=key, entry=entry: self._forget(key, entry))
        else:
            logger.debug("Joined in-flight history request device_id=%s range=%s", device_id, time_range)
        detached = entry.join(owner_key)

        try:
            # asyncio.wait leaves the shared task running when this caller goes away
            await asyncio.wait((entry.task, detached), return_when=asyncio.FIRST_COMPLETED)
            if detached.done() or entry.task.cancelled():
                return QueryResult(device_id=device_id, requested=time_range, ok=False, cancelled=True)
            return entry.task.result()
        finally:
            entry.leave(owner_key, detached)
            if not entry.waiters and not entry.task.done():
                entry.task.cancel()

    def cancel_owner(self, owner: Hashable) -> int:
        """Detach ``owner`` from its in-flight requests.

        Each detached call returns a cancelled result at once. A request is
        only aborted when no other owner still waits on it; the return value
        counts those aborted requests.
        """
        cancelled = 0
        for entry in list(self._inflight.values()):
            if not entry.detach(owner):
                continue
            if not entry.waiters and not entry.task.done():
                entry.task.cancel()
                cancelled += 1
        return cancelled

    async def close(self) -> None:
        entries = list(self._inflight.values())
        for entry in entries:
            entry.task.cancel()
        for entry in entries:
            try:
                await entry.task
            except asyncio.CancelledError:
                pass
        self._inflight.clear()

    async def _run(self, device_id: str, requested: TimeRange | str) -> QueryResult:
        try:
            resolved = resolve_range(requested, now=self._clock())
        except ValueError as exc:
            return QueryResult(device_id=device_id, requested=requested, ok=False, error=QueryError(str(exc)))

        query = HistoryQuery(
            device_id=device_id,
            range_start=resolved.start,
            range_end=resolved.end,
            limit=self.row_limit,
        )
        delay = self.backoff
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = await self._client.fetch(query)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                error = exc if isinstance(exc, QueryError) else QueryError(str(exc), retryable=True)
                if error.retryable and attempt < self.max_attempts:
                    logger.warning(
                        "History fetch failed device_id=%s (attempt %s/%s), retry in %.2fs: %s",
                        device_id,
                        attempt,
                        self.max_attempts,
                        delay,
                        error,
                    )
                    await asyncio.sleep(delay)
                    delay *= 2
                    continue
                logger.error("History fetch failed device_id=%s after %s attempt(s): %s", device_id, attempt, error)
                return QueryResult(
                    device_id=device_id,
                    requested=requested,
                    time_range=resolved,
                    ok=False,
                    attempts=attempt,
                    error=error,
                )

            samples, rejected = self._normalizer.normalize_rows(device_id, response.rows)
            change = self._store.insert_many(device_id, samples)
            logger.info(
                "Backfilled device_id=%s rows=%s inserted=%s retained=%s skipped=%s rejected=%s",
                device_id,
                len(response.rows),
                change.inserted,
                change.retained,
                change.skipped,
                rejected,
            )
            return QueryResult(
                device_id=device_id,
                requested=requested,
                time_range=resolved,
                ok=True,
                received=len(response.rows),
                inserted=change.inserted,
                replaced=change.replaced,
                retained=change.retained,
                skipped=change.skipped,
                rejected=rejected,
                attempts=attempt,
            )

        raise RuntimeError("history fetch loop exited unexpectedly")

    def _forget(self, key: tuple[str, TimeRange | str], entry: _InflightQuery) -> None:
        if self._inflight.get(key) is entry:
            del self._inflight[key]
