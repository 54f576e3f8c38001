from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass

from .config_schema import RetentionConfig
from .run_log import EventLogger, NullLogger
from .storage import Collection, SQLiteStore

DAY_MS = 24 * 60 * 60 * 1000


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass(frozen=True)
class RetentionReport:
    horizon_ms: int
    snapshots_deleted: int
    thumbnails_deleted: int
    snapshot_count: int
    cap_exceeded: bool
    cap_evicted: int


class RetentionManager:
    """
    Bounds snapshot and thumbnail growth without user action.

    Items and postings are never touched: search runs over item text, so a
    posting contributed by an evicted snapshot's analysis stays valid.
    """

    def __init__(
        self,
        store: SQLiteStore,
        config: RetentionConfig,
        *,
        logger: EventLogger | None = None,
    ) -> None:
        self._store = store
        self._cfg = config
        self._log = logger or NullLogger()

    def horizon(self, now: int | None = None) -> int:
        current = now_ms() if now is None else int(now)
        return current - int(self._cfg.horizon_days) * DAY_MS

    async def purge_older_than(self, horizon_ms: int) -> tuple[int, int]:
        """Delete snapshots and thumbnails captured strictly before horizon_ms."""
        snaps = await _delete_below(self._store.snapshots, horizon_ms)
        thumbs = await _delete_below(self._store.thumbnails, horizon_ms)
        return snaps, thumbs

    async def enforce_snapshot_cap(self) -> int:
        """Evict the oldest snapshots until at most max_snapshots remain."""
        surplus = await self._store.snapshots.count() - int(self._cfg.max_snapshots)
        if surplus <= 0:
            return 0

        evicted = 0
        async for snap in self._store.snapshots.iterate_ordered_by_field(
            "captured_at", "asc", surplus
        ):
            await self._store.snapshots.delete(snap.key)
            evicted += 1
        return evicted

    async def run_cycle(self, now: int | None = None) -> RetentionReport:
        horizon = self.horizon(now)
        snaps, thumbs = await self.purge_older_than(horizon)

        count = await self._store.snapshots.count()
        cap_exceeded = count > int(self._cfg.max_snapshots)
        evicted = 0
        if cap_exceeded:
            self._log.warning(
                "snapshot_cap_exceeded",
                snapshot_count=count,
                max_snapshots=int(self._cfg.max_snapshots),
            )
            more_snaps, more_thumbs = await self.purge_older_than(horizon)
            snaps += more_snaps
            thumbs += more_thumbs
            if self._cfg.enforce_snapshot_cap:
                evicted = await self.enforce_snapshot_cap()
            count = await self._store.snapshots.count()

        report = RetentionReport(
            horizon_ms=horizon,
            snapshots_deleted=snaps,
            thumbnails_deleted=thumbs,
            snapshot_count=count,
            cap_exceeded=cap_exceeded,
            cap_evicted=evicted,
        )
        self._log.info(
            "retention_cycle_completed",
            horizon_ms=horizon,
            snapshots_deleted=snaps,
            thumbnails_deleted=thumbs,
            snapshot_count=count,
            cap_evicted=evicted,
        )
        return report


async def _delete_below(collection: Collection, horizon_ms: int) -> int:
    deleted = 0
    async for record in collection.iterate_ordered_by_field(
        "captured_at", "asc", below=int(horizon_ms)
    ):
        await collection.delete(record.key)
        deleted += 1
    return deleted


class RetentionScheduler:
    """
    Runs a retention cycle on start and then every interval_seconds.

    A failed cycle is logged and the loop keeps going.
    """

    def __init__(
        self,
        manager: RetentionManager,
        *,
        interval_seconds: float,
        logger: EventLogger | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._manager = manager
        self._interval = float(interval_seconds)
        self._log = logger or NullLogger()
        self._task: asyncio.Task[None] | None = None
        self._running = False
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval_seconds(self) -> float:
        return self._interval

    async def start(self) -> None:
        if self._task is not None:
            return
        self._running = True
        await self._run_once()
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run_once(self) -> None:
        try:
            await self._manager.run_cycle()
        except Exception as e:
            self._log.exception("retention_cycle_failed", exc=e)
        finally:
            self.cycles += 1

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            if not self._running:
                break
            await self._run_once()
