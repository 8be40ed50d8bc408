"""Incremental hourly rollups.

Each stored reading produces a notification; applying it updates one
(device, hour) bucket in place with a running mean, min, max and count,
never re-scanning raw history. Late notifications update old buckets the
same way. Overwrites adjust the mean; if the overwritten value was the
bucket's min or max the bucket is flagged stale and recomputed from raw
rows the next time it is read.
"""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sensorhub.core.metrics import record_rollup_update
from sensorhub.models.rollup import HourlyRollup
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore
from sensorhub.services.rollup_queue import RollupNotification, RollupQueue, numeric_value

logger = structlog.get_logger()

HOUR = timedelta(hours=1)


def hour_bucket(ts: datetime) -> datetime:
    """Truncate a timestamp to its UTC hour."""
    return ts.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


class KeyedLocks:
    """One asyncio.Lock per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[tuple, asyncio.Lock] = {}
        self._users: dict[tuple, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    async def acquire(self, key: tuple) -> asyncio.Lock:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] += 1
        try:
            await lock.acquire()
        except BaseException:
            self._release_user(key)
            raise
        return lock

    def release(self, key: tuple) -> None:
        self._locks[key].release()
        self._release_user(key)

    def _release_user(self, key: tuple) -> None:
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            self._locks.pop(key, None)


def apply_to_rollup(rollup: HourlyRollup, value: float | None, replaced: float | None) -> str | None:
    """Fold one notification into a rollup row. Returns the update mode applied."""
    if value is None and replaced is None:
        return None

    count = rollup.count or 0

    if replaced is None:
        # add
        count += 1
        if count == 1:
            rollup.avg = value
            rollup.min = value
            rollup.max = value
        else:
            rollup.avg = rollup.avg + (value - rollup.avg) / count
            rollup.min = min(rollup.min, value)
            rollup.max = max(rollup.max, value)
        rollup.count = count
        return "add"

    if count == 0:
        # Nothing to replace (raw data already folded away from this bucket).
        return apply_to_rollup(rollup, value, None)

    if value is None:
        # remove
        if count == 1:
            rollup.count = 0
            rollup.avg = rollup.min = rollup.max = None
            return "remove"
        rollup.avg = rollup.avg + (rollup.avg - replaced) / (count - 1)
        rollup.count = count - 1
        if replaced <= rollup.min or replaced >= rollup.max:
            rollup.stale = True
        return "remove"

    # replace
    rollup.avg = rollup.avg + (value - replaced) / count
    if (replaced <= rollup.min and value > replaced) or (replaced >= rollup.max and value < replaced):
        rollup.stale = True
    rollup.min = min(rollup.min, value)
    rollup.max = max(rollup.max, value)
    return "replace"


def _already_counted(rollup: HourlyRollup, notification: RollupNotification) -> bool:
    return (
        rollup.refreshed_through is not None
        and notification.ingested_at is not None
        and notification.ingested_at <= rollup.refreshed_through
    )


def _newest_ingest(readings, current: datetime | None) -> datetime | None:
    stamps = [r.ingested_at for r in readings if r.ingested_at is not None]
    if current is not None:
        stamps.append(current)
    return max(stamps, default=None)


class AggregationEngine:
    """Maintains HourlyRollup rows from rollup notifications."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: RollupQueue,
        catalog: PartitionCatalog,
        metric_name: str = "value",
        num_workers: int = 2,
        batch_size: int = 100,
        poll_timeout: float = 1.0,
    ):
        self.session_factory = session_factory
        self.queue = queue
        self.catalog = catalog
        self.metric_name = metric_name
        self.num_workers = num_workers
        self.batch_size = batch_size
        self.poll_timeout = poll_timeout
        self._locks = KeyedLocks()
        self._running = False
        self._worker_tasks: list[asyncio.Task] = []

    # ==================== Write side ====================

    async def apply(self, notification: RollupNotification) -> HourlyRollup | None:
        """Apply one notification, serialized per (device, hour) bucket."""
        bucket = hour_bucket(notification.time)
        key = (notification.device_id, bucket)

        await self._locks.acquire(key)
        try:
            async with self.session_factory() as db:
                rollup = await db.get(HourlyRollup, (notification.device_id, bucket))
                if rollup is None:
                    if notification.value is None:
                        return None
                    rollup = HourlyRollup(
                        device_id=notification.device_id,
                        bucket=bucket,
                        metric_name=self.metric_name,
                        count=0,
                        stale=False,
                    )
                    db.add(rollup)
                elif _already_counted(rollup, notification):
                    logger.debug(
                        "Notification already covered by refresh",
                        device_id=str(notification.device_id),
                        bucket=bucket.isoformat(),
                    )
                    return rollup

                mode = apply_to_rollup(rollup, notification.value, notification.replaced)
                if mode is None:
                    return rollup
                await db.commit()
                record_rollup_update(mode)
                return rollup
        finally:
            self._locks.release(key)

    async def refresh(self, device_id: uuid.UUID, hour: datetime) -> HourlyRollup | None:
        """Recompute one bucket from raw readings.

        Records the newest ingest time it folded in, so notifications still
        queued for those writes are skipped instead of counted twice.
        Buckets whose raw partition was already dropped by retention keep
        their last aggregate.
        """
        bucket = hour_bucket(hour)
        key = (device_id, bucket)

        await self._locks.acquire(key)
        try:
            async with self.session_factory() as db:
                rollup = await db.get(HourlyRollup, (device_id, bucket))
                partition = await self.catalog.get(db, self.catalog.bounds(bucket)[0])
                if partition is None:
                    if rollup is not None and rollup.stale:
                        logger.warning(
                            "Stale rollup has no raw data left; keeping aggregate",
                            device_id=str(device_id),
                            bucket=bucket.isoformat(),
                        )
                        rollup.stale = False
                        await db.commit()
                    return rollup

                store = ReadingStore(db, self.catalog)
                readings = await store.scan(device_id, bucket, bucket + HOUR - timedelta(microseconds=1))
                values = [
                    v for v in (numeric_value(r.metrics, self.metric_name) for r in readings)
                    if v is not None
                ]

                if not values:
                    if rollup is not None:
                        await db.delete(rollup)
                        await db.commit()
                    return None

                if rollup is None:
                    rollup = HourlyRollup(device_id=device_id, bucket=bucket, metric_name=self.metric_name)
                    db.add(rollup)

                mean = 0.0
                for i, v in enumerate(values, start=1):
                    mean += (v - mean) / i
                rollup.count = len(values)
                rollup.avg = mean
                rollup.min = min(values)
                rollup.max = max(values)
                rollup.stale = False
                rollup.refreshed_through = _newest_ingest(readings, rollup.refreshed_through)
                await db.commit()
                record_rollup_update("refresh")
                return rollup
        finally:
            self._locks.release(key)

    async def drain(self) -> int:
        """Apply every queued notification now (the scheduled aggregation pass)."""
        applied = 0
        while True:
            batch = await self.queue.consume("drain", self.batch_size, timeout=0)
            if not batch:
                return applied
            applied += await self._apply_batch(batch)

    async def _apply_batch(self, batch: list[tuple]) -> int:
        done = []
        for token, notification in batch:
            try:
                await self.apply(notification)
                done.append(token)
            except Exception as e:
                # Not acknowledged; a Redis stream keeps it pending for redelivery.
                logger.error(
                    "Rollup update failed",
                    device_id=str(notification.device_id),
                    time=notification.time.isoformat(),
                    error=str(e),
                )
        await self.queue.ack(done)
        return len(done)

    # ==================== Read side ====================

    async def rollups(
        self,
        device_id: uuid.UUID,
        from_hour: datetime,
        to_hour: datetime,
    ) -> list[HourlyRollup]:
        """Hourly rollups for [from_hour, to_hour], oldest first. Never scans raw partitions
        except to repair buckets flagged stale."""
        start = hour_bucket(from_hour)
        end = hour_bucket(to_hour)

        async with self.session_factory() as db:
            result = await db.execute(
                select(HourlyRollup)
                .where(
                    HourlyRollup.device_id == device_id,
                    HourlyRollup.bucket >= start,
                    HourlyRollup.bucket <= end,
                    HourlyRollup.count > 0,
                )
                .order_by(HourlyRollup.bucket.asc())
            )
            rows = list(result.scalars().all())

        output = []
        for row in rows:
            if row.stale:
                refreshed = await self.refresh(device_id, row.bucket)
                if refreshed is not None:
                    output.append(refreshed)
            else:
                output.append(row)
        return output

    # ==================== Worker pool ====================

    async def start(self) -> None:
        """Start worker pool consuming the rollup queue."""
        if self._running:
            return
        self._running = True
        await self.queue.start()

        for i in range(self.num_workers):
            task = asyncio.create_task(
                self._worker_loop(worker_id=i),
                name=f"rollup-worker-{i}",
            )
            self._worker_tasks.append(task)

        logger.info("Aggregation worker pool started", num_workers=self.num_workers)

    async def stop(self) -> None:
        """Stop worker pool, then apply whatever is still queued."""
        self._running = False

        # Workers finish the batch in hand; in-memory items are gone once consumed.
        if self._worker_tasks:
            _, pending = await asyncio.wait(self._worker_tasks, timeout=self.poll_timeout + 10)
            for task in pending:
                task.cancel()

        for task in self._worker_tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

        self._worker_tasks.clear()
        try:
            remaining = await self.drain()
        except Exception as e:
            logger.error("Final rollup drain failed", error=str(e))
        else:
            if remaining:
                logger.info("Rollup queue drained on shutdown", applied=remaining)
        logger.info("Aggregation worker pool stopped")

    async def _worker_loop(self, worker_id: int) -> None:
        """Main consumer loop for a single worker."""
        consumer_name = f"worker-{worker_id}"
        logger.info("Rollup worker started", worker_id=worker_id)

        while self._running:
            try:
                batch = await self.queue.consume(consumer_name, self.batch_size, self.poll_timeout)
                if batch:
                    await self._apply_batch(batch)
            except asyncio.CancelledError:
                logger.info("Rollup worker cancelled", worker_id=worker_id)
                raise
            except Exception as e:
                logger.error("Rollup worker error", worker_id=worker_id, error=str(e))
                await asyncio.sleep(1)
