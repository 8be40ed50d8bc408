"""Scheduled compression and retention of reading partitions.

Each policy runs on its own schedule and never overlaps with itself. Work
is done one partition per transaction and the stop flag is checked between
partitions, so a cancelled or crashed sweep leaves every partition either
fully processed or untouched and the next run picks up where it stopped.
Sweeps never touch the active partition.
"""

import asyncio
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sensorhub.core.metrics import observe_sweep, record_sweep_partition
from sensorhub.models.partition import PartitionState
from sensorhub.models.rollup import HourlyRollup
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore

logger = structlog.get_logger()

COMPRESSION = "compression"
RETENTION = "retention"


@dataclass
class SweepReport:
    """What one policy run did."""

    policy: str
    started_at: datetime
    finished_at: datetime | None = None
    partitions: list[str] = field(default_factory=list)
    rows: int = 0
    skipped: int = 0
    failed: int = 0
    rollups_deleted: int = 0
    cancelled: bool = False
    busy: bool = False

    @property
    def processed(self) -> int:
        return len(self.partitions)

    def to_dict(self) -> dict:
        return {
            "policy": self.policy,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "partitions": self.partitions,
            "rows": self.rows,
            "skipped": self.skipped,
            "failed": self.failed,
            "rollupsDeleted": self.rollups_deleted,
            "cancelled": self.cancelled,
            "busy": self.busy,
        }


class LifecycleManager:
    """Runs the compression and retention policies over the partition catalog."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PartitionCatalog,
        compress_after: timedelta = timedelta(days=7),
        retention: timedelta = timedelta(days=1826),
        rollup_retention: timedelta | None = None,
        compression_interval: float = 3600.0,
        retention_interval: float = 6 * 3600.0,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.compress_after = compress_after
        self.retention = retention
        self.rollup_retention = rollup_retention
        self.compression_interval = compression_interval
        self.retention_interval = retention_interval
        self._policy_locks = {COMPRESSION: asyncio.Lock(), RETENTION: asyncio.Lock()}
        self._stop_event = asyncio.Event()
        self._running = False
        self._tasks: list[asyncio.Task] = []

    # ==================== Policies ====================

    async def compress(self, now: datetime | None = None) -> SweepReport:
        """Fold raw rows of every partition older than ``compress_after``."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.compress_after

        async def candidates(db: AsyncSession, store: ReadingStore):
            eligible = []
            for partition in await self.catalog.list_partitions(db, ended_before=cutoff):
                if partition.is_compressed and await store.tail_size(partition) == 0:
                    continue
                eligible.append(partition.range_start)
            return eligible

        async def process(store: ReadingStore, partition) -> int:
            result = await store.compress_partition(partition)
            return result.rows_folded

        return await self._sweep(COMPRESSION, now, candidates, process)

    async def enforce_retention(self, now: datetime | None = None) -> SweepReport:
        """Drop partitions that ended at or before ``now - retention``, then old rollups."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - self.retention

        async def candidates(db: AsyncSession, store: ReadingStore):
            return [p.range_start for p in await self.catalog.list_partitions(db, ended_before=cutoff)]

        async def process(store: ReadingStore, partition) -> int:
            return await store.drop_partition(partition)

        report = await self._sweep(RETENTION, now, candidates, process)

        if self.rollup_retention is not None and not report.busy and not report.cancelled:
            try:
                report.rollups_deleted = await self._purge_rollups(now - self.rollup_retention)
            except Exception as e:
                report.failed += 1
                logger.error("Rollup retention failed", error=str(e))
        return report

    async def _purge_rollups(self, cutoff: datetime) -> int:
        async with self.session_factory() as db:
            result = await db.execute(delete(HourlyRollup).where(HourlyRollup.bucket < cutoff))
            await db.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info("Rollups past retention deleted", count=deleted, cutoff=cutoff.isoformat())
        return deleted

    async def _sweep(self, policy: str, now: datetime, candidates, process) -> SweepReport:
        report = SweepReport(policy=policy, started_at=datetime.now(timezone.utc))
        lock = self._policy_locks[policy]
        if lock.locked():
            report.busy = True
            report.finished_at = datetime.now(timezone.utc)
            logger.info("Sweep already running, skipped", policy=policy)
            return report

        started = time.perf_counter()
        active_start = self.catalog.active_start(now)

        async with lock:
            async with self.session_factory() as db:
                targets = await candidates(db, ReadingStore(db, self.catalog))

            for range_start in targets:
                if self._stop_event.is_set():
                    report.cancelled = True
                    logger.info("Sweep cancelled", policy=policy, remaining=len(targets) - report.processed)
                    break

                if range_start >= active_start:
                    report.skipped += 1
                    record_sweep_partition(policy, "skipped")
                    continue

                try:
                    rows = await self._process_partition(range_start, process)
                except Exception as e:
                    report.failed += 1
                    record_sweep_partition(policy, "failed")
                    logger.error(
                        "Partition sweep failed",
                        policy=policy,
                        range_start=range_start.isoformat(),
                        error=str(e),
                    )
                    continue

                if rows is None:
                    report.skipped += 1
                    record_sweep_partition(policy, "skipped")
                    continue

                report.partitions.append(range_start.isoformat())
                report.rows += rows
                record_sweep_partition(policy, "done")
                logger.info(
                    "Partition swept",
                    policy=policy,
                    range_start=range_start.isoformat(),
                    rows=rows,
                )

        report.finished_at = datetime.now(timezone.utc)
        observe_sweep(policy, time.perf_counter() - started)
        logger.info(
            "Sweep finished",
            policy=policy,
            processed=report.processed,
            rows=report.rows,
            skipped=report.skipped,
            failed=report.failed,
            cancelled=report.cancelled,
        )
        return report

    async def _process_partition(self, range_start: datetime, process) -> int | None:
        """One partition, one session, one transaction, under the catalog lock."""
        async with self.catalog.lock:
            async with self.session_factory() as db:
                partition = await self.catalog.get(db, range_start, for_update=True)
                if partition is None:
                    # Dropped since the candidate list was built.
                    return None
                try:
                    return await process(ReadingStore(db, self.catalog), partition)
                except Exception:
                    await db.rollback()
                    raise

    # ==================== Scheduling ====================

    def request_stop(self) -> None:
        """Ask running sweeps to stop at the next partition boundary."""
        self._stop_event.set()

    async def start(self) -> None:
        """Start both policy schedules."""
        if self._running:
            return
        self._running = True
        self._stop_event.clear()
        self._tasks = [
            asyncio.create_task(
                self._schedule_loop(COMPRESSION, self.compress, self.compression_interval),
                name="lifecycle-compression",
            ),
            asyncio.create_task(
                self._schedule_loop(RETENTION, self.enforce_retention, self.retention_interval),
                name="lifecycle-retention",
            ),
        ]
        logger.info(
            "Lifecycle manager started",
            compression_interval=self.compression_interval,
            retention_interval=self.retention_interval,
        )

    async def stop(self) -> None:
        """Stop schedules; an in-flight sweep finishes its current partition first."""
        self._running = False
        self._stop_event.set()
        for task in self._tasks:
            try:
                await asyncio.wait_for(task, timeout=30)
            except asyncio.TimeoutError:
                logger.warning("Lifecycle task did not stop in time", task=task.get_name())
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("Lifecycle manager stopped")

    async def _schedule_loop(self, policy: str, run, interval: float) -> None:
        while self._running:
            try:
                await run()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Lifecycle sweep error", policy=policy, error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
