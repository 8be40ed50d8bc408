"""Partition metadata for the reading store.

Partitions are fixed-width time ranges aligned to the Unix epoch. The
catalog is the single owner of partition metadata. Sweeps and writes into
closed partitions serialize through its lock in-process and through row
locks on the metadata row across processes. Creation is an idempotent
insert so concurrent writers into a new range never conflict.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sensorhub.models.partition import ReadingPartition, PartitionState
from sensorhub.services.sql import dialect_insert

logger = structlog.get_logger()

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class PartitionCatalog:
    """Partition arithmetic plus metadata reads and mutations."""

    def __init__(self, width: timedelta = timedelta(days=7)):
        if width <= timedelta(0):
            raise ValueError("Partition width must be positive")
        self.width = width
        self.lock = asyncio.Lock()

    def bounds(self, ts: datetime) -> tuple[datetime, datetime]:
        """Return [start, end) of the partition that holds ``ts``."""
        index = (ts - EPOCH) // self.width
        start = EPOCH + index * self.width
        return start, start + self.width

    def active_start(self, now: datetime) -> datetime:
        """Start of the partition currently receiving live writes."""
        return self.bounds(now)[0]

    async def get(
        self,
        db: AsyncSession,
        range_start: datetime,
        for_share: bool = False,
        for_update: bool = False,
    ) -> ReadingPartition | None:
        """Partition metadata row, optionally row-locked until the transaction ends.

        Writers read with ``for_share`` and sweeps with ``for_update``, so on
        PostgreSQL an append into a partition and its compression or drop
        never interleave across processes. SQLite ignores the lock clause.
        """
        query = select(ReadingPartition).where(ReadingPartition.range_start == range_start)
        if for_update:
            query = query.with_for_update()
        elif for_share:
            query = query.with_for_update(read=True)
        if for_update or for_share:
            query = query.execution_options(populate_existing=True)
        result = await db.execute(query)
        return result.scalar_one_or_none()

    async def ensure(self, db: AsyncSession, ts: datetime) -> ReadingPartition:
        """Return the partition for ``ts``, creating its metadata row if needed.

        The row is share-locked for the rest of the caller's transaction.
        """
        start, end = self.bounds(ts)
        partition = await self.get(db, start, for_share=True)
        if partition is not None:
            return partition

        stmt = dialect_insert(db, ReadingPartition).values(
            range_start=start,
            range_end=end,
            state=PartitionState.OPEN.value,
            row_count=0,
            created_at=datetime.now(timezone.utc),
        ).on_conflict_do_nothing(index_elements=["range_start"])
        await db.execute(stmt)
        logger.info("Partition created", range_start=start.isoformat(), range_end=end.isoformat())
        return await self.get(db, start, for_share=True)

    async def list_partitions(
        self,
        db: AsyncSession,
        ended_before: datetime | None = None,
        state: PartitionState | None = None,
    ) -> list[ReadingPartition]:
        """List partitions oldest first, optionally only those ending at or before a cutoff."""
        query = select(ReadingPartition)
        if ended_before is not None:
            query = query.where(ReadingPartition.range_end <= ended_before)
        if state is not None:
            query = query.where(ReadingPartition.state == state.value)
        query = query.order_by(ReadingPartition.range_start.asc())
        result = await db.execute(query)
        return list(result.scalars().all())

    async def overlapping(
        self,
        db: AsyncSession,
        start: datetime | None,
        end: datetime | None,
        state: PartitionState | None = None,
    ) -> list[ReadingPartition]:
        """Partitions intersecting [start, end], newest first."""
        query = select(ReadingPartition)
        if start is not None:
            query = query.where(ReadingPartition.range_end > start)
        if end is not None:
            query = query.where(ReadingPartition.range_start <= end)
        if state is not None:
            query = query.where(ReadingPartition.state == state.value)
        query = query.order_by(ReadingPartition.range_start.desc())
        result = await db.execute(query)
        return list(result.scalars().all())
