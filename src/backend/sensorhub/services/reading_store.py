"""Time-partitioned reading store.

Raw rows live in ``device_readings`` tagged with their partition. Once a
partition is compressed its rows are folded into one zlib chunk per device
in ``reading_chunks``; later appends into that partition stay raw (the
"tail") until the next compression pass folds them in. Reads merge chunk
rows with tail rows, tail rows winning on identical timestamps.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog
from sqlalchemy import bindparam, delete, func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sensorhub.core.errors import StorageError
from sensorhub.models.partition import PartitionState, ReadingChunk, ReadingPartition
from sensorhub.models.reading import DeviceReading
from sensorhub.services.chunk_codec import ChunkRow, decode_chunk, encode_chunk
from sensorhub.services.partition_catalog import PartitionCatalog

logger = structlog.get_logger()

DEFAULT_MAX_LIMIT = 1000


@dataclass
class AppendResult:
    """Outcome of an append: the stored reading and the metrics it replaced."""

    reading: DeviceReading
    replaced: dict | None = None

    @property
    def overwritten(self) -> bool:
        return self.replaced is not None


@dataclass
class CompressionResult:
    range_start: datetime
    rows_folded: int
    chunks_written: int


class ReadingStore:
    """Append, query, compress and drop readings."""

    def __init__(
        self,
        db: AsyncSession,
        catalog: PartitionCatalog,
        max_limit: int = DEFAULT_MAX_LIMIT,
    ):
        self.db = db
        self.catalog = catalog
        self.max_limit = max_limit

    # ==================== Writes ====================

    async def append(self, device_id: uuid.UUID, time: datetime, metrics: dict) -> AppendResult:
        """Append a reading; an existing (device, time) row is overwritten.

        Commits before returning so callers can rely on durability. Writes
        into a closed partition hold the catalog lock, so a compression or
        drop of that partition runs entirely before or after them.

        Raises:
            StorageError: If the write cannot be committed.
        """
        if self.catalog.bounds(time)[0] < self.catalog.active_start(datetime.now(timezone.utc)):
            async with self.catalog.lock:
                return await self._append_committed(device_id, time, metrics)
        return await self._append_committed(device_id, time, metrics)

    async def _append_committed(
        self, device_id: uuid.UUID, time: datetime, metrics: dict
    ) -> AppendResult:
        try:
            try:
                result = await self._append_once(device_id, time, metrics)
                await self.db.commit()
            except IntegrityError:
                # A concurrent writer inserted the same (device, time) first;
                # retry once, which takes the overwrite path.
                await self.db.rollback()
                result = await self._append_once(device_id, time, metrics)
                await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error("Reading append failed", device_id=str(device_id), error=str(e))
            raise StorageError(f"Failed to store reading: {e.__class__.__name__}") from e

        return result

    async def _append_once(self, device_id: uuid.UUID, time: datetime, metrics: dict) -> AppendResult:
        partition = await self.catalog.ensure(self.db, time)

        result = await self.db.execute(
            select(DeviceReading).where(
                DeviceReading.device_id == device_id,
                DeviceReading.time == time,
            )
        )
        existing = result.scalar_one_or_none()
        now = datetime.now(timezone.utc)

        if existing is not None:
            replaced = existing.metrics
            existing.metrics = metrics
            existing.revision = existing.revision + 1
            existing.ingested_at = now
            await self.db.flush()
            return AppendResult(reading=existing, replaced=replaced)

        replaced = None
        if partition.is_compressed:
            # Backfill into a compressed partition: decode the device's chunk
            # to honor last-write-wins against folded rows.
            folded = await self._chunk_row_at(partition.range_start, device_id, time)
            if folded is not None:
                replaced = folded.metrics

        reading = DeviceReading(
            id=uuid.uuid4(),
            device_id=device_id,
            time=time,
            partition_start=partition.range_start,
            metrics=metrics,
            revision=0,
            ingested_at=now,
            overrides_chunk=replaced is not None,
        )
        self.db.add(reading)
        await self.db.flush()
        return AppendResult(reading=reading, replaced=replaced)

    async def delete_device(self, device_id: uuid.UUID) -> int:
        """Bulk-delete every raw row and chunk of a device. Does not commit."""
        raw = await self.db.execute(
            delete(DeviceReading).where(DeviceReading.device_id == device_id)
        )
        chunks = await self._chunks_for(device_id)
        folded = 0
        for chunk in chunks:
            partition = await self.catalog.get(self.db, chunk.partition_start)
            if partition is not None:
                partition.row_count = max(0, partition.row_count - chunk.row_count)
            folded += chunk.row_count
            await self.db.delete(chunk)
        return (raw.rowcount or 0) + folded

    # ==================== Reads ====================

    def clamp_limit(self, limit: int | None, default: int = 100) -> int:
        if limit is None or limit <= 0:
            limit = default
        return min(limit, self.max_limit)

    async def query(
        self,
        device_id: uuid.UUID,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int | None = None,
    ) -> list[DeviceReading]:
        """Readings for a device in [start, end], newest first, capped at max_limit."""
        return await self._collect(device_id, start, end, self.clamp_limit(limit))

    async def scan(
        self,
        device_id: uuid.UUID,
        start: datetime,
        end: datetime,
    ) -> list[DeviceReading]:
        """Uncapped read of a narrow range, used for rollup recomputation."""
        return await self._collect(device_id, start, end, None)

    async def latest(self, device_id: uuid.UUID) -> DeviceReading | None:
        rows = await self._collect(device_id, None, None, 1)
        return rows[0] if rows else None

    async def _collect(
        self,
        device_id: uuid.UUID,
        start: datetime | None,
        end: datetime | None,
        limit: int | None,
    ) -> list[DeviceReading]:
        # 1. Raw rows (open partitions and compressed tails): one index scan.
        raw_query = select(DeviceReading).where(DeviceReading.device_id == device_id)
        if start is not None:
            raw_query = raw_query.where(DeviceReading.time >= start)
        if end is not None:
            raw_query = raw_query.where(DeviceReading.time <= end)
        raw_query = raw_query.order_by(DeviceReading.time.desc())
        if limit is not None:
            raw_query = raw_query.limit(limit)
        raw_rows = list((await self.db.execute(raw_query)).scalars().all())

        merged: dict[datetime, DeviceReading] = {row.time: row for row in raw_rows}

        # 2. Compressed chunks of this device overlapping the range, newest first.
        chunk_query = select(ReadingChunk).where(ReadingChunk.device_id == device_id)
        if start is not None:
            chunk_query = chunk_query.where(ReadingChunk.max_time >= start)
        if end is not None:
            chunk_query = chunk_query.where(ReadingChunk.min_time <= end)
        chunk_query = chunk_query.order_by(ReadingChunk.max_time.desc())
        chunks = (await self.db.execute(chunk_query)).scalars().all()

        for chunk in chunks:
            if limit is not None and len(merged) >= limit:
                cutoff = sorted(merged, reverse=True)[limit - 1]
                if chunk.max_time < cutoff:
                    break
            for row in decode_chunk(chunk.payload):
                if start is not None and row.time < start:
                    continue
                if end is not None and row.time > end:
                    continue
                if row.time in merged:
                    continue
                merged[row.time] = self._from_chunk_row(chunk, row)

        ordered = sorted(merged.values(), key=lambda r: r.time, reverse=True)
        if limit is not None:
            ordered = ordered[:limit]
        return ordered

    async def count(self, device_id: uuid.UUID) -> int:
        counts = await self.counts_for([device_id])
        return counts.get(device_id, 0)

    async def counts_for(self, device_ids: list[uuid.UUID]) -> dict[uuid.UUID, int]:
        """Reading counts per device: rows folded into chunks plus raw rows that
        do not shadow a folded row."""
        if not device_ids:
            return {}
        counts: dict[uuid.UUID, int] = defaultdict(int)

        raw = await self.db.execute(
            select(DeviceReading.device_id, func.count(DeviceReading.id))
            .where(DeviceReading.device_id.in_(device_ids))
            .where(DeviceReading.overrides_chunk.is_(False))
            .group_by(DeviceReading.device_id)
        )
        for device_id, n in raw.all():
            counts[device_id] += n

        folded = await self.db.execute(
            select(ReadingChunk.device_id, func.sum(ReadingChunk.row_count))
            .where(ReadingChunk.device_id.in_(device_ids))
            .group_by(ReadingChunk.device_id)
        )
        for device_id, n in folded.all():
            counts[device_id] += int(n or 0)

        return dict(counts)

    async def has_readings(self, device_id: uuid.UUID) -> bool:
        raw = await self.db.execute(
            select(DeviceReading.id).where(DeviceReading.device_id == device_id).limit(1)
        )
        if raw.first() is not None:
            return True
        folded = await self.db.execute(
            select(ReadingChunk.device_id).where(ReadingChunk.device_id == device_id).limit(1)
        )
        return folded.first() is not None

    # ==================== Partition maintenance ====================

    async def compress_partition(self, partition: ReadingPartition) -> CompressionResult:
        """Fold a partition's raw rows into per-device chunks in one transaction.

        Re-running on an already compressed partition folds only its tail.
        Query results are unchanged.
        """
        range_start = partition.range_start
        result = await self.db.execute(
            select(DeviceReading).where(DeviceReading.partition_start == range_start)
        )
        raw_rows = list(result.scalars().all())

        by_device: dict[uuid.UUID, list[DeviceReading]] = defaultdict(list)
        for row in raw_rows:
            by_device[row.device_id].append(row)

        for device_id, rows in by_device.items():
            chunk = await self.db.get(ReadingChunk, (range_start, device_id))
            folded: dict[datetime, ChunkRow] = {}
            if chunk is not None:
                folded = {r.time: r for r in decode_chunk(chunk.payload)}
            for row in rows:
                folded[row.time] = ChunkRow(
                    id=row.id,
                    time=row.time,
                    metrics=row.metrics,
                    revision=row.revision,
                    ingested_at=row.ingested_at,
                )

            entries = list(folded.values())
            payload = encode_chunk(entries)
            times = [e.time for e in entries]
            if chunk is None:
                self.db.add(ReadingChunk(
                    partition_start=range_start,
                    device_id=device_id,
                    payload=payload,
                    row_count=len(entries),
                    min_time=min(times),
                    max_time=max(times),
                ))
            else:
                chunk.payload = payload
                chunk.row_count = len(entries)
                chunk.min_time = min(times)
                chunk.max_time = max(times)

        if raw_rows:
            # Only remove the revision that was folded; a concurrent overwrite
            # keeps its raw row and wins on read.
            table = DeviceReading.__table__
            await self.db.execute(
                table.delete().where(
                    table.c.id == bindparam("row_id"),
                    table.c.revision == bindparam("row_revision"),
                ),
                [{"row_id": r.id, "row_revision": r.revision} for r in raw_rows],
            )
            # Rows overwritten while this pass ran are now shadowing a chunk row.
            await self.db.execute(
                table.update()
                .where(table.c.id == bindparam("row_id"))
                .values(overrides_chunk=True),
                [{"row_id": r.id} for r in raw_rows],
            )

        await self.db.flush()
        total = await self.db.execute(
            select(func.coalesce(func.sum(ReadingChunk.row_count), 0))
            .where(ReadingChunk.partition_start == range_start)
        )
        partition.row_count = int(total.scalar() or 0)
        partition.state = PartitionState.COMPRESSED.value
        partition.compressed_at = datetime.now(timezone.utc)
        await self.db.commit()

        return CompressionResult(
            range_start=range_start,
            rows_folded=len(raw_rows),
            chunks_written=len(by_device),
        )

    async def drop_partition(self, partition: ReadingPartition) -> int:
        """Delete a partition wholesale (raw rows, chunks, metadata) in one transaction."""
        range_start = partition.range_start
        folded = partition.row_count
        raw = await self.db.execute(
            delete(DeviceReading).where(DeviceReading.partition_start == range_start)
        )
        await self.db.execute(
            delete(ReadingChunk).where(ReadingChunk.partition_start == range_start)
        )
        await self.db.execute(
            delete(ReadingPartition).where(ReadingPartition.range_start == range_start)
        )
        await self.db.commit()
        return (raw.rowcount or 0) + folded

    async def tail_size(self, partition: ReadingPartition) -> int:
        """Raw rows still waiting to be folded into a partition's chunks."""
        result = await self.db.execute(
            select(func.count(DeviceReading.id))
            .where(DeviceReading.partition_start == partition.range_start)
        )
        return int(result.scalar() or 0)

    # ==================== Helpers ====================

    async def _chunks_for(self, device_id: uuid.UUID) -> list[ReadingChunk]:
        result = await self.db.execute(
            select(ReadingChunk).where(ReadingChunk.device_id == device_id)
        )
        return list(result.scalars().all())

    async def _chunk_row_at(
        self, range_start: datetime, device_id: uuid.UUID, time: datetime
    ) -> ChunkRow | None:
        chunk = await self.db.get(ReadingChunk, (range_start, device_id))
        if chunk is None or not (chunk.min_time <= time <= chunk.max_time):
            return None
        for row in decode_chunk(chunk.payload):
            if row.time == time:
                return row
        return None

    @staticmethod
    def _from_chunk_row(chunk: ReadingChunk, row: ChunkRow) -> DeviceReading:
        """Transient (never added to a session) reading built from a chunk row."""
        return DeviceReading(
            id=row.id,
            device_id=chunk.device_id,
            time=row.time,
            partition_start=chunk.partition_start,
            metrics=row.metrics,
            revision=row.revision,
            ingested_at=row.ingested_at,
        )
