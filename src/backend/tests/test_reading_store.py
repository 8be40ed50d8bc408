"""Tests for the partitioned ReadingStore and its chunk codec."""

import asyncio
import json
import uuid
import zlib
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import select
from sqlalchemy.dialects import postgresql

from sensorhub.models import DeviceReading, ReadingChunk, ReadingPartition
from sensorhub.services.chunk_codec import ChunkRow, decode_chunk, encode_chunk
from sensorhub.services.partition_catalog import EPOCH, PartitionCatalog
from sensorhub.services.reading_store import ReadingStore


class TestPartitionCatalog:
    """Tests for partition arithmetic and metadata."""

    def test_bounds_are_epoch_aligned(self):
        catalog = PartitionCatalog(width=timedelta(days=7))
        ts = datetime(2026, 3, 4, 15, 30, tzinfo=timezone.utc)

        start, end = catalog.bounds(ts)

        assert start <= ts < end
        assert end - start == timedelta(days=7)
        assert (start - EPOCH) % timedelta(days=7) == timedelta(0)

    def test_partition_start_is_inclusive(self):
        catalog = PartitionCatalog(width=timedelta(days=7))
        start, _ = catalog.bounds(datetime(2026, 3, 4, tzinfo=timezone.utc))

        assert catalog.bounds(start)[0] == start
        assert catalog.bounds(start - timedelta(microseconds=1))[0] == start - timedelta(days=7)

    def test_width_must_be_positive(self):
        with pytest.raises(ValueError):
            PartitionCatalog(width=timedelta(0))

    @pytest.mark.asyncio
    async def test_ensure_is_idempotent(self, db_session, catalog: PartitionCatalog):
        ts = datetime(2026, 3, 4, tzinfo=timezone.utc)

        first = await catalog.ensure(db_session, ts)
        second = await catalog.ensure(db_session, ts + timedelta(hours=1))
        await db_session.commit()

        assert first.range_start == second.range_start
        result = await db_session.execute(select(ReadingPartition))
        assert len(result.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_metadata_reads_can_lock_the_row(self, catalog: PartitionCatalog):
        db = AsyncMock()
        db.execute.return_value = MagicMock()

        await catalog.get(db, EPOCH)
        await catalog.get(db, EPOCH, for_share=True)
        await catalog.get(db, EPOCH, for_update=True)

        plain, shared, exclusive = (
            str(call.args[0].compile(dialect=postgresql.dialect()))
            for call in db.execute.call_args_list
        )
        assert "FOR SHARE" not in plain and "FOR UPDATE" not in plain
        assert "FOR SHARE" in shared
        assert "FOR UPDATE" in exclusive


class TestChunkCodec:
    """Tests for chunk encoding."""

    def test_rows_come_back_sorted_by_time(self):
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        rows = [
            ChunkRow(id=uuid.uuid4(), time=t0 + timedelta(minutes=10), metrics={"value": 2}),
            ChunkRow(id=uuid.uuid4(), time=t0, metrics={"value": 1, "ok": True}, revision=3),
        ]

        decoded = decode_chunk(encode_chunk(rows))

        assert [r.time for r in decoded] == [t0, t0 + timedelta(minutes=10)]
        assert decoded[0].revision == 3
        assert decoded[0].metrics == {"value": 1, "ok": True}
        assert decoded[0].id == rows[1].id

    def test_chunks_without_ingest_times_still_decode(self):
        t0 = datetime(2026, 1, 1, tzinfo=timezone.utc)
        row_id = uuid.uuid4()
        legacy = zlib.compress(json.dumps([[t0.isoformat(), row_id.hex, 1, {"value": 4}]]).encode())

        decoded = decode_chunk(legacy)

        assert decoded == [ChunkRow(id=row_id, time=t0, metrics={"value": 4}, revision=1)]
        assert decoded[0].ingested_at is None


class TestAppend:
    """Tests for appends and last-write-wins overwrite."""

    @pytest.mark.asyncio
    async def test_append_creates_partition(self, db_session, store: ReadingStore, catalog):
        device_id = uuid.uuid4()
        ts = datetime(2026, 3, 4, 12, tzinfo=timezone.utc)

        result = await store.append(device_id, ts, {"value": 20.0})

        assert result.overwritten is False
        assert result.reading.partition_start == catalog.bounds(ts)[0]
        assert await catalog.get(db_session, catalog.bounds(ts)[0]) is not None

    @pytest.mark.asyncio
    async def test_duplicate_timestamp_overwrites(self, db_session, store: ReadingStore):
        device_id = uuid.uuid4()
        ts = datetime(2026, 3, 4, 12, tzinfo=timezone.utc)

        await store.append(device_id, ts, {"value": 20.0})
        result = await store.append(device_id, ts, {"value": 25.0})

        assert result.overwritten is True
        assert result.replaced == {"value": 20.0}
        assert result.reading.revision == 1

        rows = await db_session.execute(
            select(DeviceReading).where(DeviceReading.device_id == device_id)
        )
        stored = rows.scalars().all()
        assert len(stored) == 1
        assert stored[0].metrics == {"value": 25.0}


class TestQuery:
    """Tests for range queries."""

    @pytest.mark.asyncio
    async def test_query_is_newest_first_and_bounded(self, store: ReadingStore):
        device_id = uuid.uuid4()
        t0 = datetime(2026, 3, 4, tzinfo=timezone.utc)
        for i in range(10):
            await store.append(device_id, t0 + timedelta(minutes=i), {"value": float(i)})

        rows = await store.query(device_id, t0 + timedelta(minutes=2), t0 + timedelta(minutes=6))

        assert [r.metrics["value"] for r in rows] == [6.0, 5.0, 4.0, 3.0, 2.0]

    @pytest.mark.asyncio
    async def test_limit_is_capped(self, db_session, catalog):
        store = ReadingStore(db_session, catalog, max_limit=20)
        device_id = uuid.uuid4()
        t0 = datetime(2026, 3, 4, tzinfo=timezone.utc)
        for i in range(30):
            await store.append(device_id, t0 + timedelta(seconds=i), {"value": i})

        rows = await store.query(device_id, limit=5000)

        assert len(rows) == 20
        assert rows[0].time == t0 + timedelta(seconds=29)

    @pytest.mark.asyncio
    async def test_query_spans_partitions(self, store: ReadingStore):
        device_id = uuid.uuid4()
        t0 = datetime(2026, 3, 4, tzinfo=timezone.utc)
        for week in range(3):
            await store.append(device_id, t0 + timedelta(days=7 * week), {"value": week})

        rows = await store.query(device_id)

        assert [r.metrics["value"] for r in rows] == [2, 1, 0]

    @pytest.mark.asyncio
    async def test_other_devices_are_not_returned(self, store: ReadingStore):
        a, b = uuid.uuid4(), uuid.uuid4()
        ts = datetime(2026, 3, 4, tzinfo=timezone.utc)
        await store.append(a, ts, {"value": 1})
        await store.append(b, ts, {"value": 2})

        rows = await store.query(a)

        assert len(rows) == 1
        assert rows[0].device_id == a

    @pytest.mark.asyncio
    async def test_latest(self, store: ReadingStore):
        device_id = uuid.uuid4()
        t0 = datetime(2026, 3, 4, tzinfo=timezone.utc)
        await store.append(device_id, t0 + timedelta(minutes=5), {"value": 2})
        await store.append(device_id, t0, {"value": 1})

        latest = await store.latest(device_id)

        assert latest.metrics == {"value": 2}
        assert await store.latest(uuid.uuid4()) is None


class TestCompression:
    """Tests for compressed partitions."""

    async def _fill(self, store: ReadingStore, device_id, start: datetime, n: int):
        for i in range(n):
            await store.append(device_id, start + timedelta(minutes=10 * i), {"value": float(i)})

    @pytest.mark.asyncio
    async def test_compression_preserves_query_results(
        self, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        other = uuid.uuid4()
        await self._fill(store, device_id, closed_ts, 12)
        await self._fill(store, other, closed_ts, 3)
        before = [(r.time, r.metrics) for r in await store.query(device_id)]

        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])
        result = await store.compress_partition(partition)

        assert result.rows_folded == 15
        assert result.chunks_written == 2
        assert partition.is_compressed
        assert partition.row_count == 15
        assert await store.tail_size(partition) == 0

        after = [(r.time, r.metrics) for r in await store.query(device_id)]
        assert after == before
        assert await store.count(device_id) == 12

        chunks = await db_session.execute(select(ReadingChunk))
        assert len(chunks.scalars().all()) == 2

    @pytest.mark.asyncio
    async def test_query_with_limit_over_compressed_and_open_partitions(
        self, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        await self._fill(store, device_id, closed_ts, 5)
        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])
        await store.compress_partition(partition)
        recent = closed_ts + timedelta(days=14)
        await self._fill(store, device_id, recent, 3)

        rows = await store.query(device_id, limit=4)

        assert len(rows) == 4
        assert rows[0].time == recent + timedelta(minutes=20)
        assert rows[3].time == closed_ts + timedelta(minutes=40)

    @pytest.mark.asyncio
    async def test_append_into_compressed_partition(
        self, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        await self._fill(store, device_id, closed_ts, 3)
        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])
        await store.compress_partition(partition)

        late = closed_ts + timedelta(minutes=5)
        result = await store.append(device_id, late, {"value": 99.0})

        assert result.overwritten is False
        assert await store.tail_size(partition) == 1
        rows = await store.query(device_id)
        assert len(rows) == 4
        assert rows[-2].time == late

        # A second pass folds the tail in.
        again = await store.compress_partition(partition)
        assert again.rows_folded == 1
        assert await store.tail_size(partition) == 0
        assert await store.count(device_id) == 4

    @pytest.mark.asyncio
    async def test_overwrite_inside_compressed_partition(
        self, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        await self._fill(store, device_id, closed_ts, 3)
        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])
        await store.compress_partition(partition)

        result = await store.append(device_id, closed_ts, {"value": -1.0})

        assert result.overwritten is True
        assert result.replaced == {"value": 0.0}
        rows = await store.query(device_id)
        assert len(rows) == 3
        assert rows[-1].metrics == {"value": -1.0}
        assert await store.count(device_id) == 3

        await store.compress_partition(partition)
        rows = await store.query(device_id)
        assert rows[-1].metrics == {"value": -1.0}
        assert await store.count(device_id) == 3


    @pytest.mark.asyncio
    async def test_count_matches_query_after_overwriting_folded_row(
        self, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        other = uuid.uuid4()
        await store.append(device_id, closed_ts, {"value": 1.0})
        await store.append(other, closed_ts, {"value": 5.0})
        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])
        await store.compress_partition(partition)

        await store.append(device_id, closed_ts, {"value": 2.0})
        await store.append(device_id, closed_ts, {"value": 3.0})

        rows = await store.query(device_id)
        assert [r.metrics for r in rows] == [{"value": 3.0}]
        assert await store.counts_for([device_id, other]) == {device_id: 1, other: 1}
        assert await store.tail_size(partition) == 1


class TestDropPartition:
    """Tests for whole-partition drops."""

    @pytest.mark.asyncio
    async def test_drop_removes_raw_chunks_and_metadata(
        self, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        await store.append(device_id, closed_ts, {"value": 1})
        await store.append(device_id, closed_ts + timedelta(minutes=1), {"value": 2})
        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])
        await store.compress_partition(partition)
        await store.append(device_id, closed_ts + timedelta(minutes=2), {"value": 3})

        removed = await store.drop_partition(partition)

        assert removed == 3
        assert await store.count(device_id) == 0
        assert await catalog.get(db_session, catalog.bounds(closed_ts)[0]) is None


class TestClosedPartitionWrites:
    """Appends into closed partitions against concurrent sweeps."""

    async def _start_append(self, database, catalog, device_id, ts, metrics) -> asyncio.Task:
        async def write():
            async with database.session_factory() as db:
                return await ReadingStore(db, catalog).append(device_id, ts, metrics)

        task = asyncio.create_task(write())
        await asyncio.sleep(0.05)
        return task

    @pytest.mark.asyncio
    async def test_append_waits_for_drop_and_recreates_metadata(
        self, database, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        await store.append(device_id, closed_ts, {"value": 1.0})
        range_start = catalog.bounds(closed_ts)[0]
        partition = await catalog.get(db_session, range_start)

        async with catalog.lock:
            task = await self._start_append(
                database, catalog, device_id, closed_ts + timedelta(hours=1), {"value": 2.0}
            )
            assert not task.done()
            await store.drop_partition(partition)

        result = await task

        assert result.reading.partition_start == range_start
        assert await catalog.get(db_session, range_start, for_share=True) is not None
        assert await store.count(device_id) == 1

    @pytest.mark.asyncio
    async def test_append_waits_for_compression_and_sees_folded_row(
        self, database, db_session, store: ReadingStore, catalog, closed_ts
    ):
        device_id = uuid.uuid4()
        await store.append(device_id, closed_ts, {"value": 1.0})
        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])

        async with catalog.lock:
            task = await self._start_append(database, catalog, device_id, closed_ts, {"value": 2.0})
            assert not task.done()
            await store.compress_partition(partition)

        result = await task

        assert result.replaced == {"value": 1.0}
        assert result.reading.overrides_chunk is True
        assert await store.count(device_id) == 1
        rows = await store.query(device_id)
        assert [r.metrics for r in rows] == [{"value": 2.0}]

    @pytest.mark.asyncio
    async def test_active_partition_append_does_not_wait(self, catalog, store: ReadingStore):
        async with catalog.lock:
            result = await store.append(uuid.uuid4(), datetime.now(timezone.utc), {"value": 1.0})

        assert result.overwritten is False
