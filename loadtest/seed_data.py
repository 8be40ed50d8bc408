#!/usr/bin/env python3
"""Seed test data for load testing.

Creates:
- Registered devices spread over several villages
- Backfilled readings at a 5 minute interval
- Hourly rollups rebuilt from the backfilled readings

This script should be run BEFORE load tests so the viewer persona has
history to query and the lifecycle policies have closed partitions to
work on.
"""

import argparse
import asyncio
import random
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add backend to Python path
backend_path = Path(__file__).parent.parent / "src" / "backend"
sys.path.insert(0, str(backend_path))

from sensorhub.core.config import get_settings
from sensorhub.core.database import Database
from sensorhub.models import DeviceReading
from sensorhub.services.aggregation_engine import AggregationEngine, hour_bucket
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore
from sensorhub.services.rollup_queue import InMemoryRollupQueue

DEVICE_TYPES = ["temperature", "humidity", "water_level", "soil_moisture", "rain_gauge"]
INTERVAL = timedelta(minutes=5)
BATCH_SIZE = 1000


async def create_devices(database: Database, catalog: PartitionCatalog, count: int) -> list[uuid.UUID]:
    """Register ``count`` devices."""
    ids = []
    async with database.session_factory() as session:
        registry = DeviceRegistry(session, ReadingStore(session, catalog))
        for i in range(1, count + 1):
            device = await registry.register(
                name=f"Seed sensor {i}",
                device_type=DEVICE_TYPES[i % len(DEVICE_TYPES)],
                village_id=f"village-{(i % 10) + 1:02d}",
                latitude=12.35 + random.uniform(-0.5, 0.5),
                longitude=-1.52 + random.uniform(-0.5, 0.5),
                telemetry_schema=[
                    {"name": "value", "type": "numeric"},
                    {"name": "battery", "type": "numeric"},
                ],
            )
            ids.append(device.id)
    return ids


async def backfill_readings(
    database: Database,
    catalog: PartitionCatalog,
    device_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> int:
    """Insert readings in bulk, bypassing the per-reading append path."""
    written = 0
    value = random.uniform(10, 30)
    ts = start
    async with database.session_factory() as session:
        while ts < end:
            batch = []
            while ts < end and len(batch) < BATCH_SIZE:
                partition = await catalog.ensure(session, ts)
                value += random.uniform(-0.5, 0.5)
                batch.append(DeviceReading(
                    id=uuid.uuid4(),
                    device_id=device_id,
                    time=ts,
                    partition_start=partition.range_start,
                    metrics={"value": round(value, 2), "battery": random.randint(20, 100)},
                    revision=0,
                    ingested_at=datetime.now(timezone.utc),
                ))
                ts += INTERVAL
            session.add_all(batch)
            await session.commit()
            written += len(batch)

        registry = DeviceRegistry(session, ReadingStore(session, catalog))
        await registry.mark_seen(device_id, ts - INTERVAL)
    return written


async def rebuild_rollups(
    engine: AggregationEngine,
    device_id: uuid.UUID,
    start: datetime,
    end: datetime,
) -> int:
    hour = hour_bucket(start)
    rebuilt = 0
    while hour < end:
        if await engine.refresh(device_id, hour) is not None:
            rebuilt += 1
        hour += timedelta(hours=1)
    return rebuilt


async def main():
    """Main seeding function."""
    parser = argparse.ArgumentParser(description="Seed SensorHub with devices and history")
    parser.add_argument("--devices", type=int, default=20, help="Number of devices to register")
    parser.add_argument("--days", type=int, default=30, help="Days of history per device")
    args = parser.parse_args()

    print("\n" + "="*80)
    print("SensorHub Load Test Data Seeding")
    print("="*80 + "\n")

    settings = get_settings()
    database = Database(settings.database_url)
    database.connect()
    catalog = PartitionCatalog(width=timedelta(days=settings.partition_width_days))
    engine = AggregationEngine(
        database.session_factory,
        InMemoryRollupQueue(),
        catalog,
        metric_name=settings.rollup_field,
    )

    end = datetime.now(timezone.utc).replace(second=0, microsecond=0)
    start = end - timedelta(days=args.days)

    try:
        print(f"Registering {args.devices} devices...")
        device_ids = await create_devices(database, catalog, args.devices)

        readings = 0
        rollups = 0
        for n, device_id in enumerate(device_ids, start=1):
            readings += await backfill_readings(database, catalog, device_id, start, end)
            rollups += await rebuild_rollups(engine, device_id, start, end)
            print(f"  [{n}/{len(device_ids)}] {device_id}")

        print("\n" + "="*80)
        print("Seeding Complete!")
        print("="*80)
        print("Created:")
        print(f"  - {len(device_ids)} devices")
        print(f"  - {readings} readings ({args.days} days at {int(INTERVAL.total_seconds() // 60)} min)")
        print(f"  - {rollups} hourly rollups")
        print("="*80 + "\n")

    except Exception as e:
        print(f"\nERROR: {e}")
        raise
    finally:
        await database.disconnect()


if __name__ == "__main__":
    asyncio.run(main())
