#!/usr/bin/env python3
"""SensorHub maintenance utilities - run lifecycle policies and repair rollups by hand."""

import asyncio
import argparse
import json
import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from sensorhub.core.config import get_settings
from sensorhub.core.database import Database
from sensorhub.services.aggregation_engine import AggregationEngine, hour_bucket
from sensorhub.services.lifecycle_manager import LifecycleManager
from sensorhub.services.liveness_monitor import LivenessMonitor
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore
from sensorhub.services.rollup_queue import InMemoryRollupQueue

settings = get_settings()


def build_components() -> tuple[Database, PartitionCatalog]:
    database = Database(settings.database_url, echo=False)
    database.connect()
    return database, PartitionCatalog(width=timedelta(days=settings.partition_width_days))


def build_lifecycle(database: Database, catalog: PartitionCatalog) -> LifecycleManager:
    return LifecycleManager(
        database.session_factory,
        catalog,
        compress_after=timedelta(days=settings.compress_after_days),
        retention=timedelta(days=settings.retention_days),
        rollup_retention=(
            timedelta(days=settings.rollup_retention_days)
            if settings.rollup_retention_days is not None
            else None
        ),
    )


async def list_partitions() -> None:
    """List partitions with their state and row counts."""
    database, catalog = build_components()
    try:
        async with database.session_factory() as db:
            store = ReadingStore(db, catalog)
            partitions = await catalog.list_partitions(db)

            print(f"\n{'Range start':<27} {'Range end':<27} {'State':<12} {'Rows':>8} {'Tail':>6}")
            print("-" * 84)
            for p in partitions:
                tail = await store.tail_size(p) if p.is_compressed else "-"
                print(
                    f"{p.range_start.isoformat():<27} {p.range_end.isoformat():<27} "
                    f"{p.state:<12} {p.row_count:>8} {tail!s:>6}"
                )
            print(f"\nTotal: {len(partitions)} partitions")
    finally:
        await database.disconnect()


async def run_policy(policy: str) -> bool:
    """Run one compression or retention sweep now."""
    database, catalog = build_components()
    try:
        manager = build_lifecycle(database, catalog)
        if policy == "compress":
            report = await manager.compress()
        else:
            report = await manager.enforce_retention()
        print(json.dumps(report.to_dict(), indent=2))
        return report.failed == 0
    finally:
        await database.disconnect()


async def refresh_rollups(device_id: uuid.UUID, start: datetime, end: datetime) -> None:
    """Recompute hourly rollups of one device from raw readings."""
    database, catalog = build_components()
    try:
        engine = AggregationEngine(
            database.session_factory,
            InMemoryRollupQueue(),
            catalog,
            metric_name=settings.rollup_field,
        )
        hour = hour_bucket(start)
        rebuilt = 0
        while hour <= end:
            if await engine.refresh(device_id, hour) is not None:
                rebuilt += 1
            hour += timedelta(hours=1)
        print(f"✅ {rebuilt} hourly rollups rebuilt for {device_id}")
    finally:
        await database.disconnect()


async def demote_silent() -> None:
    """Run one liveness pass."""
    database, catalog = build_components()
    try:
        monitor = LivenessMonitor(
            database.session_factory,
            catalog,
            heartbeat_timeout_seconds=settings.heartbeat_timeout_seconds,
        )
        demoted = await monitor.check_devices()
        print(f"✅ {len(demoted)} devices demoted to offline")
        for device_id in demoted:
            print(f"  - {device_id}")
    finally:
        await database.disconnect()


def _timestamp(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def main():
    parser = argparse.ArgumentParser(description="SensorHub Maintenance Utilities")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    subparsers.add_parser("partitions", help="List reading partitions")
    subparsers.add_parser("compress", help="Run the compression policy once")
    subparsers.add_parser("retention", help="Run the retention policy once")
    subparsers.add_parser("demote", help="Demote devices past the heartbeat timeout")

    refresh_parser = subparsers.add_parser("refresh", help="Rebuild hourly rollups from raw readings")
    refresh_parser.add_argument("device_id", type=uuid.UUID, help="Device ID")
    refresh_parser.add_argument("--from", dest="start", type=_timestamp, required=True, help="ISO 8601 start")
    refresh_parser.add_argument("--to", dest="end", type=_timestamp, default=None, help="ISO 8601 end (default now)")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return

    if args.command == "partitions":
        asyncio.run(list_partitions())
    elif args.command in ("compress", "retention"):
        ok = asyncio.run(run_policy(args.command))
        sys.exit(0 if ok else 1)
    elif args.command == "demote":
        asyncio.run(demote_silent())
    elif args.command == "refresh":
        end = args.end or datetime.now(timezone.utc)
        asyncio.run(refresh_rollups(args.device_id, args.start, end))


if __name__ == "__main__":
    main()
