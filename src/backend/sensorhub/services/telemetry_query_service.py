"""Telemetry query service.

Raw reads go to the reading store (capped, newest first); hourly reads go
to the rollup table through the aggregation engine and never scan raw
partitions.
"""

from datetime import datetime, timezone
from uuid import UUID

from sensorhub.core.errors import ValidationError
from sensorhub.services.aggregation_engine import AggregationEngine
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.reading_store import ReadingStore


class TelemetryQueryService:
    """Query readings by time range and hourly aggregates."""

    def __init__(
        self,
        registry: DeviceRegistry,
        store: ReadingStore,
        engine: AggregationEngine | None = None,
        default_limit: int = 100,
    ):
        self.registry = registry
        self.store = store
        self.engine = engine
        self.default_limit = default_limit

    async def raw(
        self,
        device_id: UUID | str,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
        limit: int | None = None,
    ) -> dict:
        """Readings for a device, newest first. ``limit`` is capped by the store."""
        start_time, end_time = _as_utc(start_time), _as_utc(end_time)
        _check_range(start_time, end_time)
        device = await self.registry.get(device_id)
        device_id = device.id
        summary = {
            "name": device.name,
            "type": device.device_type,
            "location": device.location_name,
        }

        readings = await self.store.query(
            device_id,
            start_time,
            end_time,
            self.store.clamp_limit(limit, self.default_limit),
        )
        return {
            "readings": [{**r.to_dict(), "device": summary} for r in readings],
            "count": len(readings),
            "deviceId": str(device_id),
            "timeRange": {
                "from": start_time.isoformat() if start_time else None,
                "to": end_time.isoformat() if end_time else None,
            },
        }

    async def hourly(
        self,
        device_id: UUID | str,
        start_time: datetime,
        end_time: datetime,
    ) -> dict:
        """Hourly rollups in chronological order (bucket ASC)."""
        start_time, end_time = _as_utc(start_time), _as_utc(end_time)
        _check_range(start_time, end_time)
        device_id = (await self.registry.get(device_id)).id

        rollups = await self.engine.rollups(device_id, start_time, end_time) if self.engine else []
        return {
            "rollups": [r.to_dict() for r in rollups],
            "count": len(rollups),
            "deviceId": str(device_id),
            "timeRange": {"from": start_time.isoformat(), "to": end_time.isoformat()},
        }

    async def latest(self, device_id: UUID | str) -> dict | None:
        """Most recent reading of a device, or None when it has never reported."""
        device_id = (await self.registry.get(device_id)).id
        reading = await self.store.latest(device_id)
        return reading.to_dict() if reading else None


def _as_utc(ts: datetime | None) -> datetime | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _check_range(start_time: datetime | None, end_time: datetime | None) -> None:
    if start_time and end_time and start_time > end_time:
        raise ValidationError("from must not be after to")
