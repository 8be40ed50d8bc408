"""Tests for DeviceRegistry."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from sensorhub.core.config import DeviceDeletePolicy
from sensorhub.core.errors import ConflictError, NotFoundError, ValidationError
from sensorhub.models import DeviceReading, DeviceStatus, HourlyRollup, IoTDevice
from sensorhub.services.device_registry import DeviceRegistry


def _rollup(device_id: uuid.UUID, bucket: datetime) -> HourlyRollup:
    return HourlyRollup(
        device_id=device_id, bucket=bucket, metric_name="value", count=1, avg=1.0, min=1.0, max=1.0
    )


class TestRegister:
    """Tests for device registration."""

    @pytest.mark.asyncio
    async def test_register_starts_offline(self, registry: DeviceRegistry):
        device = await registry.register(
            name="River gauge",
            device_type="water_level",
            village_id="village-02",
            elevation=112.0,
            telemetry_schema=[{"name": "value", "type": "numeric"}],
        )

        assert device.id is not None
        assert device.status == DeviceStatus.OFFLINE.value
        assert device.last_seen is None
        assert device.elevation == 112.0
        assert device.schema_lookup == {"value": "numeric"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("missing", ["name", "device_type", "village_id"])
    async def test_register_requires_fields(self, registry: DeviceRegistry, missing: str):
        attributes = {"name": "Sensor", "device_type": "temperature", "village_id": "v1"}
        attributes.pop(missing)

        with pytest.raises(ValidationError) as exc_info:
            await registry.register(**attributes)

        assert missing in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_register_rejects_bad_schema(self, registry: DeviceRegistry):
        with pytest.raises(ValidationError):
            await registry.register(
                name="Sensor",
                device_type="temperature",
                village_id="v1",
                telemetry_schema=[{"name": "value", "type": "complex"}],
            )


class TestGetAndList:
    """Tests for lookups."""

    @pytest.mark.asyncio
    async def test_get_unknown_device(self, registry: DeviceRegistry):
        with pytest.raises(NotFoundError):
            await registry.get(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_list_filters_by_type_and_status(self, registry: DeviceRegistry):
        await registry.register(name="T1", device_type="temperature", village_id="v1")
        await registry.register(name="T2", device_type="temperature", village_id="v1")
        humidity = await registry.register(name="H1", device_type="humidity", village_id="v2")
        await registry.mark_seen(humidity.id, datetime.now(timezone.utc))

        devices, total = await registry.list_devices(device_type="temperature")
        assert total == 2
        assert {d.name for d in devices} == {"T1", "T2"}

        devices, total = await registry.list_devices(status=DeviceStatus.ONLINE)
        assert total == 1
        assert devices[0].id == humidity.id

    @pytest.mark.asyncio
    async def test_list_paginates(self, registry: DeviceRegistry):
        for i in range(5):
            await registry.register(name=f"D{i}", device_type="temperature", village_id="v1")

        page, total = await registry.list_devices(limit=2, offset=4)

        assert total == 5
        assert len(page) == 1


class TestUpdateAttributes:
    """Tests for partial updates."""

    @pytest.mark.asyncio
    async def test_partial_update_changes_only_supplied_fields(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        updated = await registry.update_attributes(test_device.id, firmware_version="2.1.0")

        assert updated.firmware_version == "2.1.0"
        assert updated.name == "Greenhouse sensor"
        assert updated.location_name == "Greenhouse A"
        assert updated.latitude == 45.5

    @pytest.mark.asyncio
    async def test_update_unknown_device(self, registry: DeviceRegistry):
        with pytest.raises(NotFoundError):
            await registry.update_attributes(uuid.uuid4(), name="x")

    @pytest.mark.asyncio
    async def test_update_rejects_empty_required_field(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        with pytest.raises(ValidationError):
            await registry.update_attributes(test_device.id, name="")

    @pytest.mark.asyncio
    async def test_admin_can_set_maintenance(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        updated = await registry.update_attributes(test_device.id, status="maintenance")

        assert updated.status == DeviceStatus.MAINTENANCE.value
        history, total = await registry.status_history(test_device.id)
        assert total == 1
        assert history[0].old_status == "offline"
        assert history[0].new_status == "maintenance"

    @pytest.mark.asyncio
    async def test_admin_cannot_set_online(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        with pytest.raises(ValidationError):
            await registry.update_attributes(test_device.id, status="online")


class TestMarkSeen:
    """Tests for the last_seen compare-and-set."""

    @pytest.mark.asyncio
    async def test_first_heartbeat_sets_online(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert await registry.mark_seen(test_device.id, ts) is True

        device = await registry.get(test_device.id)
        assert device.status == DeviceStatus.ONLINE.value
        assert device.last_seen == ts

    @pytest.mark.asyncio
    async def test_older_heartbeat_never_moves_last_seen_back(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        newer = datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc)
        older = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert await registry.mark_seen(test_device.id, newer) is True
        assert await registry.mark_seen(test_device.id, older) is False

        device = await registry.get(test_device.id)
        assert device.last_seen == newer
        assert device.status == DeviceStatus.ONLINE.value

    @pytest.mark.asyncio
    async def test_in_order_heartbeats_advance(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        older = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        newer = datetime(2026, 3, 1, 12, 5, tzinfo=timezone.utc)

        await registry.mark_seen(test_device.id, older)
        await registry.mark_seen(test_device.id, newer)

        device = await registry.get(test_device.id)
        assert device.last_seen == newer

    @pytest.mark.asyncio
    async def test_same_timestamp_is_noop(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert await registry.mark_seen(test_device.id, ts) is True
        assert await registry.mark_seen(test_device.id, ts) is False

        _, total = await registry.status_history(test_device.id)
        assert total == 1

    @pytest.mark.asyncio
    async def test_maintenance_is_kept_but_last_seen_advances(
        self, registry: DeviceRegistry, test_device: IoTDevice
    ):
        await registry.update_attributes(test_device.id, status="maintenance")
        ts = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

        assert await registry.mark_seen(test_device.id, ts) is True

        device = await registry.get(test_device.id)
        assert device.status == DeviceStatus.MAINTENANCE.value
        assert device.last_seen == ts

    @pytest.mark.asyncio
    async def test_missing_device_is_noop(self, registry: DeviceRegistry):
        assert await registry.mark_seen(uuid.uuid4(), datetime.now(timezone.utc)) is False


class TestDemoteSilent:
    """Tests for liveness demotion."""

    @pytest.mark.asyncio
    async def test_silent_devices_go_offline(self, registry: DeviceRegistry):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        silent = await registry.register(name="Silent", device_type="temperature", village_id="v1")
        chatty = await registry.register(name="Chatty", device_type="temperature", village_id="v1")
        await registry.mark_seen(silent.id, now - timedelta(minutes=20))
        await registry.mark_seen(chatty.id, now - timedelta(minutes=2))

        demoted = await registry.demote_silent(now, timedelta(seconds=900))

        assert demoted == [silent.id]
        assert (await registry.get(silent.id)).status == DeviceStatus.OFFLINE.value
        assert (await registry.get(chatty.id)).status == DeviceStatus.ONLINE.value

        history, _ = await registry.status_history(silent.id)
        assert history[0].new_status == "offline"
        assert "900" in history[0].reason

    @pytest.mark.asyncio
    async def test_maintenance_devices_are_not_demoted(self, registry: DeviceRegistry):
        now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        device = await registry.register(name="Serviced", device_type="temperature", village_id="v1")
        await registry.update_attributes(device.id, status="maintenance")
        await registry.mark_seen(device.id, now - timedelta(hours=5))

        assert await registry.demote_silent(now, timedelta(seconds=900)) == []


class TestDelete:
    """Tests for both delete policies."""

    @pytest.mark.asyncio
    async def test_delete_without_readings(self, registry: DeviceRegistry, test_device: IoTDevice):
        await registry.delete(test_device.id)

        assert await registry.find(test_device.id) is None

    @pytest.mark.asyncio
    async def test_reject_policy_blocks_delete_with_readings(
        self, registry: DeviceRegistry, test_device: IoTDevice, store
    ):
        await store.append(test_device.id, datetime(2026, 3, 1, tzinfo=timezone.utc), {"value": 1.0})

        with pytest.raises(ConflictError):
            await registry.delete(test_device.id)

        assert await registry.find(test_device.id) is not None

    @pytest.mark.asyncio
    async def test_cascade_policy_removes_readings_and_rollups(
        self, db_session, store, test_device: IoTDevice
    ):
        registry = DeviceRegistry(db_session, store, delete_policy=DeviceDeletePolicy.CASCADE)
        ts = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)
        await store.append(test_device.id, ts, {"value": 1.0})
        await store.append(test_device.id, ts + timedelta(minutes=5), {"value": 2.0})
        db_session.add(HourlyRollup(
            device_id=test_device.id,
            bucket=ts,
            metric_name="value",
            count=2,
            avg=1.5,
            min=1.0,
            max=2.0,
        ))
        await db_session.commit()

        await registry.delete(test_device.id)

        assert await registry.find(test_device.id) is None
        readings = await db_session.execute(
            select(DeviceReading).where(DeviceReading.device_id == test_device.id)
        )
        assert readings.scalars().all() == []
        rollups = await db_session.execute(
            select(HourlyRollup).where(HourlyRollup.device_id == test_device.id)
        )
        assert rollups.scalars().all() == []

    @pytest.mark.asyncio
    async def test_cascade_removes_compressed_rows(
        self, db_session, store, catalog, test_device: IoTDevice, closed_ts
    ):
        registry = DeviceRegistry(db_session, store, delete_policy=DeviceDeletePolicy.CASCADE)
        await store.append(test_device.id, closed_ts, {"value": 1.0})
        partition = await catalog.get(db_session, catalog.bounds(closed_ts)[0])
        await store.compress_partition(partition)
        assert await store.has_readings(test_device.id)

        await registry.delete(test_device.id)

        assert not await store.has_readings(test_device.id)
        await db_session.refresh(partition)
        assert partition.row_count == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", list(DeviceDeletePolicy))
    async def test_rollups_without_raw_data_go_with_the_device(
        self, db_session, store, test_device: IoTDevice, policy: DeviceDeletePolicy
    ):
        registry = DeviceRegistry(db_session, store, delete_policy=policy)
        db_session.add(_rollup(test_device.id, datetime(2025, 1, 6, 10, tzinfo=timezone.utc)))
        await db_session.commit()
        assert not await store.has_readings(test_device.id)

        await registry.delete(test_device.id)

        rollups = await db_session.execute(
            select(HourlyRollup).where(HourlyRollup.device_id == test_device.id)
        )
        assert rollups.scalars().all() == []

    @pytest.mark.asyncio
    async def test_rejected_delete_keeps_rollups(
        self, registry: DeviceRegistry, db_session, store, test_device: IoTDevice
    ):
        ts = datetime(2026, 3, 1, 10, tzinfo=timezone.utc)
        await store.append(test_device.id, ts, {"value": 1.0})
        db_session.add(_rollup(test_device.id, ts))
        await db_session.commit()

        with pytest.raises(ConflictError):
            await registry.delete(test_device.id)

        rollups = await db_session.execute(
            select(HourlyRollup).where(HourlyRollup.device_id == test_device.id)
        )
        assert len(rollups.scalars().all()) == 1

    @pytest.mark.asyncio
    async def test_delete_unknown_device(self, registry: DeviceRegistry):
        with pytest.raises(NotFoundError):
            await registry.delete(uuid.uuid4())

    @pytest.mark.asyncio
    async def test_readings_of_deleted_device_are_orphans(
        self, db_session, store, test_device: IoTDevice
    ):
        """A reading appended after the device row is gone is kept, not rejected by the store."""
        await db_session.delete(await db_session.get(IoTDevice, test_device.id))
        await db_session.commit()

        result = await store.append(test_device.id, datetime(2026, 3, 1, tzinfo=timezone.utc), {"value": 3.0})

        assert result.reading.device_id == test_device.id
        assert await store.count(test_device.id) == 1
