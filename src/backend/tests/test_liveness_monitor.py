"""Tests for LivenessMonitor."""

from datetime import datetime, timedelta, timezone

import pytest

from sensorhub.models import DeviceStatus
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.liveness_monitor import LivenessMonitor


@pytest.fixture
def monitor(database, catalog) -> LivenessMonitor:
    return LivenessMonitor(
        database.session_factory,
        catalog,
        poll_interval=0.05,
        heartbeat_timeout_seconds=900,
    )


class TestLivenessMonitor:
    """Tests for the demotion pass."""

    @pytest.mark.asyncio
    async def test_check_demotes_only_silent_devices(
        self, database, monitor: LivenessMonitor, registry: DeviceRegistry
    ):
        now = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
        silent = await registry.register(name="Silent", device_type="temperature", village_id="v1")
        alive = await registry.register(name="Alive", device_type="temperature", village_id="v1")
        await registry.mark_seen(silent.id, now - timedelta(seconds=901))
        await registry.mark_seen(alive.id, now - timedelta(seconds=899))

        demoted = await monitor.check_devices(now)

        assert demoted == [silent.id]
        async with database.session_factory() as db:
            fresh = DeviceRegistry(db, None)
            assert (await fresh.get(silent.id)).status == DeviceStatus.OFFLINE.value
            assert (await fresh.get(alive.id)).status == DeviceStatus.ONLINE.value

    @pytest.mark.asyncio
    async def test_second_pass_is_noop(self, monitor: LivenessMonitor, registry: DeviceRegistry):
        now = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)
        device = await registry.register(name="Silent", device_type="temperature", village_id="v1")
        await registry.mark_seen(device.id, now - timedelta(hours=1))

        assert await monitor.check_devices(now) == [device.id]
        assert await monitor.check_devices(now) == []

    @pytest.mark.asyncio
    async def test_never_seen_devices_stay_offline(
        self, monitor: LivenessMonitor, registry: DeviceRegistry
    ):
        await registry.register(name="New", device_type="temperature", village_id="v1")

        assert await monitor.check_devices() == []

    @pytest.mark.asyncio
    async def test_start_and_stop(self, monitor: LivenessMonitor):
        await monitor.start()
        assert monitor._task is not None

        await monitor.stop()

        assert monitor._task is None
        assert monitor._running is False
