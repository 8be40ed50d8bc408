"""Device liveness monitoring with periodic demotion of silent devices."""

import asyncio
from datetime import datetime, timezone, timedelta

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from sensorhub.core.config import DeviceDeletePolicy
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore

logger = structlog.get_logger()


class LivenessMonitor:
    """
    Demotes ONLINE devices that stopped reporting.

    Runs as a background task that periodically asks the registry to move
    devices silent for longer than the heartbeat timeout to OFFLINE.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PartitionCatalog,
        poll_interval: float = 60.0,
        heartbeat_timeout_seconds: int = 900,
    ):
        self.session_factory = session_factory
        self.catalog = catalog
        self.poll_interval = poll_interval
        self.heartbeat_timeout = timedelta(seconds=heartbeat_timeout_seconds)
        self._running = False
        self._task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start the monitoring loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._monitor_loop(), name="liveness_monitor")
        logger.info("Liveness monitor started", poll_interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the monitoring loop."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Liveness monitor stopped")

    async def check_devices(self, now: datetime | None = None) -> list:
        """Run one demotion pass; returns the ids demoted."""
        now = now or datetime.now(timezone.utc)
        async with self.session_factory() as db:
            registry = DeviceRegistry(db, ReadingStore(db, self.catalog), DeviceDeletePolicy.REJECT)
            return await registry.demote_silent(now, self.heartbeat_timeout)

    async def _monitor_loop(self) -> None:
        """Main monitoring loop."""
        while self._running:
            try:
                await self.check_devices()
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Liveness monitor error", error=str(e))
                await asyncio.sleep(5)
