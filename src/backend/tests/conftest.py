"""Pytest configuration and fixtures for SensorHub tests."""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.pool import StaticPool

from sensorhub.core.config import Settings
from sensorhub.core.database import Database
from sensorhub.main import create_app
from sensorhub.models import IoTDevice
from sensorhub.services.aggregation_engine import AggregationEngine
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore
from sensorhub.services.rollup_queue import InMemoryRollupQueue
from sensorhub.services.telemetry_ingestion_service import TelemetryIngestionService

# Test database URL (use SQLite for tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def database() -> AsyncGenerator[Database, None]:
    """Connected test database with a shared in-memory connection."""
    db = Database(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    db.connect()
    await db.create_all()

    yield db

    await db.drop_all()
    await db.disconnect()


@pytest_asyncio.fixture(scope="function")
async def db_session(database: Database) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with database.session_factory() as session:
        yield session


@pytest.fixture
def catalog() -> PartitionCatalog:
    return PartitionCatalog(width=timedelta(days=7))


@pytest.fixture
def store(db_session: AsyncSession, catalog: PartitionCatalog) -> ReadingStore:
    return ReadingStore(db_session, catalog)


@pytest.fixture
def registry(db_session: AsyncSession, store: ReadingStore) -> DeviceRegistry:
    return DeviceRegistry(db_session, store)


@pytest.fixture
def rollup_queue() -> InMemoryRollupQueue:
    return InMemoryRollupQueue(maxsize=10000)


@pytest.fixture
def aggregation_engine(
    database: Database,
    rollup_queue: InMemoryRollupQueue,
    catalog: PartitionCatalog,
) -> AggregationEngine:
    return AggregationEngine(database.session_factory, rollup_queue, catalog, metric_name="value")


@pytest.fixture
def ingestion(
    registry: DeviceRegistry,
    store: ReadingStore,
    rollup_queue: InMemoryRollupQueue,
) -> TelemetryIngestionService:
    return TelemetryIngestionService(registry, store, rollup_queue, rollup_field="value")


@pytest.fixture
def test_settings() -> Settings:
    """Settings with every background loop disabled."""
    return Settings(
        _env_file=None,
        database_url=TEST_DATABASE_URL,
        environment="test",
        log_json=False,
        metrics_enabled=False,
        aggregation_enabled=False,
        lifecycle_enabled=False,
        liveness_enabled=False,
    )


@pytest.fixture
def app(test_settings: Settings, database: Database) -> FastAPI:
    return create_app(test_settings, database)


@pytest_asyncio.fixture(scope="function")
async def client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client bound to the test database."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def test_device(registry: DeviceRegistry) -> IoTDevice:
    """A registered temperature sensor without a declared schema."""
    return await registry.register(
        name="Greenhouse sensor",
        device_type="temperature",
        village_id="village-01",
        latitude=45.5,
        longitude=-73.6,
        location_name="Greenhouse A",
    )


@pytest.fixture
def closed_ts(catalog: PartitionCatalog) -> datetime:
    """Twelve hours into the closed partition that holds now - 30 days."""
    start, _ = catalog.bounds(datetime.now(timezone.utc) - timedelta(days=30))
    return start + timedelta(hours=12)
