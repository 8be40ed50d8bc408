"""Dependency injection utilities for FastAPI.

Long-lived components (database client, partition catalog, rollup queue,
aggregation engine) are built by ``create_app`` and hung off
``app.state``; request-scoped services are assembled here around one
session per request.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from sensorhub.core.config import Settings
from sensorhub.core.database import Database
from sensorhub.services.aggregation_engine import AggregationEngine
from sensorhub.services.device_registry import DeviceRegistry
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.reading_store import ReadingStore
from sensorhub.services.rollup_queue import RollupQueue
from sensorhub.services.telemetry_ingestion_service import TelemetryIngestionService
from sensorhub.services.telemetry_query_service import TelemetryQueryService


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_catalog(request: Request) -> PartitionCatalog:
    return request.app.state.catalog


def get_rollup_queue(request: Request) -> RollupQueue:
    return request.app.state.rollup_queue


def get_aggregation_engine(request: Request) -> AggregationEngine:
    return request.app.state.aggregation_engine


async def get_db(
    database: Annotated[Database, Depends(get_database)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with database.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_reading_store(
    db: Annotated[AsyncSession, Depends(get_db)],
    catalog: Annotated[PartitionCatalog, Depends(get_catalog)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> ReadingStore:
    return ReadingStore(db, catalog, max_limit=settings.query_max_limit)


def get_device_registry(
    db: Annotated[AsyncSession, Depends(get_db)],
    store: Annotated[ReadingStore, Depends(get_reading_store)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> DeviceRegistry:
    return DeviceRegistry(db, store, delete_policy=settings.device_delete_policy)


def get_ingestion_service(
    registry: Annotated[DeviceRegistry, Depends(get_device_registry)],
    store: Annotated[ReadingStore, Depends(get_reading_store)],
    queue: Annotated[RollupQueue, Depends(get_rollup_queue)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> TelemetryIngestionService:
    return TelemetryIngestionService(registry, store, queue, rollup_field=settings.rollup_field)


def get_query_service(
    registry: Annotated[DeviceRegistry, Depends(get_device_registry)],
    store: Annotated[ReadingStore, Depends(get_reading_store)],
    engine: Annotated[AggregationEngine, Depends(get_aggregation_engine)],
    settings: Annotated[Settings, Depends(get_app_settings)],
) -> TelemetryQueryService:
    return TelemetryQueryService(registry, store, engine, default_limit=settings.query_default_limit)
