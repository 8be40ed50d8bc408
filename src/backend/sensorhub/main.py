"""SensorHub FastAPI Application Entry Point."""

import asyncio
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncGenerator

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from sensorhub.api import router as api_router
from sensorhub.core.config import RollupQueueBackend, Settings, get_settings
from sensorhub.core.database import Database
from sensorhub.core.errors import TelemetryError
from sensorhub.core.logging_config import configure_logging
from sensorhub.core.metrics import expose_metrics, setup_metrics
from sensorhub.services.aggregation_engine import AggregationEngine
from sensorhub.services.health_service import VERSION, HealthService, Readiness
from sensorhub.services.lifecycle_manager import LifecycleManager
from sensorhub.services.liveness_monitor import LivenessMonitor
from sensorhub.services.partition_catalog import PartitionCatalog
from sensorhub.services.rollup_queue import InMemoryRollupQueue, RedisStreamRollupQueue

logger = structlog.get_logger()


async def _update_health_metrics(app: FastAPI) -> None:
    """Background task to periodically update health metrics for Prometheus."""
    while True:
        try:
            await app.state.health.readiness()
        except Exception as e:
            logger.warning("Failed to update health metrics", error=str(e))
        await asyncio.sleep(15)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Connect storage and start background services; stop them in reverse order."""
    state = app.state
    settings: Settings = state.settings

    logger.info("Starting SensorHub", environment=settings.environment)

    state.database.connect()
    await state.rollup_queue.start()

    metrics_task = None
    if settings.metrics_enabled:
        metrics_task = asyncio.create_task(_update_health_metrics(app))

    if settings.aggregation_enabled:
        await state.aggregation_engine.start()
    if settings.lifecycle_enabled:
        await state.lifecycle.start()
    if settings.liveness_enabled:
        await state.liveness.start()

    yield

    logger.info("Shutting down SensorHub")

    if settings.liveness_enabled:
        await state.liveness.stop()
    if settings.lifecycle_enabled:
        await state.lifecycle.stop()
    # stop() drains whatever is still queued.
    if settings.aggregation_enabled:
        await state.aggregation_engine.stop()

    if metrics_task:
        metrics_task.cancel()
        try:
            await metrics_task
        except asyncio.CancelledError:
            pass

    await state.rollup_queue.close()
    await state.database.disconnect()


def create_app(settings: Settings | None = None, database: Database | None = None) -> FastAPI:
    """Build the application and its long-lived components.

    ``database`` may be passed pre-connected (tests); otherwise one is built
    from settings and connected by the lifespan.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    app = FastAPI(
        title="SensorHub API",
        description="Village IoT device registry and telemetry pipeline",
        version=VERSION,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    database = database or Database(settings.database_url, echo=settings.database_echo)
    catalog = PartitionCatalog(width=timedelta(days=settings.partition_width_days))

    redis_client = None
    if settings.rollup_queue_backend == RollupQueueBackend.REDIS:
        redis_client = aioredis.from_url(settings.redis_url, decode_responses=False)
        rollup_queue = RedisStreamRollupQueue(redis_client, maxlen=settings.rollup_queue_maxlen)
    else:
        rollup_queue = InMemoryRollupQueue(maxsize=settings.rollup_queue_maxlen)

    app.state.settings = settings
    app.state.database = database
    app.state.catalog = catalog
    app.state.rollup_queue = rollup_queue
    app.state.health = HealthService(database, rollup_queue, redis_client)

    # Resolved per call: the lifespan connects the database after build.
    def session_factory():
        return database.session_factory()

    app.state.aggregation_engine = AggregationEngine(
        session_factory,
        rollup_queue,
        catalog,
        metric_name=settings.rollup_field,
        num_workers=settings.aggregation_num_workers,
    )
    app.state.lifecycle = LifecycleManager(
        session_factory,
        catalog,
        compress_after=timedelta(days=settings.compress_after_days),
        retention=timedelta(days=settings.retention_days),
        rollup_retention=(
            timedelta(days=settings.rollup_retention_days)
            if settings.rollup_retention_days is not None
            else None
        ),
        compression_interval=settings.compression_interval_seconds,
        retention_interval=settings.retention_interval_seconds,
    )
    app.state.liveness = LivenessMonitor(
        session_factory,
        catalog,
        poll_interval=settings.liveness_poll_interval,
        heartbeat_timeout_seconds=settings.heartbeat_timeout_seconds,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(api_router, prefix="/api/v1")

    @app.exception_handler(TelemetryError)
    async def telemetry_error_handler(request: Request, exc: TelemetryError):
        log = logger.error if exc.status_code >= 500 else logger.info
        log("Request failed", path=str(request.url.path), kind=exc.kind, detail=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = [
            {
                "loc": list(error.get("loc", ())),
                "msg": str(error.get("msg")),
                "type": error.get("type"),
            }
            for error in exc.errors()
        ]
        logger.info("Validation error", path=str(request.url.path), errors=errors)
        return JSONResponse(
            status_code=400,
            content={"error": "validation_error", "detail": errors},
        )

    if settings.metrics_enabled:
        instrumentator = setup_metrics(app)
        expose_metrics(app, instrumentator)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        """Process is up; no dependency is touched."""
        return {"status": "ok", "version": VERSION}

    @app.get("/health/live")
    async def liveness_check() -> dict[str, str]:
        return {"status": "alive"}

    @app.get("/health/ready")
    async def readiness_check() -> JSONResponse:
        """503 while the database (or Redis) is unreachable; a rollup backlog only degrades."""
        report = await app.state.health.readiness()
        status_code = 503 if report.state == Readiness.UNAVAILABLE else 200
        return JSONResponse(status_code=status_code, content=report.to_dict())

    return app
