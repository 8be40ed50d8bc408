"""Readiness of the pieces a telemetry request depends on.

Ingestion needs the database; aggregation needs the rollup queue (and Redis
when the queue lives there). A rollup backlog only degrades readiness:
readings are still stored and rollups catch up.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable

import redis.asyncio as aioredis
import structlog
from sqlalchemy import text

from sensorhub.core.database import Database
from sensorhub.core.metrics import set_db_pool_available, set_redis_connected
from sensorhub.services.rollup_queue import RollupQueue

logger = structlog.get_logger()

VERSION = "0.1.0"


class Readiness(str, Enum):
    READY = "ready"
    DEGRADED = "degraded"
    UNAVAILABLE = "unavailable"


# Worst state wins when checks are combined.
_SEVERITY = {Readiness.READY: 0, Readiness.DEGRADED: 1, Readiness.UNAVAILABLE: 2}


@dataclass
class CheckResult:
    name: str
    state: Readiness
    detail: str | None = None
    elapsed_ms: float | None = None


@dataclass
class ReadinessReport:
    checks: list[CheckResult] = field(default_factory=list)

    @property
    def state(self) -> Readiness:
        if not self.checks:
            return Readiness.READY
        return max((c.state for c in self.checks), key=_SEVERITY.__getitem__)

    def to_dict(self) -> dict:
        return {
            "status": self.state.value,
            "version": VERSION,
            "checks": {
                c.name: {"status": c.state.value, "detail": c.detail, "elapsedMs": c.elapsed_ms}
                for c in self.checks
            },
        }


class HealthService:
    """Runs the readiness checks for one application instance."""

    def __init__(
        self,
        database: Database,
        queue: RollupQueue,
        redis_client: aioredis.Redis | None = None,
        backlog_warn: int = 10000,
    ):
        self.database = database
        self.queue = queue
        self.redis = redis_client
        self.backlog_warn = backlog_warn

    async def readiness(self) -> ReadinessReport:
        report = ReadinessReport()
        report.checks.append(await self._timed("database", self._ping_database))
        if self.redis is not None:
            redis_check = await self._timed("redis", self.redis.ping)
            set_redis_connected(redis_check.state == Readiness.READY)
            report.checks.append(redis_check)
        report.checks.append(await self.check_rollup_backlog())
        return report

    async def check_rollup_backlog(self) -> CheckResult:
        try:
            depth = await self.queue.depth()
        except Exception as e:
            logger.warning("Rollup backlog unavailable", error=str(e))
            return CheckResult("rollup_backlog", Readiness.DEGRADED, f"unknown: {str(e)[:100]}")
        state = Readiness.DEGRADED if depth >= self.backlog_warn else Readiness.READY
        return CheckResult("rollup_backlog", state, f"{depth} notifications behind")

    async def _ping_database(self) -> None:
        async with self.database.session_factory() as session:
            await session.execute(text("SELECT 1"))
        pool = self.database.engine.pool
        if hasattr(pool, "checkedin"):
            set_db_pool_available(pool.checkedin())

    async def _timed(self, name: str, check: Callable[[], Awaitable]) -> CheckResult:
        started = time.perf_counter()
        try:
            await check()
        except Exception as e:
            logger.error("Readiness check failed", check=name, error=str(e))
            state, detail = Readiness.UNAVAILABLE, str(e)[:100]
        else:
            state, detail = Readiness.READY, None
        return CheckResult(name, state, detail, round((time.perf_counter() - started) * 1000, 2))
