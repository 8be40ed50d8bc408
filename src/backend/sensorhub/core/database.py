"""Database client owned by the process entry point."""

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from sensorhub.models import Base

logger = structlog.get_logger()


class Database:
    """Explicitly constructed storage client.

    Holds the async engine and session factory. The application lifespan
    calls ``connect`` on startup and ``disconnect`` on shutdown; services
    receive the instance (or sessions made from it) through their
    constructors.
    """

    def __init__(self, url: str, echo: bool = False, **engine_kwargs):
        self.url = url
        self.echo = echo
        self.engine_kwargs = engine_kwargs
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("Database is not connected")
        return self._session_factory

    @property
    def is_connected(self) -> bool:
        return self._engine is not None

    def connect(self) -> None:
        if self._engine is not None:
            return
        self._engine = create_async_engine(self.url, echo=self.echo, **self.engine_kwargs)
        self._session_factory = async_sessionmaker(self._engine, expire_on_commit=False)
        logger.info("Database engine created", dialect=self._engine.dialect.name)

    async def disconnect(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Database engine disposed")

    async def create_all(self) -> None:
        """Create tables directly from metadata (tests and local development)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_all(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

