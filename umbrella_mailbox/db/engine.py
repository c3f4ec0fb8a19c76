"""Async SQLAlchemy engine and session factory."""

from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from ..config import StoreConfig
from .models import Base


def _make_engine(config: StoreConfig) -> AsyncEngine:
    url = make_url(config.database_url)
    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            # One shared connection, otherwise every session sees an empty database.
            return create_async_engine(url, echo=config.echo, poolclass=StaticPool)
        return create_async_engine(url, echo=config.echo)
    return create_async_engine(url, echo=config.echo, pool_size=5, max_overflow=10)


class Database:
    """Holds the engine and its session factory.

    Created once at startup and shared by the store and the lease manager.
    """

    def __init__(self, config: StoreConfig) -> None:
        self.engine = _make_engine(config)
        self.session = async_sessionmaker(self.engine, class_=AsyncSession, expire_on_commit=False)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def create_schema(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self.engine.dispose()

    def insert(self, table):
        """Dialect-specific INSERT supporting ``ON CONFLICT`` clauses."""
        if self.dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        elif self.dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        else:
            raise NotImplementedError(f"conflict-aware insert not supported on {self.dialect}")
        return insert(table)
