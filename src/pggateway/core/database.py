"""
Async database engine and the connection pool handed to the context broker.

Supports:
- Dev: SQLite with aiosqlite
- Prod: PostgreSQL with asyncpg

The broker only ever sees the `ConnectionPool` capability: `acquire()` checks
a connection out, `release()` gives it back. Sizing, overflow and pre-ping
stay with SQLAlchemy's own pool.
"""
from typing import Any, Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, create_async_engine

from pggateway.core.config import Settings


class ConnectionPool(Protocol):
    async def acquire(self) -> Any: ...

    async def release(self, connection: Any) -> None: ...


def create_engine(settings: Settings) -> AsyncEngine:
    """Create async engine based on environment."""
    if settings.is_dev:
        # SQLite needs check_same_thread=False for async
        return create_async_engine(
            settings.async_db_url,
            echo=settings.DEBUG,
            connect_args={"check_same_thread": False},
        )

    # Production: PostgreSQL with connection pooling
    return create_async_engine(
        settings.async_db_url,
        echo=False,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_pre_ping=True,  # Verify connections before use
    )


class EnginePool:
    """`ConnectionPool` backed by a SQLAlchemy `AsyncEngine`."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine

    async def acquire(self) -> AsyncConnection:
        return await self.engine.connect()

    async def release(self, connection: AsyncConnection) -> None:
        # Closing an AsyncConnection checks the DBAPI connection back in.
        await connection.close()

    async def verify(self) -> None:
        """Round-trip a trivial query; raises if the database is unreachable."""
        async with self.engine.connect() as connection:
            await connection.execute(text("select 1"))

    async def dispose(self) -> None:
        await self.engine.dispose()


def is_postgres(connection: Any) -> bool:
    dialect = getattr(connection, "dialect", None)
    return getattr(dialect, "name", None) == "postgresql"
