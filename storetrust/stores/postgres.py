"""PostgreSQL engine and sessions (async SQLAlchemy + asyncpg).

One engine per process, created in the app lifespan or at the top of a
batch script. Every unit of work (a request, one dedupe group, one analysis
batch) gets its own session from `get_session()`; the session commits when
the block exits cleanly and rolls back otherwise.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from storetrust.settings import get_settings


class Base(DeclarativeBase):
    """Declarative base shared by every store-trust table."""


_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def _require_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return _session_factory


async def init_db() -> None:
    """Create the engine and session factory (idempotent)."""
    global _engine, _session_factory
    if _engine is not None:
        return

    settings = get_settings()
    _engine = create_async_engine(
        settings.async_database_url,
        echo=settings.debug,
        connect_args=settings.asyncpg_connect_args,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
    )
    # Merge workers share ORM objects across awaits; keep them loaded after commit.
    _session_factory = async_sessionmaker(_engine, class_=AsyncSession, expire_on_commit=False)


async def ping_db() -> None:
    """SELECT 1 against the pool."""
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    async with _engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Session scoped to one unit of work (commit on success, rollback on error)."""
    factory = _require_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
