"""
Database Session Management - Async engine and per-operation sessions.

Every Ledger Store operation opens its own short-lived session, so work
running in a shielded settlement task never shares a session with the
request that started it.
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tokenguard.config import settings
from tokenguard.observability.tracing import instrument_sqlalchemy

_ASYNC_DRIVER = "postgresql+asyncpg://"

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def async_database_url(url: str | None = None) -> str:
    """Force the asyncpg driver onto a plain postgres:// or postgresql:// URL."""
    url = url or settings.database_url
    for scheme in ("postgresql://", "postgres://"):
        if url.startswith(scheme):
            return _ASYNC_DRIVER + url[len(scheme) :]
    return url


def get_engine() -> AsyncEngine:
    """Lazily create the ledger database engine."""
    global _engine
    if _engine is None:
        _engine = create_async_engine(
            async_database_url(),
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            connect_args={"server_settings": {"application_name": settings.service_name}},
        )
        instrument_sqlalchemy(_engine)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(get_engine(), expire_on_commit=False)
    return _session_factory


@asynccontextmanager
async def ledger_session() -> AsyncIterator[AsyncSession]:
    """
    One session for one store operation.

    Uncommitted work is rolled back when the block exits.

    Usage:
        async with ledger_session() as session:
            await session.execute(stmt)
            await session.commit()
    """
    async with get_session_factory()() as session:
        yield session


async def dispose_engine() -> None:
    """Close pooled connections (graceful shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
