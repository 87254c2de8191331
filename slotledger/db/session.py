"""
Database session management.

Two engine roles exist: "write" (the primary, used by every settlement,
allocation and stock sync) and "read" (replica, used by credential lookups
and health checks). Engines are created lazily and disposed on shutdown.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator, Literal

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from slotledger.config import settings
from slotledger.observability.logging import get_logger
from slotledger.observability.tracing import instrument_sqlalchemy

logger = get_logger(__name__)

Role = Literal["write", "read"]

_engines: dict[str, AsyncEngine] = {}
_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def _url_for(role: Role) -> str:
    return settings.database_url if role == "write" else settings.read_database_url


def get_engine(role: Role = "write") -> AsyncEngine:
    """Get or create the engine for a role."""
    engine = _engines.get(role)
    if engine is None:
        engine = create_async_engine(
            _url_for(role),
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            pool_pre_ping=True,
            echo=settings.log_level == "DEBUG",
        )
        instrument_sqlalchemy(engine)
        _engines[role] = engine
        logger.info("database_engine_created", role=role, pool_size=settings.database_pool_size)
    return engine


def get_session_factory(role: Role = "write") -> async_sessionmaker[AsyncSession]:
    factory = _factories.get(role)
    if factory is None:
        # Settlement results are read after commit; keep attributes loaded.
        factory = async_sessionmaker(get_engine(role), class_=AsyncSession, expire_on_commit=False)
        _factories[role] = factory
    return factory


@asynccontextmanager
async def get_write_session() -> AsyncIterator[AsyncSession]:
    """
    Session on the primary for background work outside a request.

    Usage:
        async with get_write_session() as session:
            await StockSynchronizer(session).sync(product_id)
    """
    async with get_session_factory("write")() as session:
        yield session


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: primary session, committed by the service that uses it."""
    async with get_session_factory("write")() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: replica session (falls back to the primary)."""
    async with get_session_factory("read")() as session:
        yield session


async def close_engines() -> None:
    """Dispose every engine (graceful shutdown)."""
    while _engines:
        role, engine = _engines.popitem()
        _factories.pop(role, None)
        await engine.dispose()
        logger.info("database_engine_disposed", role=role)
