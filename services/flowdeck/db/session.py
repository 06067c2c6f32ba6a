"""
Local cache database access.

One engine and session factory per process, created in init_db(). Request
handlers use the get_db dependency; background work (the poller) uses
get_db_session. Both commit on success and roll back on error.

Remote instance databases are never reached through here; their pools are
owned by flowdeck.tunnels.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from flowdeck.config import settings
from flowdeck.logging_config import get_logger

logger = get_logger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def _ping(engine: AsyncEngine) -> None:
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def init_db() -> None:
    """Create the local engine and fail fast if the cache is unreachable."""
    global _engine, _session_factory  # noqa: PLW0603
    logger.info("Connecting to local cache database")

    _engine = create_async_engine(
        str(settings.database_url),
        echo=settings.debug,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
    )
    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, autoflush=False)

    await _ping(_engine)
    logger.info("Local cache database ready", pool_size=settings.database_pool_size)


async def close_db() -> None:
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        logger.info("Closing local cache database pool")
        await _engine.dispose()
    _engine = None
    _session_factory = None


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession]:
    """Transactional session for code running outside a request."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized, call init_db() first")

    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession]:
    """
    FastAPI dependency wrapping get_db_session.

    Usage:
        @router.get("/instances")
        async def list_instances(db: AsyncSession = Depends(get_db)):
            ...
    """
    async with get_db_session() as session:
        yield session


async def get_db_health() -> bool:
    """True when the local cache answers a trivial query."""
    if _engine is None:
        return False
    try:
        await _ping(_engine)
    except Exception as e:
        logger.error("Local cache health check failed", error=str(e))
        return False
    return True
