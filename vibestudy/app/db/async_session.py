"""SQLAlchemy async engine and sessions for the database progress store.

PostgreSQL (asyncpg) in production, SQLite (aiosqlite) for local runs and
tests. One engine per URL per process.
"""

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from vibestudy.app.core.config import settings
from vibestudy.app.core.logging import get_logger

logger = get_logger(__name__)


def _engine_options(url: str) -> dict[str, Any]:
    # SQLite has no server side pool to tune
    if url.lower().startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
        "pool_pre_ping": settings.db_pool_pre_ping,
        "connect_args": {"command_timeout": settings.db_command_timeout},
    }


@lru_cache(maxsize=None)
def get_async_engine(database_url: str | None = None) -> AsyncEngine:
    """Engine for ``database_url`` (``settings.database_url`` when omitted)."""
    url = database_url or settings.database_url
    options = _engine_options(url)
    engine = create_async_engine(url, echo=False, **options)
    logger.info(
        f"Created async engine for {engine.url.get_backend_name()}"
        + (f" (pool_size={options['pool_size']})" if options else "")
    )
    return engine


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False, autoflush=False)


@asynccontextmanager
async def session_scope(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """One transaction: committed when the block exits cleanly, rolled back otherwise."""
    async with session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        await session.commit()


async def init_async_db(engine: AsyncEngine) -> None:
    """Create missing progress tables."""
    from vibestudy.app.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_async_engine(engine: AsyncEngine) -> None:
    """Dispose ``engine`` and forget cached engines."""
    try:
        await engine.dispose()
    except RuntimeError as e:
        # Loop already closed (test teardown); the connections went with it
        logger.debug(f"Engine dispose skipped: {e}")
    get_async_engine.cache_clear()
