"""Async engine construction and liveness probe."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from worknote_retrieval.config import get_settings
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("database")

# Sync driver prefixes rewritten to their async counterparts
_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "postgresql+psycopg2://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def get_database_url() -> str:
    """Configured database URL with an async driver."""
    url = get_settings().database.url
    for prefix, replacement in _ASYNC_DRIVERS.items():
        if url.startswith(prefix):
            return replacement + url[len(prefix):]
    return url


def create_engine() -> AsyncEngine:
    """
    Engine for the configured database.

    SQLite gets no pool settings since aiosqlite connections serialize on the
    file lock anyway; PostgreSQL uses the configured pool with pre-ping.
    """
    db = get_settings().database
    url = get_database_url()

    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=db.echo, connect_args={"timeout": 30})
    else:
        engine = create_async_engine(
            url,
            echo=db.echo,
            pool_pre_ping=True,
            pool_size=db.pool_size,
            max_overflow=db.max_overflow,
            pool_timeout=db.pool_timeout,
            pool_recycle=db.pool_recycle,
        )
    logger.info(f"Database engine ready: dialect={engine.dialect.name}")
    return engine


async def check_connection(engine: AsyncEngine) -> bool:
    """True when ``SELECT 1`` round-trips; failures are logged, not raised."""
    try:
        async with engine.connect() as conn:
            return (await conn.scalar(text("SELECT 1"))) == 1
    except Exception as e:
        logger.error(f"Database connection check failed: {e}")
        return False
