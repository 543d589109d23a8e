# DB connections

from pathlib import Path
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy import create_engine
from redis.asyncio import Redis
import redis.asyncio as aioredis
import duckdb
import structlog

from eventpulse.core.config import settings
from eventpulse.models.base import Base
# Register the mapped tables on Base.metadata
from eventpulse.models import query_record, tenant  # noqa: F401

logger = structlog.get_logger()

# Async engine for FastAPI (projects, API keys, AI query history)
async_engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    pool_size=20,
    max_overflow=0
)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False
)

# Sync engine for CLI scripts
sync_engine = create_engine(
    settings.database_url_sync,
    echo=settings.debug
)


def get_duckdb_connection(path: str | None = None) -> duckdb.DuckDBPyConnection:
    """Open the DuckDB event store (":memory:" keeps it in-process)"""
    path = path or settings.duckdb_path
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    return duckdb.connect(path)


async def connect_redis(url: str | None = None) -> Redis | None:
    """
    Connect to Redis and verify it answers.

    Returns None when Redis is disabled or unreachable so callers can fall
    back to in-process structures.
    """
    url = settings.redis_url if url is None else url
    if not url:
        logger.info("redis_disabled")
        return None

    client = aioredis.from_url(
        url,
        decode_responses=True,
        socket_timeout=settings.cache_timeout_seconds,
        socket_connect_timeout=settings.cache_timeout_seconds
    )
    try:
        await client.ping()
    except Exception as e:
        logger.warning("redis_unavailable_using_memory", error=str(e), redis_url=url)
        await client.aclose()
        return None

    logger.info("redis_connected", redis_url=url)
    return client


async def init_db() -> None:
    """Create the relational tables if they are missing"""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
