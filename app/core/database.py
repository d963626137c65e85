from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from redis import asyncio as aioredis
from typing import AsyncGenerator
import logging

from app.core.config import settings
from app.core.exceptions import ConcurrencyConflictError

logger = logging.getLogger(__name__)


def _get_engine_kwargs() -> dict:
    """Return dialect-specific engine options for SQLite vs PostgreSQL."""
    kwargs = {"echo": settings.DEBUG, "future": True}
    if settings.is_sqlite:
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    else:
        kwargs.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return kwargs


# Async Engine
async_engine = create_async_engine(settings.DATABASE_URL, **_get_engine_kwargs())

# Async Session Factory
AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False
)

Base = declarative_base()

# Redis connection pool
redis_pool = None


async def get_redis() -> aioredis.Redis:
    """Get Redis connection"""
    global redis_pool
    if redis_pool is None:
        redis_pool = await aioredis.from_url(
            settings.REDIS_URL,
            encoding="utf-8",
            decode_responses=True,
            max_connections=10
        )
    return redis_pool


async def close_redis():
    """Close Redis connection"""
    global redis_pool
    if redis_pool:
        await redis_pool.close()
        redis_pool = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get async database session"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def run_with_conflict_retry(db: AsyncSession, operation, *args, **kwargs):
    """
    Run a mutating service operation, re-executing it from a clean transaction
    when it loses an optimistic concurrency check.

    The operation must re-read every row it depends on, so a retried
    confirmation observes the already-resolved payment instead of crediting it
    twice.
    """
    attempts = max(1, settings.CONFLICT_RETRY_ATTEMPTS)
    for attempt in range(1, attempts + 1):
        try:
            return await operation(*args, **kwargs)
        except ConcurrencyConflictError:
            await db.rollback()
            if attempt == attempts:
                logger.warning(f"{operation.__name__} gave up after {attempts} conflicting attempts")
                raise
            logger.warning(f"{operation.__name__} lost a concurrent write (attempt {attempt}), retrying")
