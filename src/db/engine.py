"""Database engine, session factory, admission lock, and lifespan.

SQLAlchemy 2.0 async over asyncpg. The Redis client is only used when the
admission lock runs in redis mode (several API processes).
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from src.config import settings
from src.lifecycle.errors import CollaboratorError
from src.lifecycle.locks import KeyedLock, LocalKeyedLock, RedisKeyedLock

logger = logging.getLogger(__name__)

# ── Async PostgreSQL engine ──────────────────────────────────────────

engine: AsyncEngine = create_async_engine(
    settings.db.database_url,
    echo=settings.log_level == "DEBUG",
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
    pool_recycle=3600,
)

# Stores open one short transaction per call from this factory
async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── Redis / admission lock ───────────────────────────────────────────

redis_client: aioredis.Redis = aioredis.from_url(
    settings.db.redis_url,
    decode_responses=True,
)


def _uses_redis_lock() -> bool:
    return settings.lifecycle.admission_lock_backend == "redis"


def build_admission_lock() -> KeyedLock:
    """Admission lock for the configured backend."""
    lifecycle = settings.lifecycle
    if _uses_redis_lock():
        logger.info("Admission lock backend: redis")
        return RedisKeyedLock(
            redis_client,
            timeout=float(lifecycle.admission_lock_timeout_seconds),
            blocking_timeout=float(lifecycle.admission_lock_timeout_seconds),
        )
    logger.info("Admission lock backend: local (single process only)")
    return LocalKeyedLock()


# ── Lifespan helpers ─────────────────────────────────────────────────


async def init_db() -> None:
    """Check connectivity; create tables outside production.

    Production schemas come from Alembic. With the redis lock backend the
    Redis server must answer before the API accepts admissions.
    """
    async with engine.begin() as conn:
        from src.models import Base

        if not settings.is_production:
            await conn.run_sync(Base.metadata.create_all)

    if _uses_redis_lock():
        try:
            await redis_client.ping()
        except RedisError as exc:
            raise CollaboratorError("Redis unreachable; admission lock unavailable") from exc


async def close_db() -> None:
    await engine.dispose()
    await redis_client.aclose()


@contextlib.asynccontextmanager
async def db_lifespan() -> AsyncGenerator[None, None]:
    """Open the database (and Redis, when used) for the app's lifetime."""
    await init_db()
    try:
        yield
    finally:
        await close_db()
