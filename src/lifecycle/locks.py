"""Keyed single-writer locks for session admission.

`LocalKeyedLock` serializes callers inside one process. `RedisKeyedLock`
extends that across API instances with a redis-py lock; if the lock cannot
be obtained within the blocking timeout the caller gets an
AdmissionConflictError and may retry.

Usage:
    async with lock.hold(f"admission:{practitioner_id}"):
        ...
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator

import redis.asyncio as aioredis
from redis.exceptions import LockError, RedisError

from src.lifecycle.errors import AdmissionConflictError, CollaboratorError

logger = logging.getLogger(__name__)


class KeyedLock(ABC):
    """Mutual exclusion per string key."""

    @abstractmethod
    def hold(self, key: str) -> contextlib.AbstractAsyncContextManager[None]:
        """Async context manager holding the lock for `key`."""


class LocalKeyedLock(KeyedLock):
    """asyncio.Lock per key, dropped once nobody holds or waits for it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncGenerator[None, None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyedLock(KeyedLock):
    """Distributed lock backed by redis-py's Lock (SET NX PX + token)."""

    def __init__(self, redis: aioredis.Redis, timeout: float = 10.0, blocking_timeout: float = 5.0) -> None:
        self._redis = redis
        self._timeout = timeout
        self._blocking_timeout = blocking_timeout
        # Same-process callers queue locally instead of polling Redis
        self._local = LocalKeyedLock()

    @contextlib.asynccontextmanager
    async def hold(self, key: str) -> AsyncGenerator[None, None]:
        async with self._local.hold(key):
            lock = self._redis.lock(
                f"lock:{key}",
                timeout=self._timeout,
                blocking_timeout=self._blocking_timeout,
            )
            try:
                acquired = await lock.acquire()
            except RedisError as exc:
                logger.exception("Redis lock acquisition failed for %s", key)
                raise CollaboratorError("Lock service unavailable") from exc
            if not acquired:
                logger.warning("Timed out waiting for lock %s", key)
                raise AdmissionConflictError("Another request is being admitted, retry shortly")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    # TTL elapsed before release
                    logger.warning("Lock %s expired before release", key)
