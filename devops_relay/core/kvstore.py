"""
Key-value persistence backends.

Each backend stores opaque bytes under string keys and hands out named
locks used to serialize per-user read-modify-write sequences:

- RedisKVStore: redis.asyncio, distributed locks (safe across workers)
- SQLiteKVStore: aiosqlite, in-process locks
- MemoryKVStore: dict, in-process locks (development and tests)

Backend failures are raised as StorageError.
"""

from __future__ import annotations

import asyncio
import os
import sqlite3
import weakref
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Protocol

import aiosqlite
import redis.asyncio as redis
import structlog
from redis.exceptions import LockError, RedisError

from devops_relay.core.errors import StorageError

log = structlog.get_logger()


class LockProvider(Protocol):
    def lock(self, name: str) -> AbstractAsyncContextManager[None]: ...


class KVStore(LockProvider, Protocol):
    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def close(self) -> None: ...


class LocalLocks:
    """Named asyncio locks, dropped once nobody holds or waits on them."""

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        async with lock:
            yield


# ---------------------------------------------------------------------------
# Memory
# ---------------------------------------------------------------------------


class MemoryKVStore:
    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._locks = LocalLocks()

    async def get(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def set(self, key: str, value: bytes) -> None:
        self._data[key] = value

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def lock(self, name: str):
        return self._locks.lock(name)

    async def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisKVStore:
    """Redis backend.

    User locks are held across remote calls that can outlast the lock's
    expiry, so a held lock is renewed every third of `lock_timeout` until
    it is released.
    """

    def __init__(self, url: str, lock_timeout: float = 60.0, client: redis.Redis | None = None):
        self._redis = client if client is not None else redis.from_url(url)
        self._lock_timeout = lock_timeout

    async def get(self, key: str) -> bytes | None:
        try:
            return await self._redis.get(key)
        except RedisError as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc

    async def set(self, key: str, value: bytes) -> None:
        try:
            await self._redis.set(key, value)
        except RedisError as exc:
            raise StorageError(f"Failed to write {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(key)
        except RedisError as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    @asynccontextmanager
    async def lock(self, name: str) -> AsyncIterator[None]:
        lock = self._redis.lock(
            f"lock:{name}",
            timeout=self._lock_timeout,
            blocking_timeout=self._lock_timeout,
        )
        try:
            acquired = await lock.acquire()
        except RedisError as exc:
            raise StorageError(f"Failed to acquire lock {name}: {exc}") from exc
        if not acquired:
            raise StorageError(f"Timed out waiting for lock {name}")

        keepalive = asyncio.create_task(self._keep_alive(lock, name))
        try:
            yield
        finally:
            keepalive.cancel()
            await asyncio.gather(keepalive, return_exceptions=True)
            try:
                await lock.release()
            except (LockError, RedisError) as exc:
                log.warning("kvstore.lock_release_failed", name=name, error=str(exc))

    async def _keep_alive(self, lock, name: str) -> None:
        while True:
            await asyncio.sleep(self._lock_timeout / 3)
            try:
                # Resets the expiry to the full timeout; fails if the lock was lost.
                await lock.reacquire()
            except (LockError, RedisError) as exc:
                log.error("kvstore.lock_renew_failed", name=name, error=str(exc))
                return

    async def close(self) -> None:
        await self._redis.aclose()


# ---------------------------------------------------------------------------
# SQLite
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS kv (
    key        TEXT PRIMARY KEY,
    value      BLOB NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class SQLiteKVStore:
    """Async SQLite key-value table. The connection opens on first use."""

    def __init__(self, db_path: str):
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._open_lock = asyncio.Lock()
        self._locks = LocalLocks()

    async def open(self) -> None:
        async with self._open_lock:
            if self._db is not None:
                return
            os.makedirs(os.path.dirname(self._db_path) or ".", exist_ok=True)
            self._db = await aiosqlite.connect(self._db_path)
            await self._db.executescript(_SCHEMA)
            await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def _conn(self) -> aiosqlite.Connection:
        if self._db is None:
            await self.open()
        assert self._db
        return self._db

    async def get(self, key: str) -> bytes | None:
        try:
            db = await self._conn()
            cursor = await db.execute("SELECT value FROM kv WHERE key = ?", (key,))
            row = await cursor.fetchone()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to read {key}: {exc}") from exc
        return bytes(row[0]) if row else None

    async def set(self, key: str, value: bytes) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            db = await self._conn()
            await db.execute(
                """INSERT INTO kv (key, value, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at""",
                (key, value, now),
            )
            await db.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to write {key}: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            db = await self._conn()
            await db.execute("DELETE FROM kv WHERE key = ?", (key,))
            await db.commit()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to delete {key}: {exc}") from exc

    def lock(self, name: str):
        return self._locks.lock(name)


def create_kv_store(url: str, lock_timeout: float = 60.0) -> KVStore:
    """Build a backend from a URL: redis://, rediss://, sqlite:///path or memory://."""
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisKVStore(url, lock_timeout=lock_timeout)
    if url.startswith("sqlite:///"):
        return SQLiteKVStore(url[len("sqlite:///"):])
    if url.startswith("memory://"):
        return MemoryKVStore()
    raise ValueError(f"Unsupported kv_url scheme: {url}")
