"""Key/value backends for the checkpoint store.

The checkpoint saver only needs string get/set, set-add and set-members with
an optional per-key TTL, so any of these backends can hold run history:

- ``InMemoryKeyValueStore`` for tests and single-process runs;
- ``SqliteKeyValueStore`` for durable local runs;
- ``RedisKeyValueStore`` for shared deployments.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable, Protocol

import redis.asyncio as redis

from .settings import RuntimeSettings

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    async def get(self, key: str) -> str | None: ...

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None: ...

    async def sadd(self, key: str, *members: str, ttl_seconds: int | None = None) -> None: ...

    async def smembers(self, key: str) -> set[str]: ...

    async def delete(self, *keys: str) -> int: ...


class InMemoryKeyValueStore:
    """Process-local store; expired keys are dropped lazily on access."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, str] = {}
        self._sets: dict[str, set[str]] = {}
        self._expires: dict[str, float] = {}

    def _alive(self, key: str) -> bool:
        deadline = self._expires.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expires.pop(key, None)
            return False
        return key in self._values or key in self._sets

    def _touch(self, key: str, ttl_seconds: int | None) -> None:
        if ttl_seconds:
            self._expires[key] = self._clock() + ttl_seconds
        else:
            self._expires.pop(key, None)

    async def get(self, key: str) -> str | None:
        return self._values.get(key) if self._alive(key) else None

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        self._values[key] = value
        self._touch(key, ttl_seconds)

    async def sadd(self, key: str, *members: str, ttl_seconds: int | None = None) -> None:
        if not self._alive(key):
            self._sets[key] = set()
        self._sets.setdefault(key, set()).update(members)
        self._touch(key, ttl_seconds)

    async def smembers(self, key: str) -> set[str]:
        return set(self._sets.get(key, set())) if self._alive(key) else set()

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            if self._alive(key):
                removed += 1
            self._values.pop(key, None)
            self._sets.pop(key, None)
            self._expires.pop(key, None)
        return removed


class SqliteKeyValueStore:
    """Durable single-file store. Blocking sqlite calls run in a worker thread."""

    def __init__(self, path: str | Path, *, clock: Callable[[], float] = time.time) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        with self._conn:
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv_values (key TEXT PRIMARY KEY, value TEXT NOT NULL, expires_at REAL)"
            )
            self._conn.execute(
                "CREATE TABLE IF NOT EXISTS kv_sets ("
                "key TEXT NOT NULL, member TEXT NOT NULL, expires_at REAL, PRIMARY KEY (key, member))"
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _expired_clause(self) -> tuple[str, float]:
        return "(expires_at IS NULL OR expires_at > ?)", self._clock()

    def _deadline(self, ttl_seconds: int | None) -> float | None:
        return self._clock() + ttl_seconds if ttl_seconds else None

    def _get(self, key: str) -> str | None:
        clause, now = self._expired_clause()
        with self._lock:
            row = self._conn.execute(f"SELECT value FROM kv_values WHERE key = ? AND {clause}", (key, now)).fetchone()
        return row[0] if row else None

    def _set(self, key: str, value: str, ttl_seconds: int | None) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO kv_values (key, value, expires_at) VALUES (?, ?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value, expires_at = excluded.expires_at",
                (key, value, self._deadline(ttl_seconds)),
            )

    def _sadd(self, key: str, members: tuple[str, ...], ttl_seconds: int | None) -> None:
        deadline = self._deadline(ttl_seconds)
        clause, now = self._expired_clause()
        with self._lock, self._conn:
            self._conn.execute(f"DELETE FROM kv_sets WHERE key = ? AND NOT {clause}", (key, now))
            self._conn.executemany(
                "INSERT OR IGNORE INTO kv_sets (key, member, expires_at) VALUES (?, ?, ?)",
                [(key, member, deadline) for member in members],
            )
            self._conn.execute("UPDATE kv_sets SET expires_at = ? WHERE key = ?", (deadline, key))

    def _smembers(self, key: str) -> set[str]:
        clause, now = self._expired_clause()
        with self._lock:
            rows = self._conn.execute(f"SELECT member FROM kv_sets WHERE key = ? AND {clause}", (key, now)).fetchall()
        return {row[0] for row in rows}

    def _delete(self, keys: tuple[str, ...]) -> int:
        removed = 0
        with self._lock, self._conn:
            for key in keys:
                cursor = self._conn.execute("DELETE FROM kv_values WHERE key = ?", (key,))
                set_cursor = self._conn.execute("DELETE FROM kv_sets WHERE key = ?", (key,))
                if cursor.rowcount or set_cursor.rowcount:
                    removed += 1
        return removed

    async def get(self, key: str) -> str | None:
        return await asyncio.to_thread(self._get, key)

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await asyncio.to_thread(self._set, key, value, ttl_seconds)

    async def sadd(self, key: str, *members: str, ttl_seconds: int | None = None) -> None:
        await asyncio.to_thread(self._sadd, key, members, ttl_seconds)

    async def smembers(self, key: str) -> set[str]:
        return await asyncio.to_thread(self._smembers, key)

    async def delete(self, *keys: str) -> int:
        return await asyncio.to_thread(self._delete, keys)


class RedisKeyValueStore:
    """Redis-backed store using ``redis.asyncio`` with a lazily created client."""

    def __init__(self, redis_url: str) -> None:
        if not redis_url:
            raise ValueError("redis_url is required for the redis checkpoint backend")
        self._redis_url = redis_url
        self._client: redis.Redis | None = None

    def _get_client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.from_url(self._redis_url, encoding="utf-8", decode_responses=True)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def get(self, key: str) -> str | None:
        return await self._get_client().get(key)

    async def set(self, key: str, value: str, *, ttl_seconds: int | None = None) -> None:
        await self._get_client().set(key, value, ex=ttl_seconds or None)

    async def sadd(self, key: str, *members: str, ttl_seconds: int | None = None) -> None:
        client = self._get_client()
        if members:
            await client.sadd(key, *members)
        if ttl_seconds:
            await client.expire(key, ttl_seconds)

    async def smembers(self, key: str) -> set[str]:
        return set(await self._get_client().smembers(key))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._get_client().delete(*keys))


def build_key_value_store(settings: RuntimeSettings, repo_root: Path | None = None) -> KeyValueStore:
    """Return the key/value backend selected by ``settings.checkpoint_backend``.

    Raises:
        ValueError: If the backend name is unknown.
    """
    backend = settings.checkpoint_backend
    if backend == "memory":
        return InMemoryKeyValueStore()
    if backend == "sqlite":
        path = settings.checkpoint_path(repo_root if repo_root is not None else Path.cwd())
        logger.info("Using sqlite checkpoint store at %s", path)
        return SqliteKeyValueStore(path)
    if backend == "redis":
        logger.info("Using redis checkpoint store at %s", settings.redis_url)
        return RedisKeyValueStore(settings.redis_url)
    raise ValueError(f"Unknown checkpoint backend: {backend}. Use 'memory', 'sqlite' or 'redis'")
