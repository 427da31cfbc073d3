"""Persistent get-or-compute cache with per-entry TTL.

``KVStore`` is a SQLite file living in the cache directory; it is opened
once at startup and closed once at shutdown. ``Memoizer`` wraps it with
JSON (de)serialization and per-key single-flight so concurrent misses for
the same key run ``compute`` only once.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
import threading
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union

from pydantic import TypeAdapter, ValidationError
from pydantic_core import PydanticSerializationError

from . import metrics
from .errors import CacheStoreError

log = logging.getLogger("subdivx_subtitles.cache")

V = TypeVar("V")

DB_FILENAME = "cache.db"
KEY_SEPARATOR = " : "


class KVStore:
    """SQLite-backed key -> bytes store with absolute expiry timestamps.

    Each thread gets its own connection; WAL mode lets readers proceed while
    a writer commits, and every write is a single ``INSERT OR REPLACE``
    transaction so a racing write leaves one complete entry behind.
    """

    def __init__(self, directory: Union[str, Path], filename: str = DB_FILENAME) -> None:
        self.path = Path(directory) / filename
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheStoreError(f"failed to create cache directory {self.path.parent}: {exc}") from exc
        self._local = threading.local()
        self._lock = threading.Lock()
        self._connections: List[sqlite3.Connection] = []
        self._closed = False
        self._init_table()
        purged = self.purge_expired()
        log.info("Opened cache at %s (purged %d expired entries)", self.path, purged)

    def _now(self) -> float:
        return time.time()

    def _connection(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        with self._lock:
            if self._closed:
                raise CacheStoreError("cache store is closed")
            try:
                conn = sqlite3.connect(str(self.path), timeout=10.0, check_same_thread=False)
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            except sqlite3.Error as exc:
                raise CacheStoreError(f"failed to open cache database {self.path}: {exc}") from exc
            self._connections.append(conn)
        self._local.conn = conn
        return conn

    def _init_table(self) -> None:
        conn = self._connection()
        try:
            with conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS entries (
                        key TEXT PRIMARY KEY,
                        value BLOB NOT NULL,
                        expires_at REAL NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS idx_entries_expires_at ON entries(expires_at)")
        except sqlite3.Error as exc:
            raise CacheStoreError(f"failed to initialize cache schema: {exc}") from exc

    def get(self, key: str) -> Optional[bytes]:
        """Return the stored value, or ``None`` when missing or expired."""
        conn = self._connection()
        try:
            row = conn.execute(
                "SELECT value FROM entries WHERE key = ? AND expires_at > ?",
                (key, self._now()),
            ).fetchone()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"failed to read {key!r} from cache: {exc}") from exc
        if row is None:
            return None
        return bytes(row[0])

    def set(self, key: str, value: bytes, ttl: float) -> None:
        if ttl <= 0:
            raise ValueError(f"cache TTL must be positive, got {ttl}")
        conn = self._connection()
        try:
            with conn:
                conn.execute(
                    "INSERT OR REPLACE INTO entries (key, value, expires_at) VALUES (?, ?, ?)",
                    (key, sqlite3.Binary(value), self._now() + ttl),
                )
        except sqlite3.Error as exc:
            raise CacheStoreError(f"failed to store {key!r} in cache: {exc}") from exc

    def purge_expired(self) -> int:
        conn = self._connection()
        try:
            with conn:
                cursor = conn.execute("DELETE FROM entries WHERE expires_at <= ?", (self._now(),))
        except sqlite3.Error as exc:
            raise CacheStoreError(f"failed to purge expired cache entries: {exc}") from exc
        return cursor.rowcount

    def count(self, prefix: str = "") -> int:
        """Number of live entries, optionally restricted to a key prefix."""
        conn = self._connection()
        try:
            row = conn.execute(
                "SELECT COUNT(*) FROM entries WHERE expires_at > ? AND substr(key, 1, ?) = ?",
                (self._now(), len(prefix), prefix),
            ).fetchone()
        except sqlite3.Error as exc:
            raise CacheStoreError(f"failed to count cache entries: {exc}") from exc
        return int(row[0])

    def close(self) -> None:
        """Close every connection. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            connections, self._connections = self._connections, []
        for conn in connections:
            try:
                conn.close()
            except sqlite3.Error as exc:
                log.warning("Failed to close cache connection: %s", exc)
        log.info("Closed cache at %s", self.path)

    def __enter__(self) -> "KVStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


@functools.lru_cache(maxsize=None)
def _adapter(value_type: Any) -> TypeAdapter:
    return TypeAdapter(value_type)


def key_prefix(key: str) -> str:
    """``"imdb.title : tt0133093"`` -> ``"imdb.title"``."""
    return key.split(KEY_SEPARATOR, 1)[0]


_MISSING = object()


class Memoizer:
    def __init__(self, store: KVStore) -> None:
        self._store = store
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _key_lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[key] -= 1
            if not self._lock_users[key]:
                del self._lock_users[key]
                del self._locks[key]

    async def _lookup(self, key: str, adapter: TypeAdapter) -> Any:
        raw = await asyncio.to_thread(self._store.get, key)
        if raw is None:
            return _MISSING
        try:
            return adapter.validate_json(raw)
        except ValidationError as exc:
            raise CacheStoreError(f"failed to deserialize cached {key!r}: {exc}") from exc

    async def _save(self, key: str, value: Any, ttl: float, adapter: TypeAdapter) -> None:
        try:
            payload = adapter.dump_json(value)
        except PydanticSerializationError as exc:
            raise CacheStoreError(f"failed to serialize {key!r}: {exc}") from exc
        await asyncio.to_thread(self._store.set, key, payload, ttl)

    def _record(self, key: str, result: str) -> None:
        metrics.CACHE_GETS.labels(key_prefix=key_prefix(key), result=result).inc()
        log.debug("cache %s key=%s", result, key)

    async def get_or_compute(
        self,
        key: str,
        ttl: float,
        compute: Callable[[], Awaitable[V]],
        value_type: Type[V],
    ) -> V:
        """Return the cached value for ``key`` or compute, store and return it.

        ``compute`` runs at most once per call and concurrent callers for the
        same key share one run. Its exceptions propagate and nothing is
        stored. A present entry that fails to deserialize raises
        ``CacheStoreError`` instead of being silently recomputed.
        """
        if ttl <= 0:
            raise ValueError(f"cache TTL must be positive, got {ttl}")
        adapter = _adapter(value_type)

        value = await self._lookup(key, adapter)
        if value is not _MISSING:
            self._record(key, "hit")
            return value

        async with self._key_lock(key):
            # another flow may have filled the entry while we waited
            value = await self._lookup(key, adapter)
            if value is not _MISSING:
                self._record(key, "hit")
                return value

            self._record(key, "miss")
            value = await compute()
            await self._save(key, value, ttl, adapter)
            return value


__all__ = ["KVStore", "Memoizer", "key_prefix"]
