"""Shared key-value stores backing the gateway caches.

Both caches (folder IDs and HTTP responses) talk to a minimal async
get/put/delete capability so the same cache logic runs against an in-memory
store in tests and single-process deployments, or against a DuckDB file that
survives restarts.

Entries carry a TTL; expired entries read as missing and are removed by
``cleanup_expired()``.
"""

import asyncio
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generator, Protocol

import duckdb
import structlog

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    """Capability shared by all cache stores."""

    async def get(self, key: str) -> bytes | None: ...

    async def put(self, key: str, value: bytes, ttl_seconds: int) -> None: ...

    async def delete(self, key: str) -> None: ...

    async def cleanup_expired(self) -> int: ...

    async def close(self) -> None: ...


class MemoryStore:
    """Process-local store. Safe for concurrent use from one event loop and threads."""

    def __init__(self):
        self._entries: dict[str, tuple[bytes, float]] = {}
        self._lock = threading.Lock()

    async def get(self, key: str) -> bytes | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= time.monotonic():
                del self._entries[key]
                return None
            return value

    async def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        with self._lock:
            self._entries[key] = (value, time.monotonic() + ttl_seconds)

    async def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    async def cleanup_expired(self) -> int:
        now = time.monotonic()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    async def close(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_cache (
    key VARCHAR PRIMARY KEY,
    value BLOB NOT NULL,
    created_at TIMESTAMPTZ DEFAULT now(),
    expires_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_kv_cache_expires ON kv_cache(expires_at);
"""


class DuckDBStore:
    """Store persisted in a DuckDB file.

    Queries run in worker threads so the event loop is never blocked; each
    call opens its own connection, like the rest of the service's DuckDB use.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path)
        self._initialized = False
        self._init_lock = threading.Lock()

    def initialize(self) -> None:
        """Create the database file and schema if needed."""
        with self._init_lock:
            if self._initialized:
                return
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            with self.connection() as conn:
                conn.execute(SCHEMA_SQL)
            self._initialized = True
            logger.info("cache_store_initialized", path=str(self._db_path))

    @contextmanager
    def connection(self) -> Generator[duckdb.DuckDBPyConnection, None, None]:
        conn = duckdb.connect(str(self._db_path))
        try:
            yield conn
        finally:
            conn.close()

    def _get(self, key: str) -> bytes | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT value FROM kv_cache WHERE key = ? AND expires_at > now()",
                [key],
            ).fetchone()
        return bytes(row[0]) if row else None

    def _put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        now = datetime.now(timezone.utc)
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO kv_cache (key, value, created_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT (key) DO UPDATE SET
                    value = EXCLUDED.value,
                    created_at = EXCLUDED.created_at,
                    expires_at = EXCLUDED.expires_at
                """,
                [key, value, now, expires_at],
            )

    def _delete(self, key: str) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM kv_cache WHERE key = ?", [key])

    def _cleanup_expired(self) -> int:
        with self.connection() as conn:
            count_row = conn.execute(
                "SELECT COUNT(*) FROM kv_cache WHERE expires_at <= now()"
            ).fetchone()
            count = count_row[0] if count_row else 0
            if count > 0:
                conn.execute("DELETE FROM kv_cache WHERE expires_at <= now()")
        return count

    async def get(self, key: str) -> bytes | None:
        return await asyncio.to_thread(self._get, key)

    async def put(self, key: str, value: bytes, ttl_seconds: int) -> None:
        await asyncio.to_thread(self._put, key, value, ttl_seconds)

    async def delete(self, key: str) -> None:
        await asyncio.to_thread(self._delete, key)

    async def cleanup_expired(self) -> int:
        count = await asyncio.to_thread(self._cleanup_expired)
        if count > 0:
            logger.info("cache_store_cleaned", count=count)
        return count

    async def close(self) -> None:
        return None
