"""Read-through response cache for idempotent GET-style edge computations."""
import json
import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional

import redis

from contractnest_edge.core.errors import StoreUnavailable

DB_PATH = Path(__file__).resolve().parents[2] / "data" / "response_cache.sqlite3"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Dict[str, Any]
    expires_at: datetime


class ResponseCache:
    """
    Interface for the response cache.

    Invariant: an entry is never served past its expiry.
    No write-back and no invalidation cascades; entries only age out.
    """

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        raise NotImplementedError

    def add_if_absent(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        """Atomically store value unless a live entry exists. True when stored."""
        raise NotImplementedError


class SQLiteResponseCache(ResponseCache):
    """
    SQLite cache. Expiry is checked on read; an expired row is deleted when seen.
    """

    def __init__(self, db_path: Path = DB_PATH, timeout_seconds: float = 5.0):
        self.db_path = Path(db_path)
        self.timeout_seconds = timeout_seconds
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path, timeout=self.timeout_seconds)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Response cache unreachable: {e}") from e
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
            with conn:
                yield conn
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Response cache error: {e}") from e
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS response_cache (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    expires_at TEXT NOT NULL
                )
                """
            )

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        now = _utc_now()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value_json, expires_at FROM response_cache WHERE key = ?",
                (key,),
            ).fetchone()
            if not row:
                return None
            expires_at = datetime.fromisoformat(row[1])
            if expires_at <= now:
                conn.execute("DELETE FROM response_cache WHERE key = ? AND expires_at = ?", (key, row[1]))
                return None
        return CacheEntry(key=key, value=json.loads(row[0]), expires_at=expires_at)

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self.get_entry(key)
        return entry.value if entry else None

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        expires_at = _utc_now() + timedelta(seconds=ttl_seconds)
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO response_cache (key, value_json, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json=excluded.value_json,
                    expires_at=excluded.expires_at
                """,
                (key, json.dumps(value, default=str), expires_at.isoformat(timespec="microseconds")),
            )

    def add_if_absent(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        now = _utc_now()
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE;")
            # An expired entry counts as absent
            conn.execute(
                "DELETE FROM response_cache WHERE key = ? AND expires_at <= ?",
                (key, now.isoformat(timespec="microseconds")),
            )
            cur = conn.execute(
                """
                INSERT INTO response_cache (key, value_json, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO NOTHING
                """,
                (key, json.dumps(value, default=str), expires_at.isoformat(timespec="microseconds")),
            )
            added = cur.rowcount == 1
            conn.execute("COMMIT;")
        return added


class RedisResponseCache(ResponseCache):
    """Redis cache; expiry is enforced by the server (SET ... EX)."""

    KEY_PREFIX = "edge:cache:"

    def __init__(self, redis_url: Optional[str] = None):
        self._url = redis_url or os.getenv("REDIS_URL", "redis://localhost:6379/0")
        self._client: Optional[redis.Redis] = None

    @property
    def client(self) -> redis.Redis:
        if self._client is None:
            self._client = redis.Redis.from_url(self._url, decode_responses=True)
        return self._client

    def _make_key(self, key: str) -> str:
        return f"{self.KEY_PREFIX}{key}"

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            raw = self.client.get(self._make_key(key))
        except redis.RedisError as e:
            raise StoreUnavailable(f"Response cache error: {e}") from e
        if raw is None:
            return None
        return json.loads(raw)

    def put(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            self.client.set(self._make_key(key), json.dumps(value, default=str), ex=max(1, int(ttl_seconds)))
        except redis.RedisError as e:
            raise StoreUnavailable(f"Response cache error: {e}") from e

    def add_if_absent(self, key: str, value: Dict[str, Any], ttl_seconds: int) -> bool:
        # SET NX EX returns True only when the key was set
        try:
            added = self.client.set(
                self._make_key(key),
                json.dumps(value, default=str),
                nx=True,
                ex=max(1, int(ttl_seconds)),
            )
        except redis.RedisError as e:
            raise StoreUnavailable(f"Response cache error: {e}") from e
        return added is True

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def read_through(
    cache: ResponseCache,
    key: str,
    ttl_seconds: int,
    compute: Callable[[], Dict[str, Any]],
) -> tuple[Dict[str, Any], bool]:
    """
    Return (value, hit). On a miss, compute() runs and its result is stored.
    """
    cached = cache.get(key)
    if cached is not None:
        return cached, True
    value = compute()
    cache.put(key, value, ttl_seconds)
    return value, False


def get_response_cache() -> ResponseCache:
    """
    Factory for selecting cache backend.

    CACHE_BACKEND:
      - "sqlite" (default) : CACHE_DB_PATH overrides the file
      - "redis"            : REDIS_URL
    """
    backend = os.getenv("CACHE_BACKEND", "sqlite").lower().strip()
    if backend == "redis":
        return RedisResponseCache()
    db_path = os.getenv("CACHE_DB_PATH")
    return SQLiteResponseCache(db_path=Path(db_path)) if db_path else SQLiteResponseCache()
