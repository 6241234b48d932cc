"""
Key-value stores backing the response cache and quota counters.

The contract is deliberately small: get/set with TTL, delete, prefix scan,
and an atomic increment-or-create for counters. Values must be
JSON-compatible. Expiry is lazy: an expired key reads as absent and is
physically removed by `purge_expired()`.
"""

import copy
import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from ai_governor.core.errors import StoreUnavailable

from .db import DEFAULT_DB_PATH, get_connection
from .models import utcnow

Clock = Callable[[], datetime]

_STORE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS kv_store (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        expires_at TEXT
    )
"""


class KeyValueStore(ABC):
    """Minimal persistence contract used by the cache and the quota guard."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the value for `key`, or None if absent or expired."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store `value` under `key`, replacing any previous value and TTL."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove `key`. Returns True if something was removed."""

    @abstractmethod
    def increment(self, key: str, amount, ttl_seconds: Optional[float] = None) -> Decimal:
        """Atomically add `amount` to a numeric value, creating it at zero.

        The TTL is only applied when the key is created.
        """

    @abstractmethod
    def scan(self, prefix: str) -> List[str]:
        """List live keys starting with `prefix`."""

    @abstractmethod
    def purge_expired(self, prefix: str = "") -> int:
        """Physically remove expired keys starting with `prefix`. Returns the number removed."""


class InMemoryStore(KeyValueStore):
    """Thread-safe in-process store, used for tests and single-process deployments."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._data: Dict[str, Tuple[Any, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[datetime]:
        if ttl_seconds is None:
            return None
        return self._clock() + timedelta(seconds=ttl_seconds)

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[datetime]]]:
        item = self._data.get(key)
        if item is None:
            return None
        _, expires_at = item
        if expires_at is not None and self._clock() > expires_at:
            return None
        return item

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            item = self._live(key)
            return copy.deepcopy(item[0]) if item else None

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        with self._lock:
            self._data[key] = (copy.deepcopy(value), self._expiry(ttl_seconds))

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def increment(self, key: str, amount, ttl_seconds: Optional[float] = None) -> Decimal:
        with self._lock:
            item = self._live(key)
            if item is None:
                current, expires_at = Decimal("0"), self._expiry(ttl_seconds)
            else:
                current, expires_at = Decimal(str(item[0])), item[1]
            new_value = current + Decimal(str(amount))
            self._data[key] = (str(new_value), expires_at)
            return new_value

    def scan(self, prefix: str) -> List[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix) and self._live(k))

    def purge_expired(self, prefix: str = "") -> int:
        with self._lock:
            expired = [k for k in self._data if k.startswith(prefix) and self._live(k) is None]
            for key in expired:
                del self._data[key]
            return len(expired)


class SQLiteStore(KeyValueStore):
    """Store persisted in a SQLite table, shared between processes.

    Each operation opens its own connection; increments run inside
    BEGIN IMMEDIATE so concurrent writers serialize on the database lock.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, clock: Clock = utcnow):
        self.db_path = db_path
        self._clock = clock
        self._execute(_STORE_SCHEMA, ())

    def _execute(self, sql: str, params: tuple, fetch: bool = False):
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open store {self.db_path}: {e}") from e
        try:
            cursor = conn.execute(sql, params)
            return cursor.fetchall() if fetch else cursor.rowcount
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Store operation failed: {e}") from e
        finally:
            conn.close()

    def _now(self) -> str:
        return self._clock().isoformat()

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[str]:
        if ttl_seconds is None:
            return None
        return (self._clock() + timedelta(seconds=ttl_seconds)).isoformat()

    def get(self, key: str) -> Optional[Any]:
        rows = self._execute(
            "SELECT value FROM kv_store WHERE key = ? "
            "AND (expires_at IS NULL OR expires_at >= ?)",
            (key, self._now()),
            fetch=True,
        )
        if not rows:
            return None
        return json.loads(rows[0][0])

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        self._execute(
            "INSERT OR REPLACE INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)",
            (key, json.dumps(value), self._expiry(ttl_seconds)),
        )

    def delete(self, key: str) -> bool:
        return self._execute("DELETE FROM kv_store WHERE key = ?", (key,)) > 0

    def increment(self, key: str, amount, ttl_seconds: Optional[float] = None) -> Decimal:
        try:
            conn = get_connection(self.db_path)
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open store {self.db_path}: {e}") from e
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT value, expires_at FROM kv_store WHERE key = ? "
                "AND (expires_at IS NULL OR expires_at >= ?)",
                (key, self._now()),
            ).fetchone()
            if row is None:
                current, expires_at = Decimal("0"), self._expiry(ttl_seconds)
            else:
                current, expires_at = Decimal(json.loads(row[0])), row[1]
            new_value = current + Decimal(str(amount))
            conn.execute(
                "INSERT OR REPLACE INTO kv_store (key, value, expires_at) VALUES (?, ?, ?)",
                (key, json.dumps(str(new_value)), expires_at),
            )
            conn.execute("COMMIT")
            return new_value
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise StoreUnavailable(f"Store increment failed: {e}") from e
        finally:
            conn.close()

    def scan(self, prefix: str) -> List[str]:
        rows = self._execute(
            "SELECT key FROM kv_store WHERE substr(key, 1, ?) = ? "
            "AND (expires_at IS NULL OR expires_at >= ?) ORDER BY key",
            (len(prefix), prefix, self._now()),
            fetch=True,
        )
        return [row[0] for row in rows]

    def purge_expired(self, prefix: str = "") -> int:
        return self._execute(
            "DELETE FROM kv_store WHERE expires_at IS NOT NULL AND expires_at < ? "
            "AND substr(key, 1, ?) = ?",
            (self._now(), len(prefix), prefix),
        )
