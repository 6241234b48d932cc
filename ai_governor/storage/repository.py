"""
Repository pattern for the usage ledger.

Append-only persistence of UsageRecord events. Records are written once and
never updated or deleted.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from ai_governor.core.pricing import CostBreakdown
from ai_governor.core.token_counter import TokenUsage

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord

_COLUMNS = (
    "request_id, timestamp, session_id, user_id, provider, model, feature, "
    "operation, input_tokens, output_tokens, total_tokens, estimated, "
    "input_cost, output_cost, total_cost, currency, cached, success, error"
)


class UsageRepository(ABC):
    """Append-only store of usage records."""

    @abstractmethod
    def append(self, record: UsageRecord) -> None:
        """Persist one record."""

    @abstractmethod
    def fetch(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[UsageRecord]:
        """Return records in chronological order, optionally filtered.

        `since` is inclusive, `until` is exclusive.
        """


class InMemoryUsageRepository(UsageRepository):
    """Process-local ledger, used for tests and the default service wiring."""

    def __init__(self):
        self._records: List[UsageRecord] = []
        self._lock = threading.Lock()

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._records.append(record)

    def fetch(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[UsageRecord]:
        with self._lock:
            records = list(self._records)
        return [
            r for r in records
            if (since is None or r.timestamp >= since)
            and (until is None or r.timestamp < until)
            and (user_id is None or r.user_id == user_id)
        ]

    def __len__(self) -> int:
        return len(self._records)


class SQLiteUsageRepository(UsageRepository):
    """Ledger persisted in the `ai_usage_record` table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path
        initialize_schema(db_path)

    def append(self, record: UsageRecord) -> None:
        insert_usage_record(record, self.db_path)

    def fetch(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        user_id: Optional[str] = None,
    ) -> List[UsageRecord]:
        return fetch_usage_records(since=since, until=until, user_id=user_id, db_path=self.db_path)


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ai_usage_record table if it doesn't exist.

    This creates an append-only ledger for immutable usage records.
    No UPDATE or DELETE operations should ever be performed on this table.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ai_usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                request_id TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                session_id TEXT NOT NULL,
                user_id TEXT,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                feature TEXT,
                operation TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                estimated INTEGER NOT NULL DEFAULT 0,
                input_cost TEXT NOT NULL,
                output_cost TEXT NOT NULL,
                total_cost TEXT NOT NULL,
                currency TEXT NOT NULL DEFAULT 'USD',
                cached INTEGER NOT NULL DEFAULT 0,
                success INTEGER NOT NULL DEFAULT 1,
                error TEXT
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_ai_usage_record_timestamp "
            "ON ai_usage_record (timestamp)"
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_ai_usage_record_user "
            "ON ai_usage_record (user_id, timestamp)"
        )
    finally:
        conn.close()


def _to_row(record: UsageRecord) -> tuple:
    return (
        record.request_id,
        record.timestamp.isoformat(),
        record.session_id,
        record.user_id,
        record.provider,
        record.model,
        record.feature,
        record.operation,
        record.usage.input_tokens,
        record.usage.output_tokens,
        record.usage.total_tokens,
        int(record.usage.estimated),
        str(record.cost.input_cost),
        str(record.cost.output_cost),
        str(record.cost.total_cost),
        record.cost.currency,
        int(record.cached),
        int(record.success),
        record.error,
    )


def _from_row(row: tuple) -> UsageRecord:
    return UsageRecord(
        request_id=row[0],
        timestamp=datetime.fromisoformat(row[1]),
        session_id=row[2],
        user_id=row[3],
        provider=row[4],
        model=row[5],
        feature=row[6],
        operation=row[7],
        usage=TokenUsage(
            input_tokens=row[8],
            output_tokens=row[9],
            total_tokens=row[10],
            estimated=bool(row[11]),
        ),
        cost=CostBreakdown.from_dict({
            "input_cost": row[12],
            "output_cost": row[13],
            "total_cost": row[14],
            "currency": row[15],
        }),
        cached=bool(row[16]),
        success=bool(row[17]),
        error=row[18],
    )


def insert_usage_record(record: UsageRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert a single usage record into the append-only ledger.

    Args:
        record: The usage record to persist
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute(
            f"INSERT INTO ai_usage_record ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            _to_row(record),
        )
    finally:
        conn.close()


def insert_usage_records(records: Iterable[UsageRecord], db_path: str = DEFAULT_DB_PATH) -> None:
    """Insert multiple usage records atomically.

    All records are inserted in a single transaction to ensure consistency.

    Args:
        records: Usage records to persist
        db_path: Path to SQLite database file
    """
    rows = [_to_row(r) for r in records]
    if not rows:
        return

    conn = get_connection(db_path)
    try:
        conn.execute("BEGIN")
        conn.executemany(
            f"INSERT INTO ai_usage_record ({_COLUMNS}) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )
        conn.execute("COMMIT")
    except Exception:
        if conn.in_transaction:
            conn.execute("ROLLBACK")
        raise
    finally:
        conn.close()


def fetch_usage_records(
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    user_id: Optional[str] = None,
    limit: Optional[int] = None,
    db_path: str = DEFAULT_DB_PATH,
) -> List[UsageRecord]:
    """Fetch usage records in chronological order.

    This is a read-only operation that preserves the append-only nature.

    Args:
        since: Inclusive lower bound on timestamp
        until: Exclusive upper bound on timestamp
        user_id: Optional filter for a specific user
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of usage records ordered by timestamp (oldest first)
    """
    conn = get_connection(db_path)
    try:
        query = f"SELECT {_COLUMNS} FROM ai_usage_record"
        params: list = []
        conditions = []

        if since is not None:
            conditions.append("timestamp >= ?")
            params.append(since.isoformat())
        if until is not None:
            conditions.append("timestamp < ?")
            params.append(until.isoformat())
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)

        if conditions:
            query += " WHERE " + " AND ".join(conditions)

        query += " ORDER BY timestamp ASC, id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        cursor = conn.execute(query, params)
        return [_from_row(row) for row in cursor.fetchall()]
    finally:
        conn.close()
