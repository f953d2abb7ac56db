"""
Repository pattern for usage record access.

Usage records are kept in two windows: daily (keyed by UTC date) and
monthly (keyed by UTC year-month). Both are append-only; retention pruning
removes whole expired keys and nothing else.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Tuple

from .db import DEFAULT_DB_PATH, get_connection
from .models import UsageRecord


def day_key(moment: datetime) -> str:
    """UTC calendar day of a timestamp, as YYYY-MM-DD."""
    return _as_utc(moment).strftime("%Y-%m-%d")


def month_key(moment: datetime) -> str:
    """UTC calendar month of a timestamp, as YYYY-MM."""
    return _as_utc(moment).strftime("%Y-%m")


def day_key_start(key: str) -> datetime:
    return datetime.strptime(key, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def month_key_start(key: str) -> datetime:
    return datetime.strptime(key + "-01", "%Y-%m-%d").replace(tzinfo=timezone.utc)


def _as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class UsageStore(ABC):
    """Append-only store of usage records, windowed by day and month."""

    @abstractmethod
    def append(self, record: UsageRecord) -> None:
        """Add a record to both the daily and the monthly window."""

    @abstractmethod
    def records_for_day(self, subscriber_id: str, key: str) -> List[UsageRecord]:
        """Records of one subscriber for a day key (YYYY-MM-DD)."""

    @abstractmethod
    def records_for_month(self, subscriber_id: str, key: str) -> List[UsageRecord]:
        """Records of one subscriber for a month key (YYYY-MM)."""

    @abstractmethod
    def prune(self, daily_cutoff: datetime, monthly_cutoff: datetime) -> Tuple[int, int]:
        """Delete daily keys starting before ``daily_cutoff`` and monthly keys
        starting before ``monthly_cutoff``.

        Returns:
            Number of (daily, monthly) keys deleted
        """


class InMemoryUsageStore(UsageStore):
    """Process-local usage store. Contents live as long as the instance."""

    def __init__(self):
        self._lock = threading.Lock()
        self._daily: Dict[Tuple[str, str], List[UsageRecord]] = {}
        self._monthly: Dict[Tuple[str, str], List[UsageRecord]] = {}

    def append(self, record: UsageRecord) -> None:
        with self._lock:
            self._daily.setdefault((record.subscriber_id, day_key(record.timestamp)), []).append(record)
            self._monthly.setdefault((record.subscriber_id, month_key(record.timestamp)), []).append(record)

    def records_for_day(self, subscriber_id: str, key: str) -> List[UsageRecord]:
        with self._lock:
            return list(self._daily.get((subscriber_id, key), []))

    def records_for_month(self, subscriber_id: str, key: str) -> List[UsageRecord]:
        with self._lock:
            return list(self._monthly.get((subscriber_id, key), []))

    def prune(self, daily_cutoff: datetime, monthly_cutoff: datetime) -> Tuple[int, int]:
        with self._lock:
            daily_expired = [k for k in self._daily if day_key_start(k[1]) < daily_cutoff]
            for k in daily_expired:
                del self._daily[k]
            monthly_expired = [k for k in self._monthly if month_key_start(k[1]) < monthly_cutoff]
            for k in monthly_expired:
                del self._monthly[k]
        return len(daily_expired), len(monthly_expired)


class SqliteUsageStore(UsageStore):
    """SQLite-backed usage store.

    Each operation opens its own connection, so the store can be shared
    between threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def append(self, record: UsageRecord) -> None:
        row = (
            record.subscriber_id,
            record.provider_id,
            record.input_tokens,
            record.output_tokens,
            record.total_tokens,
            record.estimated_cost,
            record.timestamp.isoformat(),
            int(record.success),
        )
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("""
                INSERT INTO usage_daily
                (day_key, subscriber_id, provider_id, input_tokens, output_tokens,
                 total_tokens, estimated_cost, timestamp, success)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (day_key(record.timestamp),) + row)
            conn.execute("""
                INSERT INTO usage_monthly
                (month_key, subscriber_id, provider_id, input_tokens, output_tokens,
                 total_tokens, estimated_cost, timestamp, success)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (month_key(record.timestamp),) + row)
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def records_for_day(self, subscriber_id: str, key: str) -> List[UsageRecord]:
        return self._fetch("usage_daily", "day_key", subscriber_id, key)

    def records_for_month(self, subscriber_id: str, key: str) -> List[UsageRecord]:
        return self._fetch("usage_monthly", "month_key", subscriber_id, key)

    def prune(self, daily_cutoff: datetime, monthly_cutoff: datetime) -> Tuple[int, int]:
        conn = get_connection(self.db_path)
        try:
            daily_keys = [
                row[0] for row in conn.execute("SELECT DISTINCT day_key FROM usage_daily")
                if day_key_start(row[0]) < daily_cutoff
            ]
            monthly_keys = [
                row[0] for row in conn.execute("SELECT DISTINCT month_key FROM usage_monthly")
                if month_key_start(row[0]) < monthly_cutoff
            ]
            deleted_daily = 0
            deleted_monthly = 0
            for key in daily_keys:
                deleted_daily += conn.execute(
                    "SELECT COUNT(DISTINCT subscriber_id) FROM usage_daily WHERE day_key = ?", (key,)
                ).fetchone()[0]
                conn.execute("DELETE FROM usage_daily WHERE day_key = ?", (key,))
            for key in monthly_keys:
                deleted_monthly += conn.execute(
                    "SELECT COUNT(DISTINCT subscriber_id) FROM usage_monthly WHERE month_key = ?", (key,)
                ).fetchone()[0]
                conn.execute("DELETE FROM usage_monthly WHERE month_key = ?", (key,))
            conn.commit()
            return deleted_daily, deleted_monthly
        finally:
            conn.close()

    def _fetch(self, table: str, key_column: str, subscriber_id: str, key: str) -> List[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT subscriber_id, provider_id, input_tokens, output_tokens,
                       total_tokens, estimated_cost, timestamp, success
                FROM {table}
                WHERE subscriber_id = ? AND {key_column} = ?
                ORDER BY timestamp ASC
            """, (subscriber_id, key))
            return [
                UsageRecord(
                    subscriber_id=row[0],
                    provider_id=row[1],
                    input_tokens=row[2],
                    output_tokens=row[3],
                    total_tokens=row[4],
                    estimated_cost=row[5],
                    timestamp=datetime.fromisoformat(row[6]),
                    success=bool(row[7]),
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all tables if they don't exist.

    Usage tables are append-only ledgers; the only DELETE ever issued
    against them is retention pruning of whole expired keys.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for table, key_column in (("usage_daily", "day_key"), ("usage_monthly", "month_key")):
            conn.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    {key_column} TEXT NOT NULL,
                    subscriber_id TEXT NOT NULL,
                    provider_id TEXT NOT NULL,
                    input_tokens INTEGER NOT NULL,
                    output_tokens INTEGER NOT NULL,
                    total_tokens INTEGER NOT NULL,
                    estimated_cost REAL NOT NULL,
                    timestamp TEXT NOT NULL,
                    success INTEGER NOT NULL DEFAULT 1
                )
            """)
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{table}_key "
                f"ON {table} (subscriber_id, {key_column})"
            )
        conn.execute("""
            CREATE TABLE IF NOT EXISTS subscriber (
                id TEXT PRIMARY KEY,
                plan TEXT NOT NULL,
                trial_generations_used INTEGER NOT NULL DEFAULT 0,
                monthly_generation_count INTEGER NOT NULL DEFAULT 0,
                total_generations INTEGER NOT NULL DEFAULT 0,
                trial_started_at TEXT,
                trial_ends_at TEXT,
                monthly_reset_date TEXT,
                has_batch_generation INTEGER NOT NULL DEFAULT 0,
                team_size INTEGER NOT NULL DEFAULT 0,
                is_email_verified INTEGER NOT NULL DEFAULT 1
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS generated_script (
                id TEXT PRIMARY KEY,
                subscriber_id TEXT NOT NULL REFERENCES subscriber(id),
                provider_id TEXT NOT NULL,
                model TEXT NOT NULL,
                hook TEXT NOT NULL,
                script TEXT NOT NULL,
                visuals TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                estimated_cost REAL NOT NULL,
                created_at TEXT NOT NULL,
                watermarked INTEGER NOT NULL DEFAULT 0,
                variation INTEGER
            )
        """)
        conn.commit()
    finally:
        conn.close()
