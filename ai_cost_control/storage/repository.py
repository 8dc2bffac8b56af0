"""
Repository pattern for data access.

Handles database operations for cache entries, the usage ledger and
per-firm budget settings. Every counter or set update is expressed as a
single conditional SQL statement so concurrent writers never lose updates.
"""

import json
import sqlite3
from datetime import datetime
from typing import Dict, FrozenSet, List, Optional

from ai_cost_control.core.errors import DuplicateKey

from .db import DEFAULT_DB_PATH, decode_timestamp, encode_timestamp, get_connection
from .models import BudgetSettings, CacheEntry, UsageRecord

_CACHE_COLUMNS = """
    prompt_hash, prompt_text, response, model_used, operation_type, firm_id,
    created_at, expires_at, embedding, hit_count
"""

_USAGE_COLUMNS = """
    id, firm_id, operation_type, model_used, input_tokens, output_tokens,
    total_tokens, cost_cents, latency_ms, cached, created_at, user_id, case_id
"""

_BUDGET_COLUMNS = """
    firm_id, monthly_budget_cents, alert_at_75, alert_at_90, auto_pause_at_100,
    last_alert_reset_at, updated_at, alerts_sent
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the control-plane tables if they don't exist.

    ``ai_usage_record`` is an append-only ledger: no UPDATE or DELETE is
    ever performed on it by this package.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("PRAGMA journal_mode = WAL")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS ai_cache_entry (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                prompt_hash TEXT NOT NULL,
                prompt_text TEXT NOT NULL,
                response TEXT NOT NULL,
                model_used TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                firm_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL,
                embedding TEXT,
                hit_count INTEGER NOT NULL DEFAULT 0,
                UNIQUE (firm_id, operation_type, prompt_hash)
            );
            CREATE INDEX IF NOT EXISTS idx_ai_cache_entry_scope
                ON ai_cache_entry (firm_id, operation_type, expires_at);

            CREATE TABLE IF NOT EXISTS ai_usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                firm_id TEXT NOT NULL,
                operation_type TEXT NOT NULL,
                model_used TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                cost_cents REAL NOT NULL,
                latency_ms INTEGER NOT NULL,
                cached INTEGER NOT NULL,
                created_at TEXT NOT NULL,
                user_id TEXT,
                case_id TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_ai_usage_record_firm_time
                ON ai_usage_record (firm_id, created_at);

            CREATE TABLE IF NOT EXISTS ai_budget_settings (
                firm_id TEXT PRIMARY KEY,
                monthly_budget_cents INTEGER NOT NULL,
                alert_at_75 INTEGER NOT NULL,
                alert_at_90 INTEGER NOT NULL,
                auto_pause_at_100 INTEGER NOT NULL,
                last_alert_reset_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                alerts_sent TEXT NOT NULL DEFAULT ''
            );
        """)
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")


class CacheRepository:
    """Persistence for firm-scoped cache entries."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def find_live(
        self,
        firm_id: str,
        operation_type: str,
        prompt_hash: str,
        now: datetime
    ) -> Optional[CacheEntry]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_CACHE_COLUMNS} FROM ai_cache_entry
                WHERE firm_id = ? AND operation_type = ? AND prompt_hash = ?
                  AND expires_at >= ?
            """, (firm_id, operation_type, prompt_hash, encode_timestamp(now)))
            row = cursor.fetchone()
            return _row_to_cache_entry(row) if row else None
        finally:
            conn.close()

    def find_live_with_embeddings(
        self,
        firm_id: str,
        operation_type: str,
        now: datetime
    ) -> List[CacheEntry]:
        """Live entries of one firm and operation type that carry an embedding."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_CACHE_COLUMNS} FROM ai_cache_entry
                WHERE firm_id = ? AND operation_type = ?
                  AND expires_at >= ? AND embedding IS NOT NULL
                ORDER BY created_at DESC
            """, (firm_id, operation_type, encode_timestamp(now)))
            return [_row_to_cache_entry(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def insert(self, entry: CacheEntry, now: datetime) -> None:
        """Insert an entry, replacing a dead row that holds the same key.

        Raises:
            DuplicateKey: If a live entry with the same key already exists
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("""
                DELETE FROM ai_cache_entry
                WHERE firm_id = ? AND operation_type = ? AND prompt_hash = ?
                  AND expires_at < ?
            """, (entry.firm_id, entry.operation_type, entry.prompt_hash, encode_timestamp(now)))
            conn.execute(f"""
                INSERT INTO ai_cache_entry ({_CACHE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                entry.prompt_hash,
                entry.prompt_text,
                entry.response,
                entry.model_used,
                entry.operation_type,
                entry.firm_id,
                encode_timestamp(entry.created_at),
                encode_timestamp(entry.expires_at),
                json.dumps(entry.embedding) if entry.embedding is not None else None,
                entry.hit_count
            ))
            conn.execute("COMMIT")
        except sqlite3.IntegrityError as e:
            _rollback(conn)
            raise DuplicateKey(entry.firm_id, entry.operation_type, entry.prompt_hash) from e
        except Exception:
            _rollback(conn)
            raise
        finally:
            conn.close()

    def increment_hit_count(self, firm_id: str, operation_type: str, prompt_hash: str) -> Optional[int]:
        """Atomically add one to ``hit_count`` and return the new value.

        Returns:
            The post-increment count, or None if the row no longer exists
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute("""
                UPDATE ai_cache_entry SET hit_count = hit_count + 1
                WHERE firm_id = ? AND operation_type = ? AND prompt_hash = ?
            """, (firm_id, operation_type, prompt_hash))
            if cursor.rowcount == 0:
                conn.execute("COMMIT")
                return None
            row = conn.execute("""
                SELECT hit_count FROM ai_cache_entry
                WHERE firm_id = ? AND operation_type = ? AND prompt_hash = ?
            """, (firm_id, operation_type, prompt_hash)).fetchone()
            conn.execute("COMMIT")
            return row[0]
        except Exception:
            _rollback(conn)
            raise
        finally:
            conn.close()

    def delete_expired(self, now: datetime) -> int:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM ai_cache_entry WHERE expires_at < ?",
                (encode_timestamp(now),)
            )
            return cursor.rowcount
        finally:
            conn.close()


def _row_to_cache_entry(row) -> CacheEntry:
    return CacheEntry(
        prompt_hash=row[0],
        prompt_text=row[1],
        response=row[2],
        model_used=row[3],
        operation_type=row[4],
        firm_id=row[5],
        created_at=decode_timestamp(row[6]),
        expires_at=decode_timestamp(row[7]),
        embedding=json.loads(row[8]) if row[8] is not None else None,
        hit_count=row[9]
    )


class UsageRepository:
    """Repository for the append-only usage ledger.

    Each call opens its own connection, so reads always observe every
    record committed before them.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def insert(self, record: UsageRecord) -> int:
        """Append a single record and return its id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT INTO ai_usage_record
                (firm_id, operation_type, model_used, input_tokens, output_tokens,
                 total_tokens, cost_cents, latency_ms, cached, created_at,
                 user_id, case_id)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.firm_id,
                record.operation_type,
                record.model_used,
                record.input_tokens,
                record.output_tokens,
                record.total_tokens,
                record.cost_cents,
                record.latency_ms,
                int(record.cached),
                encode_timestamp(record.created_at),
                record.user_id,
                record.case_id
            ))
            return cursor.lastrowid
        finally:
            conn.close()

    def sum_cost(self, firm_id: str, start: datetime, end: datetime) -> float:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT SUM(cost_cents) FROM ai_usage_record
                WHERE firm_id = ? AND created_at >= ? AND created_at < ?
            """, (firm_id, encode_timestamp(start), encode_timestamp(end))).fetchone()
            return float(row[0] or 0)
        finally:
            conn.close()

    def totals(self, firm_id: str, start: datetime, end: datetime) -> Dict[str, float]:
        """Aggregate totals over a window.

        Returns:
            Dictionary with cost, token, call, cached-call and latency sums
        """
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT
                    SUM(cost_cents),
                    SUM(total_tokens),
                    COUNT(*),
                    SUM(cached),
                    SUM(CASE WHEN cached = 0 THEN latency_ms ELSE 0 END)
                FROM ai_usage_record
                WHERE firm_id = ? AND created_at >= ? AND created_at < ?
            """, (firm_id, encode_timestamp(start), encode_timestamp(end))).fetchone()
            return {
                "total_cost_cents": float(row[0] or 0),
                "total_tokens": row[1] or 0,
                "total_calls": row[2] or 0,
                "cached_calls": row[3] or 0,
                "uncached_latency_ms": row[4] or 0
            }
        finally:
            conn.close()

    def grouped_costs(
        self,
        firm_id: str,
        start: datetime,
        end: datetime,
        group_by: str
    ) -> List[Dict[str, object]]:
        """Cost, tokens and calls grouped by ``operation_type`` or ``user_id``."""
        if group_by not in ("operation_type", "user_id", "model_used"):
            raise ValueError(f"Unsupported grouping column: {group_by}")
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {group_by}, SUM(cost_cents) AS cost, SUM(total_tokens), COUNT(*)
                FROM ai_usage_record
                WHERE firm_id = ? AND created_at >= ? AND created_at < ?
                GROUP BY {group_by}
                ORDER BY cost DESC
            """, (firm_id, encode_timestamp(start), encode_timestamp(end)))
            return [
                {"key": row[0], "cost_cents": float(row[1] or 0), "tokens": row[2] or 0, "calls": row[3]}
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def daily_costs(self, firm_id: str, start: datetime, end: datetime) -> List[Dict[str, object]]:
        """Cost, tokens and calls per UTC day, oldest day first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT substr(created_at, 1, 10) AS day, SUM(cost_cents), SUM(total_tokens),
                       COUNT(*), SUM(cached)
                FROM ai_usage_record
                WHERE firm_id = ? AND created_at >= ? AND created_at < ?
                GROUP BY day
                ORDER BY day
            """, (firm_id, encode_timestamp(start), encode_timestamp(end)))
            return [
                {
                    "day": row[0],
                    "cost_cents": float(row[1] or 0),
                    "tokens": row[2] or 0,
                    "calls": row[3],
                    "cached_calls": row[4] or 0
                }
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()

    def fetch_recent(self, firm_id: str, limit: int = 100) -> List[UsageRecord]:
        """Fetch records newest first."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(f"""
                SELECT {_USAGE_COLUMNS} FROM ai_usage_record
                WHERE firm_id = ?
                ORDER BY created_at DESC, id DESC LIMIT ?
            """, (firm_id, limit))
            return [
                UsageRecord(
                    id=row[0],
                    firm_id=row[1],
                    operation_type=row[2],
                    model_used=row[3],
                    input_tokens=row[4],
                    output_tokens=row[5],
                    total_tokens=row[6],
                    cost_cents=row[7],
                    latency_ms=row[8],
                    cached=bool(row[9]),
                    created_at=decode_timestamp(row[10]),
                    user_id=row[11],
                    case_id=row[12]
                )
                for row in cursor.fetchall()
            ]
        finally:
            conn.close()


class BudgetRepository:
    """Per-firm budget settings with check-and-set updates of the alert set."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, firm_id: str) -> Optional[BudgetSettings]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_BUDGET_COLUMNS} FROM ai_budget_settings WHERE firm_id = ?",
                (firm_id,)
            ).fetchone()
            return _row_to_settings(row) if row else None
        finally:
            conn.close()

    def create_if_missing(
        self,
        firm_id: str,
        monthly_budget_cents: int,
        alert_at_75: bool,
        alert_at_90: bool,
        auto_pause_at_100: bool,
        now: datetime
    ) -> BudgetSettings:
        """Insert default settings unless the firm already has a row."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(f"""
                INSERT OR IGNORE INTO ai_budget_settings ({_BUDGET_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, '')
            """, (
                firm_id,
                monthly_budget_cents,
                int(alert_at_75),
                int(alert_at_90),
                int(auto_pause_at_100),
                encode_timestamp(now),
                encode_timestamp(now)
            ))
            row = conn.execute(
                f"SELECT {_BUDGET_COLUMNS} FROM ai_budget_settings WHERE firm_id = ?",
                (firm_id,)
            ).fetchone()
            return _row_to_settings(row)
        finally:
            conn.close()

    def update(self, firm_id: str, changes: Dict[str, object], now: datetime) -> None:
        """Apply configuration changes to an existing row."""
        allowed = {"monthly_budget_cents", "alert_at_75", "alert_at_90", "auto_pause_at_100"}
        unknown = set(changes) - allowed
        if unknown:
            raise ValueError(f"Unknown budget settings: {unknown}")
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [int(value) for value in changes.values()]
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"UPDATE ai_budget_settings SET {assignments}, updated_at = ? WHERE firm_id = ?",
                params + [encode_timestamp(now), firm_id]
            )
        finally:
            conn.close()

    def reset_month(self, firm_id: str, month_start: datetime, now: datetime) -> bool:
        """Clear the alert set if it was last reset before ``month_start``.

        Returns:
            True only for the single caller whose update performed the reset
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE ai_budget_settings
                SET alerts_sent = '', last_alert_reset_at = ?, updated_at = ?
                WHERE firm_id = ? AND last_alert_reset_at < ?
            """, (encode_timestamp(now), encode_timestamp(now), firm_id, encode_timestamp(month_start)))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def mark_alert_sent(self, firm_id: str, tag: str, month_start: datetime, now: datetime) -> bool:
        """Add ``tag`` to the alert set unless it is already there.

        The condition on ``last_alert_reset_at`` keeps an evaluator that
        started in the previous month from marking the new month.

        Returns:
            True only for the single caller whose update added the tag
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE ai_budget_settings
                SET alerts_sent = CASE WHEN alerts_sent = '' THEN ?
                                       ELSE alerts_sent || ',' || ? END,
                    updated_at = ?
                WHERE firm_id = ?
                  AND last_alert_reset_at >= ?
                  AND instr(',' || alerts_sent || ',', ?) = 0
            """, (
                tag,
                tag,
                encode_timestamp(now),
                firm_id,
                encode_timestamp(month_start),
                f",{tag},"
            ))
            return cursor.rowcount == 1
        finally:
            conn.close()


def _parse_tags(raw: str) -> FrozenSet[str]:
    return frozenset(tag for tag in raw.split(",") if tag)


def _row_to_settings(row) -> BudgetSettings:
    return BudgetSettings(
        firm_id=row[0],
        monthly_budget_cents=row[1],
        alert_at_75=bool(row[2]),
        alert_at_90=bool(row[3]),
        auto_pause_at_100=bool(row[4]),
        last_alert_reset_at=decode_timestamp(row[5]),
        updated_at=decode_timestamp(row[6]),
        alerts_sent_this_month=_parse_tags(row[7])
    )
