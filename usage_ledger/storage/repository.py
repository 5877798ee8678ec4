"""
Repository pattern for data access.

Schema management and the raw event store: an append-only log of flushed
batches that settlement drains in creation order.
"""

import json
import sqlite3
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from usage_ledger.core.logging import get_logger

from .db import DEFAULT_DB_PATH, get_connection
from .models import BatchStatus, ErrorEvent, RawBatch, UsageEvent, parse_timestamp

logger = get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS raw_event_batch (
    id TEXT PRIMARY KEY,
    batch_date TEXT NOT NULL,
    events TEXT NOT NULL,
    event_count INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    claimed_at TEXT,
    processed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_raw_event_batch_status_created
    ON raw_event_batch(status, created_at);

CREATE TABLE IF NOT EXISTS daily_user_usage (
    id TEXT PRIMARY KEY,
    usage_date TEXT NOT NULL,
    user_id TEXT NOT NULL,
    total_input_tokens INTEGER NOT NULL DEFAULT 0,
    total_output_tokens INTEGER NOT NULL DEFAULT 0,
    total_cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    total_cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    request_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    input_cost_micros INTEGER NOT NULL DEFAULT 0,
    output_cost_micros INTEGER NOT NULL DEFAULT 0,
    cache_read_cost_micros INTEGER NOT NULL DEFAULT 0,
    cache_write_cost_micros INTEGER NOT NULL DEFAULT 0,
    cache_saved_micros INTEGER NOT NULL DEFAULT 0,
    cache_hit_rate REAL NOT NULL DEFAULT 0,
    error_breakdown TEXT NOT NULL DEFAULT '{}',
    hourly_breakdown TEXT NOT NULL DEFAULT '{}',
    model_breakdown TEXT NOT NULL DEFAULT '{}',
    latency_digest BLOB,
    latency_stats TEXT NOT NULL DEFAULT '{}',
    peak_hour INTEGER NOT NULL DEFAULT 0,
    peak_hour_requests INTEGER NOT NULL DEFAULT 0,
    last_updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_daily_user_usage_user_date
    ON daily_user_usage(user_id, usage_date);

CREATE TABLE IF NOT EXISTS daily_model_usage (
    id TEXT PRIMARY KEY,
    usage_date TEXT NOT NULL,
    model TEXT NOT NULL,
    total_input_tokens INTEGER NOT NULL DEFAULT 0,
    total_output_tokens INTEGER NOT NULL DEFAULT 0,
    total_cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
    total_cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    request_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    unique_users INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    input_cost_micros INTEGER NOT NULL DEFAULT 0,
    output_cost_micros INTEGER NOT NULL DEFAULT 0,
    cache_read_cost_micros INTEGER NOT NULL DEFAULT 0,
    cache_write_cost_micros INTEGER NOT NULL DEFAULT 0,
    cache_saved_micros INTEGER NOT NULL DEFAULT 0,
    cache_hit_rate REAL NOT NULL DEFAULT 0,
    error_breakdown TEXT NOT NULL DEFAULT '{}',
    hourly_request_count TEXT NOT NULL DEFAULT '{}',
    user_requests TEXT NOT NULL DEFAULT '{}',
    latency_digest BLOB,
    latency_stats TEXT NOT NULL DEFAULT '{}',
    peak_hour INTEGER NOT NULL DEFAULT 0,
    peak_hour_requests INTEGER NOT NULL DEFAULT 0,
    last_updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_daily_model_usage_model_date
    ON daily_model_usage(model, usage_date);

CREATE TABLE IF NOT EXISTS system_daily_stats (
    id TEXT PRIMARY KEY,
    usage_date TEXT NOT NULL,
    total_input_tokens INTEGER NOT NULL DEFAULT 0,
    total_output_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    total_cache_read_tokens INTEGER NOT NULL DEFAULT 0,
    total_request_count INTEGER NOT NULL DEFAULT 0,
    success_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    cost_micros INTEGER NOT NULL DEFAULT 0,
    cache_saved_micros INTEGER NOT NULL DEFAULT 0,
    unique_users INTEGER NOT NULL DEFAULT 0,
    success_rate REAL NOT NULL DEFAULT 0,
    cache_hit_rate REAL NOT NULL DEFAULT 0,
    hourly_request_count TEXT NOT NULL DEFAULT '{}',
    model_breakdown TEXT NOT NULL DEFAULT '{}',
    user_breakdown TEXT NOT NULL DEFAULT '{}',
    top_models TEXT NOT NULL DEFAULT '[]',
    top_users TEXT NOT NULL DEFAULT '[]',
    latency_digest BLOB,
    latency_stats TEXT NOT NULL DEFAULT '{}',
    peak_hour INTEGER NOT NULL DEFAULT 0,
    peak_hour_requests INTEGER NOT NULL DEFAULT 0,
    last_updated_at TEXT
);

CREATE TABLE IF NOT EXISTS user_quota (
    user_id TEXT PRIMARY KEY,
    total_input_tokens INTEGER NOT NULL DEFAULT 0,
    total_output_tokens INTEGER NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    total_request_count INTEGER NOT NULL DEFAULT 0,
    total_cost_micros INTEGER NOT NULL DEFAULT 0,
    quota_enabled INTEGER NOT NULL DEFAULT 0,
    cost_limit_micros INTEGER NOT NULL DEFAULT 0,
    period_year INTEGER NOT NULL,
    period_month INTEGER NOT NULL,
    period_start_at TEXT NOT NULL,
    period_end_at TEXT NOT NULL,
    period_input_tokens INTEGER NOT NULL DEFAULT 0,
    period_output_tokens INTEGER NOT NULL DEFAULT 0,
    period_tokens INTEGER NOT NULL DEFAULT 0,
    period_request_count INTEGER NOT NULL DEFAULT 0,
    period_cost_micros INTEGER NOT NULL DEFAULT 0,
    period_model_usage TEXT NOT NULL DEFAULT '{}',
    bonus_cost_micros INTEGER NOT NULL DEFAULT 0,
    bonus_reason TEXT,
    bonus_granted_at TEXT,
    cost_usage_percent REAL NOT NULL DEFAULT 0,
    quota_exceeded INTEGER NOT NULL DEFAULT 0,
    first_seen_at TEXT,
    last_active_at TEXT,
    last_updated_at TEXT
);

CREATE TABLE IF NOT EXISTS quota_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    period_year INTEGER NOT NULL,
    period_month INTEGER NOT NULL,
    total_input_tokens INTEGER NOT NULL,
    total_output_tokens INTEGER NOT NULL,
    total_tokens INTEGER NOT NULL,
    total_cost_micros INTEGER NOT NULL,
    total_request_count INTEGER NOT NULL,
    cost_limit_micros INTEGER NOT NULL,
    bonus_cost_micros INTEGER NOT NULL,
    effective_limit_micros INTEGER NOT NULL,
    final_usage_percent REAL NOT NULL,
    was_exceeded INTEGER NOT NULL,
    model_tokens TEXT NOT NULL DEFAULT '{}',
    model_costs TEXT NOT NULL DEFAULT '{}',
    archived_at TEXT NOT NULL,
    UNIQUE (user_id, period_year, period_month)
);

CREATE TABLE IF NOT EXISTS bonus_record (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    period_year INTEGER NOT NULL,
    period_month INTEGER NOT NULL,
    amount_micros INTEGER NOT NULL,
    reason TEXT,
    granted_by TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_bonus_record_user
    ON bonus_record(user_id, created_at);
"""


def format_ts(moment: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO format so stored timestamps sort lexically."""
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    return parse_timestamp(value) if value else None


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create every table and index if it doesn't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


class RawEventRepository:
    """Durable, append-only store of flushed event batches.

    Batches move ``pending -> processing -> processed``; a failed
    settlement releases its claim back to ``pending``. Batches are never
    deleted.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def insert(self, batch: RawBatch) -> None:
        """Persist a new batch in a single write."""
        payload = json.dumps([event.to_dict() for event in batch.events])
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                """
                INSERT INTO raw_event_batch
                (id, batch_date, events, event_count, status, created_at, claimed_at, processed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    batch.id,
                    batch.events[0].date.isoformat(),
                    payload,
                    batch.event_count,
                    batch.status.value,
                    format_ts(batch.created_at),
                    format_ts(batch.claimed_at),
                    format_ts(batch.processed_at),
                ),
            )
        finally:
            conn.close()

    def get(self, batch_id: str) -> Optional[RawBatch]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM raw_event_batch WHERE id = ?", (batch_id,)).fetchone()
            return _row_to_batch(row) if row else None
        finally:
            conn.close()

    def find_pending(self, limit: Optional[int] = None) -> List[RawBatch]:
        """Pending batches, oldest first.

        Args:
            limit: Optional maximum number of batches to return

        Returns:
            List of batches ordered by creation time ascending
        """
        query = "SELECT * FROM raw_event_batch WHERE status = ? ORDER BY created_at ASC, id ASC"
        params: list = [BatchStatus.PENDING.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        conn = get_connection(self.db_path)
        try:
            return [_row_to_batch(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_pending(self, limit: Optional[int] = None) -> List[Tuple[str, int]]:
        """(batch id, event count) of pending batches, oldest first.

        Events are not decoded, so one unreadable batch cannot hide the others.
        """
        query = ("SELECT id, event_count FROM raw_event_batch WHERE status = ? "
                 "ORDER BY created_at ASC, id ASC")
        params: list = [BatchStatus.PENDING.value]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        conn = get_connection(self.db_path)
        try:
            return [(row["id"], row["event_count"]) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def find_recent_errors(self, limit: int = 20, scan: int = 100) -> List[ErrorEvent]:
        """Non-success events from the newest ``scan`` batches, newest event first.

        Scanning stops once ``2 * limit`` errors are collected. A batch or
        event that cannot be decoded is skipped with a warning.
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT id, events FROM raw_event_batch ORDER BY created_at DESC, id DESC LIMIT ?",
                (scan,),
            ).fetchall()
        finally:
            conn.close()

        errors: List[ErrorEvent] = []
        for row in rows:
            if len(errors) >= limit * 2:
                break
            try:
                items = json.loads(row["events"])
            except ValueError:
                logger.warning("Skipping undecodable batch {}", row["id"])
                continue
            for item in items:
                try:
                    event = UsageEvent.from_dict(item)
                except ValueError as e:
                    logger.warning("Skipping invalid event in batch {}: {}", row["id"], e)
                    continue
                if not event.is_success:
                    errors.append(ErrorEvent(batch_id=row["id"], event=event))
        errors.sort(key=lambda error: error.event.timestamp, reverse=True)
        return errors[:limit]

    def claim(self, batch_id: str, now: Optional[datetime] = None) -> bool:
        """Atomically move a batch from pending to processing.

        Returns:
            True if this caller won the claim, False if the batch was not
            pending (already claimed or processed)
        """
        now = now or datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "UPDATE raw_event_batch SET status = ?, claimed_at = ? WHERE id = ? AND status = ?",
                (BatchStatus.PROCESSING.value, format_ts(now), batch_id, BatchStatus.PENDING.value),
            )
            return cursor.rowcount == 1
        finally:
            conn.close()

    def mark_processed(self, batch_id: str, conn: Optional[sqlite3.Connection] = None,
                       now: Optional[datetime] = None) -> bool:
        """Flip a claimed batch to processed.

        When ``conn`` is given the update joins the caller's transaction, so
        the flag flip commits or rolls back together with the rollups.

        Returns:
            True if the batch was in processing and is now processed
        """
        now = now or datetime.now(timezone.utc)
        sql = "UPDATE raw_event_batch SET status = ?, processed_at = ? WHERE id = ? AND status = ?"
        params = (BatchStatus.PROCESSED.value, format_ts(now), batch_id, BatchStatus.PROCESSING.value)
        if conn is not None:
            return conn.execute(sql, params).rowcount == 1
        own = get_connection(self.db_path)
        try:
            return own.execute(sql, params).rowcount == 1
        finally:
            own.close()

    def release(self, batch_id: str) -> bool:
        """Return a claimed batch to pending after a failed settlement."""
        return self._transition(batch_id, BatchStatus.PROCESSING, BatchStatus.PENDING)

    def reset(self, batch_id: str) -> bool:
        """Put a processed batch back to pending for a recovery recompute.

        Settling it again double counts unless the affected rollups were
        cleared first.
        """
        return self._transition(batch_id, BatchStatus.PROCESSED, BatchStatus.PENDING)

    def release_stale_claims(self, older_than: datetime) -> int:
        """Return claims taken before ``older_than`` to pending.

        Returns:
            Number of batches released
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE raw_event_batch SET status = ?, claimed_at = NULL
                WHERE status = ? AND claimed_at < ?
                """,
                (BatchStatus.PENDING.value, BatchStatus.PROCESSING.value, format_ts(older_than)),
            )
            return cursor.rowcount
        finally:
            conn.close()

    def count_by_status(self) -> Dict[str, int]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                "SELECT status, COUNT(*) FROM raw_event_batch GROUP BY status"
            ).fetchall()
            counts = {status.value: 0 for status in BatchStatus}
            counts.update({row[0]: row[1] for row in rows})
            return counts
        finally:
            conn.close()

    def _transition(self, batch_id: str, source: BatchStatus, target: BatchStatus) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                """
                UPDATE raw_event_batch
                SET status = ?, claimed_at = NULL, processed_at = NULL
                WHERE id = ? AND status = ?
                """,
                (target.value, batch_id, source.value),
            )
            return cursor.rowcount == 1
        finally:
            conn.close()


def _row_to_batch(row: sqlite3.Row) -> RawBatch:
    events = tuple(UsageEvent.from_dict(item) for item in json.loads(row["events"]))
    return RawBatch(
        id=row["id"],
        events=events,
        created_at=parse_ts(row["created_at"]),
        status=BatchStatus(row["status"]),
        claimed_at=parse_ts(row["claimed_at"]),
        processed_at=parse_ts(row["processed_at"]),
    )
