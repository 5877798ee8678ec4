"""
Quota persistence.

UserQuota rows, the monthly QuotaHistory archive and the BonusRecord audit
trail. Writers take an open connection; the caller owns the transaction.
"""

import json
import sqlite3
from datetime import datetime
from decimal import Decimal
from typing import List, Mapping, Optional

from usage_ledger.core.periods import period_end, period_of, period_start

from .db import DEFAULT_DB_PATH, get_connection
from .models import BonusRecord, QuotaHistory, UserQuota, from_micros, to_micros
from .repository import format_ts, parse_ts
from .rollups import map_increment_sql

# Usage percent against cost_limit + bonus, evaluated by SQLite in the same
# statement that changes any of its inputs.
_STATUS_SQL = """
UPDATE user_quota SET
    cost_usage_percent = CASE
        WHEN cost_limit_micros + bonus_cost_micros > 0
        THEN period_cost_micros * 100.0 / (cost_limit_micros + bonus_cost_micros)
        ELSE 0 END,
    quota_exceeded = CASE
        WHEN cost_limit_micros + bonus_cost_micros > 0
        THEN period_cost_micros * 100.0 / (cost_limit_micros + bonus_cost_micros) >= 100
        ELSE 0 END
WHERE user_id = ?
"""


def ensure_quota(conn: sqlite3.Connection, user_id: str, now: datetime,
                 default_enabled: bool = False, default_cost_limit: Decimal = Decimal("0")) -> None:
    """Create the user's quota row in the current period if it is missing."""
    year, month = period_of(now)
    conn.execute(
        """
        INSERT INTO user_quota
        (user_id, quota_enabled, cost_limit_micros, period_year, period_month,
         period_start_at, period_end_at, first_seen_at, last_active_at, last_updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(user_id) DO NOTHING
        """,
        (
            user_id,
            int(default_enabled),
            to_micros(default_cost_limit),
            year,
            month,
            format_ts(period_start(year, month)),
            format_ts(period_end(year, month)),
            format_ts(now),
            format_ts(now),
            format_ts(now),
        ),
    )


def add_period_usage(conn: sqlite3.Connection, user_id: str, input_tokens: int,
                     output_tokens: int, total_tokens: int, request_count: int,
                     cost_micros: int, now: datetime,
                     models: Optional[Mapping[str, Mapping[str, int]]] = None) -> None:
    """Increment the open period's counters and recompute quota status.

    ``models`` maps a model key to ``{"tokens": n, "cost_micros": m}``. It
    is kept on the row beside the counters so an archived period's model
    split always sums to its totals.
    """
    models_sql, models_params = map_increment_sql("period_model_usage", models or {})
    conn.execute(
        f"""
        UPDATE user_quota SET
            period_input_tokens = period_input_tokens + ?,
            period_output_tokens = period_output_tokens + ?,
            period_tokens = period_tokens + ?,
            period_request_count = period_request_count + ?,
            period_cost_micros = period_cost_micros + ?,
            period_model_usage = {models_sql},
            last_active_at = ?,
            last_updated_at = ?
        WHERE user_id = ?
        """,
        (input_tokens, output_tokens, total_tokens, request_count, cost_micros,
         *models_params, format_ts(now), format_ts(now), user_id),
    )
    conn.execute(_STATUS_SQL, (user_id,))


def add_bonus(conn: sqlite3.Connection, record: BonusRecord) -> bool:
    """Append the audit record, add to the bonus balance and recompute status.

    Returns:
        False if the user has no quota row (nothing is written)
    """
    cursor = conn.execute(
        """
        UPDATE user_quota SET
            bonus_cost_micros = bonus_cost_micros + ?,
            bonus_reason = ?,
            bonus_granted_at = ?,
            last_updated_at = ?
        WHERE user_id = ?
        """,
        (to_micros(record.amount_usd), record.reason, format_ts(record.created_at),
         format_ts(record.created_at), record.user_id),
    )
    if cursor.rowcount == 0:
        return False
    conn.execute(_STATUS_SQL, (record.user_id,))
    conn.execute(
        """
        INSERT INTO bonus_record
        (id, user_id, period_year, period_month, amount_micros, reason, granted_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (record.id, record.user_id, record.period_year, record.period_month,
         to_micros(record.amount_usd), record.reason, record.granted_by,
         format_ts(record.created_at)),
    )
    return True


def set_quota_config(conn: sqlite3.Connection, user_id: str, enabled: bool,
                     cost_limit: Decimal, now: datetime) -> bool:
    """Overwrite the quota settings; recompute status when enabling.

    Returns:
        False if the user has no quota row
    """
    cursor = conn.execute(
        """
        UPDATE user_quota SET quota_enabled = ?, cost_limit_micros = ?, last_updated_at = ?
        WHERE user_id = ?
        """,
        (int(enabled), to_micros(cost_limit), format_ts(now), user_id),
    )
    if cursor.rowcount == 0:
        return False
    if enabled:
        conn.execute(_STATUS_SQL, (user_id,))
    return True


def roll_over(conn: sqlite3.Connection, user_id: str, now: datetime) -> Optional[QuotaHistory]:
    """Close the stored period if ``now`` lies in a later month.

    Archives the closing period, folds its counters into the lifetime
    totals and opens the current period with zeroed counters and bonus.
    Both writes happen in the caller's transaction.

    The counters and the per-model split are both assigned by settlement
    time, so an event dated late in one month but settled early in the
    next counts toward the later period in both.

    Returns:
        The archived period, or None if the stored period is still current
    """
    row = conn.execute("SELECT * FROM user_quota WHERE user_id = ?", (user_id,)).fetchone()
    if row is None:
        return None
    current = period_of(now)
    closing = (row["period_year"], row["period_month"])
    if closing >= current:
        return None

    effective_micros = row["cost_limit_micros"] + row["bonus_cost_micros"]
    final_percent, was_exceeded = UserQuota.compute_status(
        from_micros(row["period_cost_micros"]),
        from_micros(row["cost_limit_micros"]),
        from_micros(row["bonus_cost_micros"]),
    )
    model_usage = json.loads(row["period_model_usage"])
    model_tokens = {model: slot.get("tokens", 0) for model, slot in model_usage.items()}
    model_micros = {model: slot.get("cost_micros", 0) for model, slot in model_usage.items()}
    history = QuotaHistory(
        user_id=user_id,
        period_year=closing[0],
        period_month=closing[1],
        total_input_tokens=row["period_input_tokens"],
        total_output_tokens=row["period_output_tokens"],
        total_tokens=row["period_tokens"],
        total_cost_usd=from_micros(row["period_cost_micros"]),
        total_request_count=row["period_request_count"],
        cost_limit_usd=from_micros(row["cost_limit_micros"]),
        bonus_cost_usd=from_micros(row["bonus_cost_micros"]),
        effective_limit_usd=from_micros(effective_micros),
        final_usage_percent=final_percent,
        was_exceeded=was_exceeded,
        model_tokens=model_tokens,
        model_costs={model: from_micros(micros) for model, micros in model_micros.items()},
        archived_at=now,
    )
    conn.execute(
        """
        INSERT OR IGNORE INTO quota_history
        (user_id, period_year, period_month, total_input_tokens, total_output_tokens,
         total_tokens, total_cost_micros, total_request_count, cost_limit_micros,
         bonus_cost_micros, effective_limit_micros, final_usage_percent, was_exceeded,
         model_tokens, model_costs, archived_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            user_id, closing[0], closing[1],
            row["period_input_tokens"], row["period_output_tokens"], row["period_tokens"],
            row["period_cost_micros"], row["period_request_count"],
            row["cost_limit_micros"], row["bonus_cost_micros"], effective_micros,
            final_percent, int(was_exceeded),
            json.dumps(model_tokens),
            json.dumps(model_micros),
            format_ts(now),
        ),
    )
    year, month = current
    conn.execute(
        """
        UPDATE user_quota SET
            total_input_tokens = total_input_tokens + period_input_tokens,
            total_output_tokens = total_output_tokens + period_output_tokens,
            total_tokens = total_tokens + period_tokens,
            total_request_count = total_request_count + period_request_count,
            total_cost_micros = total_cost_micros + period_cost_micros,
            period_year = ?, period_month = ?, period_start_at = ?, period_end_at = ?,
            period_input_tokens = 0, period_output_tokens = 0, period_tokens = 0,
            period_request_count = 0, period_cost_micros = 0, period_model_usage = '{}',
            bonus_cost_micros = 0, bonus_reason = NULL, bonus_granted_at = NULL,
            cost_usage_percent = 0, quota_exceeded = 0,
            last_updated_at = ?
        WHERE user_id = ? AND period_year = ? AND period_month = ?
        """,
        (year, month, format_ts(period_start(year, month)), format_ts(period_end(year, month)),
         format_ts(now), user_id, closing[0], closing[1]),
    )
    return history


def find_expired_users(conn: sqlite3.Connection, now: datetime) -> List[str]:
    """Users whose stored period ended before the current month."""
    year, month = period_of(now)
    rows = conn.execute(
        """
        SELECT user_id FROM user_quota
        WHERE period_year * 12 + period_month < ?
        ORDER BY user_id
        """,
        (year * 12 + month,),
    ).fetchall()
    return [row["user_id"] for row in rows]


class QuotaRepository:
    """Read access to quota rows, history and bonus audit records."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, user_id: str) -> Optional[UserQuota]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM user_quota WHERE user_id = ?", (user_id,)).fetchone()
            return _row_to_quota(row) if row else None
        finally:
            conn.close()

    def list_top_users(self, limit: int = 10) -> List[UserQuota]:
        """Users with the most lifetime tokens, closed periods plus the open one."""
        return self._list(
            "SELECT * FROM user_quota ORDER BY total_tokens + period_tokens DESC, user_id ASC LIMIT ?",
            (limit,),
        )

    def list_exceeded(self) -> List[UserQuota]:
        """Users over their limit in the current period, highest usage first."""
        return self._list(
            "SELECT * FROM user_quota WHERE quota_exceeded = 1 "
            "ORDER BY cost_usage_percent DESC, user_id ASC",
            (),
        )

    def list_recent_active(self, limit: int = 10) -> List[UserQuota]:
        return self._list(
            "SELECT * FROM user_quota WHERE last_active_at IS NOT NULL "
            "ORDER BY last_active_at DESC, user_id ASC LIMIT ?",
            (limit,),
        )

    def _list(self, query: str, params: tuple) -> List[UserQuota]:
        conn = get_connection(self.db_path)
        try:
            return [_row_to_quota(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def list_history(self, user_id: str) -> List[QuotaHistory]:
        """Archived periods for a user, newest first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM quota_history WHERE user_id = ?
                ORDER BY period_year DESC, period_month DESC
                """,
                (user_id,),
            ).fetchall()
            return [_row_to_history(row) for row in rows]
        finally:
            conn.close()

    def list_bonus_records(self, user_id: str, year: Optional[int] = None,
                           month: Optional[int] = None) -> List[BonusRecord]:
        """Bonus grants for a user, newest first, optionally for one period."""
        query = "SELECT * FROM bonus_record WHERE user_id = ?"
        params: list = [user_id]
        if year is not None:
            query += " AND period_year = ?"
            params.append(year)
        if month is not None:
            query += " AND period_month = ?"
            params.append(month)
        query += " ORDER BY created_at DESC"
        conn = get_connection(self.db_path)
        try:
            return [_row_to_bonus(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()


def _row_to_quota(row: sqlite3.Row) -> UserQuota:
    return UserQuota(
        user_id=row["user_id"],
        period_year=row["period_year"],
        period_month=row["period_month"],
        period_start_at=parse_ts(row["period_start_at"]),
        period_end_at=parse_ts(row["period_end_at"]),
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        total_tokens=row["total_tokens"],
        total_request_count=row["total_request_count"],
        total_estimated_cost_usd=from_micros(row["total_cost_micros"]),
        quota_enabled=bool(row["quota_enabled"]),
        cost_limit_usd=from_micros(row["cost_limit_micros"]),
        period_input_tokens=row["period_input_tokens"],
        period_output_tokens=row["period_output_tokens"],
        period_tokens=row["period_tokens"],
        period_request_count=row["period_request_count"],
        period_cost_usd=from_micros(row["period_cost_micros"]),
        bonus_cost_usd=from_micros(row["bonus_cost_micros"]),
        bonus_reason=row["bonus_reason"],
        bonus_granted_at=parse_ts(row["bonus_granted_at"]),
        cost_usage_percent=row["cost_usage_percent"],
        quota_exceeded=bool(row["quota_exceeded"]),
        first_seen_at=parse_ts(row["first_seen_at"]),
        last_active_at=parse_ts(row["last_active_at"]),
        last_updated_at=parse_ts(row["last_updated_at"]),
    )


def _row_to_history(row: sqlite3.Row) -> QuotaHistory:
    return QuotaHistory(
        id=row["id"],
        user_id=row["user_id"],
        period_year=row["period_year"],
        period_month=row["period_month"],
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        total_tokens=row["total_tokens"],
        total_cost_usd=from_micros(row["total_cost_micros"]),
        total_request_count=row["total_request_count"],
        cost_limit_usd=from_micros(row["cost_limit_micros"]),
        bonus_cost_usd=from_micros(row["bonus_cost_micros"]),
        effective_limit_usd=from_micros(row["effective_limit_micros"]),
        final_usage_percent=row["final_usage_percent"],
        was_exceeded=bool(row["was_exceeded"]),
        model_tokens=json.loads(row["model_tokens"]),
        model_costs={model: from_micros(micros)
                     for model, micros in json.loads(row["model_costs"]).items()},
        archived_at=parse_ts(row["archived_at"]),
    )


def _row_to_bonus(row: sqlite3.Row) -> BonusRecord:
    return BonusRecord(
        id=row["id"],
        user_id=row["user_id"],
        period_year=row["period_year"],
        period_month=row["period_month"],
        amount_usd=from_micros(row["amount_micros"]),
        reason=row["reason"],
        granted_by=row["granted_by"],
        created_at=parse_ts(row["created_at"]),
    )
