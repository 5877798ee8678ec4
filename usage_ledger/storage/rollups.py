"""
Rollup persistence.

Per-user, per-model and system-wide daily rows. Writes take an open
connection so the caller decides the transaction boundary; counters and
breakdown maps are incremented in a single UPDATE per row, never read,
modified and written back from Python.
"""

import json
import sqlite3
from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from usage_ledger.core.digest import LatencyDigest, LatencyStats
from usage_ledger.core.pricing import CostBreakdown

from .db import DEFAULT_DB_PATH, get_connection
from .models import (
    ZERO,
    CacheEfficiency,
    DailyModelUsage,
    DailyUserUsage,
    HourlyBreakdown,
    ModelBreakdown,
    ModelSummary,
    SystemDailyStats,
    TopItem,
    UsageEvent,
    from_micros,
    to_micros,
)
from .repository import format_ts, parse_ts

TOP_MODELS_LIMIT = 5
TOP_USERS_LIMIT = 10

_FORBIDDEN_KEY_CHARS = (".", "$", '"', "\\")


def sanitize_key(key: Any) -> str:
    """Make a dynamic map key safe to use inside a JSON path."""
    text = str(key)
    for char in _FORBIDDEN_KEY_CHARS:
        text = text.replace(char, "_")
    return text or "_"


def _json_path(*keys: str) -> str:
    return "$" + "".join(f'."{key}"' for key in keys)


def map_increment_sql(column: str, increments: Mapping[str, Any]) -> Tuple[str, List[Any]]:
    """Build one SQL expression that increments entries of a JSON map column.

    ``increments`` maps a key either to an int (flat counter map) or to a
    mapping of field name to int (map of counter structs). Missing keys and
    fields start at zero. Keys are sanitized; keys that collide after
    sanitizing are summed.

    Returns:
        Tuple of (SQL expression, positional parameters)
    """
    merged: Dict[str, Any] = {}
    for raw_key, value in increments.items():
        key = sanitize_key(raw_key)
        if isinstance(value, Mapping):
            slot = merged.setdefault(key, {})
            for name, amount in value.items():
                slot[name] = slot.get(name, 0) + amount
        else:
            merged[key] = merged.get(key, 0) + value

    expr = column
    params: List[Any] = []
    for key in sorted(merged):
        value = merged[key]
        key_path = _json_path(key)
        if isinstance(value, dict):
            # The struct is rebuilt in one nested json_set and set once; a path
            # into a value inserted earlier in the same call is not visible
            # on every SQLite release.
            inner = f"json(coalesce(json_extract({column}, ?), '{{}}'))"
            inner_args: List[Any] = [key_path]
            for name in sorted(value):
                inner = f"json_set({inner}, ?, coalesce(json_extract({column}, ?), 0) + ?)"
                inner_args.extend([_json_path(name), _json_path(key, name), value[name]])
            parts = [f"?, {inner}"]
            args: List[Any] = [key_path] + inner_args
        else:
            parts = [f"?, coalesce(json_extract({column}, ?), 0) + ?"]
            args = [key_path, key_path, value]
        expr = f"json_set({expr}, {', '.join(parts)})"
        params.extend(args)
    return expr, params


def normalize_error_type(error_type: Optional[str]) -> str:
    """Collapse provider error names into a small fixed vocabulary."""
    if not error_type:
        return "unknown"
    return _ERROR_TYPES.get(error_type.strip().lower(), "unknown")


_ERROR_TYPES = {
    "rate_limit_error": "rate_limit",
    "rate_limited": "rate_limit",
    "overloaded_error": "overloaded",
    "overloaded": "overloaded",
    "invalid_request_error": "invalid_request",
    "authentication_error": "authentication",
    "context_length_exceeded": "context_length",
    "server_error": "server_error",
    "internal_error": "server_error",
}


def model_key(model: Optional[str]) -> str:
    return model if model is not None else "unknown"


@dataclass
class UsageDelta:
    """Increments accumulated from one group of events for one rollup row."""
    total_input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    request_count: int = 0
    success_count: int = 0
    error_count: int = 0
    cost: CostBreakdown = CostBreakdown()
    cache_saved: Decimal = ZERO
    latencies: List[int] = field(default_factory=list)
    errors: Dict[str, int] = field(default_factory=dict)
    hourly: Dict[str, Dict[str, int]] = field(default_factory=dict)
    models: Dict[str, Dict[str, int]] = field(default_factory=dict)
    users: Dict[str, Dict[str, int]] = field(default_factory=dict)

    def add(self, event: UsageEvent, cost: CostBreakdown, cache_saved: Decimal) -> None:
        """Fold one event and its priced cost into the delta."""
        self.total_input_tokens += event.total_input_tokens
        self.output_tokens += event.output_tokens
        self.cache_creation_tokens += event.cache_creation_tokens
        self.cache_read_tokens += event.cache_read_tokens
        self.total_tokens += event.total_tokens
        self.request_count += 1
        if event.is_success:
            self.success_count += 1
        else:
            self.error_count += 1
            error = normalize_error_type(event.error_type)
            self.errors[error] = self.errors.get(error, 0) + 1
        self.cost = self.cost + cost
        self.cache_saved += cache_saved
        self.latencies.append(event.latency_ms)

        cost_micros = to_micros(cost.total)
        _bump(self.hourly, str(event.hour), request_count=1,
              total_tokens=event.total_tokens, cost_micros=cost_micros)
        _bump(self.models, model_key(event.model),
              input_tokens=event.total_input_tokens,
              output_tokens=event.output_tokens,
              cache_read_tokens=event.cache_read_tokens,
              request_count=1,
              success_count=1 if event.is_success else 0,
              error_count=0 if event.is_success else 1,
              total_tokens=event.total_tokens,
              cost_micros=cost_micros)
        _bump(self.users, event.user_id, request_count=1,
              total_tokens=event.total_tokens, cost_micros=cost_micros)

    @property
    def cost_micros(self) -> int:
        return to_micros(self.cost.total)

    def hourly_requests(self) -> Dict[str, int]:
        return {hour: slot["request_count"] for hour, slot in self.hourly.items()}

    def user_requests(self) -> Dict[str, int]:
        return {user: slot["request_count"] for user, slot in self.users.items()}


def _bump(target: Dict[str, Dict[str, int]], key: str, **amounts: int) -> None:
    slot = target.setdefault(key, {})
    for name, amount in amounts.items():
        slot[name] = slot.get(name, 0) + amount


def _pick(mapping: Mapping[str, Mapping[str, int]], *names: str) -> Dict[str, Dict[str, int]]:
    return {key: {name: slot.get(name, 0) for name in names} for key, slot in mapping.items()}


# --- writers (caller owns the transaction) ---------------------------------

def apply_user_delta(conn: sqlite3.Connection, usage_date: date, user_id: str,
                     delta: UsageDelta, now: datetime, compression: float) -> None:
    """Upsert one DailyUserUsage row and refresh its derived fields."""
    row_id = DailyUserUsage.create_id(usage_date, user_id)
    conn.execute(
        """
        INSERT INTO daily_user_usage (id, usage_date, user_id, last_updated_at)
        VALUES (?, ?, ?, ?) ON CONFLICT(id) DO NOTHING
        """,
        (row_id, usage_date.isoformat(), user_id, format_ts(now)),
    )
    errors_sql, errors_params = map_increment_sql("error_breakdown", delta.errors)
    hourly_sql, hourly_params = map_increment_sql("hourly_breakdown", delta.hourly)
    models_sql, models_params = map_increment_sql(
        "model_breakdown",
        _pick(delta.models, "input_tokens", "output_tokens", "cache_read_tokens",
              "request_count", "success_count", "error_count", "cost_micros"),
    )
    conn.execute(
        f"""
        UPDATE daily_user_usage SET
            total_input_tokens = total_input_tokens + ?,
            total_output_tokens = total_output_tokens + ?,
            total_cache_creation_tokens = total_cache_creation_tokens + ?,
            total_cache_read_tokens = total_cache_read_tokens + ?,
            total_tokens = total_tokens + ?,
            request_count = request_count + ?,
            success_count = success_count + ?,
            error_count = error_count + ?,
            cost_micros = cost_micros + ?,
            input_cost_micros = input_cost_micros + ?,
            output_cost_micros = output_cost_micros + ?,
            cache_read_cost_micros = cache_read_cost_micros + ?,
            cache_write_cost_micros = cache_write_cost_micros + ?,
            cache_saved_micros = cache_saved_micros + ?,
            error_breakdown = {errors_sql},
            hourly_breakdown = {hourly_sql},
            model_breakdown = {models_sql},
            last_updated_at = ?
        WHERE id = ?
        """,
        [*_counter_params(delta), *_cost_params(delta), to_micros(delta.cache_saved),
         *errors_params, *hourly_params, *models_params, format_ts(now), row_id],
    )

    row = conn.execute(
        """
        SELECT total_input_tokens, total_cache_read_tokens, hourly_breakdown, latency_digest
        FROM daily_user_usage WHERE id = ?
        """,
        (row_id,),
    ).fetchone()
    hourly = {hour: slot.get("request_count", 0)
              for hour, slot in json.loads(row["hourly_breakdown"]).items()}
    peak_hour, peak_requests = peak_of(hourly)
    digest_blob, stats = _merge_latencies(row["latency_digest"], delta.latencies, compression)
    conn.execute(
        """
        UPDATE daily_user_usage SET
            cache_hit_rate = ?, peak_hour = ?, peak_hour_requests = ?,
            latency_digest = ?, latency_stats = ?
        WHERE id = ?
        """,
        (hit_rate(row["total_cache_read_tokens"], row["total_input_tokens"]),
         peak_hour, peak_requests, digest_blob, json.dumps(asdict(stats)), row_id),
    )


def apply_model_delta(conn: sqlite3.Connection, usage_date: date, model: str,
                      delta: UsageDelta, now: datetime, compression: float) -> None:
    """Upsert one DailyModelUsage row and refresh its derived fields."""
    row_id = DailyModelUsage.create_id(usage_date, model)
    conn.execute(
        """
        INSERT INTO daily_model_usage (id, usage_date, model, last_updated_at)
        VALUES (?, ?, ?, ?) ON CONFLICT(id) DO NOTHING
        """,
        (row_id, usage_date.isoformat(), model, format_ts(now)),
    )
    errors_sql, errors_params = map_increment_sql("error_breakdown", delta.errors)
    hourly_sql, hourly_params = map_increment_sql("hourly_request_count", delta.hourly_requests())
    users_sql, users_params = map_increment_sql("user_requests", delta.user_requests())
    conn.execute(
        f"""
        UPDATE daily_model_usage SET
            total_input_tokens = total_input_tokens + ?,
            total_output_tokens = total_output_tokens + ?,
            total_cache_creation_tokens = total_cache_creation_tokens + ?,
            total_cache_read_tokens = total_cache_read_tokens + ?,
            total_tokens = total_tokens + ?,
            request_count = request_count + ?,
            success_count = success_count + ?,
            error_count = error_count + ?,
            cost_micros = cost_micros + ?,
            input_cost_micros = input_cost_micros + ?,
            output_cost_micros = output_cost_micros + ?,
            cache_read_cost_micros = cache_read_cost_micros + ?,
            cache_write_cost_micros = cache_write_cost_micros + ?,
            cache_saved_micros = cache_saved_micros + ?,
            error_breakdown = {errors_sql},
            hourly_request_count = {hourly_sql},
            user_requests = {users_sql},
            last_updated_at = ?
        WHERE id = ?
        """,
        [*_counter_params(delta), *_cost_params(delta), to_micros(delta.cache_saved),
         *errors_params, *hourly_params, *users_params, format_ts(now), row_id],
    )

    row = conn.execute(
        """
        SELECT total_input_tokens, total_cache_read_tokens, hourly_request_count,
               user_requests, latency_digest
        FROM daily_model_usage WHERE id = ?
        """,
        (row_id,),
    ).fetchone()
    peak_hour, peak_requests = peak_of(json.loads(row["hourly_request_count"]))
    digest_blob, stats = _merge_latencies(row["latency_digest"], delta.latencies, compression)
    conn.execute(
        """
        UPDATE daily_model_usage SET
            unique_users = ?, cache_hit_rate = ?, peak_hour = ?, peak_hour_requests = ?,
            latency_digest = ?, latency_stats = ?
        WHERE id = ?
        """,
        (len(json.loads(row["user_requests"])),
         hit_rate(row["total_cache_read_tokens"], row["total_input_tokens"]),
         peak_hour, peak_requests, digest_blob, json.dumps(asdict(stats)), row_id),
    )


def apply_system_delta(conn: sqlite3.Connection, usage_date: date, delta: UsageDelta,
                       now: datetime, compression: float) -> None:
    """Upsert the SystemDailyStats row for a date and refresh its derived fields."""
    row_id = usage_date.isoformat()
    conn.execute(
        """
        INSERT INTO system_daily_stats (id, usage_date, last_updated_at)
        VALUES (?, ?, ?) ON CONFLICT(id) DO NOTHING
        """,
        (row_id, usage_date.isoformat(), format_ts(now)),
    )
    hourly_sql, hourly_params = map_increment_sql("hourly_request_count", delta.hourly_requests())
    models_sql, models_params = map_increment_sql(
        "model_breakdown", _pick(delta.models, "request_count", "total_tokens", "cost_micros"))
    users_sql, users_params = map_increment_sql(
        "user_breakdown", _pick(delta.users, "request_count", "total_tokens", "cost_micros"))
    conn.execute(
        f"""
        UPDATE system_daily_stats SET
            total_input_tokens = total_input_tokens + ?,
            total_output_tokens = total_output_tokens + ?,
            total_tokens = total_tokens + ?,
            total_cache_read_tokens = total_cache_read_tokens + ?,
            total_request_count = total_request_count + ?,
            success_count = success_count + ?,
            error_count = error_count + ?,
            cost_micros = cost_micros + ?,
            cache_saved_micros = cache_saved_micros + ?,
            hourly_request_count = {hourly_sql},
            model_breakdown = {models_sql},
            user_breakdown = {users_sql},
            last_updated_at = ?
        WHERE id = ?
        """,
        [delta.total_input_tokens, delta.output_tokens, delta.total_tokens,
         delta.cache_read_tokens, delta.request_count, delta.success_count,
         delta.error_count, delta.cost_micros, to_micros(delta.cache_saved),
         *hourly_params, *models_params, *users_params, format_ts(now), row_id],
    )

    row = conn.execute(
        """
        SELECT total_input_tokens, total_cache_read_tokens, total_request_count,
               success_count, hourly_request_count, model_breakdown, user_breakdown,
               latency_digest
        FROM system_daily_stats WHERE id = ?
        """,
        (row_id,),
    ).fetchone()
    users = json.loads(row["user_breakdown"])
    peak_hour, peak_requests = peak_of(json.loads(row["hourly_request_count"]))
    top_models = leaderboard(json.loads(row["model_breakdown"]), "request_count", TOP_MODELS_LIMIT)
    top_users = leaderboard(users, "total_tokens", TOP_USERS_LIMIT)
    success_rate = (row["success_count"] / row["total_request_count"]
                    if row["total_request_count"] else 0.0)
    digest_blob, stats = _merge_latencies(row["latency_digest"], delta.latencies, compression)
    conn.execute(
        """
        UPDATE system_daily_stats SET
            unique_users = ?, success_rate = ?, cache_hit_rate = ?,
            peak_hour = ?, peak_hour_requests = ?, top_models = ?, top_users = ?,
            latency_digest = ?, latency_stats = ?
        WHERE id = ?
        """,
        (len(users), success_rate,
         hit_rate(row["total_cache_read_tokens"], row["total_input_tokens"]),
         peak_hour, peak_requests,
         json.dumps([_top_item_to_json(item) for item in top_models]),
         json.dumps([_top_item_to_json(item) for item in top_users]),
         digest_blob, json.dumps(asdict(stats)), row_id),
    )


def _counter_params(delta: UsageDelta) -> List[int]:
    return [
        delta.total_input_tokens,
        delta.output_tokens,
        delta.cache_creation_tokens,
        delta.cache_read_tokens,
        delta.total_tokens,
        delta.request_count,
        delta.success_count,
        delta.error_count,
        delta.cost_micros,
    ]


def _cost_params(delta: UsageDelta) -> List[int]:
    return [
        to_micros(delta.cost.input_cost),
        to_micros(delta.cost.output_cost),
        to_micros(delta.cost.cache_read_cost),
        to_micros(delta.cost.cache_write_cost),
    ]


def _merge_latencies(blob: Optional[bytes], latencies: List[int],
                     compression: float) -> Tuple[bytes, LatencyStats]:
    digest = LatencyDigest.from_bytes(blob, compression=compression)
    digest.add_all(latencies)
    return digest.to_bytes(), digest.stats()


# --- derived fields --------------------------------------------------------

def hit_rate(cache_read_tokens: int, total_input_tokens: int) -> float:
    """Share of input tokens served from the prompt cache."""
    if total_input_tokens <= 0:
        return 0.0
    return cache_read_tokens / total_input_tokens


def peak_of(hourly_requests: Mapping[str, int]) -> Tuple[int, int]:
    """(hour, requests) of the busiest hour; the earliest hour wins ties."""
    peak_hour, peak_requests = 0, 0
    for hour in sorted(hourly_requests, key=int):
        count = hourly_requests[hour]
        if count > peak_requests:
            peak_hour, peak_requests = int(hour), count
    return peak_hour, peak_requests


def leaderboard(breakdown: Mapping[str, Mapping[str, int]], rank_by: str,
                limit: int) -> List[TopItem]:
    """Top ``limit`` entries of a breakdown map, highest ``rank_by`` first."""
    ranked = sorted(breakdown.items(), key=lambda item: (-item[1].get(rank_by, 0), item[0]))
    return [
        TopItem(
            key=key,
            request_count=slot.get("request_count", 0),
            total_tokens=slot.get("total_tokens", 0),
            cost_usd=from_micros(slot.get("cost_micros", 0)),
        )
        for key, slot in ranked[:limit]
    ]


def _top_item_to_json(item: TopItem) -> Dict[str, Any]:
    return {
        "key": item.key,
        "request_count": item.request_count,
        "total_tokens": item.total_tokens,
        "cost_micros": to_micros(item.cost_usd),
    }


# --- readers ---------------------------------------------------------------

class RollupRepository:
    """Read access to the daily rollup rows."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_user_usage(self, usage_date: date, user_id: str) -> Optional[DailyUserUsage]:
        row = self._fetch_one("daily_user_usage", DailyUserUsage.create_id(usage_date, user_id))
        return _row_to_user_usage(row) if row else None

    def list_user_usage(self, user_id: str, start: Optional[date] = None,
                        end: Optional[date] = None) -> List[DailyUserUsage]:
        """Rows for one user, oldest date first, optionally within [start, end]."""
        rows = self._fetch_range("daily_user_usage", "user_id", user_id, start, end)
        return [_row_to_user_usage(row) for row in rows]

    def get_model_usage(self, usage_date: date, model: str) -> Optional[DailyModelUsage]:
        row = self._fetch_one("daily_model_usage", DailyModelUsage.create_id(usage_date, model))
        return _row_to_model_usage(row) if row else None

    def list_model_usage(self, model: str, start: Optional[date] = None,
                         end: Optional[date] = None) -> List[DailyModelUsage]:
        rows = self._fetch_range("daily_model_usage", "model", model, start, end)
        return [_row_to_model_usage(row) for row in rows]

    def get_system_stats(self, usage_date: date) -> Optional[SystemDailyStats]:
        row = self._fetch_one("system_daily_stats", usage_date.isoformat())
        return _row_to_system_stats(row) if row else None

    def list_system_stats(self, start: date, end: date) -> List[SystemDailyStats]:
        """System rows within [start, end], oldest date first."""
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT * FROM system_daily_stats
                WHERE usage_date >= ? AND usage_date <= ?
                ORDER BY usage_date ASC
                """,
                (start.isoformat(), end.isoformat()),
            ).fetchall()
            return [_row_to_system_stats(row) for row in rows]
        finally:
            conn.close()

    def summarize_models(self, start: date, end: date) -> List[ModelSummary]:
        """Per-model totals over [start, end], most tokens first.

        ``unique_users`` is a distinct count over the whole range.
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT model,
                       SUM(total_input_tokens) AS input_tokens,
                       SUM(total_output_tokens) AS output_tokens,
                       SUM(total_tokens) AS tokens,
                       SUM(request_count) AS requests,
                       SUM(success_count) AS successes,
                       (SELECT COUNT(DISTINCT u.key)
                        FROM daily_model_usage AS d, json_each(d.user_requests) AS u
                        WHERE d.model = m.model
                          AND d.usage_date >= ? AND d.usage_date <= ?) AS users,
                       SUM(cost_micros) AS cost_micros,
                       SUM(json_extract(latency_stats, '$.avg_ms')
                           * json_extract(latency_stats, '$.count')) AS latency_total,
                       SUM(json_extract(latency_stats, '$.count')) AS latency_count
                FROM daily_model_usage AS m
                WHERE usage_date >= ? AND usage_date <= ?
                GROUP BY model
                ORDER BY tokens DESC, model ASC
                """,
                (start.isoformat(), end.isoformat()) * 2,
            ).fetchall()
        finally:
            conn.close()
        return [
            ModelSummary(
                model=row["model"],
                total_input_tokens=row["input_tokens"],
                total_output_tokens=row["output_tokens"],
                total_tokens=row["tokens"],
                request_count=row["requests"],
                success_count=row["successes"],
                unique_users=row["users"],
                estimated_cost_usd=from_micros(row["cost_micros"]),
                avg_latency_ms=(row["latency_total"] / row["latency_count"]
                                if row["latency_count"] else 0.0),
            )
            for row in rows
        ]

    def _fetch_one(self, table: str, row_id: str) -> Optional[sqlite3.Row]:
        conn = get_connection(self.db_path)
        try:
            return conn.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()
        finally:
            conn.close()

    def _fetch_range(self, table: str, key_column: str, key: str,
                     start: Optional[date], end: Optional[date]) -> List[sqlite3.Row]:
        query = f"SELECT * FROM {table} WHERE {key_column} = ?"
        params: List[Any] = [key]
        if start is not None:
            query += " AND usage_date >= ?"
            params.append(start.isoformat())
        if end is not None:
            query += " AND usage_date <= ?"
            params.append(end.isoformat())
        query += " ORDER BY usage_date ASC"
        conn = get_connection(self.db_path)
        try:
            return conn.execute(query, params).fetchall()
        finally:
            conn.close()


def _latency_stats(text: Optional[str]) -> LatencyStats:
    data = json.loads(text) if text else {}
    return LatencyStats(**data) if data else LatencyStats()


def _cost_breakdown(row: sqlite3.Row) -> CostBreakdown:
    return CostBreakdown(
        input_cost=from_micros(row["input_cost_micros"]),
        output_cost=from_micros(row["output_cost_micros"]),
        cache_read_cost=from_micros(row["cache_read_cost_micros"]),
        cache_write_cost=from_micros(row["cache_write_cost_micros"]),
    )


def _cache_efficiency(row: sqlite3.Row) -> CacheEfficiency:
    return CacheEfficiency(
        hit_rate=row["cache_hit_rate"],
        cache_read_tokens=row["total_cache_read_tokens"],
        saved_usd=from_micros(row["cache_saved_micros"]),
    )


def _int_keys(mapping: Mapping[str, int]) -> Dict[int, int]:
    return {int(key): value for key, value in sorted(mapping.items(), key=lambda kv: int(kv[0]))}


def _row_to_user_usage(row: sqlite3.Row) -> DailyUserUsage:
    hourly = json.loads(row["hourly_breakdown"])
    models = json.loads(row["model_breakdown"])
    return DailyUserUsage(
        id=row["id"],
        date=date.fromisoformat(row["usage_date"]),
        user_id=row["user_id"],
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        total_cache_creation_tokens=row["total_cache_creation_tokens"],
        total_cache_read_tokens=row["total_cache_read_tokens"],
        total_tokens=row["total_tokens"],
        request_count=row["request_count"],
        success_count=row["success_count"],
        error_count=row["error_count"],
        estimated_cost_usd=from_micros(row["cost_micros"]),
        error_breakdown=json.loads(row["error_breakdown"]),
        latency_stats=_latency_stats(row["latency_stats"]),
        latency_digest=row["latency_digest"],
        cache_efficiency=_cache_efficiency(row),
        peak_hour=row["peak_hour"],
        peak_hour_requests=row["peak_hour_requests"],
        hourly_breakdown={
            int(hour): HourlyBreakdown(
                request_count=slot.get("request_count", 0),
                total_tokens=slot.get("total_tokens", 0),
                cost_usd=from_micros(slot.get("cost_micros", 0)),
            )
            for hour, slot in sorted(hourly.items(), key=lambda kv: int(kv[0]))
        },
        model_breakdown={
            model: ModelBreakdown(
                input_tokens=slot.get("input_tokens", 0),
                output_tokens=slot.get("output_tokens", 0),
                cache_read_tokens=slot.get("cache_read_tokens", 0),
                request_count=slot.get("request_count", 0),
                success_count=slot.get("success_count", 0),
                error_count=slot.get("error_count", 0),
                cost_usd=from_micros(slot.get("cost_micros", 0)),
            )
            for model, slot in models.items()
        },
        cost_breakdown=_cost_breakdown(row),
        last_updated_at=parse_ts(row["last_updated_at"]),
    )


def _row_to_model_usage(row: sqlite3.Row) -> DailyModelUsage:
    user_requests = json.loads(row["user_requests"])
    return DailyModelUsage(
        id=row["id"],
        date=date.fromisoformat(row["usage_date"]),
        model=row["model"],
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        total_cache_creation_tokens=row["total_cache_creation_tokens"],
        total_cache_read_tokens=row["total_cache_read_tokens"],
        total_tokens=row["total_tokens"],
        request_count=row["request_count"],
        success_count=row["success_count"],
        error_count=row["error_count"],
        unique_users=row["unique_users"],
        user_requests=user_requests,
        estimated_cost_usd=from_micros(row["cost_micros"]),
        error_breakdown=json.loads(row["error_breakdown"]),
        latency_stats=_latency_stats(row["latency_stats"]),
        latency_digest=row["latency_digest"],
        cache_efficiency=_cache_efficiency(row),
        peak_hour=row["peak_hour"],
        peak_hour_requests=row["peak_hour_requests"],
        hourly_request_count=_int_keys(json.loads(row["hourly_request_count"])),
        cost_breakdown=_cost_breakdown(row),
        last_updated_at=parse_ts(row["last_updated_at"]),
    )


def _top_items(text: str) -> List[TopItem]:
    return [
        TopItem(
            key=item["key"],
            request_count=item["request_count"],
            total_tokens=item["total_tokens"],
            cost_usd=from_micros(item["cost_micros"]),
        )
        for item in json.loads(text)
    ]


def _row_to_system_stats(row: sqlite3.Row) -> SystemDailyStats:
    return SystemDailyStats(
        id=row["id"],
        date=date.fromisoformat(row["usage_date"]),
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        total_tokens=row["total_tokens"],
        total_request_count=row["total_request_count"],
        unique_users=row["unique_users"],
        total_estimated_cost_usd=from_micros(row["cost_micros"]),
        success_count=row["success_count"],
        error_count=row["error_count"],
        success_rate=row["success_rate"],
        latency_stats=_latency_stats(row["latency_stats"]),
        latency_digest=row["latency_digest"],
        total_cache_read_tokens=row["total_cache_read_tokens"],
        system_cache_hit_rate=row["cache_hit_rate"],
        system_cache_saved_usd=from_micros(row["cache_saved_micros"]),
        peak_hour=row["peak_hour"],
        peak_hour_requests=row["peak_hour_requests"],
        hourly_request_count=_int_keys(json.loads(row["hourly_request_count"])),
        top_models=_top_items(row["top_models"]),
        top_users=_top_items(row["top_users"]),
        last_updated_at=parse_ts(row["last_updated_at"]),
    )
