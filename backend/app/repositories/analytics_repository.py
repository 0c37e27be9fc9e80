from __future__ import annotations

from dataclasses import dataclass
from typing import Literal
from uuid import uuid4

from backend.app.repositories.common import to_optional_str, utc_now_iso
from backend.app.repositories.database import Database

AnalyticsStatus = Literal["success", "failed"]

# (label, lower bound inclusive, upper bound exclusive) in seconds.
DURATION_BUCKETS: tuple[tuple[str, int, int | None], ...] = (
    ("0-5 min", 0, 300),
    ("5-15 min", 300, 900),
    ("15-30 min", 900, 1800),
    ("30-60 min", 1800, 3600),
    ("60+ min", 3600, None),
)
RECENT_FAILURES_LIMIT = 100


@dataclass(frozen=True)
class AnalyticsRecord:
    video_id: str
    user_id: str
    status: AnalyticsStatus
    processing_time_ms: int
    summary_id: str | None = None
    video_duration_seconds: int | None = None
    video_language: str | None = None
    token_usage_input: int = 0
    token_usage_output: int = 0
    token_cache_read: int = 0
    token_cache_creation: int = 0
    estimated_cost_micros: int = 0
    output_word_count: int = 0
    error_type: str | None = None
    error_message: str | None = None
    retry_count: int = 0
    was_cache_hit: bool = False
    # When the request arrived; the insert time is used when unset.
    created_at: str | None = None

    @property
    def token_usage_total(self) -> int:
        return self.token_usage_input + self.token_usage_output


@dataclass(frozen=True)
class StoredAnalyticsRecord:
    record_id: str
    created_at: str
    record: AnalyticsRecord


@dataclass(frozen=True)
class AnalyticsOverview:
    total_requests: int
    success_count: int
    failure_count: int
    cache_hit_count: int
    success_rate: float
    total_cost_micros: int
    avg_processing_ms: int
    active_users: int


@dataclass(frozen=True)
class ErrorTypeCount:
    error_type: str
    count: int


@dataclass(frozen=True)
class FailedSession:
    record_id: str
    video_id: str
    user_id: str
    error_type: str | None
    error_message: str | None
    processing_time_ms: int
    created_at: str


@dataclass(frozen=True)
class DurationCostBucket:
    bucket: str
    count: int
    total_cost_micros: int
    avg_cost_micros: int


@dataclass(frozen=True)
class DailyCost:
    day: str
    cost_micros: int


@dataclass(frozen=True)
class CostStats:
    total_cost_micros: int
    avg_cost_micros: int
    total_generations: int
    by_duration: list[DurationCostBucket]
    daily: list[DailyCost]


class AnalyticsRepository:
    """Append-only store for per-attempt analytics plus the admin read models."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def insert(self, record: AnalyticsRecord) -> str:
        record_id = f"an_{uuid4().hex}"
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO summary_analytics (
                    id,
                    summary_id,
                    video_id,
                    user_id,
                    video_duration_seconds,
                    video_language,
                    processing_time_ms,
                    token_usage_input,
                    token_usage_output,
                    token_usage_total,
                    token_cache_read,
                    token_cache_creation,
                    estimated_cost_micros,
                    output_word_count,
                    status,
                    error_type,
                    error_message,
                    retry_count,
                    was_cache_hit,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record_id,
                    record.summary_id,
                    record.video_id,
                    record.user_id,
                    record.video_duration_seconds,
                    record.video_language,
                    max(0, record.processing_time_ms),
                    record.token_usage_input,
                    record.token_usage_output,
                    record.token_usage_total,
                    record.token_cache_read,
                    record.token_cache_creation,
                    record.estimated_cost_micros,
                    record.output_word_count,
                    record.status,
                    record.error_type,
                    record.error_message,
                    max(0, record.retry_count),
                    1 if record.was_cache_hit else 0,
                    record.created_at or utc_now_iso(),
                ),
            )
        return record_id

    def list_records(
        self,
        *,
        video_id: str | None = None,
        limit: int = 500,
    ) -> list[StoredAnalyticsRecord]:
        query = "SELECT * FROM summary_analytics"
        params: list[object] = []
        if video_id is not None:
            query += " WHERE video_id = ?"
            params.append(video_id)
        # rowid keeps insertion order for rows written within the same timestamp.
        query += " ORDER BY created_at ASC, rowid ASC LIMIT ?"
        params.append(max(1, limit))

        with self._db.connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        return [
            StoredAnalyticsRecord(
                record_id=str(row["id"]),
                created_at=str(row["created_at"]),
                record=AnalyticsRecord(
                    created_at=str(row["created_at"]),
                    video_id=str(row["video_id"]),
                    user_id=str(row["user_id"]),
                    status="success" if row["status"] == "success" else "failed",
                    processing_time_ms=int(row["processing_time_ms"]),
                    summary_id=to_optional_str(row["summary_id"]),
                    video_duration_seconds=(
                        int(row["video_duration_seconds"])
                        if row["video_duration_seconds"] is not None
                        else None
                    ),
                    video_language=to_optional_str(row["video_language"]),
                    token_usage_input=int(row["token_usage_input"]),
                    token_usage_output=int(row["token_usage_output"]),
                    token_cache_read=int(row["token_cache_read"]),
                    token_cache_creation=int(row["token_cache_creation"]),
                    estimated_cost_micros=int(row["estimated_cost_micros"]),
                    output_word_count=int(row["output_word_count"]),
                    error_type=to_optional_str(row["error_type"]),
                    error_message=to_optional_str(row["error_message"]),
                    retry_count=int(row["retry_count"]),
                    was_cache_hit=bool(row["was_cache_hit"]),
                ),
            )
            for row in rows
        ]

    def overview(self, *, since: str | None = None, until: str | None = None) -> AnalyticsOverview:
        where_sql, params = _range_clause(since=since, until=until)
        with self._db.connection() as conn:
            row = conn.execute(
                f"""
                SELECT
                    COUNT(*) AS total_requests,
                    COALESCE(SUM(CASE WHEN status = 'success' THEN 1 ELSE 0 END), 0)
                        AS success_count,
                    COALESCE(SUM(CASE WHEN status = 'failed' THEN 1 ELSE 0 END), 0)
                        AS failure_count,
                    COALESCE(SUM(was_cache_hit), 0) AS cache_hit_count,
                    COALESCE(
                        SUM(CASE WHEN status = 'success' THEN estimated_cost_micros ELSE 0 END),
                        0
                    ) AS total_cost_micros,
                    AVG(CASE WHEN status = 'success' THEN processing_time_ms END)
                        AS avg_processing_ms,
                    COUNT(DISTINCT user_id) AS active_users
                FROM summary_analytics
                {where_sql}
                """,
                params,
            ).fetchone()

        total_requests = int(row["total_requests"])
        success_count = int(row["success_count"])
        success_rate = (
            round(success_count / total_requests * 100.0, 1) if total_requests > 0 else 0.0
        )
        avg_processing = row["avg_processing_ms"]
        return AnalyticsOverview(
            total_requests=total_requests,
            success_count=success_count,
            failure_count=int(row["failure_count"]),
            cache_hit_count=int(row["cache_hit_count"]),
            success_rate=success_rate,
            total_cost_micros=int(row["total_cost_micros"]),
            avg_processing_ms=round(float(avg_processing)) if avg_processing is not None else 0,
            active_users=int(row["active_users"]),
        )

    def error_taxonomy(
        self,
        *,
        since: str | None = None,
        until: str | None = None,
    ) -> tuple[list[ErrorTypeCount], list[FailedSession]]:
        where_sql, params = _range_clause(
            since=since,
            until=until,
            extra=("status = 'failed'",),
        )
        with self._db.connection() as conn:
            count_rows = conn.execute(
                f"""
                SELECT COALESCE(error_type, 'unknown') AS error_type, COUNT(*) AS total
                FROM summary_analytics
                {where_sql}
                GROUP BY COALESCE(error_type, 'unknown')
                ORDER BY total DESC, error_type ASC
                """,
                params,
            ).fetchall()
            session_rows = conn.execute(
                f"""
                SELECT id, video_id, user_id, error_type, error_message,
                       processing_time_ms, created_at
                FROM summary_analytics
                {where_sql}
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (*params, RECENT_FAILURES_LIMIT),
            ).fetchall()

        counts = [
            ErrorTypeCount(error_type=str(row["error_type"]), count=int(row["total"]))
            for row in count_rows
        ]
        sessions = [
            FailedSession(
                record_id=str(row["id"]),
                video_id=str(row["video_id"]),
                user_id=str(row["user_id"]),
                error_type=to_optional_str(row["error_type"]),
                error_message=to_optional_str(row["error_message"]),
                processing_time_ms=int(row["processing_time_ms"]),
                created_at=str(row["created_at"]),
            )
            for row in session_rows
        ]
        return counts, sessions

    def cost_stats(self, *, since: str | None = None, until: str | None = None) -> CostStats:
        where_sql, params = _range_clause(
            since=since,
            until=until,
            extra=("status = 'success'",),
        )
        with self._db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT video_duration_seconds, estimated_cost_micros, created_at
                FROM summary_analytics
                {where_sql}
                """,
                params,
            ).fetchall()

        bucket_totals: dict[str, list[int]] = {label: [0, 0] for label, _, _ in DURATION_BUCKETS}
        daily_totals: dict[str, int] = {}
        total_cost = 0
        for row in rows:
            cost = int(row["estimated_cost_micros"])
            total_cost += cost
            bucket = _duration_bucket(row["video_duration_seconds"])
            bucket_totals[bucket][0] += 1
            bucket_totals[bucket][1] += cost
            day = str(row["created_at"])[:10]
            daily_totals[day] = daily_totals.get(day, 0) + cost

        return CostStats(
            total_cost_micros=total_cost,
            avg_cost_micros=round(total_cost / len(rows)) if rows else 0,
            total_generations=len(rows),
            by_duration=[
                DurationCostBucket(
                    bucket=label,
                    count=count,
                    total_cost_micros=bucket_cost,
                    avg_cost_micros=round(bucket_cost / count) if count else 0,
                )
                for label, (count, bucket_cost) in bucket_totals.items()
            ],
            daily=[
                DailyCost(day=day, cost_micros=cost)
                for day, cost in sorted(daily_totals.items())
            ],
        )


def _duration_bucket(raw_duration: object) -> str:
    duration = int(raw_duration) if isinstance(raw_duration, int) else 0
    for label, lower, upper in DURATION_BUCKETS:
        if duration >= lower and (upper is None or duration < upper):
            return label
    return DURATION_BUCKETS[0][0]


def _range_clause(
    *,
    since: str | None,
    until: str | None,
    extra: tuple[str, ...] = (),
) -> tuple[str, tuple[object, ...]]:
    clauses: list[str] = list(extra)
    params: list[object] = []
    if since is not None:
        clauses.append("created_at >= ?")
        params.append(since)
    if until is not None:
        clauses.append("created_at <= ?")
        params.append(until)
    if not clauses:
        return "", ()
    return "WHERE " + " AND ".join(clauses), tuple(params)
