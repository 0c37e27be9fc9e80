from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from uuid import uuid4

from backend.app.models.summary_contracts import SummaryContent
from backend.app.repositories.common import parse_utc_timestamp, to_optional_str, utc_now_iso
from backend.app.repositories.database import Database

_SUMMARY_COLUMNS = """
    id,
    video_id,
    video_title,
    channel_name,
    thumbnail_url,
    language,
    transcript_language,
    video_duration_seconds,
    content_json,
    request_count,
    created_at
"""


@dataclass(frozen=True)
class CachedSummary:
    summary_id: str
    video_id: str
    video_title: str
    channel_name: str | None
    thumbnail_url: str | None
    language: str
    transcript_language: str
    video_duration_seconds: int
    content: SummaryContent
    request_count: int
    created_at: str


@dataclass(frozen=True)
class NewSummary:
    video_id: str
    video_title: str
    channel_name: str | None
    thumbnail_url: str | None
    language: str
    transcript_language: str
    video_duration_seconds: int
    content: SummaryContent


class SummaryRepository:
    """Durable half of the summary cache, keyed by `video_id`."""

    def __init__(self, db: Database, *, ttl_seconds: int | None = None) -> None:
        self._db = db
        self._ttl_seconds = ttl_seconds

    def get_by_video_id(self, video_id: str) -> CachedSummary | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE video_id = ?",
                (video_id,),
            ).fetchone()
        return self._live_summary(row)

    def get_by_id(self, summary_id: str) -> CachedSummary | None:
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE id = ?",
                (summary_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_summary(row)

    def record_hit(self, video_id: str) -> CachedSummary | None:
        """Increment `request_count` for a live row and return it; expired rows are left alone."""
        with self._db.connection() as conn:
            row = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE video_id = ?",
                (video_id,),
            ).fetchone()
            if self._live_summary(row) is None:
                return None
            conn.execute(
                "UPDATE summaries SET request_count = request_count + 1 WHERE video_id = ?",
                (video_id,),
            )
            updated = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE video_id = ?",
                (video_id,),
            ).fetchone()
        return self._live_summary(updated)

    def upsert(self, summary: NewSummary) -> CachedSummary:
        """
        Store a freshly generated summary.

        A first write starts `request_count` at 1. Overwriting an expired row keeps
        its id and bumps the existing counter so it never decreases.
        """
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO summaries (
                    id,
                    video_id,
                    video_title,
                    channel_name,
                    thumbnail_url,
                    language,
                    transcript_language,
                    video_duration_seconds,
                    category,
                    content_json,
                    request_count,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                ON CONFLICT(video_id) DO UPDATE SET
                    video_title = excluded.video_title,
                    channel_name = excluded.channel_name,
                    thumbnail_url = excluded.thumbnail_url,
                    language = excluded.language,
                    transcript_language = excluded.transcript_language,
                    video_duration_seconds = excluded.video_duration_seconds,
                    category = excluded.category,
                    content_json = excluded.content_json,
                    request_count = summaries.request_count + 1,
                    created_at = excluded.created_at
                """,
                (
                    f"sum_{uuid4().hex}",
                    summary.video_id,
                    summary.video_title,
                    summary.channel_name,
                    summary.thumbnail_url,
                    summary.language,
                    summary.transcript_language,
                    max(0, summary.video_duration_seconds),
                    summary.content.category,
                    summary.content.model_dump_json(),
                    now_iso,
                ),
            )
            row = conn.execute(
                f"SELECT {_SUMMARY_COLUMNS} FROM summaries WHERE video_id = ?",
                (summary.video_id,),
            ).fetchone()
        assert row is not None
        return _row_to_summary(row)

    def count(self) -> int:
        with self._db.connection() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM summaries").fetchone()
        return int(row["total"]) if row is not None else 0

    def _live_summary(self, row: sqlite3.Row | None) -> CachedSummary | None:
        if row is None:
            return None
        if self._ttl_seconds is not None:
            created_at = parse_utc_timestamp(row["created_at"])
            if created_at is None or created_at + timedelta(seconds=self._ttl_seconds) <= datetime.now(UTC):
                return None
        return _row_to_summary(row)


def _row_to_summary(row: sqlite3.Row) -> CachedSummary:
    return CachedSummary(
        summary_id=str(row["id"]),
        video_id=str(row["video_id"]),
        video_title=str(row["video_title"]),
        channel_name=to_optional_str(row["channel_name"]),
        thumbnail_url=to_optional_str(row["thumbnail_url"]),
        language=str(row["language"]),
        transcript_language=str(row["transcript_language"]),
        video_duration_seconds=int(row["video_duration_seconds"]),
        content=SummaryContent.model_validate_json(str(row["content_json"])),
        request_count=int(row["request_count"]),
        created_at=str(row["created_at"]),
    )
