from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS summaries (
    id TEXT PRIMARY KEY,
    video_id TEXT NOT NULL UNIQUE,
    video_title TEXT NOT NULL,
    channel_name TEXT NULL,
    thumbnail_url TEXT NULL,
    language TEXT NOT NULL,
    transcript_language TEXT NOT NULL,
    video_duration_seconds INTEGER NOT NULL,
    category TEXT NOT NULL,
    content_json TEXT NOT NULL,
    request_count INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_summaries_category ON summaries(category);

CREATE TABLE IF NOT EXISTS summary_translations (
    summary_id TEXT NOT NULL,
    language_code TEXT NOT NULL,
    source_language TEXT NOT NULL,
    content_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (summary_id, language_code),
    FOREIGN KEY(summary_id) REFERENCES summaries(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS summary_analytics (
    id TEXT PRIMARY KEY,
    summary_id TEXT NULL,
    video_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    video_duration_seconds INTEGER NULL,
    video_language TEXT NULL,
    processing_time_ms INTEGER NOT NULL,
    token_usage_input INTEGER NOT NULL,
    token_usage_output INTEGER NOT NULL,
    token_usage_total INTEGER NOT NULL,
    token_cache_read INTEGER NOT NULL,
    token_cache_creation INTEGER NOT NULL,
    estimated_cost_micros INTEGER NOT NULL,
    output_word_count INTEGER NOT NULL,
    status TEXT NOT NULL,
    error_type TEXT NULL,
    error_message TEXT NULL,
    retry_count INTEGER NOT NULL,
    was_cache_hit INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_summary_analytics_created_at
ON summary_analytics(created_at);

CREATE INDEX IF NOT EXISTS idx_summary_analytics_status_created_at
ON summary_analytics(status, created_at DESC);

CREATE TABLE IF NOT EXISTS api_keys (
    key_id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    label TEXT NOT NULL,
    secret_hash TEXT NOT NULL,
    is_admin INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    revoked_at TEXT NULL,
    last_used_at TEXT NULL
);

CREATE INDEX IF NOT EXISTS idx_api_keys_user_id ON api_keys(user_id);
"""

# Request threads and generation workers write concurrently.
_BUSY_TIMEOUT_SECONDS = 30.0


class Database:
    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path, timeout=_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA_SQL)
