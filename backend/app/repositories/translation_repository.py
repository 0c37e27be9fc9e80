from __future__ import annotations

from dataclasses import dataclass

from backend.app.models.summary_contracts import SummaryContent
from backend.app.repositories.common import utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class CachedTranslation:
    summary_id: str
    language_code: str
    source_language: str
    content: SummaryContent
    created_at: str


class TranslationRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def get(self, *, summary_id: str, language_code: str) -> CachedTranslation | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT summary_id, language_code, source_language, content_json, created_at
                FROM summary_translations
                WHERE summary_id = ? AND language_code = ?
                """,
                (summary_id, language_code),
            ).fetchone()
        if row is None:
            return None
        return CachedTranslation(
            summary_id=str(row["summary_id"]),
            language_code=str(row["language_code"]),
            source_language=str(row["source_language"]),
            content=SummaryContent.model_validate_json(str(row["content_json"])),
            created_at=str(row["created_at"]),
        )

    def insert(
        self,
        *,
        summary_id: str,
        language_code: str,
        source_language: str,
        content: SummaryContent,
    ) -> CachedTranslation:
        """Write once; a concurrent duplicate keeps the first stored row."""
        now_iso = utc_now_iso()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO summary_translations (
                    summary_id, language_code, source_language, content_json, created_at
                )
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(summary_id, language_code) DO NOTHING
                """,
                (
                    summary_id,
                    language_code,
                    source_language,
                    content.model_dump_json(),
                    now_iso,
                ),
            )
        stored = self.get(summary_id=summary_id, language_code=language_code)
        assert stored is not None
        return stored

