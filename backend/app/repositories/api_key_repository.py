from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass

from backend.app.repositories.common import to_optional_str, utc_now_iso
from backend.app.repositories.database import Database


@dataclass(frozen=True)
class ApiKeyRecord:
    key_id: str
    user_id: str
    label: str
    is_admin: bool
    created_at: str
    revoked_at: str | None
    last_used_at: str | None


@dataclass(frozen=True)
class CallerIdentity:
    key_id: str
    user_id: str
    is_admin: bool


class ApiKeyRepository:
    def __init__(self, db: Database) -> None:
        self._db = db

    def create_key(
        self,
        *,
        user_id: str,
        label: str = "",
        is_admin: bool = False,
    ) -> tuple[ApiKeyRecord, str]:
        normalized_user_id = user_id.strip()
        if not normalized_user_id:
            raise ValueError("user_id must not be empty")

        key_id = f"vdk_{secrets.token_urlsafe(9)}"
        secret = secrets.token_urlsafe(24)
        now_iso = utc_now_iso()
        normalized_label = label.strip()
        with self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO api_keys (
                    key_id, user_id, label, secret_hash, is_admin,
                    created_at, revoked_at, last_used_at
                )
                VALUES (?, ?, ?, ?, ?, ?, NULL, NULL)
                """,
                (
                    key_id,
                    normalized_user_id,
                    normalized_label,
                    _hash_secret(secret),
                    1 if is_admin else 0,
                    now_iso,
                ),
            )
        return (
            ApiKeyRecord(
                key_id=key_id,
                user_id=normalized_user_id,
                label=normalized_label,
                is_admin=is_admin,
                created_at=now_iso,
                revoked_at=None,
                last_used_at=None,
            ),
            f"{key_id}.{secret}",
        )

    def resolve_active_token(self, *, key_id: str, secret: str) -> CallerIdentity | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT user_id, secret_hash, is_admin
                FROM api_keys
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (key_id,),
            ).fetchone()

        if row is None:
            return None
        if not secrets.compare_digest(str(row["secret_hash"]), _hash_secret(secret)):
            return None
        return CallerIdentity(
            key_id=key_id,
            user_id=str(row["user_id"]),
            is_admin=bool(row["is_admin"]),
        )

    def mark_used(self, key_id: str) -> None:
        with self._db.connection() as conn:
            conn.execute(
                """
                UPDATE api_keys
                SET last_used_at = ?
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (utc_now_iso(), key_id),
            )

    def revoke_key(self, key_id: str) -> bool:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE api_keys
                SET revoked_at = ?
                WHERE key_id = ? AND revoked_at IS NULL
                """,
                (utc_now_iso(), key_id.strip()),
            )
        return cursor.rowcount > 0

    def list_keys(self, *, include_revoked: bool, user_id: str | None = None) -> list[ApiKeyRecord]:
        query = """
            SELECT key_id, user_id, label, is_admin, created_at, revoked_at, last_used_at
            FROM api_keys
        """
        clauses: list[str] = []
        params: list[object] = []
        if not include_revoked:
            clauses.append("revoked_at IS NULL")
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id.strip())
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"

        with self._db.connection() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        return [
            ApiKeyRecord(
                key_id=str(row["key_id"]),
                user_id=str(row["user_id"]),
                label=str(row["label"]),
                is_admin=bool(row["is_admin"]),
                created_at=str(row["created_at"]),
                revoked_at=to_optional_str(row["revoked_at"]),
                last_used_at=to_optional_str(row["last_used_at"]),
            )
            for row in rows
        ]


def _hash_secret(secret: str) -> str:
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()
