from __future__ import annotations

from typing import Any

from .database import SQLitePortalDB
from .time_utils import to_iso, utc_now

PROFILE_ROLES = {"patient", "doctor"}


class ProfileStore:
    def __init__(self, db: SQLitePortalDB) -> None:
        self._db = db

    def get(self, user_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT id, full_name, role, avatar_url FROM profiles WHERE id = ?",
                (user_id,),
            ).fetchone()
        return dict(row) if row else None

    def get_many(self, user_ids: list[str]) -> dict[str, dict[str, Any]]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with self._db.connection() as conn:
            rows = conn.execute(
                f"SELECT id, full_name, role, avatar_url FROM profiles WHERE id IN ({placeholders})",
                tuple(ids),
            ).fetchall()
        return {row["id"]: dict(row) for row in rows}

    def upsert(
        self,
        *,
        user_id: str,
        full_name: str,
        role: str = "patient",
        avatar_url: str | None = None,
    ) -> dict[str, Any]:
        if role not in PROFILE_ROLES:
            raise ValueError(f"Unsupported profile role: {role}")
        now = to_iso(utc_now())
        with self._db.write_lock, self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO profiles (id, full_name, role, avatar_url, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                  full_name = excluded.full_name,
                  role = excluded.role,
                  avatar_url = excluded.avatar_url,
                  updated_at = excluded.updated_at
                """,
                (user_id, full_name.strip(), role, avatar_url, now, now),
            )
        return {"id": user_id, "full_name": full_name.strip(), "role": role, "avatar_url": avatar_url}
