from __future__ import annotations

import sqlite3
from typing import Any

from .database import SQLitePortalDB
from .errors import StoreWriteError
from .time_utils import to_iso, utc_now

_FILTERABLE_COLUMNS = {"user_id", "contact_name", "role", "is_from_user", "read"}


def _message_row(row: sqlite3.Row) -> dict[str, Any]:
    record = dict(row)
    record["is_from_user"] = bool(record["is_from_user"])
    record["read"] = bool(record["read"])
    return record


class MessageStore:
    def __init__(self, db: SQLitePortalDB) -> None:
        self._db = db

    def insert(self, payload: dict[str, Any]) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.write_lock:
            try:
                record = self._insert_row(payload, now)
            except sqlite3.Error as exc:
                raise StoreWriteError(f"Message insert failed: {exc}") from exc
            self._db.changes.publish("messages", "INSERT", record)
        return record

    def _insert_row(self, payload: dict[str, Any], now: str) -> dict[str, Any]:
        with self._db.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO messages (
                  user_id, contact_name, role, text, is_from_user, read,
                  attachment_url, attachment_type, created_at
                )
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    payload["user_id"],
                    payload["contact_name"],
                    payload["role"],
                    payload.get("text") or "",
                    1 if payload["is_from_user"] else 0,
                    payload.get("attachment_url"),
                    payload.get("attachment_type"),
                    now,
                ),
            )
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (cursor.lastrowid,)).fetchone()
        return _message_row(row)

    def select(self, filters: dict[str, Any]) -> list[dict[str, Any]]:
        unknown = set(filters) - _FILTERABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported message filter columns: {', '.join(sorted(unknown))}")
        clauses = [f"{column} = ?" for column in sorted(filters)]
        params = [filters[column] for column in sorted(filters)]
        sql = "SELECT * FROM messages"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, id ASC"
        with self._db.connection() as conn:
            return [_message_row(row) for row in conn.execute(sql, tuple(params)).fetchall()]

    def latest_id(self) -> int:
        with self._db.connection() as conn:
            row = conn.execute("SELECT MAX(id) AS max_id FROM messages").fetchone()
        return int(row["max_id"] or 0)

    def newer_than(self, message_id: int) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM messages WHERE id > ? ORDER BY id ASC",
                (message_id,),
            ).fetchall()
        return [_message_row(row) for row in rows]

    def mark_read(self, message_ids: list[int]) -> int:
        if not message_ids:
            return 0
        placeholders = ", ".join("?" for _ in message_ids)
        with self._db.write_lock, self._db.connection() as conn:
            return conn.execute(
                f"UPDATE messages SET read = 1 WHERE read = 0 AND id IN ({placeholders})",
                tuple(message_ids),
            ).rowcount
