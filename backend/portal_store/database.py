from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .changes import ChangeBus


class SQLitePortalDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        # Held across write + publish so change events go out in commit order.
        self.write_lock = threading.RLock()
        self.changes = ChangeBus()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self.write_lock, self.connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS profiles (
                  id TEXT PRIMARY KEY,
                  full_name TEXT NOT NULL,
                  role TEXT NOT NULL DEFAULT 'patient',
                  avatar_url TEXT,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS messages (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id TEXT NOT NULL,
                  contact_name TEXT NOT NULL,
                  role TEXT NOT NULL,
                  text TEXT NOT NULL DEFAULT '',
                  is_from_user INTEGER NOT NULL,
                  read INTEGER NOT NULL DEFAULT 0,
                  attachment_url TEXT,
                  attachment_type TEXT,
                  created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS appointments (
                  id TEXT PRIMARY KEY,
                  user_id TEXT NOT NULL,
                  doctor_id TEXT,
                  date TEXT NOT NULL,
                  type TEXT NOT NULL,
                  status TEXT NOT NULL DEFAULT 'pending',
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  CHECK (status IN ('pending', 'approved', 'cancelled', 'completed'))
                );

                CREATE INDEX IF NOT EXISTS idx_messages_thread
                  ON messages(user_id, contact_name, created_at);
                CREATE INDEX IF NOT EXISTS idx_appointments_user_updated
                  ON appointments(user_id, updated_at);
                CREATE INDEX IF NOT EXISTS idx_appointments_doctor_status
                  ON appointments(doctor_id, status);
                """
            )
