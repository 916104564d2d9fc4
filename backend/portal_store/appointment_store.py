from __future__ import annotations

import uuid
from typing import Any

from .database import SQLitePortalDB
from .errors import RecordNotFound, StoreWriteError
from .time_utils import to_iso, utc_now

APPOINTMENT_STATUSES = {"pending", "approved", "cancelled", "completed"}
CONTACT_STATUSES = ("approved", "completed")


class AppointmentStore:
    def __init__(self, db: SQLitePortalDB) -> None:
        self._db = db

    def book(self, *, user_id: str, date: str, type: str = "GP Consultation") -> dict[str, Any]:
        now = to_iso(utc_now())
        appointment_id = uuid.uuid4().hex
        with self._db.write_lock, self._db.connection() as conn:
            conn.execute(
                """
                INSERT INTO appointments (id, user_id, doctor_id, date, type, status, created_at, updated_at)
                VALUES (?, ?, NULL, ?, ?, 'pending', ?, ?)
                """,
                (appointment_id, user_id, date, type, now, now),
            )
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
        return dict(row)

    def get(self, appointment_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
        return dict(row) if row else None

    def list_for_patient(self, user_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM appointments WHERE user_id = ? ORDER BY date ASC",
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_for_doctor_dashboard(self, doctor_id: str) -> list[dict[str, Any]]:
        """Appointments this clinician claimed plus every unclaimed pending request."""
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM appointments
                WHERE doctor_id = ? OR status = 'pending'
                ORDER BY date ASC
                """,
                (doctor_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def claimed_by(self, doctor_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM appointments
                WHERE doctor_id = ? AND status IN (?, ?)
                ORDER BY date ASC
                """,
                (doctor_id, *CONTACT_STATUSES),
            ).fetchall()
        return [dict(row) for row in rows]

    def confirmed_for_patient(self, user_id: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM appointments
                WHERE user_id = ? AND status IN (?, ?) AND doctor_id IS NOT NULL
                ORDER BY date ASC
                """,
                (user_id, *CONTACT_STATUSES),
            ).fetchall()
        return [dict(row) for row in rows]

    def updated_since(self, user_id: str, since_iso: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM appointments
                WHERE user_id = ? AND updated_at > ?
                ORDER BY updated_at ASC
                """,
                (user_id, since_iso),
            ).fetchall()
        return [dict(row) for row in rows]

    def update_status(
        self,
        appointment_id: str,
        *,
        status: str,
        doctor_id: str | None = None,
        expected_status: str | None = "pending",
    ) -> dict[str, Any]:
        """Set status (and optionally claim) guarded by ``expected_status``.

        A row that is no longer in ``expected_status`` is rejected with
        ``StoreWriteError``; pass ``expected_status=None`` for last-write-wins.
        """
        if status not in APPOINTMENT_STATUSES:
            raise ValueError(f"Unsupported appointment status: {status}")
        now = to_iso(utc_now())
        with self._db.write_lock:
            with self._db.connection() as conn:
                old = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
                if not old:
                    raise RecordNotFound(f"Appointment not found: {appointment_id}")
                sql = """
                    UPDATE appointments
                    SET status = ?,
                        doctor_id = COALESCE(?, doctor_id),
                        updated_at = ?
                    WHERE id = ?
                """
                params: list[Any] = [status, doctor_id, now, appointment_id]
                if expected_status is not None:
                    sql += " AND status = ?"
                    params.append(expected_status)
                updated = conn.execute(sql, tuple(params)).rowcount
                if not updated:
                    raise StoreWriteError(
                        f"Appointment {appointment_id} is {old['status']}, expected {expected_status}"
                    )
                new = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
            self._db.changes.publish("appointments", "UPDATE", dict(new), dict(old))
        return dict(new)

    def reschedule(self, appointment_id: str, *, user_id: str, date: str) -> dict[str, Any]:
        now = to_iso(utc_now())
        with self._db.write_lock:
            with self._db.connection() as conn:
                old = conn.execute(
                    "SELECT * FROM appointments WHERE id = ? AND user_id = ?",
                    (appointment_id, user_id),
                ).fetchone()
                if not old:
                    raise RecordNotFound(f"Appointment not found: {appointment_id}")
                updated = conn.execute(
                    """
                    UPDATE appointments
                    SET date = ?, updated_at = ?
                    WHERE id = ? AND status IN ('pending', 'approved')
                    """,
                    (date, now, appointment_id),
                ).rowcount
                if not updated:
                    raise StoreWriteError(f"Appointment {appointment_id} is {old['status']} and cannot be re-dated")
                new = conn.execute("SELECT * FROM appointments WHERE id = ?", (appointment_id,)).fetchone()
            self._db.changes.publish("appointments", "UPDATE", dict(new), dict(old))
        return dict(new)
