from __future__ import annotations

import logging
from typing import Any

from portal_store import AppointmentStore, RecordNotFound

from .models import Viewer

logger = logging.getLogger(__name__)


class TransitionError(Exception):
    pass


class AppointmentStatusMachine:
    """pending -> approved (clinician claims) or pending -> cancelled (either party).

    The current status is not re-read here: the store applies the update only
    while the row is still pending and raises ``StoreWriteError`` otherwise, so
    the second of two racing approvals fails instead of overwriting the claim.
    """

    _TRANSITIONS = {
        "pending": {"approved", "cancelled"},
        "approved": set(),
        "cancelled": set(),
        "completed": set(),
    }

    def __init__(self, store: AppointmentStore) -> None:
        self._store = store

    @classmethod
    def targets(cls) -> set[str]:
        return set(cls._TRANSITIONS["pending"])

    def transition(self, appointment_id: str, target_status: str, actor: Viewer) -> dict[str, Any]:
        if target_status not in self.targets():
            raise TransitionError(f"Unsupported target status: {target_status}")
        if target_status == "approved" and not actor.is_doctor:
            raise TransitionError("Only clinicians can approve appointments.")
        if not actor.is_doctor:
            appointment = self._store.get(appointment_id)
            if not appointment or appointment["user_id"] != actor.id:
                raise RecordNotFound(f"Appointment not found: {appointment_id}")

        row = self._store.update_status(
            appointment_id,
            status=target_status,
            doctor_id=actor.id if target_status == "approved" else None,
            expected_status="pending",
        )
        logger.info("appointment %s -> %s by %s", appointment_id, target_status, actor.id)
        return {"id": row["id"], "status": row["status"], "doctor_id": row["doctor_id"]}

    def book(self, patient: Viewer, *, date: str, type: str = "GP Consultation") -> dict[str, Any]:
        if patient.is_doctor:
            raise TransitionError("Appointments are booked by patients.")
        return self._store.book(user_id=patient.id, date=date, type=type)

    def reschedule(self, appointment_id: str, patient: Viewer, *, date: str) -> dict[str, Any]:
        # Re-dating never changes status.
        return self._store.reschedule(appointment_id, user_id=patient.id, date=date)
