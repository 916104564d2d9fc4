from __future__ import annotations

from typing import Any

from .models import (
    NOTICE_APPOINTMENT,
    NOTICE_MESSAGE,
    AppointmentEvent,
    MessageEvent,
    Notice,
    Viewer,
)


def is_message_for_viewer(row: dict[str, Any], viewer: Viewer) -> bool:
    if viewer.is_doctor:
        return bool(row.get("is_from_user")) and row.get("contact_name") == viewer.display_name
    return row.get("user_id") == viewer.id and not row.get("is_from_user")


def classify_message(row: dict[str, Any], viewer: Viewer) -> Notice | None:
    if not is_message_for_viewer(row, viewer):
        return None
    if viewer.is_doctor:
        title = "New Patient Message"
    else:
        title = f"New Message from {row.get('contact_name')}"
    return Notice(
        title=title,
        category=NOTICE_MESSAGE,
        data={"message_id": row.get("id"), "thread_owner": row.get("user_id")},
    )


def classify_appointment_update(
    new: dict[str, Any],
    old: dict[str, Any],
    viewer: Viewer,
) -> Notice | None:
    if new.get("user_id") != viewer.id:
        return None
    if new.get("status") == old.get("status"):
        return None
    return Notice(
        title=f"Appointment {new.get('status')}",
        category=NOTICE_APPOINTMENT,
        data={"appointment_id": new.get("id"), "status": new.get("status")},
    )


def classify_polled_appointment(row: dict[str, Any], viewer: Viewer) -> Notice | None:
    # No previous snapshot on this path, so any change to an own row is reported.
    if row.get("user_id") != viewer.id:
        return None
    return Notice(
        title=f"Appointment Updated: {row.get('status')}",
        category=NOTICE_APPOINTMENT,
        data={"appointment_id": row.get("id"), "status": row.get("status")},
    )


def classify(event: MessageEvent | AppointmentEvent, viewer: Viewer) -> Notice | None:
    if isinstance(event, MessageEvent):
        return classify_message(event.new, viewer)
    if event.polled:
        return classify_polled_appointment(event.new, viewer)
    return classify_appointment_update(event.new, event.old, viewer)
