"""Conversation thread resolution.

Messages carry no thread id. A thread is the pair (patient id, clinician
display name): ``user_id`` always holds the patient, ``contact_name`` always
holds the clinician's name, whoever wrote the message. Because the join is on
the display name, renaming a clinician orphans their earlier threads; an
empty result cannot be told apart from a thread with no messages yet.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any

from portal_store import Attachment, MessageStore, StoreError
from portal_store.appointment_store import CONTACT_STATUSES
from portal_store.time_utils import to_iso, utc_now

from .models import Contact, Viewer

logger = logging.getLogger(__name__)

DOCTOR_ROLE_LABEL = "General Practitioner"
PATIENT_ROLE_LABEL = "Patient"
SYSTEM_CONTACT = Contact(id="system", name="MediLink Support", role="System Admin")

OUTGOING_PENDING = "pending"
OUTGOING_CONFIRMED = "confirmed"
OUTGOING_FAILED = "failed"

_DOCTOR_PREFIX_RE = re.compile(r"^dr\.?\s+", re.IGNORECASE)


def format_doctor_name(name: str | None) -> str:
    if not name:
        return ""
    trimmed = name.strip()
    if _DOCTOR_PREFIX_RE.match(trimmed):
        return trimmed
    return f"Dr. {trimmed}"


@dataclass(frozen=True)
class ThreadPredicate:
    owner_id: str
    counterpart_name: str

    def as_filter(self) -> dict[str, Any]:
        return {"user_id": self.owner_id, "contact_name": self.counterpart_name}

    def matches(self, row: dict[str, Any]) -> bool:
        return row.get("user_id") == self.owner_id and row.get("contact_name") == self.counterpart_name


def read_predicate(viewer: Viewer, counterpart: Contact) -> ThreadPredicate:
    if viewer.is_doctor:
        return ThreadPredicate(owner_id=counterpart.id, counterpart_name=viewer.display_name)
    return ThreadPredicate(owner_id=viewer.id, counterpart_name=counterpart.name)


def write_payload(
    viewer: Viewer,
    counterpart: Contact,
    text: str,
    attachment: Attachment | None = None,
) -> dict[str, Any]:
    body = (text or "").strip()
    if not body and attachment is None:
        raise ValueError("Message needs text or an attachment.")
    if viewer.is_doctor:
        payload = {
            "user_id": counterpart.id,
            "contact_name": viewer.display_name,
            "role": DOCTOR_ROLE_LABEL,
            "is_from_user": False,
        }
    else:
        payload = {
            "user_id": viewer.id,
            "contact_name": counterpart.name,
            "role": counterpart.role,
            "is_from_user": True,
        }
    payload["text"] = body
    payload["attachment_url"] = attachment.url if attachment else None
    payload["attachment_type"] = attachment.kind if attachment else None
    return payload


def unread_ids(rows: list[dict[str, Any]], viewer: Viewer) -> list[int]:
    """Ids of messages written by the other party that are still unread."""
    ids = []
    for row in rows:
        from_other = row.get("is_from_user") if viewer.is_doctor else not row.get("is_from_user")
        if from_other and not row.get("read"):
            ids.append(int(row["id"]))
    return ids


def discover_contacts(
    viewer: Viewer,
    appointments: list[dict[str, Any]],
    profiles: dict[str, dict[str, Any]],
) -> list[Contact]:
    """Distinct counterparties over approved/completed appointments.

    Counterparties without a profile name are skipped: the thread join key is
    the name, so a shared placeholder would merge unrelated threads.
    """
    contacts: dict[str, Contact] = {}
    for appt in appointments:
        if appt.get("status") not in CONTACT_STATUSES:
            continue
        if viewer.is_doctor:
            counterpart_id = appt.get("user_id")
            # A clinician may book with themselves; that is not a conversation.
            if appt.get("doctor_id") != viewer.id or not counterpart_id or counterpart_id == viewer.id:
                continue
            role = PATIENT_ROLE_LABEL
        else:
            counterpart_id = appt.get("doctor_id")
            if appt.get("user_id") != viewer.id or not counterpart_id:
                continue
            role = DOCTOR_ROLE_LABEL
        if counterpart_id in contacts:
            continue
        profile = profiles.get(counterpart_id) or {}
        name = (profile.get("full_name") or "").strip()
        if not name:
            continue
        contacts[counterpart_id] = Contact(
            id=counterpart_id,
            name=name,
            role=role,
            avatar_url=profile.get("avatar_url"),
        )
    if not contacts and not viewer.is_doctor:
        return [SYSTEM_CONTACT]
    return list(contacts.values())


@dataclass
class OutgoingMessage:
    temp_id: str
    payload: dict[str, Any]
    state: str = OUTGOING_PENDING
    message_id: int | None = None
    error: str | None = None
    created_at: str = field(default_factory=lambda: to_iso(utc_now()))
    attempts: int = 0
    failure: StoreError | None = field(default=None, repr=False, compare=False)

    def as_row(self) -> dict[str, Any]:
        return {
            **self.payload,
            "id": self.message_id if self.message_id is not None else self.temp_id,
            "temp_id": self.temp_id,
            "state": self.state,
            "error": self.error,
            "read": False,
            "created_at": self.created_at,
        }


class ConversationView:
    """Local view of one thread with optimistic sends.

    A send shows up immediately as ``pending`` and becomes ``confirmed`` or
    ``failed``. Failed sends stay visible until retried; nothing is rolled back.
    """

    def __init__(self, *, viewer: Viewer, counterpart: Contact, messages: MessageStore) -> None:
        self.viewer = viewer
        self.counterpart = counterpart
        self.predicate = read_predicate(viewer, counterpart)
        self._messages = messages
        self.rows: list[dict[str, Any]] = []
        self.outgoing: list[OutgoingMessage] = []

    def load(self, *, mark_read: bool = True) -> list[dict[str, Any]]:
        self.rows = self._messages.select(self.predicate.as_filter())
        if mark_read:
            pending_read = unread_ids(self.rows, self.viewer)
            if pending_read:
                self._messages.mark_read(pending_read)
                marked = set(pending_read)
                for row in self.rows:
                    if row["id"] in marked:
                        row["read"] = True
        return self.rows

    def send(self, text: str, attachment: Attachment | None = None) -> OutgoingMessage:
        entry = OutgoingMessage(
            temp_id=f"tmp_{uuid.uuid4().hex}",
            payload=write_payload(self.viewer, self.counterpart, text, attachment),
        )
        self.outgoing.append(entry)
        self._persist(entry)
        return entry

    def retry(self, temp_id: str) -> OutgoingMessage:
        entry = next((item for item in self.outgoing if item.temp_id == temp_id), None)
        if entry is None:
            raise KeyError(f"Unknown outgoing message: {temp_id}")
        if entry.state != OUTGOING_FAILED:
            return entry
        entry.state = OUTGOING_PENDING
        entry.error = None
        entry.failure = None
        self._persist(entry)
        return entry

    def _persist(self, entry: OutgoingMessage) -> None:
        entry.attempts += 1
        try:
            row = self._messages.insert(entry.payload)
        except StoreError as exc:
            logger.warning("message send failed for %s: %s", self.viewer.id, exc)
            entry.state = OUTGOING_FAILED
            entry.error = str(exc)
            entry.failure = exc
            return
        entry.state = OUTGOING_CONFIRMED
        entry.message_id = int(row["id"])
        entry.created_at = row["created_at"]

    def timeline(self) -> list[dict[str, Any]]:
        loaded_ids = {row["id"] for row in self.rows}
        items = [{**row, "state": OUTGOING_CONFIRMED} for row in self.rows]
        items.extend(entry.as_row() for entry in self.outgoing if entry.message_id not in loaded_ids)
        return items
