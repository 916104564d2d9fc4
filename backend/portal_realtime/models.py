from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ROLE_PATIENT = "patient"
ROLE_DOCTOR = "doctor"

FEED_SUBSCRIBED = "subscribed"
FEED_TIMED_OUT = "timed_out"
FEED_CHANNEL_ERROR = "channel_error"
FEED_FAILURE_STATUSES = {FEED_TIMED_OUT, FEED_CHANNEL_ERROR}

NOTICE_MESSAGE = "message"
NOTICE_APPOINTMENT = "appointment"
NOTICE_STATUS = "status"


@dataclass(frozen=True)
class Viewer:
    id: str
    role: str
    display_name: str

    @property
    def is_doctor(self) -> bool:
        return self.role == ROLE_DOCTOR


@dataclass(frozen=True)
class Contact:
    id: str
    name: str
    role: str
    avatar_url: str | None = None


@dataclass
class MessageEvent:
    new: dict[str, Any]


@dataclass
class AppointmentEvent:
    new: dict[str, Any]
    # None when the event came from polling, which has no previous snapshot.
    old: dict[str, Any] | None = None

    @property
    def polled(self) -> bool:
        return self.old is None


@dataclass(frozen=True)
class Notice:
    title: str
    category: str
    data: dict[str, Any] = field(default_factory=dict)

    def as_payload(self) -> dict[str, Any]:
        return {"title": self.title, "category": self.category, "data": self.data}
