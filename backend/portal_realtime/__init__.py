from .appointments import AppointmentStatusMachine, TransitionError
from .change_feed import ChangeFeedClient, FeedHandle
from .classifier import classify, classify_appointment_update, classify_message, classify_polled_appointment
from .config import PortalSettings
from .models import (
    FEED_CHANNEL_ERROR,
    FEED_SUBSCRIBED,
    FEED_TIMED_OUT,
    ROLE_DOCTOR,
    ROLE_PATIENT,
    AppointmentEvent,
    Contact,
    MessageEvent,
    Notice,
    Viewer,
)
from .notifier import NoticeBoard, QueueSurface
from .polling import NotificationCursor, PollingFallbackEngine
from .session import NotificationSession
from .threads import ConversationView, OutgoingMessage, ThreadPredicate, discover_contacts, read_predicate, write_payload
from .transport import TransportError, TransportStateMachine

__all__ = [
    "FEED_CHANNEL_ERROR",
    "FEED_SUBSCRIBED",
    "FEED_TIMED_OUT",
    "ROLE_DOCTOR",
    "ROLE_PATIENT",
    "AppointmentEvent",
    "AppointmentStatusMachine",
    "ChangeFeedClient",
    "Contact",
    "ConversationView",
    "FeedHandle",
    "MessageEvent",
    "Notice",
    "NoticeBoard",
    "NotificationCursor",
    "NotificationSession",
    "OutgoingMessage",
    "PollingFallbackEngine",
    "PortalSettings",
    "QueueSurface",
    "ThreadPredicate",
    "TransitionError",
    "TransportError",
    "TransportStateMachine",
    "Viewer",
    "classify",
    "classify_appointment_update",
    "classify_message",
    "classify_polled_appointment",
    "discover_contacts",
    "read_predicate",
    "write_payload",
]
