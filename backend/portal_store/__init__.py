from .appointment_store import AppointmentStore
from .attachments import Attachment, StorageClient, StorageError
from .changes import ChangeBus, Subscription
from .database import SQLitePortalDB
from .errors import ChangeFeedTimeout, ChangeFeedUnavailable, RecordNotFound, StoreError, StoreWriteError
from .message_store import MessageStore
from .profile_store import ProfileStore

__all__ = [
    "AppointmentStore",
    "Attachment",
    "ChangeBus",
    "ChangeFeedTimeout",
    "ChangeFeedUnavailable",
    "MessageStore",
    "ProfileStore",
    "RecordNotFound",
    "SQLitePortalDB",
    "StorageClient",
    "StorageError",
    "StoreError",
    "StoreWriteError",
    "Subscription",
]
