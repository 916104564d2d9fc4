from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from portal_store import ChangeBus, ChangeFeedTimeout, ChangeFeedUnavailable, Subscription

from .models import (
    FEED_CHANNEL_ERROR,
    FEED_SUBSCRIBED,
    FEED_TIMED_OUT,
    AppointmentEvent,
    MessageEvent,
    Viewer,
)

logger = logging.getLogger(__name__)

MessageCallback = Callable[[MessageEvent], None]
AppointmentCallback = Callable[[AppointmentEvent], None]
StatusCallback = Callable[[str], None]


@dataclass
class FeedHandle:
    viewer_id: str
    subscriptions: list[Subscription] = field(default_factory=list)
    active: bool = True
    failed: bool = False


class ChangeFeedClient:
    """Subscribes a viewer to message inserts and own appointment updates.

    Callbacks run on ``loop`` when one is given (store writes may happen on
    worker threads). Reconnection is the caller's business.
    """

    def __init__(
        self,
        bus: ChangeBus,
        viewer: Viewer,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        connect_timeout_seconds: float = 10.0,
    ) -> None:
        self._bus = bus
        self._viewer = viewer
        self._loop = loop
        self._connect_timeout = connect_timeout_seconds

    def _dispatch(self, handle: FeedHandle, callback: Callable[..., None], *args: Any) -> None:
        def run() -> None:
            # Re-checked at execution time so queued deliveries die with the handle.
            if handle.active:
                callback(*args)

        if self._loop is None:
            run()
            return
        try:
            self._loop.call_soon_threadsafe(run)
        except RuntimeError:
            logger.debug("event loop closed, dropping feed delivery")

    def subscribe(
        self,
        on_message_insert: MessageCallback,
        on_appointment_update: AppointmentCallback,
        on_status_change: StatusCallback,
    ) -> FeedHandle:
        handle = FeedHandle(viewer_id=self._viewer.id)

        def report_failure(status: str) -> None:
            if handle.failed:
                return
            handle.failed = True
            self._dispatch(handle, on_status_change, status)

        def on_bus_status(status: str, reason: str) -> None:
            logger.warning("change feed dropped for %s: %s", self._viewer.id, reason)
            report_failure(FEED_CHANNEL_ERROR)

        started = time.monotonic()
        try:
            handle.subscriptions.append(
                self._bus.subscribe(
                    "messages",
                    "INSERT",
                    lambda new, old: self._dispatch(handle, on_message_insert, MessageEvent(new=new)),
                    on_status=on_bus_status,
                )
            )
            handle.subscriptions.append(
                self._bus.subscribe(
                    "appointments",
                    "UPDATE",
                    lambda new, old: self._dispatch(
                        handle, on_appointment_update, AppointmentEvent(new=new, old=old or {})
                    ),
                    filters={"user_id": self._viewer.id},
                    on_status=on_bus_status,
                )
            )
        except ChangeFeedTimeout as exc:
            logger.warning("change feed subscribe timed out for %s: %s", self._viewer.id, exc)
            self._release(handle)
            report_failure(FEED_TIMED_OUT)
            return handle
        except ChangeFeedUnavailable as exc:
            logger.warning("change feed unavailable for %s: %s", self._viewer.id, exc)
            self._release(handle)
            report_failure(FEED_CHANNEL_ERROR)
            return handle

        if time.monotonic() - started > self._connect_timeout:
            self._release(handle)
            report_failure(FEED_TIMED_OUT)
            return handle

        self._dispatch(handle, on_status_change, FEED_SUBSCRIBED)
        return handle

    def _release(self, handle: FeedHandle) -> None:
        for subscription in handle.subscriptions:
            self._bus.unsubscribe(subscription)
        handle.subscriptions = []

    def unsubscribe(self, handle: FeedHandle) -> None:
        handle.active = False
        self._release(handle)
