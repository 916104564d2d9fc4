from __future__ import annotations

import asyncio
import logging

from portal_store import AppointmentStore, MessageStore

from .change_feed import ChangeFeedClient, FeedHandle
from .classifier import classify
from .models import (
    FEED_FAILURE_STATUSES,
    FEED_SUBSCRIBED,
    NOTICE_STATUS,
    AppointmentEvent,
    MessageEvent,
    Notice,
    Viewer,
)
from .notifier import NoticeBoard
from .polling import PollingFallbackEngine
from .transport import CLOSED, DEGRADED, LIVE, POLLING, SUBSCRIBING, TransportStateMachine

logger = logging.getLogger(__name__)

LIVE_NOTICE = "Live Notifications Active"
FALLBACK_NOTICE = "Switched to Auto-Refresh Mode"


class NotificationSession:
    """One viewer's notification pipeline: change feed first, polling as fallback.

    Must be opened inside a running event loop. ``close()`` is synchronous and
    after it returns nothing reaches the classifier again.
    """

    def __init__(
        self,
        *,
        viewer: Viewer,
        feed: ChangeFeedClient,
        messages: MessageStore,
        appointments: AppointmentStore,
        board: NoticeBoard,
        poll_interval_seconds: float = 5.0,
    ) -> None:
        self.viewer = viewer
        self.transport = TransportStateMachine(label=viewer.id)
        self.classified = 0
        self._feed = feed
        self._messages = messages
        self._appointments = appointments
        self._board = board
        self._poll_interval = poll_interval_seconds
        self._handle: FeedHandle | None = None
        self._poller: PollingFallbackEngine | None = None
        self._poller_start: asyncio.Task | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def poller(self) -> PollingFallbackEngine | None:
        return self._poller

    async def open(self) -> "NotificationSession":
        self.transport.transition(SUBSCRIBING)
        self._handle = self._feed.subscribe(self._deliver, self._deliver, self._on_feed_status)
        return self

    async def __aenter__(self) -> "NotificationSession":
        return await self.open()

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    def _deliver(self, event: MessageEvent | AppointmentEvent) -> None:
        if self._closed:
            return
        self.classified += 1
        notice = classify(event, self.viewer)
        if notice is not None:
            self._board.emit(notice)

    def _on_feed_status(self, status: str) -> None:
        if self._closed:
            return
        if status == FEED_SUBSCRIBED and self.transport.state == SUBSCRIBING:
            self.transport.transition(LIVE)
            self._board.emit(Notice(title=LIVE_NOTICE, category=NOTICE_STATUS, data={"transport": LIVE}))
            return
        if status in FEED_FAILURE_STATUSES and self.transport.can(DEGRADED):
            self.transport.transition(DEGRADED)
            if self._handle is not None:
                self._feed.unsubscribe(self._handle)
                self._handle = None
            self._begin_polling(status)

    def _begin_polling(self, reason: str) -> None:
        if self._poller is not None:
            return
        logger.warning("change feed %s for %s, falling back to polling", reason, self.viewer.id)
        self._poller = PollingFallbackEngine(
            messages=self._messages,
            appointments=self._appointments,
            viewer=self.viewer,
            on_message=self._deliver,
            on_appointment=self._deliver,
            interval_seconds=self._poll_interval,
        )
        self.transport.transition(POLLING)
        self._board.emit(Notice(title=FALLBACK_NOTICE, category=NOTICE_STATUS, data={"transport": POLLING}))
        self._poller_start = asyncio.get_running_loop().create_task(self._poller.start())

    async def wait_until_polling(self) -> None:
        if self._poller_start is not None:
            await self._poller_start

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._handle is not None:
            self._feed.unsubscribe(self._handle)
            self._handle = None
        if self._poller is not None:
            self._poller.stop()
        if self._poller_start is not None and not self._poller_start.done():
            self._poller_start.cancel()
        if self.transport.can(CLOSED):
            self.transport.transition(CLOSED)
