from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable

from portal_store import AppointmentStore, MessageStore
from portal_store.time_utils import to_iso, utc_now

from .models import AppointmentEvent, MessageEvent, Viewer

logger = logging.getLogger(__name__)


@dataclass
class NotificationCursor:
    last_message_id: int = 0
    last_check_time: str = ""


class PollingFallbackEngine:
    """Delta-polls the store on a fixed interval while the change feed is down.

    The cursor is baselined on start so rows that already existed are never
    reported. Appointment rows come back without a previous snapshot, so they
    are forwarded as generic status-changed events.
    """

    def __init__(
        self,
        *,
        messages: MessageStore,
        appointments: AppointmentStore,
        viewer: Viewer,
        on_message: Callable[[MessageEvent], None],
        on_appointment: Callable[[AppointmentEvent], None],
        interval_seconds: float = 5.0,
    ) -> None:
        self._messages = messages
        self._appointments = appointments
        self._viewer = viewer
        self._on_message = on_message
        self._on_appointment = on_appointment
        self.interval_seconds = interval_seconds
        self.cursor = NotificationCursor()
        self._task: asyncio.Task | None = None
        self._started = False
        self._baselined = False
        self._stopped = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done() and not self._stopped

    @property
    def stopped(self) -> bool:
        return self._stopped

    async def baseline(self) -> NotificationCursor:
        latest_id = await asyncio.to_thread(self._messages.latest_id)
        if not self._stopped:
            self.cursor = NotificationCursor(last_message_id=latest_id, last_check_time=to_iso(utc_now()))
            self._baselined = True
        return self.cursor

    async def poll_once(self) -> int:
        forwarded = 0
        rows = await asyncio.to_thread(self._messages.newer_than, self.cursor.last_message_id)
        if self._stopped:
            return forwarded
        fresh = sorted(
            (row for row in rows if int(row["id"]) > self.cursor.last_message_id),
            key=lambda row: int(row["id"]),
        )
        if fresh:
            self.cursor.last_message_id = int(fresh[-1]["id"])
            for row in fresh:
                if self._stopped:
                    return forwarded
                self._on_message(MessageEvent(new=row))
                forwarded += 1

        if self._viewer.is_doctor:
            return forwarded

        updated = await asyncio.to_thread(
            self._appointments.updated_since, self._viewer.id, self.cursor.last_check_time
        )
        if self._stopped or not updated:
            return forwarded
        self.cursor.last_check_time = to_iso(utc_now())
        for row in updated:
            if self._stopped:
                return forwarded
            self._on_appointment(AppointmentEvent(new=row, old=None))
            forwarded += 1
        return forwarded

    async def _tick(self) -> None:
        # Without a baseline, polling from id 0 would replay the whole history.
        if not self._baselined:
            await self.baseline()
            return
        await self.poll_once()

    async def _run(self) -> None:
        while not self._stopped:
            await asyncio.sleep(self.interval_seconds)
            if self._stopped:
                break
            try:
                await self._tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.warning("notification poll failed for %s, retrying next tick", self._viewer.id, exc_info=True)

    async def start(self) -> None:
        if self._started or self._stopped:
            return
        self._started = True
        try:
            await self._tick()
        except Exception:
            logger.warning("polling baseline failed for %s, retrying next tick", self._viewer.id, exc_info=True)
        if self._stopped:
            return
        logger.info("polling fallback active for %s every %.2fs", self._viewer.id, self.interval_seconds)
        self._task = asyncio.create_task(self._run())

    def stop(self) -> None:
        self._stopped = True
        if self._task is not None:
            self._task.cancel()
            self._task = None
