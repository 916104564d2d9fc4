from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable

from .errors import ChangeFeedTimeout, ChangeFeedUnavailable

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[dict[str, Any], dict[str, Any] | None], None]
StatusCallback = Callable[[str, str], None]

CHANGE_EVENTS = {"INSERT", "UPDATE"}

BUS_ONLINE = "online"
BUS_OFFLINE = "offline"
BUS_STALLED = "stalled"


@dataclass
class Subscription:
    table: str
    event: str
    callback: ChangeCallback
    filters: dict[str, Any] = field(default_factory=dict)
    on_status: StatusCallback | None = None
    active: bool = True

    def matches(self, table: str, event: str, row: dict[str, Any]) -> bool:
        if not self.active or table != self.table or event != self.event:
            return False
        return all(row.get(column) == value for column, value in self.filters.items())


class ChangeBus:
    """Row-change subscription primitive published by the store after each commit.

    Subscribers get ``(new, old)`` row snapshots for the table/event they asked
    for, filtered server-side by column equality. ``old`` is ``None`` for inserts.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscriptions: list[Subscription] = []
        self._state = BUS_ONLINE

    @property
    def state(self) -> str:
        return self._state

    def set_state(self, state: str) -> None:
        if state not in {BUS_ONLINE, BUS_OFFLINE, BUS_STALLED}:
            raise ValueError(f"Unknown change bus state: {state}")
        self._state = state

    def subscribe(
        self,
        table: str,
        event: str,
        callback: ChangeCallback,
        *,
        filters: dict[str, Any] | None = None,
        on_status: StatusCallback | None = None,
    ) -> Subscription:
        if event not in CHANGE_EVENTS:
            raise ValueError(f"Unsupported change event: {event}")
        if self._state == BUS_OFFLINE:
            raise ChangeFeedUnavailable("Change feed is not accepting subscriptions.")
        if self._state == BUS_STALLED:
            raise ChangeFeedTimeout("Change feed did not acknowledge the subscription.")
        subscription = Subscription(
            table=table,
            event=event,
            callback=callback,
            filters=dict(filters or {}),
            on_status=on_status,
        )
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        with self._lock:
            self._subscriptions = [item for item in self._subscriptions if item is not subscription]

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(
        self,
        table: str,
        event: str,
        new: dict[str, Any],
        old: dict[str, Any] | None = None,
    ) -> int:
        with self._lock:
            targets = [sub for sub in self._subscriptions if sub.matches(table, event, new)]
        delivered = 0
        for subscription in targets:
            try:
                subscription.callback(dict(new), dict(old) if old is not None else None)
                delivered += 1
            except Exception:
                logger.exception("change subscriber failed for %s/%s", table, event)
        return delivered

    def disconnect(self, reason: str = "connection lost") -> None:
        """Drop every subscription, telling each listener the channel errored."""
        with self._lock:
            dropped = self._subscriptions
            self._subscriptions = []
        for subscription in dropped:
            subscription.active = False
            if subscription.on_status is None:
                continue
            try:
                subscription.on_status("channel_error", reason)
            except Exception:
                logger.exception("change status listener failed")
