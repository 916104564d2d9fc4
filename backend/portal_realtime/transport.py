from __future__ import annotations

import logging

logger = logging.getLogger(__name__)

DISCONNECTED = "disconnected"
SUBSCRIBING = "subscribing"
LIVE = "live"
DEGRADED = "degraded"
POLLING = "polling"
CLOSED = "closed"

ACTIVE_TRANSPORTS = {LIVE, POLLING}


class TransportError(Exception):
    pass


class TransportStateMachine:
    """Which delivery channel a session is using; at most one is ever active."""

    _TRANSITIONS = {
        DISCONNECTED: {SUBSCRIBING, CLOSED},
        SUBSCRIBING: {LIVE, DEGRADED, CLOSED},
        LIVE: {DEGRADED, CLOSED},
        DEGRADED: {POLLING, CLOSED},
        POLLING: {CLOSED},
        CLOSED: set(),
    }

    def __init__(self, label: str = "") -> None:
        self.label = label
        self.state = DISCONNECTED
        self.history = [DISCONNECTED]

    @property
    def active_transport(self) -> str | None:
        return self.state if self.state in ACTIVE_TRANSPORTS else None

    def can(self, next_state: str) -> bool:
        return next_state in self._TRANSITIONS.get(self.state, set())

    def transition(self, next_state: str) -> list[str]:
        if not self.can(next_state):
            raise TransportError(f"Invalid transport transition: {self.state} -> {next_state}")
        logger.info("transport %s: %s -> %s", self.label or "-", self.state, next_state)
        self.state = next_state
        self.history.append(next_state)
        return list(self.history)
