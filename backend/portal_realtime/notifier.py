from __future__ import annotations

import asyncio
import itertools
import logging
import threading
from typing import Callable

from .models import Notice

logger = logging.getLogger(__name__)

Surface = Callable[[Notice], None]


class NoticeBoard:
    """Fans transient notices out to whatever surfaces are currently mounted.

    Delivery is best-effort and at-most-once: with nothing mounted the notice
    is dropped, and a failing surface is skipped.
    """

    def __init__(self) -> None:
        self._surfaces: dict[int, Surface] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def mount(self, surface: Surface) -> int:
        token = next(self._tokens)
        with self._lock:
            self._surfaces[token] = surface
        return token

    def unmount(self, token: int) -> None:
        with self._lock:
            self._surfaces.pop(token, None)

    def emit(self, notice: Notice) -> int:
        with self._lock:
            surfaces = list(self._surfaces.values())
        if not surfaces:
            logger.debug("dropping notice with no mounted surface: %s", notice.title)
            return 0
        delivered = 0
        for surface in surfaces:
            try:
                surface(notice)
                delivered += 1
            except Exception:
                logger.exception("notice surface failed")
        return delivered


class QueueSurface:
    def __init__(self, maxsize: int = 100) -> None:
        self.queue: asyncio.Queue[Notice] = asyncio.Queue(maxsize=maxsize)

    def __call__(self, notice: Notice) -> None:
        try:
            self.queue.put_nowait(notice)
        except asyncio.QueueFull:
            logger.debug("notice queue full, dropping: %s", notice.title)
