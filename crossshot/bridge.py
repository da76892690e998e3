"""One-way notification bridge from the collector core to the presentation layer."""
from __future__ import annotations

import asyncio
import copy
import logging
import threading
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class PresentationListener(Protocol):
    def on_screenshots_changed(self, records: list[dict[str, Any]]) -> None: ...

    def on_session_changed(self, sessions: dict[str, Any]) -> None: ...


class NotificationBridge:
    """Fan-out of screenshot and session snapshots to registered listeners.

    Every listener receives its own deep copy, so nothing it does can reach
    back into the store or the registry. A failing listener is logged and
    skipped.
    """

    def __init__(self) -> None:
        self._listeners: list[PresentationListener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: PresentationListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: PresentationListener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def _snapshot_listeners(self) -> list[PresentationListener]:
        with self._lock:
            return list(self._listeners)

    def screenshots_changed(self, records: list[dict[str, Any]]) -> None:
        for listener in self._snapshot_listeners():
            try:
                listener.on_screenshots_changed(copy.deepcopy(records))
            except Exception:
                logger.exception("Listener %r failed on screenshots update", listener)

    def session_changed(self, sessions: dict[str, Any]) -> None:
        for listener in self._snapshot_listeners():
            try:
                listener.on_session_changed(copy.deepcopy(sessions))
            except Exception:
                logger.exception("Listener %r failed on session update", listener)


class QueueListener:
    """Listener that buffers events for a streaming consumer (SSE).

    Bridge notifications arrive from worker threads as well as the event
    loop, so items are handed to the loop with ``call_soon_threadsafe``.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 100) -> None:
        self._loop = loop
        self.queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue(maxsize=maxsize)

    def _offer(self, item: tuple[str, Any]) -> None:
        try:
            self.queue.put_nowait(item)
        except asyncio.QueueFull:
            logger.warning("Dropping %s event for slow consumer", item[0])

    def _put(self, event: str, payload: Any) -> None:
        try:
            self._loop.call_soon_threadsafe(self._offer, (event, payload))
        except RuntimeError:
            logger.debug("Event loop closed, dropping %s event", event)

    def on_screenshots_changed(self, records: list[dict[str, Any]]) -> None:
        self._put("screenshots", records)

    def on_session_changed(self, sessions: dict[str, Any]) -> None:
        self._put("sessions", sessions)
