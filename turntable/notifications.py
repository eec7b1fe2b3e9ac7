"""
Typed notifications published by the engine core.

Listeners subscribe to a NotificationBus. Notifications are queued by
publishers (socket reader, timers, command callers) and delivered in publish
order by a single dispatch thread, so listeners never run concurrently with
each other and never run on the socket reader thread.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, List, Optional, Union

from turntable.state import PlayerPhase

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StateChanged:
    phase: PlayerPhase
    kind = "state-change"


@dataclass(frozen=True)
class ProgressUpdated:
    current_time: float
    duration: float
    kind = "progress-update"


@dataclass(frozen=True)
class Finished:
    kind = "finished"


@dataclass(frozen=True)
class EngineFailed:
    error: BaseException
    kind = "error"


Notification = Union[StateChanged, ProgressUpdated, Finished, EngineFailed]
Listener = Callable[[Notification], None]


class _FlushMarker:
    def __init__(self) -> None:
        self.event = threading.Event()


_STOP = object()


class NotificationBus:
    """
    Single-threaded fan-out of notifications to subscribed listeners.

    A listener that raises is logged and skipped; delivery to the remaining
    listeners and later notifications continues.
    """

    def __init__(self, name: str = "NotificationDispatch") -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()
        self._queue: "queue.Queue[object]" = queue.Queue()
        self._closed = False
        self._thread = threading.Thread(target=self._dispatch_loop, daemon=True, name=name)
        self._thread.start()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Callable that removes the listener again (safe to call twice)
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, notification: Notification) -> None:
        if self._closed:
            logger.debug(f"Notification bus closed, dropping {notification.kind}")
            return
        self._queue.put(notification)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every notification published before this call is delivered.

        Returns:
            True if delivery caught up, False on timeout or closed bus
        """
        if threading.current_thread() is self._thread:
            return True
        if self._closed:
            return False
        marker = _FlushMarker()
        self._queue.put(marker)
        return marker.event.wait(timeout)

    def close(self, timeout: float = 1.0) -> None:
        """Deliver what is queued, then stop the dispatch thread. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        if self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning("Notification dispatch thread did not terminate within timeout")

    def _dispatch_loop(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if isinstance(item, _FlushMarker):
                item.event.set()
                continue
            with self._lock:
                listeners = list(self._listeners)
            for listener in listeners:
                try:
                    listener(item)
                except Exception as e:
                    logger.error(f"Notification listener failed on {item.kind}: {e}", exc_info=True)
