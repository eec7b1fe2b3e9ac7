"""
Event dispatch for asynchronous engine messages.

Every socket message without a request_id is an engine event. The
dispatcher classifies it, updates phase and progress through the
PlaybackStateTracker, and publishes Finished when a track ends.

It also owns the file-load watchdog: a timer armed on start-file that
treats a load which never reaches file-loaded/end-file as stuck, and
publishes Finished so the caller can move on to the next item.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from turntable.ipc.commands import PROP_DURATION, PROP_PAUSE, PROP_TIME_POS
from turntable.notifications import Finished, NotificationBus
from turntable.state import PlaybackStateTracker, PlayerPhase

logger = logging.getLogger(__name__)

DEFAULT_FILE_LOAD_TIMEOUT_SEC = 20.0

# end-file reasons that end the track from the caller's point of view
FINISHING_END_REASONS = frozenset({"eof", "error"})


class EventDispatcher:
    """
    Routes engine events to state updates and public notifications.

    Transitions:
    - start-file                 -> Buffering, arm file-load watchdog
    - file-loaded                -> cancel watchdog; Playing unless Paused
    - property-change pause      -> Paused / Playing
    - property-change duration   -> progress.duration (no notification)
    - property-change time-pos   -> progress.current_time (+ ProgressUpdated once duration > 0)
    - end-file eof|error         -> cancel watchdogs, reset progress, Idle, Finished
    """

    def __init__(
        self,
        tracker: PlaybackStateTracker,
        bus: NotificationBus,
        file_load_timeout: float = DEFAULT_FILE_LOAD_TIMEOUT_SEC,
        on_track_end: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Args:
            tracker: Phase/progress owner
            bus: Notification bus for Finished
            file_load_timeout: Seconds between start-file and file-loaded before
                               the load is considered stuck
            on_track_end: Optional hook run when a track ends (eof, error or
                          stuck load), used to stop the stall watchdog
        """
        self._tracker = tracker
        self._bus = bus
        self._file_load_timeout = file_load_timeout
        self._on_track_end = on_track_end

        self._watchdog_lock = threading.Lock()
        self._load_watchdog: Optional[threading.Timer] = None
        self._watchdog_generation = 0

    def set_track_end_hook(self, hook: Optional[Callable[[], None]]) -> None:
        self._on_track_end = hook

    @property
    def load_watchdog_armed(self) -> bool:
        return self._load_watchdog is not None

    def dispatch(self, message: Dict[str, Any]) -> None:
        event = message.get("event")
        if event == "start-file":
            self._on_start_file()
        elif event == "file-loaded":
            self._on_file_loaded()
        elif event == "property-change":
            self._on_property_change(message.get("name"), message.get("data"))
        elif event == "end-file":
            self._on_end_file(message.get("reason"), message.get("file_error"))
        else:
            logger.debug(f"Ignoring engine event: {event}")

    def _on_start_file(self) -> None:
        self._tracker.set_phase(PlayerPhase.BUFFERING)
        self._arm_load_watchdog()

    def _on_file_loaded(self) -> None:
        self.cancel_watchdogs()
        if self._tracker.phase != PlayerPhase.PAUSED:
            self._tracker.set_phase(PlayerPhase.PLAYING)

    def _on_property_change(self, name: Optional[str], data: Any) -> None:
        if data is None:
            # property unavailable (no file loaded)
            return
        if name == PROP_PAUSE:
            self._tracker.set_phase(PlayerPhase.PAUSED if data else PlayerPhase.PLAYING)
        elif name == PROP_DURATION and isinstance(data, (int, float)):
            self._tracker.update_duration(data)
        elif name == PROP_TIME_POS and isinstance(data, (int, float)):
            self._tracker.update_position(data)

    def _on_end_file(self, reason: Optional[str], file_error: Optional[str]) -> None:
        self.cancel_watchdogs()
        if reason not in FINISHING_END_REASONS:
            logger.debug(f"end-file with reason={reason}, not finishing track")
            return
        if reason == "error":
            logger.warning(f"Engine could not play track: {file_error or 'unknown error'}")
        self._finish_track()

    def _finish_track(self) -> None:
        self._tracker.reset_progress()
        self._tracker.set_phase(PlayerPhase.IDLE)
        if self._on_track_end is not None:
            try:
                self._on_track_end()
            except Exception as e:
                logger.error(f"Track-end hook failed: {e}", exc_info=True)
        self._bus.publish(Finished())

    def _arm_load_watchdog(self) -> None:
        with self._watchdog_lock:
            if self._load_watchdog is not None:
                self._load_watchdog.cancel()
            self._watchdog_generation += 1
            timer = threading.Timer(
                self._file_load_timeout,
                self._on_load_watchdog,
                args=(self._watchdog_generation,),
            )
            timer.daemon = True
            self._load_watchdog = timer
            timer.start()

    def _on_load_watchdog(self, generation: int) -> None:
        with self._watchdog_lock:
            if generation != self._watchdog_generation or self._load_watchdog is None:
                return
            self._load_watchdog = None
        logger.warning(
            f"Track did not finish loading within {self._file_load_timeout:.0f}s, skipping"
        )
        self._finish_track()

    def cancel_watchdogs(self) -> None:
        with self._watchdog_lock:
            self._watchdog_generation += 1
            if self._load_watchdog is not None:
                self._load_watchdog.cancel()
                self._load_watchdog = None
