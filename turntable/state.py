"""
Playback state owned by the engine core.

- PlayerPhase: application-visible phase (Idle, Buffering, Playing, Paused)
- ProgressSnapshot: last known position/duration reported by the engine
- PlaybackIntent: the caller's most recent request, kept across engine restarts
- PlaybackStateTracker: the single writer of phase and progress; every phase
  mutation publishes a StateChanged notification
"""

from __future__ import annotations

import enum
import logging
import threading
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from turntable.notifications import NotificationBus

logger = logging.getLogger(__name__)


class PlayerPhase(enum.Enum):
    IDLE = "idle"
    BUFFERING = "buffering"
    PLAYING = "playing"
    PAUSED = "paused"


@dataclass(frozen=True)
class ProgressSnapshot:
    current_time: float = 0.0
    duration: float = 0.0


@dataclass(frozen=True)
class PlaybackIntent:
    """
    Immutable record of what the caller last asked for.

    Replaced through the transition helpers below; it is the input to
    recovery's replay and survives engine session replacement.
    """
    url: Optional[str] = None
    loop: bool = False
    playing: bool = False

    def with_track(self, url: str, playing: bool) -> "PlaybackIntent":
        return replace(self, url=url, playing=playing)

    def with_playing(self, playing: bool) -> "PlaybackIntent":
        return replace(self, playing=playing)

    def with_loop(self, enabled: bool) -> "PlaybackIntent":
        return replace(self, loop=enabled)

    def cleared(self) -> "PlaybackIntent":
        """Drop the current track; the loop preference is kept."""
        return replace(self, url=None, playing=False)


class PlaybackStateTracker:
    """
    Holds the current phase and progress and publishes their changes.

    Thread-safe: written from the socket reader, timers and command callers.
    Notifications are published while the lock is held so their order on the
    bus matches the order of the state mutations.
    """

    def __init__(self, bus: "NotificationBus") -> None:
        self._bus = bus
        self._lock = threading.RLock()
        self._phase = PlayerPhase.IDLE
        self._progress = ProgressSnapshot()

    @property
    def phase(self) -> PlayerPhase:
        return self._phase

    @property
    def progress(self) -> ProgressSnapshot:
        return self._progress

    def set_phase(self, phase: PlayerPhase, force: bool = False) -> bool:
        """
        Move to a phase and publish StateChanged.

        Args:
            phase: New phase
            force: Publish even if the phase is unchanged (process start/stop
                   announce their phase unconditionally)

        Returns:
            True if a notification was published
        """
        from turntable.notifications import StateChanged

        with self._lock:
            if self._phase == phase and not force:
                return False
            old = self._phase
            self._phase = phase
            if old != phase:
                logger.debug(f"Player phase {old.value} -> {phase.value}")
            self._bus.publish(StateChanged(phase))
            return True

    def update_duration(self, duration: float) -> None:
        with self._lock:
            self._progress = replace(self._progress, duration=float(duration))

    def update_position(self, current_time: float) -> bool:
        """
        Record the playback position.

        A ProgressUpdated is only published once a non-zero duration is known.

        Returns:
            True if a notification was published
        """
        from turntable.notifications import ProgressUpdated

        with self._lock:
            self._progress = replace(self._progress, current_time=float(current_time))
            if self._progress.duration <= 0:
                return False
            self._bus.publish(ProgressUpdated(self._progress.current_time, self._progress.duration))
            return True

    def reset_progress(self) -> None:
        with self._lock:
            self._progress = ProgressSnapshot()
