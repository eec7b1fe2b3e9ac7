"""
EngineController: the public command surface of the playback engine.

Composition root for one engine: builds the notification bus, state
tracker, event dispatcher, process supervisor and health monitor, and
exposes the player operations on top of them.

Every command is guarded the same way before it is forwarded:
- ignored (logged) while a recovery is running
- no engine session: start one (commands are queued until it is ready)
- engine process gone: recover first
- ready engine failing a health check: recover first

Engine-side failures are logged, never raised to the caller; invalid
arguments raise ValueError.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, Optional

from turntable.config import TurntableConfig
from turntable.engine.events import EventDispatcher
from turntable.engine.health import HealthMonitor, log_failure
from turntable.engine.process import ProcessSupervisor
from turntable.errors import EngineError
from turntable.ipc.commands import (
    PROP_PAUSE,
    PROP_SPEED,
    PROP_VOLUME,
    CycleProperty,
    GetProperty,
    LoadFile,
    SetProperty,
    seek_to,
    set_loop_file,
    set_pause,
)
from turntable.ipc.transport import ControlTransport, UnixSocketTransport
from turntable.notifications import Finished, Listener, NotificationBus
from turntable.state import (
    PlaybackIntent,
    PlaybackStateTracker,
    PlayerPhase,
    ProgressSnapshot,
)

logger = logging.getLogger(__name__)


def _require_url(url: str) -> None:
    if not isinstance(url, str) or not url.strip():
        raise ValueError("url must be a non-empty string")


class EngineController:
    """
    Owned, explicitly constructed player engine.

    The owner is responsible for calling close() exactly once at shutdown
    (or using the controller as a context manager).
    """

    def __init__(
        self,
        config: Optional[TurntableConfig] = None,
        transport_factory: Callable[[str], ControlTransport] = UnixSocketTransport,
    ) -> None:
        self._config = config or TurntableConfig()

        self._bus = NotificationBus()
        self._tracker = PlaybackStateTracker(self._bus)
        self._dispatcher = EventDispatcher(
            self._tracker,
            self._bus,
            file_load_timeout=self._config.file_load_timeout_sec,
        )
        self._supervisor = ProcessSupervisor(
            self._config,
            self._tracker,
            self._bus,
            self._dispatcher,
            transport_factory=transport_factory,
        )
        self._health = HealthMonitor(
            self._config,
            self._supervisor,
            self._tracker,
            self._bus,
            intent_provider=lambda: self.intent,
        )
        self._dispatcher.set_track_end_hook(self._on_track_end)

        self._intent_lock = threading.Lock()
        self._intent = PlaybackIntent()
        self._closed = False

    # Read-only state

    @property
    def config(self) -> TurntableConfig:
        return self._config

    @property
    def phase(self) -> PlayerPhase:
        return self._tracker.phase

    @property
    def progress(self) -> ProgressSnapshot:
        return self._tracker.progress

    @property
    def intent(self) -> PlaybackIntent:
        return self._intent

    @property
    def supervisor(self) -> ProcessSupervisor:
        return self._supervisor

    @property
    def health(self) -> HealthMonitor:
        return self._health

    @property
    def bus(self) -> NotificationBus:
        return self._bus

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a notification listener; returns an unsubscribe callable."""
        return self._bus.subscribe(listener)

    # Commands

    def load(self, url: str) -> None:
        """Load a track paused (preload without playing)."""
        _require_url(url)
        if not self._guard("load"):
            return
        intent = self._update_intent(lambda i: i.with_track(url, playing=False))
        self._health.stop_stall_watchdog()
        log_failure(self._supervisor.send(LoadFile(url)), f"Loading {url}")
        log_failure(self._supervisor.send(set_pause(True)), "Pausing after load")
        self._apply_loop(intent)

    def play(self, url: str) -> None:
        """
        Load a track and play it.

        An engine that refuses the track yields Finished so a playlist can
        move on; play() is never re-entered from that path.
        """
        _require_url(url)
        if not self._guard("play"):
            return
        intent = self._update_intent(lambda i: i.with_track(url, playing=True))
        # on_settled sees the real reply, also when the load waits in the queue
        self._supervisor.send(LoadFile(url), on_settled=lambda f: self._on_play_loaded(url, f))
        log_failure(self._supervisor.send(set_pause(False)), "Unpausing for play")
        self._apply_loop(intent)

    def _on_play_loaded(self, url: str, future: Future) -> None:
        error = future.exception()
        if error is None:
            intent = self._intent
            if intent.url == url and intent.playing:
                self._health.start_stall_watchdog()
            return
        if self._intent.url != url:
            logger.debug(f"Load of {url} failed after it was superseded: {error}")
            return
        logger.error(f"Failed to play {url}: {error}")
        self._update_intent(lambda i: i.with_playing(False))
        self._bus.publish(Finished())

    def toggle_pause(self) -> None:
        """
        Flip between Playing and Paused.

        The resulting phase is published optimistically; the engine's pause
        property-change reconciles it. Requires a ready engine because the
        current pause state has to be read first.
        """
        if not self._guard("toggle_pause"):
            return
        if not self._supervisor.is_ready():
            logger.info("Engine not ready, ignoring toggle_pause")
            return

        timeout = self._config.request_timeout_sec
        try:
            paused = self._supervisor.send(GetProperty(PROP_PAUSE), internal=True).result(timeout=timeout + 1.0)
        except (EngineError, FuturesTimeoutError) as e:
            logger.warning(f"Could not read pause state, ignoring toggle_pause: {e}")
            return

        will_pause = not paused
        self._tracker.set_phase(PlayerPhase.PAUSED if will_pause else PlayerPhase.PLAYING)
        self._update_intent(lambda i: i.with_playing(not will_pause))
        if will_pause:
            self._health.stop_stall_watchdog()
        else:
            self._health.start_stall_watchdog()
        log_failure(self._supervisor.send(CycleProperty(PROP_PAUSE)), "Toggling pause")

    def seek(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError(f"Invalid seek position: {seconds} (must be >= 0)")
        if not self._guard("seek"):
            return
        log_failure(self._supervisor.send(seek_to(seconds)), f"Seeking to {seconds}")

    def set_volume(self, level: float) -> None:
        """Set the volume; level is 0.0-1.0, scaled to the engine's range."""
        if not 0.0 <= level <= 1.0:
            raise ValueError(f"Invalid volume: {level} (must be between 0.0 and 1.0)")
        if not self._guard("set_volume"):
            return
        value = level * self._config.volume_scale
        log_failure(self._supervisor.send(SetProperty(PROP_VOLUME, value)), f"Setting volume to {value}")

    def set_speed(self, factor: float) -> None:
        if factor <= 0:
            raise ValueError(f"Invalid speed: {factor} (must be > 0)")
        if not self._guard("set_speed"):
            return
        log_failure(self._supervisor.send(SetProperty(PROP_SPEED, factor)), f"Setting speed to {factor}")

    def set_loop(self, enabled: bool) -> None:
        """
        Store the loop preference; re-applied at once if a track is current.

        With no track loaded no engine command is issued (and no engine is
        started).
        """
        intent = self._update_intent(lambda i: i.with_loop(enabled))
        if intent.url is None:
            logger.debug(f"Loop set to {enabled}, no track loaded")
            return
        if not self._guard("set_loop"):
            return
        self._apply_loop(intent)

    def stop(self) -> None:
        """
        Stop playback and tear the engine down; the loop preference is kept.

        A recovery in progress is cancelled and waited for, so no engine is
        left running once stop() returns. The next command re-enables
        recovery.
        """
        self._health.cancel_recovery()
        self._health.stop_stall_watchdog(wait=False)
        self._update_intent(lambda i: i.cleared())
        self._supervisor.stop()
        self._health.wait_for_recovery(self._recovery_wait_timeout())

    def close(self) -> None:
        """Stop the engine and shut down notification delivery. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._health.shutdown()
        self.stop()
        self._bus.close()

    def __enter__(self) -> "EngineController":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Internals

    def _guard(self, command: str) -> bool:
        if self._closed:
            logger.warning(f"Ignoring {command}: controller is closed")
            return False

        if self._health.recovering:
            logger.warning(f"Ignoring {command}: engine recovery in progress")
            return False

        self._health.resume_recovery()

        if self._supervisor.session is None:
            try:
                self._supervisor.start()
            except EngineError as e:
                logger.error(f"Cannot {command}: {e}")
                return False
            return True

        if not self._supervisor.is_alive():
            logger.warning(f"Engine is not running, recovering before {command}")
            return self._health.recover()

        if self._supervisor.is_ready() and not self._health.check_health():
            logger.warning(f"Engine unhealthy, recovering before {command}")
            return self._health.recover()

        return True

    def _update_intent(self, transition: Callable[[PlaybackIntent], PlaybackIntent]) -> PlaybackIntent:
        with self._intent_lock:
            self._intent = transition(self._intent)
            return self._intent

    def _recovery_wait_timeout(self) -> float:
        config = self._config
        return (
            config.recovery_settle_sec
            + config.recovery_ready_timeout_sec
            + config.request_timeout_sec
            + config.kill_timeout_sec
            + 1.0
        )

    def _apply_loop(self, intent: PlaybackIntent) -> None:
        log_failure(self._supervisor.send(set_loop_file(intent.loop)), "Applying loop-file")

    def _on_track_end(self) -> None:
        # runs on the socket reader thread; the watchdog may be waiting on it
        self._health.stop_stall_watchdog(wait=False)
