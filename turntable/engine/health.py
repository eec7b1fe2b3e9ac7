"""
Health checks, recovery and the stall watchdog for the engine process.

HealthMonitor runs the Healthy -> Checking -> (Healthy | Recovering) ->
Healthy state machine:

- check_health(): cheap property read with a short timeout, one retry after
  a backoff; two consecutive failures mean unhealthy
- recover(): mutually exclusive teardown + respawn + replay of the last
  playback intent, retried on a bounded backoff schedule; cancel_recovery()
  aborts it at the next step and stops any engine it already spawned
- stall watchdog: while playing, polls the playback position; a failed poll
  or a position stuck over several polls runs a health check, and an
  unhealthy engine is recovered

Recovery does not seek back to the pre-failure position: the replayed track
restarts from zero and progress is reset.
"""

from __future__ import annotations

import enum
import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Callable, Optional

from turntable.config import TurntableConfig
from turntable.engine.process import ProcessSupervisor
from turntable.engine.session import EngineSession
from turntable.errors import EngineError, EngineRecoveryError
from turntable.ipc.commands import (
    PROP_TIME_POS,
    PROP_VOLUME,
    GetProperty,
    LoadFile,
    set_loop_file,
    set_pause,
)
from turntable.notifications import EngineFailed, NotificationBus
from turntable.state import PlaybackIntent, PlaybackStateTracker, PlayerPhase

logger = logging.getLogger(__name__)

READY_POLL_INTERVAL_SEC = 0.05


class _RecoveryCancelled(Exception):
    """Raised inside a recovery attempt once the owner has stopped the engine."""


class HealthState(enum.Enum):
    HEALTHY = "healthy"
    CHECKING = "checking"
    RECOVERING = "recovering"


def log_failure(future: Future, what: str) -> None:
    """Log (never raise) the failure of a fire-and-forget engine command."""

    def _done(f: Future) -> None:
        error = f.exception()
        if error is not None:
            logger.warning(f"{what} failed: {error}")

    future.add_done_callback(_done)


class HealthMonitor:
    """
    Health & recovery state machine for one ProcessSupervisor.
    """

    def __init__(
        self,
        config: TurntableConfig,
        supervisor: ProcessSupervisor,
        tracker: PlaybackStateTracker,
        bus: NotificationBus,
        intent_provider: Callable[[], PlaybackIntent],
    ) -> None:
        """
        Args:
            config: Health check, watchdog and recovery timings
            supervisor: Process owner used to query, stop, start and replay
            tracker: Read for the current phase (stall detection only while Playing)
            bus: Notification bus for surfaced recovery failures
            intent_provider: Returns the caller's current PlaybackIntent
        """
        self._config = config
        self._supervisor = supervisor
        self._tracker = tracker
        self._bus = bus
        self._intent_provider = intent_provider

        self._state = HealthState.HEALTHY
        self._state_lock = threading.Lock()
        self._recover_lock = threading.Lock()
        # Set by the owner on stop; a running or later recovery aborts
        self._cancel = threading.Event()
        self._shut_down = False

        self._watchdog_lock = threading.Lock()
        self._stall_thread: Optional[threading.Thread] = None
        self._stall_stop: Optional[threading.Event] = None

        self.recovery_count = 0

    @property
    def state(self) -> HealthState:
        return self._state

    @property
    def recovering(self) -> bool:
        return self._state == HealthState.RECOVERING

    def _set_state(self, state: HealthState) -> None:
        with self._state_lock:
            old = self._state
            self._state = state
        if old != state:
            logger.debug(f"Health state {old.value} -> {state.value}")

    # Health check

    def check_health(self) -> bool:
        """
        Verify the engine answers a cheap property read.

        Returns:
            True if healthy, False after two consecutive failed checks or if
            the engine process is not alive
        """
        if not self._supervisor.is_alive():
            logger.warning("Health check: engine process is not running")
            return False

        with self._state_lock:
            entered_checking = self._state == HealthState.HEALTHY
            if entered_checking:
                self._state = HealthState.CHECKING

        try:
            if self._query_volume():
                return True
            logger.warning(
                f"Engine health check failed, retrying in {self._config.health_retry_backoff_sec:.1f}s"
            )
            time.sleep(self._config.health_retry_backoff_sec)
            if self._query_volume():
                return True
            logger.error("Engine failed two consecutive health checks")
            return False
        finally:
            if entered_checking:
                with self._state_lock:
                    if self._state == HealthState.CHECKING:
                        self._state = HealthState.HEALTHY

    def _query_volume(self) -> bool:
        timeout = self._config.health_check_timeout_sec
        future = self._supervisor.send(GetProperty(PROP_VOLUME), internal=True, timeout=timeout)
        try:
            future.result(timeout=timeout + 1.0)
            return True
        except (EngineError, FuturesTimeoutError) as e:
            logger.debug(f"Health check query failed: {e}")
            return False

    # Recovery

    def cancel_recovery(self) -> None:
        """
        Abort a running recovery and refuse new ones until resume_recovery().

        A cancelled recovery stops any engine it has already spawned.
        """
        self._cancel.set()

    def resume_recovery(self) -> None:
        """Allow recoveries again after cancel_recovery(); no-op after shutdown()."""
        if not self._shut_down:
            self._cancel.clear()

    def shutdown(self) -> None:
        """Cancel recovery for good; nothing will start an engine again."""
        self._shut_down = True
        self._cancel.set()

    def wait_for_recovery(self, timeout: float) -> bool:
        """
        Block until no recovery is running.

        Returns:
            False if a recovery was still running after timeout
        """
        if not self._recover_lock.acquire(timeout=timeout):
            logger.warning(f"Engine recovery still running after {timeout:.1f}s")
            return False
        self._recover_lock.release()
        return True

    def recover(self) -> bool:
        """
        Replace the engine session and replay the last playback intent.

        Mutually exclusive: a call while a recovery is running logs and
        returns False without doing anything. A call after cancel_recovery()
        returns False as well.

        Returns:
            True if a responsive engine was brought back
        """
        if self._cancel.is_set():
            logger.info("Engine recovery cancelled, not recovering")
            return False
        if not self._recover_lock.acquire(blocking=False):
            logger.warning("Engine recovery already in progress, ignoring")
            return False

        try:
            self._set_state(HealthState.RECOVERING)
            self.recovery_count += 1
            intent = self._intent_provider()
            self.stop_stall_watchdog()

            max_attempts = self._config.recovery_max_attempts
            schedule = self._config.recovery_backoff_ms
            for attempt in range(1, max_attempts + 1):
                try:
                    self._recover_once(intent, attempt)
                    logger.info(f"Engine recovered (attempt {attempt}/{max_attempts})")
                    return True
                except _RecoveryCancelled as e:
                    logger.info(f"Engine recovery cancelled {e}, stopping engine")
                    self.stop_stall_watchdog(wait=False)
                    self._supervisor.stop()
                    return False
                except EngineError as e:
                    error = e if isinstance(e, EngineRecoveryError) else EngineRecoveryError(f"Recovery failed: {e}")
                    logger.error(f"Engine recovery attempt {attempt}/{max_attempts} failed: {e}")
                    self._bus.publish(EngineFailed(error))
                    if attempt < max_attempts:
                        delay_ms = schedule[min(attempt - 1, len(schedule) - 1)]
                        logger.info(f"Retrying engine recovery in {delay_ms / 1000.0:.1f}s")
                        if self._cancel.wait(delay_ms / 1000.0):
                            logger.info("Engine recovery cancelled before retry")
                            self._supervisor.stop()
                            return False

            logger.error(f"Engine recovery gave up after {max_attempts} attempts")
            self._supervisor.stop()
            self._bus.publish(
                EngineFailed(
                    EngineRecoveryError(f"Engine recovery gave up after {max_attempts} attempts", exhausted=True)
                )
            )
            return False
        finally:
            self._set_state(HealthState.HEALTHY)
            self._recover_lock.release()

    def _check_cancelled(self, stage: str) -> None:
        if self._cancel.is_set():
            raise _RecoveryCancelled(stage)

    def _recover_once(self, intent: PlaybackIntent, attempt: int) -> None:
        logger.info(
            f"Recovering engine (attempt {attempt}, url={intent.url}, was_playing={intent.playing})"
        )
        self._supervisor.stop()
        self._cancel.wait(self._config.recovery_settle_sec)
        self._check_cancelled("before restart")
        session = self._supervisor.start()
        self._wait_until_ready(session)
        if intent.url:
            self._check_cancelled("before replay")
            self._replay(intent)
        self._check_cancelled("after restart")

    def _wait_until_ready(self, session: EngineSession) -> None:
        timeout = self._config.recovery_ready_timeout_sec
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            self._check_cancelled("while waiting for the engine")
            if session.ready:
                return
            exit_code = session.process.poll()
            if exit_code is not None:
                raise EngineRecoveryError(f"Engine process exited during startup (exit code: {exit_code})")
            if session.closed.is_set():
                raise EngineRecoveryError("Engine session was closed during startup")
            self._cancel.wait(READY_POLL_INTERVAL_SEC)
        raise EngineRecoveryError(f"Engine did not become ready within {timeout:.1f}s")

    def _replay(self, intent: PlaybackIntent) -> None:
        load = self._supervisor.send(LoadFile(intent.url))
        try:
            load.result(timeout=self._config.request_timeout_sec + 1.0)
        except (EngineError, FuturesTimeoutError) as e:
            # the engine is up; a track it refuses is not a recovery failure
            logger.warning(f"Replaying {intent.url} after recovery failed: {e}")
            return

        log_failure(self._supervisor.send(set_loop_file(intent.loop)), "Re-applying loop-file")
        if intent.playing:
            self._cancel.wait(self._config.recovery_unpause_delay_sec)
            self._check_cancelled("before resuming playback")
            log_failure(self._supervisor.send(set_pause(False)), "Resuming playback after recovery")
            self.start_stall_watchdog()
        else:
            log_failure(self._supervisor.send(set_pause(True)), "Restoring pause after recovery")

    # Stall watchdog

    @property
    def stall_watchdog_running(self) -> bool:
        with self._watchdog_lock:
            return (
                self._stall_thread is not None
                and self._stall_thread.is_alive()
                and self._stall_stop is not None
                and not self._stall_stop.is_set()
            )

    def start_stall_watchdog(self) -> None:
        with self._watchdog_lock:
            if (
                self._stall_thread is not None
                and self._stall_thread.is_alive()
                and self._stall_stop is not None
                and not self._stall_stop.is_set()
            ):
                return
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._stall_loop,
                args=(stop_event,),
                daemon=True,
                name="StallWatchdog",
            )
            self._stall_stop = stop_event
            self._stall_thread = thread
            thread.start()
        logger.debug("Stall watchdog started")

    def stop_stall_watchdog(self, wait: bool = True) -> None:
        with self._watchdog_lock:
            stop_event = self._stall_stop
            thread = self._stall_thread
            self._stall_stop = None
            self._stall_thread = None
        if stop_event is None:
            return
        stop_event.set()
        if wait and thread is not None and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=1.0)
        logger.debug("Stall watchdog stopped")

    def _stall_loop(self, stop_event: threading.Event) -> None:
        interval = self._config.stall_check_interval_sec
        timeout = self._config.health_check_timeout_sec
        last_position: Optional[float] = None
        stalled_polls = 0

        while not stop_event.wait(interval):
            if self.recovering:
                continue
            if self._tracker.phase != PlayerPhase.PLAYING:
                last_position = None
                stalled_polls = 0
                continue

            future = self._supervisor.send(GetProperty(PROP_TIME_POS), internal=True, timeout=timeout)
            try:
                position = future.result(timeout=timeout + 1.0)
            except (EngineError, FuturesTimeoutError) as e:
                logger.warning(f"Stall watchdog could not read playback position: {e}")
            else:
                if last_position is not None and position == last_position:
                    stalled_polls += 1
                else:
                    stalled_polls = 0
                last_position = position
                if stalled_polls < self._config.stall_max_polls:
                    continue
                logger.warning(f"Playback position stuck at {position} for {stalled_polls} polls")
                stalled_polls = 0

            if stop_event.is_set():
                break
            if self.check_health():
                continue
            logger.error("Engine unhealthy during playback, recovering")
            self.recover()
