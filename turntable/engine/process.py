"""
Process supervisor for the external media engine (mpv).

ProcessSupervisor owns the engine process and its control socket:
- spawns the engine with a fresh, unique IPC socket address
- connects to the socket with bounded exponential backoff
- observes the properties the player needs and flushes queued commands
- routes socket messages to the correlator (replies) or dispatcher (events)
- tears everything down on stop(), killing the whole process tree

It is the only component that touches the socket or the process handle;
every write goes through the session's RequestCorrelator.
"""

from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
import uuid
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from typing import Any, Callable, Dict, List, Optional

import psutil

from turntable.config import TurntableConfig
from turntable.engine.events import EventDispatcher
from turntable.engine.session import EngineSession
from turntable.errors import (
    EngineConnectionError,
    EngineError,
    EngineNotRunningError,
    EngineSpawnError,
)
from turntable.ipc.commands import (
    PROP_DURATION,
    PROP_PAUSE,
    PROP_TIME_POS,
    EngineCommand,
    ObserveProperty,
)
from turntable.ipc.correlator import RequestCorrelator, SettledCallback, failed_future
from turntable.ipc.framing import LineFramer
from turntable.ipc.transport import ControlTransport, UnixSocketTransport
from turntable.notifications import EngineFailed, NotificationBus
from turntable.state import PlaybackStateTracker, PlayerPhase

logger = logging.getLogger(__name__)

# Properties observed on every new connection, in observer-id order
OBSERVED_PROPERTIES = (PROP_TIME_POS, PROP_DURATION, PROP_PAUSE)

SOCKET_NAME_PREFIX = "turntable-mpv-"


def make_socket_path(socket_dir: Optional[str] = None) -> str:
    """Return a unique IPC socket path for a new engine process."""
    directory = socket_dir or tempfile.gettempdir()
    return os.path.join(directory, f"{SOCKET_NAME_PREFIX}{uuid.uuid4().hex[:8]}.sock")


def build_engine_command(config: TurntableConfig, socket_path: str) -> List[str]:
    """
    Build the engine command line.

    Headless audio-only playback with a generous demuxer cache, controlled
    exclusively through the IPC socket.
    """
    return [
        config.engine_binary,
        f"--input-ipc-server={socket_path}",
        "--idle=yes",
        "--no-video",
        "--no-terminal",
        "--audio-display=no",
        "--cache=yes",
        f"--demuxer-max-bytes={config.demuxer_max_bytes}",
        f"--demuxer-readahead-secs={config.demuxer_readahead_secs}",
        "--reset-on-next-file=af",
        *config.engine_extra_args,
    ]


def kill_process_tree(process: subprocess.Popen, timeout: float = 2.0) -> None:
    """
    Forcefully kill a process and every descendant it spawned.

    Children are collected before the parent dies (afterwards they are
    re-parented and no longer discoverable). A process that is already gone
    counts as killed.
    """
    pid = process.pid
    victims: List[psutil.Process] = []
    try:
        root = psutil.Process(pid)
        try:
            victims.extend(root.children(recursive=True))
        except psutil.NoSuchProcess:
            pass
        victims.append(root)
    except psutil.NoSuchProcess:
        logger.debug(f"Engine process {pid} already gone")

    for proc in victims:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logger.warning(f"Not allowed to kill process {proc.pid}: {e}")

    children = [proc for proc in victims if proc.pid != pid]
    if children:
        _, alive = psutil.wait_procs(children, timeout=timeout)
        for proc in alive:
            logger.warning(f"Engine helper process {proc.pid} did not exit after kill")

    try:
        process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Engine process {pid} did not exit within {timeout:.1f}s of kill")


class ProcessSupervisor:
    """
    Lifecycle owner of the engine process and its EngineSession.

    Only one session is current at a time; start() tears down any existing
    session before spawning, and stop() discards the session wholesale.
    """

    def __init__(
        self,
        config: TurntableConfig,
        tracker: PlaybackStateTracker,
        bus: NotificationBus,
        dispatcher: EventDispatcher,
        transport_factory: Callable[[str], ControlTransport] = UnixSocketTransport,
    ) -> None:
        """
        Args:
            config: Engine, connect and timeout settings
            tracker: Phase/progress owner (start announces Buffering, stop Idle)
            bus: Notification bus for surfaced failures
            dispatcher: Receives engine events from the socket reader
            transport_factory: Builds a transport for a socket path
        """
        self._config = config
        self._tracker = tracker
        self._bus = bus
        self._dispatcher = dispatcher
        self._transport_factory = transport_factory

        # start() and stop() run entirely under this lock
        self._lifecycle_lock = threading.RLock()
        self._session: Optional[EngineSession] = None
        self._stopping = False

    @property
    def session(self) -> Optional[EngineSession]:
        return self._session

    def is_alive(self) -> bool:
        session = self._session
        return session is not None and session.is_alive()

    def is_ready(self) -> bool:
        session = self._session
        return session is not None and session.ready

    def start(self) -> EngineSession:
        """
        Spawn a fresh engine process and begin connecting to it.

        Returns immediately after spawning; the socket connection and queue
        flush happen on a background thread. Commands sent before then are
        queued by the session's correlator.

        Raises:
            EngineSpawnError: If the engine binary could not be started
        """
        with self._lifecycle_lock:
            previous = self._session
            if previous is not None:
                logger.info(f"Engine session already exists, stopping it before start (PID: {previous.pid})")
                self._session = None
                self._dispatcher.cancel_watchdogs()
                self._teardown(previous)

            socket_path = make_socket_path(self._config.socket_dir)
            argv = build_engine_command(self._config, socket_path)
            logger.info(f"Starting engine: {' '.join(argv)}")

            try:
                process = subprocess.Popen(
                    argv,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                error = EngineSpawnError(f"Failed to start engine '{argv[0]}': {e}")
                logger.error(str(error))
                self._bus.publish(EngineFailed(error))
                self.stop()
                raise error from e

            session = EngineSession(
                process=process,
                socket_path=socket_path,
                correlator=RequestCorrelator(self._config.request_timeout_sec),
                framer=LineFramer(),
            )
            self._session = session
            logger.info(f"Engine started (PID: {process.pid})")

            self._tracker.reset_progress()
            self._tracker.set_phase(PlayerPhase.BUFFERING, force=True)

            threading.Thread(
                target=self._watch_exit,
                args=(session,),
                daemon=True,
                name="EngineExitWatcher",
            ).start()
            threading.Thread(
                target=self._connect,
                args=(session,),
                daemon=True,
                name="EngineConnect",
            ).start()
            return session

    def stop(self) -> None:
        """
        Tear down the current session. Idempotent.

        A re-entrant call made while this thread is already stopping is a
        no-op. A call from another thread waits for the running teardown (or
        start) to finish, then stops whatever session is current. Always ends
        by announcing Idle.
        """
        with self._lifecycle_lock:
            # Only the thread holding the lock can observe _stopping set
            if self._stopping:
                logger.debug("Engine stop already in progress, ignoring")
                return
            self._stopping = True
            try:
                session = self._session
                self._session = None
                self._dispatcher.cancel_watchdogs()
                if session is not None:
                    logger.info(f"Stopping engine (PID: {session.pid})")
                    self._teardown(session)
                    logger.info("Engine stopped")
                self._tracker.set_phase(PlayerPhase.IDLE, force=True)
            finally:
                self._stopping = False

    def _teardown(self, session: EngineSession) -> None:
        session.close()
        kill_process_tree(session.process, timeout=self._config.kill_timeout_sec)
        try:
            if os.path.exists(session.socket_path):
                os.unlink(session.socket_path)
        except OSError as e:
            logger.warning(f"Could not remove engine socket {session.socket_path}: {e}")

    def send(
        self,
        command: EngineCommand,
        internal: bool = False,
        timeout: Optional[float] = None,
        on_settled: Optional[SettledCallback] = None,
    ) -> Future:
        """
        Forward a command to the current session's correlator.

        Returns:
            Future of the reply data; fails with EngineNotRunningError if
            there is no session
        """
        session = self._session
        if session is None:
            future = failed_future(EngineNotRunningError("No engine session is running"))
            if on_settled is not None:
                future.add_done_callback(on_settled)
            return future
        return session.correlator.send(command, internal=internal, timeout=timeout, on_settled=on_settled)

    def _watch_exit(self, session: EngineSession) -> None:
        # Exit is only logged here; stop() is driven by callers and recovery
        try:
            code = session.process.wait()
        except Exception as e:
            logger.debug(f"Engine exit watcher stopped: {e}")
            return
        if session.closed.is_set():
            logger.debug(f"Engine process exited (PID: {session.pid}, exit code: {code})")
        else:
            logger.warning(f"Engine process exited unexpectedly (PID: {session.pid}, exit code: {code})")

    def _connect_delay(self, attempt: int) -> float:
        initial = self._config.connect_initial_delay_sec
        if attempt == 0:
            return initial
        return min(initial * (2 ** attempt), self._config.connect_max_backoff_sec)

    def _connect(self, session: EngineSession) -> None:
        max_retries = self._config.connect_max_retries

        for attempt in range(max_retries + 1):
            if session.closed.wait(self._connect_delay(attempt)):
                return

            if not session.is_alive():
                if session.closed.is_set():
                    return
                error = EngineConnectionError("Engine process exited before its socket accepted connections")
                logger.error(str(error))
                self._bus.publish(EngineFailed(error))
                return

            transport = self._transport_factory(session.socket_path)
            try:
                transport.connect(timeout=self._config.connect_timeout_sec)
            except EngineConnectionError as e:
                logger.debug(f"Engine socket not ready (attempt {attempt + 1}/{max_retries + 1}): {e}")
                continue

            if not session.attach_transport(transport):
                return
            self._on_connected(session, transport)
            return

        if session.closed.is_set():
            return
        error = EngineConnectionError(f"Engine socket connection timed out after {max_retries} retries")
        logger.error(str(error))
        self._bus.publish(EngineFailed(error))
        # a session that never connected counts as dead for the command guard
        session.close()

    def _on_connected(self, session: EngineSession, transport: ControlTransport) -> None:
        transport.start(
            on_bytes=lambda data: self._on_bytes(session, data),
            on_closed=lambda: self._on_socket_closed(session),
        )
        try:
            session.correlator.attach(transport.send)
        except EngineConnectionError:
            return
        logger.info(f"Engine socket connected ({session.socket_path})")

        for observer_id, name in enumerate(OBSERVED_PROPERTIES, start=1):
            try:
                session.correlator.request(ObserveProperty(observer_id, name))
            except (EngineError, FuturesTimeoutError) as e:
                logger.warning(f"Failed to observe engine property {name}: {e}")

        self._flush_queue(session)

    def _flush_queue(self, session: EngineSession) -> None:
        flushed = 0
        wait = self._config.request_timeout_sec + 1.0
        while True:
            item = session.correlator.flush_next()
            if item is None:
                break
            command, reply = item
            try:
                reply.result(timeout=wait)
            except (EngineError, FuturesTimeoutError) as e:
                logger.warning(f"Queued engine command {command.to_wire()} failed: {e}")
            flushed += 1

        if session.ready:
            logger.info(f"Engine ready ({flushed} queued command(s) flushed)")

    def _on_bytes(self, session: EngineSession, data: bytes) -> None:
        for message in session.framer.feed(data):
            self._route(session, message)

    def _route(self, session: EngineSession, message: Dict[str, Any]) -> None:
        if "event" in message:
            if session is self._session:
                self._dispatcher.dispatch(message)
        elif "request_id" in message:
            session.correlator.handle_response(message)
        else:
            logger.debug(f"Ignoring unclassified engine message: {message}")

    def _on_socket_closed(self, session: EngineSession) -> None:
        if session.closed.is_set():
            return
        logger.warning("Engine socket closed, session no longer usable")
        session.correlator.disconnect("Engine socket closed")
        session.close()
