"""
Request/response correlation for the engine's JSON IPC protocol.

RequestCorrelator assigns a monotonically increasing request_id to every
outgoing command, tracks the pending request until a reply with the same id
arrives (or its timer fires), and owns the outgoing queue used while the
engine is not ready yet. A queued command may carry an on_settled callback
that receives the real reply future once the command is flushed; commands
dropped from the queue on close never settle their callback.

Invariant: every allocated request id is settled exactly once. A pending
entry is popped under the lock by whichever of response, timeout or
disconnect gets there first; only the popper settles the future.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from turntable.errors import (
    EngineCommandError,
    EngineConnectionError,
    EngineError,
    EngineTimeoutError,
)
from turntable.ipc.commands import EngineCommand
from turntable.ipc.framing import encode_message

logger = logging.getLogger(__name__)

DEFAULT_REQUEST_TIMEOUT_SEC = 10.0

SettledCallback = Callable[[Future], None]


@dataclass
class PendingRequest:
    request_id: int
    command: List[Any]
    issued_at: float
    timer: threading.Timer
    future: Future


@dataclass
class QueuedCommand:
    command: EngineCommand
    on_settled: Optional[SettledCallback] = None


def completed_future(result: Any = None) -> Future:
    future: Future = Future()
    future.set_result(result)
    return future


def failed_future(error: BaseException) -> Future:
    future: Future = Future()
    future.set_exception(error)
    return future


def _settle(future: Future, on_settled: Optional[SettledCallback]) -> Future:
    if on_settled is not None:
        future.add_done_callback(on_settled)
    return future


class RequestCorrelator:
    """
    Matches engine replies to the commands that caused them.

    Two flags gate sending:
    - connected: a writer is attached; internal commands may be sent
    - ready: the queue has been flushed; external commands go straight out

    External commands issued while not ready are queued and answered at once
    with a None result, so callers never block on connection setup.
    """

    def __init__(self, request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SEC) -> None:
        self._request_timeout = request_timeout
        self._lock = threading.Lock()
        self._writer: Optional[Callable[[bytes], None]] = None
        self._ready = False
        self._closed = False
        self._next_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._queue: Deque[QueuedCommand] = deque()

    @property
    def connected(self) -> bool:
        return self._writer is not None

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def queued(self) -> Tuple[EngineCommand, ...]:
        with self._lock:
            return tuple(entry.command for entry in self._queue)

    def send(
        self,
        command: EngineCommand,
        internal: bool = False,
        timeout: Optional[float] = None,
        on_settled: Optional[SettledCallback] = None,
    ) -> Future:
        """
        Send a command, or queue it if the engine is not ready.

        Args:
            command: Typed engine command
            internal: Bypass the queue (health checks, property observation,
                      queue flushing); fails fast when not connected
            timeout: Reply window in seconds (default: request_timeout)
            on_settled: Called with the future of the engine's actual reply,
                        also for a command that was queued and flushed later

        Returns:
            Future resolving to the reply's data field, or failing with
            EngineCommandError / EngineTimeoutError / EngineConnectionError
        """
        wire = command.to_wire()
        window = timeout if timeout is not None else self._request_timeout

        with self._lock:
            if self._closed:
                return _settle(failed_future(EngineConnectionError("Engine session is closed")), on_settled)

            if not internal and not self._ready:
                self._queue.append(QueuedCommand(command, on_settled))
                logger.debug(f"Engine not ready, queued {wire[0]} ({len(self._queue)} queued)")
                return completed_future(None)

            if self._writer is None:
                return _settle(failed_future(EngineConnectionError("Engine socket is not connected")), on_settled)

            request_id = self._next_id
            self._next_id += 1

            future: Future = Future()
            timer = threading.Timer(window, self._expire, args=(request_id,))
            timer.daemon = True
            self._pending[request_id] = PendingRequest(
                request_id=request_id,
                command=wire,
                issued_at=time.monotonic(),
                timer=timer,
                future=future,
            )
            timer.start()

            try:
                self._writer(encode_message(wire, request_id))
            except EngineError as e:
                self._pending.pop(request_id, None)
                timer.cancel()
                write_error: Optional[EngineError] = e
            else:
                write_error = None

        if write_error is not None:
            logger.warning(f"Failed to send {wire[0]} (request_id={request_id}): {write_error}")
            future.set_exception(write_error)
        else:
            logger.debug(f"Sent request_id={request_id}: {wire}")
        return _settle(future, on_settled)

    def request(self, command: EngineCommand, timeout: Optional[float] = None) -> Any:
        """Send an internal command and block until it is settled."""
        window = timeout if timeout is not None else self._request_timeout
        future = self.send(command, internal=True, timeout=window)
        return future.result(timeout=window + 1.0)

    def handle_response(self, message: Dict[str, Any]) -> bool:
        """
        Settle the pending request matching message["request_id"].

        Returns:
            True if a pending request was settled, False for stale or unknown ids
        """
        request_id = message.get("request_id")
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            logger.debug(f"Ignoring reply for unknown or expired request_id={request_id}")
            return False

        pending.timer.cancel()
        error = message.get("error")
        if error == "success":
            pending.future.set_result(message.get("data"))
        else:
            pending.future.set_exception(EngineCommandError(str(error), pending.command))
        return True

    def _expire(self, request_id: int) -> None:
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            return
        elapsed = time.monotonic() - pending.issued_at
        logger.warning(f"Engine request {pending.command[0]} (request_id={request_id}) timed out after {elapsed:.1f}s")
        pending.future.set_exception(
            EngineTimeoutError(request_id, pending.timer.interval, pending.command)
        )

    def attach(self, writer: Callable[[bytes], None]) -> None:
        """Mark the socket connected; internal commands may now be sent."""
        with self._lock:
            if self._closed:
                raise EngineConnectionError("Engine session is closed")
            self._writer = writer

    def pop_queued_or_mark_ready(self) -> Optional[EngineCommand]:
        """
        Take the oldest queued command, or flip to ready if the queue is empty.

        Used by the queue flush after connect. Commands issued while the flush
        is running are appended behind the queued ones, so FIFO order holds
        across the readiness boundary.
        """
        entry = self._pop_entry_or_mark_ready()
        return entry.command if entry is not None else None

    def flush_next(self) -> Optional[Tuple[EngineCommand, Future]]:
        """
        Send the oldest queued command as an internal request.

        Returns:
            (command, reply future), or None once the queue is drained and
            the correlator is ready. The command's on_settled callback is
            attached to the reply future.
        """
        entry = self._pop_entry_or_mark_ready()
        if entry is None:
            return None
        return entry.command, self.send(entry.command, internal=True, on_settled=entry.on_settled)

    def _pop_entry_or_mark_ready(self) -> Optional[QueuedCommand]:
        with self._lock:
            if self._closed or self._writer is None:
                return None
            if self._queue:
                return self._queue.popleft()
            self._ready = True
            return None

    def disconnect(self, reason: str = "Engine socket closed") -> None:
        """Socket lost: not ready, not connected, fail every pending request."""
        with self._lock:
            self._writer = None
            self._ready = False
            pending = list(self._pending.values())
            self._pending.clear()
        self._fail(pending, reason)

    def close(self, reason: str = "Engine session closed") -> None:
        """Session teardown: also drop the queue and refuse further sends."""
        with self._lock:
            self._closed = True
            self._writer = None
            self._ready = False
            dropped = len(self._queue)
            self._queue.clear()
            pending = list(self._pending.values())
            self._pending.clear()
        if dropped:
            logger.info(f"Dropped {dropped} queued engine command(s) on close")
        self._fail(pending, reason)

    @staticmethod
    def _fail(pending: List[PendingRequest], reason: str) -> None:
        for entry in pending:
            entry.timer.cancel()
            entry.future.set_exception(EngineConnectionError(reason))
