"""
EngineSession: the live binding to one spawned engine process.

A session is created by ProcessSupervisor.start() and discarded wholesale by
stop(); nothing is carried over from one session to the next.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from typing import Optional

from turntable.ipc.correlator import RequestCorrelator
from turntable.ipc.framing import LineFramer
from turntable.ipc.transport import ControlTransport

logger = logging.getLogger(__name__)


class EngineSession:
    """
    Process handle, socket, framer and correlator of one engine instance.
    """

    def __init__(
        self,
        process: subprocess.Popen,
        socket_path: str,
        correlator: RequestCorrelator,
        framer: Optional[LineFramer] = None,
    ) -> None:
        self.process = process
        self.socket_path = socket_path
        self.correlator = correlator
        self.framer = framer or LineFramer()
        self.transport: Optional[ControlTransport] = None
        self.started_at = time.monotonic()
        self.closed = threading.Event()
        self._lock = threading.Lock()

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    @property
    def ready(self) -> bool:
        return not self.closed.is_set() and self.correlator.ready

    def is_alive(self) -> bool:
        return not self.closed.is_set() and self.process.poll() is None

    def attach_transport(self, transport: ControlTransport) -> bool:
        """
        Bind a connected transport to this session.

        Returns:
            False if the session was closed meanwhile (the transport is closed)
        """
        with self._lock:
            if self.closed.is_set():
                attached = False
            else:
                self.transport = transport
                attached = True
        if not attached:
            transport.close()
        return attached

    def close(self) -> None:
        """Fail pending requests, drop the queue and close the socket. Idempotent."""
        with self._lock:
            if self.closed.is_set():
                return
            self.closed.set()
            transport = self.transport
            self.transport = None
        self.correlator.close()
        if transport is not None:
            transport.close()
        self.framer.reset()
