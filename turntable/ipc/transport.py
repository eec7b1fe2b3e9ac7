"""
Control-channel transport for the engine's JSON IPC socket.

The transport layer is responsible for:
- Connecting to the engine's local socket
- Writing already-framed bytes
- Reading raw bytes in a background thread and handing them to a callback
- Reporting when the peer closes the connection

The transport does NOT:
- Split or parse messages (see framing.py)
- Allocate request ids or track replies (see correlator.py)
"""

import logging
import socket
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from turntable.errors import EngineConnectionError, EngineTransportError

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 8192


class ControlTransport(ABC):
    """
    Abstract base class for engine control transports.

    Allows the supervisor and tests to swap the socket implementation.
    """

    @abstractmethod
    def connect(self, timeout: float) -> None:
        """
        Open the connection.

        Raises:
            EngineConnectionError: If the engine is not accepting connections
        """

    @abstractmethod
    def start(self, on_bytes: Callable[[bytes], None], on_closed: Callable[[], None]) -> None:
        """
        Begin reading in a background thread.

        Args:
            on_bytes: Called with every chunk received, from the reader thread
            on_closed: Called once if the peer closes or the socket errors
                       (not called when close() was requested locally)
        """

    @abstractmethod
    def send(self, data: bytes) -> None:
        """
        Write bytes to the engine.

        Raises:
            EngineTransportError: If the write fails
        """

    @abstractmethod
    def close(self) -> None:
        """Close the connection and stop the reader thread. Idempotent."""


class UnixSocketTransport(ControlTransport):
    """
    AF_UNIX stream socket transport (mpv --input-ipc-server on POSIX).
    """

    def __init__(self, socket_path: str, read_timeout: float = 1.0):
        """
        Args:
            socket_path: Filesystem path of the engine's IPC socket
            read_timeout: recv() timeout so the reader notices close() promptly
        """
        self.socket_path = socket_path
        self._read_timeout = read_timeout
        self._sock: Optional[socket.socket] = None
        self._reader_thread: Optional[threading.Thread] = None
        self._send_lock = threading.Lock()
        self._running = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._sock is not None and not self._closed

    def connect(self, timeout: float) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        try:
            sock.connect(self.socket_path)
        except (OSError, socket.timeout) as e:
            sock.close()
            raise EngineConnectionError(f"Could not connect to {self.socket_path}: {e}") from e
        sock.settimeout(self._read_timeout)
        self._sock = sock
        self._closed = False
        logger.debug(f"Connected to engine socket {self.socket_path}")

    def start(self, on_bytes: Callable[[bytes], None], on_closed: Callable[[], None]) -> None:
        if self._sock is None:
            raise EngineConnectionError("Transport is not connected")
        if self._running:
            logger.warning("UnixSocketTransport reader already started")
            return
        self._running = True
        self._reader_thread = threading.Thread(
            target=self._read_loop,
            args=(on_bytes, on_closed),
            daemon=True,
            name="EngineSocketReader",
        )
        self._reader_thread.start()

    def _read_loop(self, on_bytes: Callable[[bytes], None], on_closed: Callable[[], None]) -> None:
        sock = self._sock
        try:
            while self._running:
                try:
                    data = sock.recv(READ_CHUNK_BYTES)
                except socket.timeout:
                    continue
                except OSError as e:
                    if self._running:
                        logger.warning(f"Engine socket read error: {e}")
                    break
                if not data:
                    logger.info("Engine socket closed by peer")
                    break
                try:
                    on_bytes(data)
                except Exception as e:
                    # A handler bug must not kill the reader
                    logger.error(f"Error handling engine bytes: {e}", exc_info=True)
        finally:
            peer_closed = self._running
            self._running = False
            if peer_closed:
                on_closed()

    def send(self, data: bytes) -> None:
        sock = self._sock
        if sock is None or self._closed:
            raise EngineConnectionError("Engine socket is not connected")
        with self._send_lock:
            try:
                sock.sendall(data)
            except OSError as e:
                raise EngineTransportError(f"Engine socket write failed: {e}") from e

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._running = False

        if self._sock is not None:
            try:
                self._sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            try:
                self._sock.close()
            except OSError:
                pass

        reader = self._reader_thread
        if reader is not None and reader.is_alive() and reader is not threading.current_thread():
            reader.join(timeout=self._read_timeout + 0.5)
            if reader.is_alive():
                logger.warning("Engine socket reader did not terminate within timeout")
        self._reader_thread = None
