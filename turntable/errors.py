"""
Error taxonomy for the turntable engine core.

Transport, protocol and timeout errors stay local to the request that hit
them. Spawn, fatal connection and recovery errors are also published to
listeners as EngineFailed notifications.
"""

from typing import Optional


class EngineError(Exception):
    """Base class for every error raised by the engine core."""


class EngineTransportError(EngineError):
    """Socket connect/write failure on the control channel."""


class EngineConnectionError(EngineTransportError):
    """The control channel is not (or no longer) connected."""


class EngineNotRunningError(EngineConnectionError):
    """No engine session exists to carry the command."""


class EngineCommandError(EngineError):
    """
    The engine answered a request with a non-"success" error string.

    Attributes:
        reason: Error string reported by the engine (e.g. "property unavailable")
        command: Wire form of the rejected command, when known
    """

    def __init__(self, reason: str, command: Optional[list] = None) -> None:
        self.reason = reason
        self.command = command
        if command:
            super().__init__(f"{command[0]} failed: {reason}")
        else:
            super().__init__(reason)


class EngineTimeoutError(EngineError):
    """A request received no reply inside its timeout window."""

    def __init__(self, request_id: int, timeout: float, command: Optional[list] = None) -> None:
        self.request_id = request_id
        self.timeout = timeout
        self.command = command
        verb = command[0] if command else "request"
        super().__init__(f"{verb} (request_id={request_id}) timed out after {timeout:.1f}s")


class EngineSpawnError(EngineError):
    """The engine process could not be started."""


class EngineRecoveryError(EngineError):
    """
    A recovery attempt failed to bring up a responsive engine.

    exhausted is set on the final error, once no attempts are left.
    """

    def __init__(self, message: str, exhausted: bool = False) -> None:
        self.exhausted = exhausted
        super().__init__(message)
