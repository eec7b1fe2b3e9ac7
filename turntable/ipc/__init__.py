"""
Wire layer for the engine's JSON IPC: typed commands, line framing,
request/response correlation and the control socket transport.
"""

from turntable.ipc.commands import (
    CycleProperty,
    EngineCommand,
    GetProperty,
    LoadFile,
    ObserveProperty,
    SetProperty,
)
from turntable.ipc.correlator import RequestCorrelator
from turntable.ipc.framing import LineFramer, encode_message
from turntable.ipc.transport import ControlTransport, UnixSocketTransport

__all__ = [
    "CycleProperty",
    "EngineCommand",
    "GetProperty",
    "LoadFile",
    "ObserveProperty",
    "SetProperty",
    "RequestCorrelator",
    "LineFramer",
    "encode_message",
    "ControlTransport",
    "UnixSocketTransport",
]
