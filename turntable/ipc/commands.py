"""
Typed engine commands.

Each verb the core speaks is a frozen dataclass carrying typed arguments.
Commands are turned into the engine's wire array form only at the transport
boundary via to_wire().
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Union

# Engine property names
PROP_PAUSE = "pause"
PROP_TIME_POS = "time-pos"
PROP_DURATION = "duration"
PROP_VOLUME = "volume"
PROP_SPEED = "speed"
PROP_LOOP_FILE = "loop-file"
PROP_PID = "pid"

SETTABLE_PROPERTIES = frozenset({PROP_PAUSE, PROP_TIME_POS, PROP_VOLUME, PROP_SPEED, PROP_LOOP_FILE})
READABLE_PROPERTIES = frozenset({PROP_PID, PROP_VOLUME, PROP_PAUSE, PROP_TIME_POS})
CYCLABLE_PROPERTIES = frozenset({PROP_PAUSE})
OBSERVABLE_PROPERTIES = frozenset({PROP_TIME_POS, PROP_DURATION, PROP_PAUSE})

LOADFILE_MODES = frozenset({"replace", "append", "append-play"})


@dataclass(frozen=True)
class LoadFile:
    """Load a URL, replacing the current track by default."""
    url: str
    mode: str = "replace"

    def __post_init__(self) -> None:
        if not self.url:
            raise ValueError("LoadFile requires a non-empty url")
        if self.mode not in LOADFILE_MODES:
            raise ValueError(f"Unsupported loadfile mode: {self.mode}")

    def to_wire(self) -> List[Any]:
        return ["loadfile", self.url, self.mode]


@dataclass(frozen=True)
class SetProperty:
    name: str
    value: Union[bool, int, float, str]

    def __post_init__(self) -> None:
        if self.name not in SETTABLE_PROPERTIES:
            raise ValueError(f"Property is not settable through this client: {self.name}")

    def to_wire(self) -> List[Any]:
        return ["set_property", self.name, self.value]


@dataclass(frozen=True)
class GetProperty:
    name: str

    def __post_init__(self) -> None:
        if self.name not in READABLE_PROPERTIES:
            raise ValueError(f"Property is not readable through this client: {self.name}")

    def to_wire(self) -> List[Any]:
        return ["get_property", self.name]


@dataclass(frozen=True)
class CycleProperty:
    name: str

    def __post_init__(self) -> None:
        if self.name not in CYCLABLE_PROPERTIES:
            raise ValueError(f"Property cannot be cycled through this client: {self.name}")

    def to_wire(self) -> List[Any]:
        return ["cycle", self.name]


@dataclass(frozen=True)
class ObserveProperty:
    """Subscribe to property-change events; observer_id is echoed back by the engine."""
    observer_id: int
    name: str

    def __post_init__(self) -> None:
        if self.name not in OBSERVABLE_PROPERTIES:
            raise ValueError(f"Property is not observed by this client: {self.name}")

    def to_wire(self) -> List[Any]:
        return ["observe_property", self.observer_id, self.name]


EngineCommand = Union[LoadFile, SetProperty, GetProperty, CycleProperty, ObserveProperty]


def set_pause(paused: bool) -> SetProperty:
    return SetProperty(PROP_PAUSE, bool(paused))


def set_loop_file(enabled: bool) -> SetProperty:
    # loop-file takes "inf" (loop forever) or "no"
    return SetProperty(PROP_LOOP_FILE, "inf" if enabled else "no")


def seek_to(seconds: float) -> SetProperty:
    return SetProperty(PROP_TIME_POS, float(seconds))
