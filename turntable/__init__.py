"""
turntable: supervised mpv playback engine for a desktop music player.
"""

from turntable.config import TurntableConfig, load_config
from turntable.engine.controller import EngineController
from turntable.notifications import EngineFailed, Finished, ProgressUpdated, StateChanged
from turntable.state import PlaybackIntent, PlayerPhase, ProgressSnapshot

__version__ = "0.1.0"

__all__ = [
    "TurntableConfig",
    "load_config",
    "EngineController",
    "EngineFailed",
    "Finished",
    "ProgressUpdated",
    "StateChanged",
    "PlaybackIntent",
    "PlayerPhase",
    "ProgressSnapshot",
]
