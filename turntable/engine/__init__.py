"""
Engine supervision subsystem.

This package provides the components that own and drive the mpv process:
- EventDispatcher: Turns engine events into phase/progress updates
- ProcessSupervisor: Spawns, connects to and tears down the engine process
- HealthMonitor: Health checks, bounded recovery and the stall watchdog
- EngineController: Public command surface composing all of the above
"""

from turntable.engine.events import EventDispatcher
from turntable.engine.session import EngineSession
from turntable.engine.process import ProcessSupervisor
from turntable.engine.health import HealthMonitor, HealthState
from turntable.engine.controller import EngineController

__all__ = [
    "EventDispatcher",
    "EngineSession",
    "ProcessSupervisor",
    "HealthMonitor",
    "HealthState",
    "EngineController",
]
