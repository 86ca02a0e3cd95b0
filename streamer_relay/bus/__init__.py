"""bus: Queue-document command bus and OBS state mirror."""
from .mirror import OBS_DOC, SurfaceStateMirror
from .queue import (
    OBS_COMMANDS,
    SCRIPTS_QUEUE,
    ControlCommand,
    QueueDrainLoop,
    SurfaceCommandDispatcher,
)
from .scripts import (
    SCRIPTS_LOGGER,
    ScriptCall,
    ScriptContext,
    ScriptDispatcher,
    ScriptError,
    ScriptLoadError,
    ScriptNotFound,
    ScriptRegistry,
    ScriptThrew,
)

__all__ = [
    "OBS_COMMANDS",
    "OBS_DOC",
    "SCRIPTS_LOGGER",
    "SCRIPTS_QUEUE",
    "ControlCommand",
    "QueueDrainLoop",
    "ScriptCall",
    "ScriptContext",
    "ScriptDispatcher",
    "ScriptError",
    "ScriptLoadError",
    "ScriptNotFound",
    "ScriptRegistry",
    "ScriptThrew",
    "SurfaceCommandDispatcher",
    "SurfaceStateMirror",
]
