"""
bus/scripts.py: User automation scripts.

A project opts in by placing control/scripts.py next to its control panel.
Every public top-level function in that module becomes a script, named after
the function:

    # control/scripts.py
    async def next_round(params, context):
        context.debug.debug(f"next_round {params}")
        doc = await context.db.get("score")
        doc["round"] += 1
        await context.db.put(doc)
        await context.obs.call("SetCurrentProgramScene", {"sceneName": "Round"})
        return doc["round"]

Scripts may be plain or async functions. The panel calls them by appending
{"name": "next_round", "params": [...]} to the scripts_queue document.
"""

from __future__ import annotations

import importlib.util
import inspect
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from pydantic import BaseModel, Field

log = logging.getLogger(__name__)

SCRIPTS_LOGGER = "streamer_relay.scripts"
SCRIPTS_FILE = Path("control") / "scripts.py"


class ScriptError(Exception):
    pass


class ScriptNotFound(ScriptError):
    pass


class ScriptThrew(ScriptError):
    pass


class ScriptLoadError(ScriptError):
    pass


class ScriptCall(BaseModel):
    """One entry of the scripts_queue document."""
    name: str
    params: list[Any] = Field(default_factory=list)


@dataclass
class ScriptContext:
    """Second argument handed to every script."""
    debug: logging.Logger
    db: Any
    obs: Any


class ScriptRegistry:
    def __init__(self, scripts: Optional[dict[str, Callable]] = None):
        self._scripts: dict[str, Callable] = dict(scripts or {})

    def register(self, name: str, fn: Callable) -> None:
        self._scripts[name] = fn

    def get(self, name: str) -> Callable:
        try:
            return self._scripts[name]
        except KeyError:
            raise ScriptNotFound(f"Script '{name}' not found") from None

    def names(self) -> list[str]:
        return sorted(self._scripts)

    def __contains__(self, name: str) -> bool:
        return name in self._scripts

    def __len__(self) -> int:
        return len(self._scripts)

    @classmethod
    def from_module(cls, module: Any) -> "ScriptRegistry":
        scripts = {
            name: obj
            for name, obj in vars(module).items()
            if not name.startswith("_")
            and inspect.isfunction(obj)
            and obj.__module__ == module.__name__
        }
        return cls(scripts)

    @classmethod
    def load(cls, path: Path) -> "ScriptRegistry":
        """Import a scripts file. A missing file gives an empty registry."""
        if not path.exists():
            log.debug(f"No scripts file at {path}")
            return cls()
        spec = importlib.util.spec_from_file_location("streamer_user_scripts", path)
        if spec is None or spec.loader is None:
            raise ScriptLoadError(f"Cannot import scripts from {path}")
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            raise ScriptLoadError(f"Error loading {path}: {e}") from e
        registry = cls.from_module(module)
        log.info(f"Loaded {len(registry)} script(s) from {path}: {', '.join(registry.names()) or '-'}")
        return registry


class ScriptDispatcher:
    """Runs one scripts_queue item against the registry."""

    def __init__(self, registry: ScriptRegistry, context: ScriptContext):
        self.registry = registry
        self.context = context

    async def __call__(self, item: dict) -> Any:
        call = ScriptCall.model_validate(item)
        fn = self.registry.get(call.name)
        self.context.debug.debug(f"Calling a script: {call.name} {call.params}")
        try:
            result = fn(call.params, self.context)
            if inspect.isawaitable(result):
                result = await result
        except Exception as e:
            raise ScriptThrew(f"Script '{call.name}' raised {type(e).__name__}: {e}") from e
        self.context.debug.debug(f"[Script Call Result] call: {call.name} result: {result!r}")
        return result
