"""
runtime.py: Startup lifecycle for the store, the OBS session and the bus.

On start:
  1. Stale session state is cleared: `obs`, `obs_commands` and
     `scripts_queue` are deleted, then both queues are recreated empty.
  2. If the project has a control/ folder, control/scripts.py is loaded and
     both drain loops are armed. While OBS is unavailable each obs_commands
     item fails on its own.
  3. One OBS connection attempt, run as a background task so the HTTP
     server does not wait for it. Failure disables OBS control only.
  4. When OBS identified: the mirror refreshes `obs`, follows scene changes,
     and the session becomes operational.

Store and session are passed in or built from settings; nothing here is a
module-level singleton.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from streamer_relay.bus import (
    OBS_COMMANDS,
    OBS_DOC,
    SCRIPTS_LOGGER,
    SCRIPTS_QUEUE,
    QueueDrainLoop,
    ScriptContext,
    ScriptDispatcher,
    ScriptLoadError,
    ScriptRegistry,
    SurfaceCommandDispatcher,
    SurfaceStateMirror,
)
from streamer_relay.config import Settings
from streamer_relay.core import OBSSession
from streamer_relay.store import DocumentNotFound, DocumentStore

log = logging.getLogger(__name__)

DB_NAME = "streamer"


class Runtime:
    def __init__(
        self,
        settings: Settings,
        store: Optional[DocumentStore] = None,
        session: Optional[OBSSession] = None,
        registry: Optional[ScriptRegistry] = None,
    ):
        self.settings = settings
        self.project_dir: Path = settings.server.project_dir
        self.control_enabled = (self.project_dir / "control").is_dir()

        if store is None:
            dbpath = self.project_dir / settings.server.dbpath if self.control_enabled else None
            store = DocumentStore(DB_NAME, dbpath)
        self.store = store
        self.session = session or OBSSession(
            host=settings.obs.host,
            port=settings.obs.port,
            password=settings.obs.password,
        )
        self.registry = registry
        self.mirror = SurfaceStateMirror(self.store, self.session)
        self.scripts_loop: Optional[QueueDrainLoop] = None
        self.commands_loop: Optional[QueueDrainLoop] = None
        self._obs_task: Optional[asyncio.Task] = None
        self.started = False

    @property
    def scripts_path(self) -> Path:
        return self.project_dir / "control" / "scripts.py"

    # ── Documents ─────────────────────────────────────────────────────

    async def _delete_if_present(self, doc_id: str) -> None:
        try:
            await self.store.delete(doc_id)
            log.debug(f"Removed stale '{doc_id}' document")
        except DocumentNotFound:
            pass

    async def prepare_documents(self) -> None:
        """Drop state from a previous run and recreate empty queues."""
        for doc_id in (OBS_DOC, OBS_COMMANDS, SCRIPTS_QUEUE):
            await self._delete_if_present(doc_id)
        for doc_id in (OBS_COMMANDS, SCRIPTS_QUEUE):
            await self.store.put({"_id": doc_id, "queue": []})

    # ── Lifecycle ─────────────────────────────────────────────────────

    def _load_registry(self) -> ScriptRegistry:
        if self.registry is not None:
            return self.registry
        try:
            return ScriptRegistry.load(self.scripts_path)
        except ScriptLoadError as e:
            log.error(f"{e}; scripts disabled")
            return ScriptRegistry()

    async def start(self) -> None:
        """Prepare documents and arm the bus. OBS is brought up in the background."""
        if self.started:
            return
        self.started = True
        await self.prepare_documents()

        if not self.control_enabled:
            log.info("No control/ folder found, control panel and scripts disabled")
            return

        self.registry = self._load_registry()
        context = ScriptContext(
            debug=logging.getLogger(SCRIPTS_LOGGER),
            db=self.store,
            obs=self.session,
        )
        self.scripts_loop = QueueDrainLoop(self.store, SCRIPTS_QUEUE, ScriptDispatcher(self.registry, context))
        self.scripts_loop.start()

        self.commands_loop = QueueDrainLoop(self.store, OBS_COMMANDS, SurfaceCommandDispatcher(self.session))
        self.commands_loop.start()

        self._obs_task = asyncio.create_task(self._bring_up_obs(), name="obs-connect")

    async def _bring_up_obs(self) -> None:
        if not await self.session.connect():
            return
        self.mirror.attach()
        await self.mirror.refresh()
        self.session.mark_operational()

    async def wait_for_obs(self) -> None:
        """Wait until the background OBS connect attempt has finished."""
        if self._obs_task is not None:
            await asyncio.shield(self._obs_task)

    async def stop(self) -> None:
        if self._obs_task is not None and not self._obs_task.done():
            self._obs_task.cancel()
            try:
                await self._obs_task
            except asyncio.CancelledError:
                pass
        self._obs_task = None
        for loop in (self.scripts_loop, self.commands_loop):
            if loop is not None:
                await loop.stop()
        await self.session.disconnect()
        self.store.close()
        self.started = False
