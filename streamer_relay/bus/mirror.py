"""
bus/mirror.py: Copies what OBS is currently showing into the `obs` document.

The panel reads `obs` instead of querying OBS itself. The document holds the
raw GetSceneList response under `scenes` and the GetSceneItemList response
for the current program scene under `items`.

refresh() never raises. A stale-revision rejection (two refreshes racing) or
an OBS failure is logged and dropped; the next scene change corrects it.
"""

from __future__ import annotations

import logging

from streamer_relay.core import OBSSession, SurfaceError
from streamer_relay.store import DocumentNotFound, DocumentStore, StoreWriteConflict

log = logging.getLogger(__name__)

OBS_DOC = "obs"


class SurfaceStateMirror:
    def __init__(self, store: DocumentStore, session: OBSSession, doc_id: str = OBS_DOC):
        self.store = store
        self.session = session
        self.doc_id = doc_id
        self.refreshes = 0

    def attach(self) -> None:
        """Refresh on every program scene change."""
        self.session.on_scene_changed(self._on_scene_changed)

    async def _on_scene_changed(self, scene_name: str) -> None:
        log.debug(f"Program scene changed to '{scene_name}', refreshing mirror")
        await self.refresh()

    async def refresh(self) -> bool:
        log.debug("Updating OBS current scene and items")
        try:
            scenes = await self.session.call("GetSceneList")
            items = await self.session.call(
                "GetSceneItemList",
                {"sceneName": scenes.get("currentProgramSceneName", "")},
            )
        except SurfaceError as e:
            log.error(f"OBS mirror refresh failed: {e}")
            return False

        try:
            doc = await self.store.get(self.doc_id)
        except DocumentNotFound:
            doc = {"_id": self.doc_id}

        doc["scenes"] = scenes
        doc["items"] = items
        try:
            await self.store.put(doc)
        except StoreWriteConflict as e:
            log.debug(f"Mirror write lost a race, skipping: {e}")
            return False

        self.refreshes += 1
        return True
