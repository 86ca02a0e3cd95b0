"""
tests/test_mirror.py: The `obs` document follows the program scene.
"""

from unittest.mock import AsyncMock

import pytest

from streamer_relay.bus import OBS_DOC, SurfaceStateMirror
from streamer_relay.store import StoreWriteConflict


def item_names(doc):
    return [i["sourceName"] for i in doc["items"]["sceneItems"]]


@pytest.mark.asyncio
async def test_first_refresh_creates_obs_document(store, connected_surface):
    mirror = SurfaceStateMirror(store, connected_surface)
    assert not await store.exists(OBS_DOC)

    assert await mirror.refresh() is True

    doc = await store.get(OBS_DOC)
    assert doc["scenes"]["currentProgramSceneName"] == "A"
    assert [s["sceneName"] for s in doc["scenes"]["scenes"]] == ["A", "B"]
    assert item_names(doc) == ["x"]
    assert connected_surface.calls_named("GetSceneItemList") == [{"sceneName": "A"}]


@pytest.mark.asyncio
async def test_scene_change_refreshes_items(store, connected_surface, settle):
    mirror = SurfaceStateMirror(store, connected_surface)
    mirror.attach()
    await mirror.refresh()

    await connected_surface.switch("B")
    await settle()

    doc = await store.get(OBS_DOC)
    assert doc["scenes"]["currentProgramSceneName"] == "B"
    assert item_names(doc) == ["y", "z"]
    assert mirror.refreshes == 2


@pytest.mark.asyncio
async def test_refresh_updates_existing_document_revision(store, connected_surface):
    rev = await store.put({"_id": OBS_DOC, "scenes": None, "items": None, "note": "kept"})
    mirror = SurfaceStateMirror(store, connected_surface)
    await mirror.refresh()

    doc = await store.get(OBS_DOC)
    assert doc["_rev"] != rev
    assert doc["note"] == "kept"
    assert item_names(doc) == ["x"]


@pytest.mark.asyncio
async def test_lost_write_race_is_a_quiet_no_op(store, connected_surface):
    store.put = AsyncMock(side_effect=StoreWriteConflict("stale"))
    mirror = SurfaceStateMirror(store, connected_surface)

    assert await mirror.refresh() is False
    assert mirror.refreshes == 0


@pytest.mark.asyncio
async def test_obs_failure_skips_refresh(store, surface):
    mirror = SurfaceStateMirror(store, surface)

    assert await mirror.refresh() is False
    assert not await store.exists(OBS_DOC)
