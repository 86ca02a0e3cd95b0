"""
tests/test_runtime.py: Startup cleanup, arming order and fail-soft behavior.
"""

import asyncio

import pytest

from streamer_relay.bus import OBS_COMMANDS, OBS_DOC, SCRIPTS_QUEUE
from streamer_relay.core import OBSSession, SessionState
from streamer_relay.runtime import Runtime
from streamer_relay.store import DocumentStore

SCRIPTS = '''
async def mark(params, context):
    await context.db.put({"_id": "marker", "params": params, "obs": context.obs.is_connected()})
    return "marked"

def go_to(params, context):
    return context.obs.call("SetCurrentProgramScene", {"sceneName": params[0]})
'''


@pytest.fixture
def project(tmp_path):
    (tmp_path / "control").mkdir()
    (tmp_path / "control" / "scripts.py").write_text(SCRIPTS)
    return tmp_path


async def seed_stale_state(store):
    await store.put({"_id": OBS_DOC, "scenes": "old", "items": "old"})
    await store.put({"_id": OBS_COMMANDS, "queue": [{"requestType": "StopStream"}]})
    await store.put({"_id": SCRIPTS_QUEUE, "queue": [{"name": "mark", "params": ["stale"]}]})


async def queue(store, doc_id, *items):
    doc = await store.get(doc_id)
    doc["queue"] = doc["queue"] + list(items)
    await store.put(doc)


# ─── Startup ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_start_clears_stale_state_and_mirrors_obs(project, make_settings, store, surface, settle):
    await seed_stale_state(store)
    runtime = Runtime(make_settings(project), store=store, session=surface)

    await runtime.start()
    await runtime.wait_for_obs()
    await settle()

    assert (await store.get(OBS_COMMANDS))["queue"] == []
    assert (await store.get(SCRIPTS_QUEUE))["queue"] == []
    obs = await store.get(OBS_DOC)
    assert obs["scenes"]["currentProgramSceneName"] == "A"
    assert not await store.exists("marker")
    assert surface.calls_named("StopStream") == []
    assert surface.state == SessionState.OPERATIONAL
    assert runtime.registry.names() == ["go_to", "mark"]
    await runtime.stop()


@pytest.mark.asyncio
async def test_obs_document_absent_until_first_refresh(project, make_settings, store, surface):
    surface.connect_ok = False
    await seed_stale_state(store)
    runtime = Runtime(make_settings(project), store=store, session=surface)

    await runtime.start()
    await runtime.wait_for_obs()

    assert not await store.exists(OBS_DOC)
    assert (await store.get(SCRIPTS_QUEUE))["queue"] == []
    await runtime.stop()


@pytest.mark.asyncio
async def test_store_is_persisted_under_dbpath(project, make_settings, surface):
    runtime = Runtime(make_settings(project, dbpath="db"), session=surface)
    await runtime.start()
    await runtime.wait_for_obs()
    await runtime.stop()

    reopened = DocumentStore("streamer", project / "db")
    assert set(reopened.all_ids()) >= {OBS_COMMANDS, SCRIPTS_QUEUE}


@pytest.mark.asyncio
async def test_without_control_folder_the_bus_stays_off(tmp_path, make_settings, store, surface):
    runtime = Runtime(make_settings(tmp_path), store=store, session=surface)
    await runtime.start()
    await runtime.wait_for_obs()

    assert not runtime.control_enabled
    assert runtime.scripts_loop is None
    assert runtime.commands_loop is None
    assert surface.calls == []
    assert (await store.get(SCRIPTS_QUEUE))["queue"] == []
    await runtime.stop()


# ─── Running ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_scripts_and_commands_flow_end_to_end(project, make_settings, store, surface, settle):
    runtime = Runtime(make_settings(project), store=store, session=surface)
    await runtime.start()
    await runtime.wait_for_obs()

    await queue(store, SCRIPTS_QUEUE, {"name": "mark", "params": [1]}, {"name": "go_to", "params": ["B"]})
    await queue(store, OBS_COMMANDS, {"requestType": "SetCurrentProgramScene", "requestData": {"sceneName": "A"}})
    await settle()
    await runtime.scripts_loop.wait_idle()
    await runtime.commands_loop.wait_idle()
    await settle()

    marker = await store.get("marker")
    assert marker["params"] == [1]
    assert marker["obs"] is True
    assert surface.calls_named("SetCurrentProgramScene") == [{"sceneName": "B"}, {"sceneName": "A"}]
    assert (await store.get(OBS_DOC))["scenes"]["currentProgramSceneName"] == "A"
    await runtime.stop()


@pytest.mark.asyncio
async def test_unreachable_obs_keeps_scripts_working(project, make_settings, store, unreachable_session, settle):
    runtime = Runtime(make_settings(project), store=store, session=unreachable_session)
    await runtime.start()
    await runtime.wait_for_obs()
    assert unreachable_session.disabled

    await queue(store, SCRIPTS_QUEUE, {"name": "mark", "params": ["offline"]}, {"name": "go_to", "params": ["B"]})
    await queue(store, OBS_COMMANDS, {"requestType": "SetCurrentProgramScene", "requestData": {"sceneName": "Intro"}})
    await settle()
    await runtime.scripts_loop.wait_idle()
    await runtime.commands_loop.wait_idle()

    marker = await store.get("marker")
    assert marker["params"] == ["offline"]
    assert marker["obs"] is False
    assert runtime.scripts_loop.failed == 1
    assert runtime.commands_loop.failed == 1
    assert (await store.get(OBS_COMMANDS))["queue"] == []
    assert runtime.scripts_loop.is_running()
    assert runtime.commands_loop.is_running()
    await runtime.stop()


@pytest.mark.asyncio
async def test_broken_scripts_file_disables_scripts_only(tmp_path, make_settings, store, surface, settle):
    (tmp_path / "control").mkdir()
    (tmp_path / "control" / "scripts.py").write_text("import nonexistent_module_xyz\n")
    runtime = Runtime(make_settings(tmp_path), store=store, session=surface)

    await runtime.start()
    await runtime.wait_for_obs()
    assert len(runtime.registry) == 0
    assert surface.state == SessionState.OPERATIONAL

    await queue(store, SCRIPTS_QUEUE, {"name": "mark"})
    await settle()
    await runtime.scripts_loop.wait_idle()
    assert runtime.scripts_loop.failed == 1
    await runtime.stop()


@pytest.mark.asyncio
async def test_start_returns_while_obs_connect_hangs(project, make_settings, store, blocked_obsws):
    session = OBSSession("localhost", 4455, "", ws_factory=blocked_obsws.factory)
    runtime = Runtime(make_settings(project), store=store, session=session)

    await runtime.start()
    assert await asyncio.get_running_loop().run_in_executor(None, blocked_obsws.entered.wait, 5)

    assert session.state == SessionState.CONNECTING
    assert runtime.scripts_loop.is_running()
    assert runtime.commands_loop.is_running()

    await runtime.stop()
    assert session.state == SessionState.DISCONNECTED
    assert not session.disabled
    blocked_obsws.release.set()
