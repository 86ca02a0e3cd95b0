"""Shared fixtures: in-memory store, fake OBS surfaces, loop settling."""

from __future__ import annotations

import asyncio
import threading
from types import SimpleNamespace
from typing import Any, Optional

import pytest

from streamer_relay.config import ServerSettings, Settings
from streamer_relay.core import OBSSession, SessionState, SurfaceCallFailure
from streamer_relay.core import obs_client
from streamer_relay.store import DocumentStore


# ---------------------------------------------------------------------------
# Fake obs-websocket-py connection (for OBSSession itself)
# ---------------------------------------------------------------------------


class FakeRequests:
    """Stands in for obswebsocket.requests: any attribute builds a request."""

    def __getattr__(self, name: str):
        def build(**data):
            return SimpleNamespace(name=name, data=data)
        return build


class FakeSocket:
    def __init__(self):
        self.sent: list[str] = []

    def send(self, payload: str) -> None:
        self.sent.append(payload)


class FakeObsws:
    def __init__(self, responses: Optional[dict] = None, fail: bool = False):
        self.responses = responses or {}
        self.fail = fail
        self.handlers: list[tuple[Any, Any]] = []
        self.calls: list[tuple[str, dict]] = []
        self.connected = False
        self.ws = FakeSocket()
        self.factory_calls = 0

    def factory(self, host, port, password):
        self.factory_calls += 1
        self.args = (host, port, password)
        return self

    def register(self, handler, event) -> None:
        self.handlers.append((handler, event))

    def connect(self) -> None:
        if self.fail:
            raise ConnectionRefusedError("connection refused")
        self.connected = True

    def disconnect(self) -> None:
        self.connected = False

    def call(self, request):
        self.calls.append((request.name, request.data))
        response = self.responses.get(request.name, {})
        if isinstance(response, Exception):
            raise response
        if response is False:
            return SimpleNamespace(status=False, datain={"comment": "rejected"})
        return SimpleNamespace(status=True, datain=response)

    def fire(self, event_name: str, datain: dict) -> None:
        for handler, event in self.handlers:
            if getattr(event, "__name__", None) == event_name:
                handler(SimpleNamespace(datain=datain))


class BlockingObsws(FakeObsws):
    """connect() hangs until `release` is set, like a host that drops packets."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.release = threading.Event()
        self.entered = threading.Event()

    def connect(self) -> None:
        self.entered.set()
        self.release.wait(timeout=5)
        super().connect()


@pytest.fixture
def fake_requests(monkeypatch):
    monkeypatch.setattr(obs_client, "obs_requests", FakeRequests())


@pytest.fixture
def fake_obsws(fake_requests) -> FakeObsws:
    return FakeObsws(responses={"GetVersion": {"obsVersion": "30.1.0"}})


@pytest.fixture
def failing_obsws(fake_requests) -> FakeObsws:
    return FakeObsws(fail=True)


@pytest.fixture
def blocked_obsws(fake_requests):
    ws = BlockingObsws()
    yield ws
    ws.release.set()


@pytest.fixture
def unreachable_session() -> OBSSession:
    ws = FakeObsws(fail=True)
    return OBSSession("localhost", 4455, "", ws_factory=ws.factory)


# ---------------------------------------------------------------------------
# Fake control surface (for bus, mirror, runtime and API tests)
# ---------------------------------------------------------------------------


class FakeSurface:
    """
    High-level stand-in for OBSSession with a tiny scene model:
    scene name → list of source names.
    """

    def __init__(self, scenes: Optional[dict[str, list[str]]] = None, current: str = "A"):
        self.scenes = scenes if scenes is not None else {"A": ["x"], "B": ["y", "z"]}
        self.current = current
        self.calls: list[tuple[str, dict]] = []
        self.listeners: list = []
        self.state = SessionState.DISCONNECTED
        self.disabled = False
        self.connect_ok = True

    async def connect(self) -> bool:
        if not self.connect_ok:
            self.disabled = True
            return False
        self.state = SessionState.IDENTIFIED
        return True

    async def disconnect(self) -> None:
        self.state = SessionState.DISCONNECTED

    def is_connected(self) -> bool:
        return self.state in (SessionState.IDENTIFIED, SessionState.OPERATIONAL)

    def mark_operational(self) -> None:
        if self.state == SessionState.IDENTIFIED:
            self.state = SessionState.OPERATIONAL

    def on_scene_changed(self, callback) -> None:
        self.listeners.append(callback)

    async def call(self, request_type: str, request_data: Optional[dict] = None) -> dict:
        request_data = request_data or {}
        self.calls.append((request_type, request_data))
        if not self.is_connected():
            raise SurfaceCallFailure(f"{request_type}: not connected")
        if request_type == "GetSceneList":
            return {
                "currentProgramSceneName": self.current,
                "scenes": [{"sceneName": n, "sceneIndex": i} for i, n in enumerate(self.scenes)],
            }
        if request_type == "GetSceneItemList":
            sources = self.scenes.get(request_data.get("sceneName"), [])
            return {"sceneItems": [{"sourceName": s, "sceneItemId": i + 1} for i, s in enumerate(sources)]}
        if request_type == "SetCurrentProgramScene":
            await self.switch(request_data["sceneName"])
            return {}
        raise SurfaceCallFailure(f"{request_type}: unknown request")

    async def switch(self, scene_name: str) -> None:
        self.current = scene_name
        for cb in self.listeners:
            asyncio.ensure_future(cb(scene_name))

    def calls_named(self, request_type: str) -> list[dict]:
        return [data for name, data in self.calls if name == request_type]


@pytest.fixture
def surface() -> FakeSurface:
    return FakeSurface()


@pytest.fixture
def connected_surface(surface: FakeSurface) -> FakeSurface:
    surface.state = SessionState.IDENTIFIED
    return surface


# ---------------------------------------------------------------------------
# Store / settings / loop helpers
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> DocumentStore:
    return DocumentStore()


@pytest.fixture
def make_settings(tmp_path):
    def _make(project_dir=None, **server) -> Settings:
        return Settings(server=ServerSettings(project_dir=project_dir or tmp_path, **server))
    return _make


@pytest.fixture
def settle():
    """Let queued callbacks and freshly spawned tasks run."""
    async def _settle(rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)
    return _settle
