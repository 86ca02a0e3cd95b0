"""
core/obs_client.py: OBS WebSocket 5.x session used by the command bus.

Lifecycle:
  DISCONNECTED → CONNECTING → IDENTIFIED → OPERATIONAL

  - connect() is a single attempt. On failure the session is disabled for
    the rest of the process: later connect() calls return False and call()
    raises SurfaceCallFailure. The rest of the server keeps running.
  - After identifying, the session narrows its event subscriptions to
    General | Scenes so only scene events reach us.
  - There is no reconnect. If OBS exits after we identified, the session
    drops back to DISCONNECTED and each call fails on its own.

obs-websocket-py is blocking: requests run in the default executor and
events, which arrive on the library's receive thread, are handed back to the
event loop with call_soon_threadsafe.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Coroutine, Optional

from obswebsocket import obsws, requests as obs_requests, events as obs_events

log = logging.getLogger(__name__)

# obs-websocket 5.x EventSubscription bits
EVENT_SUBSCRIPTION_GENERAL = 1 << 0
EVENT_SUBSCRIPTION_SCENES = 1 << 2
DEFAULT_EVENT_SUBSCRIPTIONS = EVENT_SUBSCRIPTION_GENERAL | EVENT_SUBSCRIPTION_SCENES

OP_REIDENTIFY = 3

SceneCallback = Callable[[str], Coroutine[Any, Any, None]]


class SurfaceError(Exception):
    pass


class SurfaceConnectFailure(SurfaceError):
    pass


class SurfaceCallFailure(SurfaceError):
    pass


class SessionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDENTIFIED = "identified"
    OPERATIONAL = "operational"


class OBSSession:
    def __init__(
        self,
        host: str = "localhost",
        port: int = 4455,
        password: str = "",
        event_subscriptions: int = DEFAULT_EVENT_SUBSCRIPTIONS,
        ws_factory: Callable[..., Any] = obsws,
    ):
        self.host = host
        self.port = port
        self.password = password
        self.event_subscriptions = event_subscriptions
        self._ws_factory = ws_factory

        self.state = SessionState.DISCONNECTED
        self.disabled = False
        self._ws: Optional[Any] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._scene_changed_listeners: list[SceneCallback] = []
        self._listener_tasks: set[asyncio.Task] = set()

    @property
    def endpoint(self) -> str:
        return f"ws://{self.host}:{self.port}"

    # ── Connection ────────────────────────────────────────────────────

    async def connect(self) -> bool:
        if self.disabled:
            return False
        if self.state != SessionState.DISCONNECTED:
            return self.is_connected()

        self._loop = asyncio.get_running_loop()
        self.state = SessionState.CONNECTING
        log.debug(f"Connecting to OBS on {self.host}:{self.port}")
        try:
            await self._loop.run_in_executor(None, self._open)
        except asyncio.CancelledError:
            self.state = SessionState.DISCONNECTED
            raise
        except SurfaceConnectFailure as e:
            self._ws = None
            self.state = SessionState.DISCONNECTED
            self.disabled = True
            log.error(f"Failed to connect to OBS at {self.endpoint}: {e}")
            log.warning("OBS control functionality disabled.")
            return False

        self.state = SessionState.IDENTIFIED
        log.info(f"Connected to OBS at {self.host}:{self.port}")
        return True

    def _open(self) -> None:
        try:
            ws = self._ws_factory(self.host, self.port, self.password)
            ws.register(self._on_exiting, obs_events.Exiting)
            ws.register(self._on_scene_changed, obs_events.CurrentProgramSceneChanged)
            ws.connect()
        except Exception as e:
            raise SurfaceConnectFailure(str(e) or type(e).__name__) from e
        if self.state != SessionState.CONNECTING:
            log.debug("OBS connection opened after the attempt was abandoned, closing it")
            ws.disconnect()
            return
        log.debug("OBS connection opened")
        self._ws = ws
        self._reidentify()
        log.debug("OBS identified, good to go!")

    def _reidentify(self) -> None:
        payload = {"op": OP_REIDENTIFY, "d": {"eventSubscriptions": self.event_subscriptions}}
        try:
            self._ws.ws.send(json.dumps(payload))
        except Exception as e:
            log.warning(f"Could not narrow OBS event subscriptions: {e}")

    async def disconnect(self) -> None:
        ws, self._ws = self._ws, None
        self.state = SessionState.DISCONNECTED
        for task in list(self._listener_tasks):
            task.cancel()
        if ws is None:
            return
        try:
            await asyncio.get_running_loop().run_in_executor(None, ws.disconnect)
        except Exception as e:
            log.debug(f"OBS disconnect error: {e}")

    def mark_operational(self) -> None:
        if self.state == SessionState.IDENTIFIED:
            self.state = SessionState.OPERATIONAL
            log.debug("OBS session operational")

    def is_connected(self) -> bool:
        return self.state in (SessionState.IDENTIFIED, SessionState.OPERATIONAL)

    # ── OBS event handlers (receive thread) ───────────────────────────

    def _on_exiting(self, _event: Any = None) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._mark_dropped)

    def _mark_dropped(self) -> None:
        if self.is_connected():
            self.state = SessionState.DISCONNECTED
            self._ws = None
            log.warning("OBS disconnected. Control functionality unavailable until restart.")

    def _on_scene_changed(self, event: Any) -> None:
        """Fired when the program scene changes from any source (OBS UI, hotkeys, other clients)."""
        try:
            scene_name = event.datain.get("sceneName", "")
        except AttributeError:
            scene_name = ""
        log.debug(f"CurrentProgramSceneChanged: {scene_name}")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._fire_scene_changed, scene_name)

    def _fire_scene_changed(self, scene_name: str) -> None:
        for cb in self._scene_changed_listeners:
            task = asyncio.ensure_future(cb(scene_name))
            self._listener_tasks.add(task)
            task.add_done_callback(self._listener_done)

    def _listener_done(self, task: asyncio.Task) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(f"Scene-change listener error: {task.exception()}")

    # ── Event subscriptions ───────────────────────────────────────────

    def on_scene_changed(self, callback: SceneCallback) -> None:
        """
        Subscribe to program scene changes.
        Callback receives scene_name: str and runs as its own task.
        """
        self._scene_changed_listeners.append(callback)

    # ── Requests ──────────────────────────────────────────────────────

    def _call(self, request_type: str, request_data: dict) -> dict:
        ws = self._ws
        if ws is None:
            raise SurfaceCallFailure(f"{request_type}: not connected to OBS")
        try:
            request = getattr(obs_requests, request_type)(**request_data)
            result = ws.call(request)
        except Exception as e:
            raise SurfaceCallFailure(f"{request_type} failed: {e}") from e
        if not getattr(result, "status", True):
            raise SurfaceCallFailure(f"{request_type} rejected by OBS: {getattr(result, 'datain', {})}")
        return getattr(result, "datain", None) or {}

    async def call(self, request_type: str, request_data: Optional[dict] = None) -> dict:
        """Send one request to OBS and return its response data."""
        if not self.is_connected():
            reason = "disabled" if self.disabled else "not connected"
            raise SurfaceCallFailure(f"{request_type}: OBS control {reason}")
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._call, request_type, request_data or {})

    # ── Convenience ───────────────────────────────────────────────────

    async def get_version(self) -> dict:
        d = await self.call("GetVersion")
        return {
            "obs_version": d.get("obsVersion", ""),
            "obs_web_socket_version": d.get("obsWebSocketVersion", ""),
            "platform": d.get("platform", ""),
        }

    async def get_scene_names(self) -> list[str]:
        d = await self.call("GetSceneList")
        return [s.get("sceneName", "") for s in d.get("scenes", [])]
