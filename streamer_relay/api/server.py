"""
api/server.py: FastAPI app exposing the document store to the control panel.

Endpoints:
  GET    /                       server index (what is enabled, where)
  GET    /health, /healthz       status; /healthz is 503 while OBS is not identified
  GET    /_db/_changes?since=N   latest change per document after seq N
  WS     /_db/_changes           live change stream (?since=N replays first)
  GET    /_db/{doc_id}           read a document
  PUT    /_db/{doc_id}           create/update (409 on stale _rev)
  DELETE /_db/{doc_id}?rev=      delete
  POST   /_db/{doc_id}/queue     append one command to scripts_queue or obs_commands

scenes/, assets/ and control/ from the project folder are served as static
files when present. Folders under scenes/ without an index.html get a file
listing. The app lifespan starts and stops the Runtime.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from html import escape
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, RedirectResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import ValidationError
from starlette.datastructures import URL
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import Scope

from streamer_relay import __version__
from streamer_relay.bus import OBS_COMMANDS, SCRIPTS_QUEUE, ControlCommand, ScriptCall
from streamer_relay.runtime import Runtime
from streamer_relay.store import DocumentNotFound, StoreError, StoreWriteConflict

log = logging.getLogger(__name__)

STATIC_FOLDERS = ("scenes", "assets", "control")
LISTED_FOLDERS = ("scenes",)
QUEUE_MODELS = {SCRIPTS_QUEUE: ScriptCall, OBS_COMMANDS: ControlCommand}
APPEND_ATTEMPTS = 5


class ListingStaticFiles(StaticFiles):
    """StaticFiles that answers a folder without index.html with a file listing."""

    async def get_response(self, path: str, scope: Scope) -> Response:
        try:
            return await super().get_response(path, scope)
        except StarletteHTTPException as e:
            folder = self._listable(path) if e.status_code == 404 else None
            if folder is None:
                raise
        if not scope["path"].endswith("/"):
            url = URL(scope=scope)
            return RedirectResponse(url=url.replace(path=url.path + "/"))
        return HTMLResponse(render_listing(scope["path"], folder))

    def _listable(self, path: str) -> Optional[Path]:
        root = Path(self.directory).resolve()
        folder = (root / path).resolve()
        if folder.is_dir() and (folder == root or root in folder.parents):
            return folder
        return None


def render_listing(url_path: str, folder: Path) -> str:
    entries = sorted(
        (p for p in folder.iterdir() if not p.name.startswith(".")),
        key=lambda p: (not p.is_dir(), p.name.lower()),
    )
    rows = ['<li><a href="../">../</a></li>'] if url_path.rstrip("/").count("/") > 1 else []
    for p in entries:
        name = p.name + ("/" if p.is_dir() else "")
        rows.append(f'<li><a href="{quote(name)}">{escape(name)}</a></li>')
    title = escape(url_path)
    return (
        f"<!doctype html><html><head><meta charset=\"utf-8\"><title>Index of {title}</title></head>"
        f"<body><h1>Index of {title}</h1><ul>{''.join(rows)}</ul></body></html>"
    )


class WSConnectionPool:
    def __init__(self):
        self._connections: list[WebSocket] = []

    async def connect(self, ws: WebSocket) -> None:
        await ws.accept()
        self._connections.append(ws)
        log.info(f"WS client connected. Total: {len(self._connections)}")

    def disconnect(self, ws: WebSocket) -> None:
        if ws in self._connections:
            self._connections.remove(ws)
        log.info(f"WS client disconnected. Total: {len(self._connections)}")

    def count(self) -> int:
        return len(self._connections)


def create_app(runtime: Runtime) -> FastAPI:
    settings = runtime.settings
    store = runtime.store
    ws_pool = WSConnectionPool()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log.info(f"streamer-relay API starting on {settings.server.host}:{settings.server.port}")
        await runtime.start()
        yield
        await runtime.stop()
        log.info("streamer-relay API shutting down.")

    app = FastAPI(
        title="streamer-relay",
        description="Control panel document store and OBS command bus",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    app.state.ws_pool = ws_pool

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── REST auth dependency ──────────────────────────────────────────

    async def verify_api_key(authorization: Optional[str] = Header(None)):
        if settings.server.api_key:
            if not authorization or not authorization.startswith("Bearer "):
                raise HTTPException(status_code=401, detail="Missing Bearer token")
            token = authorization.removeprefix("Bearer ").strip()
            if token != settings.server.api_key:
                raise HTTPException(status_code=403, detail="Invalid API key")

    auth = Depends(verify_api_key)

    # ─────────────────────────────────────────────────────────────────
    # Index & health
    # ─────────────────────────────────────────────────────────────────

    @app.get("/", tags=["System"])
    async def index():
        links = [f"/{name}/" for name in STATIC_FOLDERS if (runtime.project_dir / name).is_dir()]
        return {
            "name": "streamer-relay",
            "version": __version__,
            "control": runtime.control_enabled,
            "links": links,
        }

    @app.get("/health", tags=["System"])
    async def health():
        return {
            "status": "ok",
            "obs_connected": runtime.session.is_connected(),
            "obs_state": runtime.session.state.value,
            "obs_disabled": runtime.session.disabled,
            "control_enabled": runtime.control_enabled,
            "update_seq": store.update_seq,
            "ws_clients": ws_pool.count(),
            "version": __version__,
        }

    @app.get("/healthz", tags=["System"])
    async def healthz():
        """Machine-readable health check. Returns 503 when OBS is not identified."""
        if not runtime.session.is_connected():
            raise HTTPException(
                status_code=503,
                detail={"status": "degraded", "reason": "OBS not connected"},
            )
        return {"status": "ok"}

    # ─────────────────────────────────────────────────────────────────
    # Document store
    # ─────────────────────────────────────────────────────────────────

    @app.get("/_db/_changes", tags=["Store"], dependencies=[auth])
    async def changes(since: int = 0):
        results, last_seq = store.changes_since(since)
        return {"results": [c.to_dict() for c in results], "last_seq": last_seq}

    @app.websocket("/_db/_changes")
    async def changes_feed(
        websocket: WebSocket,
        token: Optional[str] = Query(None),
        since: Optional[int] = Query(None),
    ):
        if settings.server.api_key:
            if not token or token != settings.server.api_key:
                await websocket.close(code=4001, reason="Unauthorized")
                return

        feed = store.changes(since="now" if since is None else since)
        await ws_pool.connect(websocket)

        async def pump():
            try:
                async for change in feed:
                    await websocket.send_text(json.dumps(change.to_dict()))
            except Exception as e:
                log.warning(f"Change feed send failed, closing socket: {e}")
                try:
                    await websocket.close(code=1011)
                except Exception as close_error:
                    log.debug(f"WS close after send failure: {close_error}")

        async def drain_client():
            # Client messages are ignored; receiving detects the disconnect.
            try:
                while True:
                    await websocket.receive_text()
            except WebSocketDisconnect:
                pass

        pump_task = asyncio.create_task(pump())
        client_task = asyncio.create_task(drain_client())
        try:
            await asyncio.wait({pump_task, client_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            feed.close()
            for task in (pump_task, client_task):
                task.cancel()
            ws_pool.disconnect(websocket)

    @app.get("/_db/{doc_id}", tags=["Store"], dependencies=[auth])
    async def get_document(doc_id: str):
        try:
            return await store.get(doc_id)
        except DocumentNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))

    @app.put("/_db/{doc_id}", tags=["Store"], dependencies=[auth])
    async def put_document(doc_id: str, doc: dict[str, Any] = Body(...)):
        if doc.get("_id", doc_id) != doc_id:
            raise HTTPException(status_code=400, detail="Document _id does not match the URL")
        try:
            rev = await store.put({**doc, "_id": doc_id})
        except StoreWriteConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        except DocumentNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StoreError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"ok": True, "id": doc_id, "rev": rev}

    @app.delete("/_db/{doc_id}", tags=["Store"], dependencies=[auth])
    async def delete_document(doc_id: str, rev: Optional[str] = None):
        try:
            new_rev = await store.delete(doc_id, rev)
        except DocumentNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except StoreWriteConflict as e:
            raise HTTPException(status_code=409, detail=str(e))
        return {"ok": True, "id": doc_id, "rev": new_rev}

    @app.post("/_db/{doc_id}/queue", tags=["Store"], dependencies=[auth])
    async def append_to_queue(doc_id: str, item: dict[str, Any] = Body(...)):
        """
        Append one command to a queue document.
        The bus drains it on the next change event.
        """
        model = QUEUE_MODELS.get(doc_id)
        if model is None:
            raise HTTPException(status_code=404, detail=f"'{doc_id}' is not a queue document")
        try:
            entry = model.model_validate(item).model_dump(exclude_none=True)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

        for _ in range(APPEND_ATTEMPTS):
            try:
                doc = await store.get(doc_id)
            except DocumentNotFound:
                doc = {"_id": doc_id, "queue": []}
            doc["queue"] = list(doc.get("queue") or []) + [entry]
            try:
                rev = await store.put(doc)
            except StoreWriteConflict:
                continue
            return {"ok": True, "id": doc_id, "rev": rev, "queued": len(doc["queue"])}
        raise HTTPException(status_code=409, detail=f"Could not append to '{doc_id}', too much contention")

    # ─────────────────────────────────────────────────────────────────
    # Static project folders
    # ─────────────────────────────────────────────────────────────────

    for name in STATIC_FOLDERS:
        folder = runtime.project_dir / name
        if folder.is_dir():
            files_cls = ListingStaticFiles if name in LISTED_FOLDERS else StaticFiles
            app.mount(f"/{name}", files_cls(directory=folder, html=True), name=name)

    return app
