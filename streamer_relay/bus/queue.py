"""
bus/queue.py: Queue-drain loop: turns writes to a queue document into dispatches.

A queue document is a mailbox:

    {"_id": "obs_commands", "queue": [{"requestType": ..., "requestData": ...}]}

Producers (the control panel) append to `queue`; only this loop clears it.
For every change of the watched document the loop:

  1. reads `queue` from the change's own snapshot (no extra fetch),
  2. if it is non-empty, writes the snapshot back with `queue = []`,
  3. starts one task per captured item, in queue order.

If the write in step 2 is rejected, the snapshot is stale: a later revision
of the document exists and carries the same items, so nothing is dispatched
for this change.

The empty write from step 2 comes back through the feed too, but an empty
queue dispatches nothing, so the loop settles after one round.

Each dispatch task catches and logs its own failure. Nothing is requeued.
The feed starts at "now": items queued while the server was down are never
delivered.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field

from streamer_relay.core import OBSSession
from streamer_relay.store import Change, ChangeFeed, DocumentStore, StoreWriteConflict

log = logging.getLogger(__name__)

SCRIPTS_QUEUE = "scripts_queue"
OBS_COMMANDS = "obs_commands"

Dispatcher = Callable[[dict], Awaitable[Any]]


class ControlCommand(BaseModel):
    """One entry of the obs_commands document."""
    requestType: str
    requestData: Optional[dict] = Field(default=None)


class SurfaceCommandDispatcher:
    """Forwards one obs_commands item to OBS. Fire-and-forget: nothing is written back."""

    def __init__(self, session: OBSSession):
        self.session = session

    async def __call__(self, item: dict) -> Any:
        command = ControlCommand.model_validate(item)
        log.debug(f"Calling OBS: {command.requestType} {command.requestData}")
        result = await self.session.call(command.requestType, command.requestData or {})
        log.debug(f"[OBS Call Result] command: {command.requestType} result: {result}")
        return result


class QueueDrainLoop:
    def __init__(self, store: DocumentStore, doc_id: str, dispatcher: Dispatcher):
        self.store = store
        self.doc_id = doc_id
        self.dispatcher = dispatcher

        self._feed: Optional[ChangeFeed] = None
        self._task: Optional[asyncio.Task] = None
        self._dispatches: set[asyncio.Task] = set()
        self.dispatched = 0
        self.failed = 0

    # ── Lifecycle ─────────────────────────────────────────────────────

    def start(self) -> None:
        """Subscribe from now on and begin draining in the background."""
        if self._task is not None:
            return
        self._feed = self.store.changes(since="now")
        self._task = asyncio.create_task(self._run(self._feed), name=f"drain:{self.doc_id}")
        log.debug(f"Queue drain loop armed for '{self.doc_id}'")

    async def stop(self) -> None:
        if self._feed is not None:
            self._feed.close()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._feed = None
        self._task = None

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self, feed: ChangeFeed) -> None:
        async for change in feed:
            if change.id != self.doc_id:
                continue
            try:
                await self.handle_change(change)
            except Exception as e:
                log.error(f"Queue '{self.doc_id}' change handling error: {e}")

    # ── Drain ─────────────────────────────────────────────────────────

    async def handle_change(self, change: Change) -> list[asyncio.Task]:
        """Drain one observed revision of the queue document."""
        if change.deleted:
            return []
        items = list(change.doc.get("queue") or [])
        if not items:
            return []

        try:
            await self.store.put({**change.doc, "queue": []})
        except StoreWriteConflict:
            log.debug(f"Queue '{self.doc_id}' snapshot {change.seq} is stale, skipped")
            return []

        return [self._spawn(item) for item in items]

    def _spawn(self, item: Any) -> asyncio.Task:
        task = asyncio.create_task(self._dispatch(item))
        self._dispatches.add(task)
        task.add_done_callback(self._dispatches.discard)
        return task

    async def _dispatch(self, item: Any) -> None:
        try:
            if not isinstance(item, dict):
                raise TypeError(f"queue item must be an object, got {type(item).__name__}")
            await self.dispatcher(item)
            self.dispatched += 1
        except Exception as e:
            self.failed += 1
            log.error(f"Queue '{self.doc_id}' dispatch failed for {item!r}: {e}")

    async def wait_idle(self) -> None:
        """Wait for every dispatch started so far to finish."""
        while self._dispatches:
            await asyncio.gather(*list(self._dispatches))
