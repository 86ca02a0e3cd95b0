"""
store/documents.py: Revisioned document store with a live change feed.

Every document is a JSON object keyed by `_id` and stamped with a `_rev`
("<generation>-<hex>"). Writes are last-writer-wins per document, but only
for writers that hold the current revision: a `put` carrying a stale `_rev`
is rejected with StoreWriteConflict.

Each commit gets a monotonically increasing sequence number and is pushed to
every open ChangeFeed in commit order. Feeds opened with since="now" only see
commits made after they were opened.

The whole database is persisted as one JSON file (<dbpath>/<name>.json),
rewritten after each commit, once subscribers have been notified. A failed
write is logged and retried by the next commit; memory stays authoritative.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

log = logging.getLogger(__name__)

Since = Union[str, int]


class StoreError(Exception):
    pass


class DocumentNotFound(StoreError):
    pass


class StoreWriteConflict(StoreError):
    pass


@dataclass
class Change:
    seq: int
    id: str
    doc: dict
    deleted: bool = False

    def to_dict(self) -> dict:
        data = {"seq": self.seq, "id": self.id, "doc": self.doc}
        if self.deleted:
            data["deleted"] = True
        return data


class ChangeFeed:
    """
    Live subscription to store commits. Iterate with `async for`.

    Iteration ends after close(). Changes already buffered before close()
    are still delivered.
    """

    _CLOSED = object()

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    def _push(self, change: Change) -> None:
        if not self._closed:
            self._queue.put_nowait(change)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._store._feeds.discard(self)
        self._queue.put_nowait(self._CLOSED)

    @property
    def closed(self) -> bool:
        return self._closed

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> "ChangeFeed":
        return self

    async def __anext__(self) -> Change:
        item = await self._queue.get()
        if item is self._CLOSED:
            raise StopAsyncIteration
        return item


def _generation(rev: Optional[str]) -> int:
    if not rev:
        return 0
    try:
        return int(rev.split("-", 1)[0])
    except ValueError:
        return 0


class DocumentStore:
    def __init__(self, name: str = "streamer", dbpath: Optional[Path] = None):
        self.name = name
        self.path: Optional[Path] = (Path(dbpath) / f"{name}.json") if dbpath else None
        self._docs: dict[str, dict] = {}
        self._doc_seq: dict[str, int] = {}
        self._seq = 0
        self._feeds: set[ChangeFeed] = set()
        if self.path is not None:
            self._load()

    # ── Persistence ───────────────────────────────────────────────────

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Could not load document store {self.path}: {e}") from e
        self._seq = data.get("update_seq", 0)
        for doc_id, entry in data.get("docs", {}).items():
            self._docs[doc_id] = entry["doc"]
            self._doc_seq[doc_id] = entry["seq"]
        log.info(f"Loaded {len(self._docs)} documents from {self.path} (seq {self._seq})")

    def _persist(self) -> None:
        if self.path is None:
            return
        data = {
            "update_seq": self._seq,
            "docs": {
                doc_id: {"seq": self._doc_seq[doc_id], "doc": doc}
                for doc_id, doc in self._docs.items()
            },
        }
        tmp = self.path.with_suffix(".json.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w") as f:
                json.dump(data, f)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            log.error(f"Could not save document store {self.path} (seq {self._seq}): {e}")

    # ── Reads ─────────────────────────────────────────────────────────

    @property
    def update_seq(self) -> int:
        return self._seq

    async def get(self, doc_id: str) -> dict:
        doc = self._docs.get(doc_id)
        if doc is None or doc.get("_deleted"):
            raise DocumentNotFound(f"Document '{doc_id}' not found")
        return copy.deepcopy(doc)

    async def exists(self, doc_id: str) -> bool:
        doc = self._docs.get(doc_id)
        return doc is not None and not doc.get("_deleted")

    def all_ids(self) -> list[str]:
        return sorted(i for i, d in self._docs.items() if not d.get("_deleted"))

    # ── Writes ────────────────────────────────────────────────────────

    def _check_rev(self, doc_id: str, rev: Optional[str]) -> Optional[dict]:
        current = self._docs.get(doc_id)
        if current is None:
            if rev:
                raise StoreWriteConflict(f"Document '{doc_id}' does not exist at revision {rev}")
            return None
        if current.get("_deleted"):
            if rev and rev != current["_rev"]:
                raise StoreWriteConflict(f"Stale revision {rev} for deleted document '{doc_id}'")
            return current
        if rev != current["_rev"]:
            raise StoreWriteConflict(
                f"Document update conflict on '{doc_id}': have {current['_rev']}, got {rev}"
            )
        return current

    def _commit(self, doc_id: str, doc: dict, deleted: bool) -> Change:
        self._seq += 1
        self._docs[doc_id] = doc
        self._doc_seq[doc_id] = self._seq
        change = Change(seq=self._seq, id=doc_id, doc=doc, deleted=deleted)
        for feed in list(self._feeds):
            feed._push(Change(seq=change.seq, id=doc_id, doc=copy.deepcopy(doc), deleted=deleted))
        self._persist()
        return change

    async def put(self, doc: dict) -> str:
        """
        Create or update a document. Returns the new revision.

        Updates must carry the current `_rev`. A doc with `_deleted: True` is
        a deletion and follows the same revision rule.
        """
        doc_id = doc.get("_id")
        if not doc_id or not isinstance(doc_id, str):
            raise StoreError("Document must have a string '_id'")
        if doc.get("_deleted"):
            return await self.delete(doc_id, doc.get("_rev"))

        current = self._check_rev(doc_id, doc.get("_rev"))
        new_doc = copy.deepcopy(doc)
        new_doc["_rev"] = f"{_generation(current and current['_rev']) + 1}-{uuid.uuid4().hex}"
        new_doc.pop("_deleted", None)
        self._commit(doc_id, new_doc, deleted=False)
        log.debug(f"put {doc_id} → {new_doc['_rev']}")
        return new_doc["_rev"]

    async def delete(self, doc_id: str, rev: Optional[str] = None) -> str:
        """Tombstone a document. Without `rev` the current revision is deleted."""
        current = self._docs.get(doc_id)
        if current is None or current.get("_deleted"):
            raise DocumentNotFound(f"Document '{doc_id}' not found")
        if rev is not None and rev != current["_rev"]:
            raise StoreWriteConflict(
                f"Document delete conflict on '{doc_id}': have {current['_rev']}, got {rev}"
            )
        tombstone = {
            "_id": doc_id,
            "_rev": f"{_generation(current['_rev']) + 1}-{uuid.uuid4().hex}",
            "_deleted": True,
        }
        self._commit(doc_id, tombstone, deleted=True)
        log.debug(f"deleted {doc_id}")
        return tombstone["_rev"]

    # ── Change feed ───────────────────────────────────────────────────

    def changes_since(self, since: int = 0) -> tuple[list[Change], int]:
        """Latest change per document with seq > since, in commit order."""
        entries = sorted(
            (seq, doc_id) for doc_id, seq in self._doc_seq.items() if seq > since
        )
        changes = [
            Change(
                seq=seq,
                id=doc_id,
                doc=copy.deepcopy(self._docs[doc_id]),
                deleted=bool(self._docs[doc_id].get("_deleted")),
            )
            for seq, doc_id in entries
        ]
        return changes, self._seq

    def changes(self, since: Since = "now") -> ChangeFeed:
        """
        Open a live change feed.

        since="now" skips everything committed so far. An integer replays the
        latest change of every document committed after that sequence first.
        """
        feed = ChangeFeed(self)
        if since != "now":
            backlog, _ = self.changes_since(int(since))
            for change in backlog:
                feed._push(change)
        self._feeds.add(feed)
        return feed

    def close(self) -> None:
        for feed in list(self._feeds):
            feed.close()
