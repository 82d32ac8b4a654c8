"""In-memory transactional document store.

No persistence across restarts.  Good for: unit tests, the demo, and
single-process use.  Transactions stage writes privately and validate the
version of every touched document at commit (optimistic concurrency), so
two transactions that touched the same document cannot both commit.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import asynccontextmanager
from typing import Any

from transfer_engine.core.clock import IClock, WallClock
from transfer_engine.core.enums import ChangeOperation
from transfer_engine.core.errors import (
    DocumentExistsError,
    StoreError,
    TransactionClosedError,
    TransactionConflict,
)

from .base import ChangeFeed, ChangeListener, Document, StoreChange, matches

logger = logging.getLogger(__name__)

_Key = tuple[str, str]


class _MemoryTransaction:
    """Private write set over a snapshot of committed versions."""

    def __init__(self, store: InMemoryDocumentStore) -> None:
        self._store = store
        # (collection, id) -> version observed when first touched (0 = absent)
        self._observed: dict[_Key, int] = {}
        # (collection, id) -> (operation, staged document or None)
        self._writes: dict[_Key, tuple[ChangeOperation, Document | None]] = {}
        self._closed = False

    # -- reads -------------------------------------------------------------

    def _observe(self, key: _Key) -> None:
        if key not in self._observed:
            self._observed[key] = self._store._version_of(key)

    def _check_open(self) -> None:
        if self._closed:
            raise TransactionClosedError("Transaction already finished")

    async def get(self, collection: str, doc_id: str) -> Document | None:
        self._check_open()
        key = (collection, doc_id)
        if key in self._writes:
            _, staged = self._writes[key]
            return copy.deepcopy(staged)
        self._observe(key)
        return copy.deepcopy(self._store._read(key))

    async def find(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> list[Document]:
        self._check_open()
        out: dict[str, Document] = {}
        for doc_id, doc in self._store._scan(collection):
            key = (collection, doc_id)
            if key in self._writes:
                continue
            if matches(doc, where):
                self._observe(key)
                out[doc_id] = copy.deepcopy(doc)
        for (coll, doc_id), (_, staged) in self._writes.items():
            if coll == collection and staged is not None and matches(staged, where):
                out[doc_id] = copy.deepcopy(staged)
        return list(out.values())

    # -- writes ------------------------------------------------------------

    def _exists(self, key: _Key) -> bool:
        if key in self._writes:
            return self._writes[key][1] is not None
        return self._store._read(key) is not None

    async def insert(self, collection: str, document: Document) -> None:
        self._check_open()
        key = (collection, _doc_id(document))
        if self._exists(key):
            raise DocumentExistsError(f"{collection}/{key[1]} already exists")
        self._observe(key)
        op = ChangeOperation.INSERT
        if key in self._writes and self._writes[key][0] != ChangeOperation.INSERT:
            # deleted then re-inserted inside this transaction
            op = ChangeOperation.UPDATE
        self._writes[key] = (op, copy.deepcopy(document))

    async def replace(self, collection: str, document: Document) -> None:
        self._check_open()
        key = (collection, _doc_id(document))
        if not self._exists(key):
            raise StoreError(f"{collection}/{key[1]} does not exist")
        self._observe(key)
        op = ChangeOperation.UPDATE
        if key in self._writes and self._writes[key][0] == ChangeOperation.INSERT:
            op = ChangeOperation.INSERT
        self._writes[key] = (op, copy.deepcopy(document))

    async def delete(self, collection: str, doc_id: str) -> None:
        self._check_open()
        key = (collection, doc_id)
        if not self._exists(key):
            raise StoreError(f"{collection}/{doc_id} does not exist")
        self._observe(key)
        if key in self._writes and self._writes[key][0] == ChangeOperation.INSERT:
            del self._writes[key]
            return
        self._writes[key] = (ChangeOperation.DELETE, None)

    # -- completion ----------------------------------------------------------

    async def commit(self) -> list[StoreChange]:
        self._check_open()
        try:
            return await self._store._commit(self._observed, self._writes)
        finally:
            self._closed = True

    def rollback(self) -> None:
        self._writes.clear()
        self._observed.clear()
        self._closed = True

    @property
    def write_count(self) -> int:
        return len(self._writes)


class InMemoryDocumentStore:
    """Dict-backed document store with optimistic transactions.

    Parameters
    ----------
    clock
        Source of commit timestamps.  Defaults to ``WallClock``.
    """

    def __init__(self, clock: IClock | None = None) -> None:
        self._clock = clock or WallClock()
        # collection -> id -> (version, document)
        self._data: dict[str, dict[str, tuple[int, Document]]] = {}
        # deleted keys keep their last version so a stale reader still conflicts
        self._tombstones: dict[_Key, int] = {}
        self._commit_lock = asyncio.Lock()
        self._feed = ChangeFeed()
        self._commits = 0
        self._conflicts = 0

    # -- IDocumentStore ----------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_MemoryTransaction]:
        tx = _MemoryTransaction(self)
        try:
            yield tx
        except BaseException:
            # CancelledError included
            tx.rollback()
            raise
        changes = await tx.commit()
        self._feed.emit(changes)

    def watch(self, collection: str, listener: ChangeListener) -> Callable[[], None]:
        return self._feed.watch(collection, listener)

    async def close(self) -> None:
        return None

    # -- internals used by transactions ------------------------------------

    def _version_of(self, key: _Key) -> int:
        entry = self._data.get(key[0], {}).get(key[1])
        if entry is not None:
            return entry[0]
        return self._tombstones.get(key, 0)

    def _read(self, key: _Key) -> Document | None:
        entry = self._data.get(key[0], {}).get(key[1])
        return entry[1] if entry is not None else None

    def _scan(self, collection: str) -> list[tuple[str, Document]]:
        return [(doc_id, doc) for doc_id, (_, doc) in self._data.get(collection, {}).items()]

    async def _commit(
        self,
        observed: dict[_Key, int],
        writes: dict[_Key, tuple[ChangeOperation, Document | None]],
    ) -> list[StoreChange]:
        async with self._commit_lock:
            for key, version in observed.items():
                if self._version_of(key) != version:
                    self._conflicts += 1
                    raise TransactionConflict(
                        f"{key[0]}/{key[1]} changed since it was read "
                        f"(expected v{version}, found v{self._version_of(key)})"
                    )

            committed_at = self._clock.now()
            changes: list[StoreChange] = []
            for key, (op, doc) in writes.items():
                version = self._version_of(key) + 1
                collection = self._data.setdefault(key[0], {})
                if doc is None:
                    collection.pop(key[1], None)
                    self._tombstones[key] = version
                else:
                    collection[key[1]] = (version, doc)
                    self._tombstones.pop(key, None)
                changes.append(
                    StoreChange(
                        collection=key[0],
                        operation=op,
                        doc_id=key[1],
                        document=copy.deepcopy(doc),
                        committed_at=committed_at,
                        version=version,
                        sequence=self._feed.next_sequence(),
                    )
                )
            self._commits += 1
            return changes

    # -- introspection -----------------------------------------------------

    @property
    def commit_count(self) -> int:
        return self._commits

    @property
    def conflict_count(self) -> int:
        return self._conflicts

    def count(self, collection: str) -> int:
        return len(self._data.get(collection, {}))

    def snapshot(self, collection: str) -> list[Document]:
        """Committed documents of *collection* (copies).  For tests and tooling."""
        return [copy.deepcopy(doc) for _, doc in self._scan(collection)]


def _doc_id(document: Document) -> str:
    doc_id = document.get("id")
    if not doc_id:
        raise StoreError("Document has no 'id'")
    return str(doc_id)
