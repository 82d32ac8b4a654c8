"""Transactional document store interface.

Design invariants
-----------------
1.  Every write happens inside a transaction obtained from
    ``IDocumentStore.transaction()``.  Leaving the ``async with`` block
    normally commits; any exception (including task cancellation) rolls
    back and no staged write becomes visible.
2.  Documents are JSON-safe dicts keyed by their ``"id"`` field.
3.  Concurrency is optimistic: each document carries a version; every
    document a transaction read or wrote is re-validated at commit and a
    mismatch raises ``TransactionConflict``.
4.  After a commit the store emits one ``StoreChange`` per written
    document to the listeners registered with ``watch()``.  That change
    feed is the single source of truth for change data capture.  A
    listener failure is logged and never reaches the committing caller.

This module provides:

*  ``ITransaction`` / ``IDocumentStore``: the protocols.
*  ``StoreChange``: one committed mutation, as delivered to watchers.
*  ``ChangeFeed``: listener registry shared by the store implementations.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Mapping
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from transfer_engine.core.enums import ChangeOperation

logger = logging.getLogger(__name__)

Document = dict[str, Any]
ChangeListener = Callable[["StoreChange"], None]


@dataclass(frozen=True)
class StoreChange:
    """A committed mutation of one document.

    ``document`` is the post-image; ``None`` for deletes.
    ``sequence`` increases monotonically across the whole store.
    """

    collection: str
    operation: ChangeOperation
    doc_id: str
    document: Document | None
    committed_at: datetime
    version: int
    sequence: int


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class ITransaction(Protocol):
    """Handle for one atomic unit of work."""

    async def get(self, collection: str, doc_id: str) -> Document | None:
        """Return a copy of the document, or ``None`` if absent."""
        ...

    async def find(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> list[Document]:
        """Return copies of every document whose fields equal *where*."""
        ...

    async def insert(self, collection: str, document: Document) -> None:
        """Stage a new document.  Raises ``DocumentExistsError`` on id reuse."""
        ...

    async def replace(self, collection: str, document: Document) -> None:
        """Stage a full replacement of an existing document."""
        ...

    async def delete(self, collection: str, doc_id: str) -> None:
        """Stage removal of a document."""
        ...


class IDocumentStore(Protocol):
    """A transactional document store with a post-commit change feed."""

    def transaction(self) -> AbstractAsyncContextManager[ITransaction]:
        ...

    def watch(self, collection: str, listener: ChangeListener) -> Callable[[], None]:
        """Register *listener* for committed changes; returns an unsubscribe callable."""
        ...

    async def close(self) -> None:
        ...


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def matches(document: Document, where: Mapping[str, Any] | None) -> bool:
    """Equality filter used by ``find`` implementations."""
    if not where:
        return True
    return all(document.get(k) == v for k, v in where.items())


class ChangeFeed:
    """Per-collection listener registry.

    ``emit()`` is called by a store after a commit succeeded; listener
    exceptions are logged and swallowed so the commit result is unaffected.
    """

    def __init__(self) -> None:
        self._listeners: dict[str, list[ChangeListener]] = defaultdict(list)
        self._sequence = 0

    def watch(self, collection: str, listener: ChangeListener) -> Callable[[], None]:
        self._listeners[collection].append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners[collection].remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    def next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def emit(self, changes: list[StoreChange]) -> None:
        for change in changes:
            for listener in list(self._listeners.get(change.collection, [])):
                try:
                    listener(change)
                except Exception:
                    logger.exception(
                        "Change listener failed for %s/%s",
                        change.collection,
                        change.doc_id,
                    )

    def listener_count(self, collection: str | None = None) -> int:
        if collection is None:
            return sum(len(v) for v in self._listeners.values())
        return len(self._listeners.get(collection, []))
