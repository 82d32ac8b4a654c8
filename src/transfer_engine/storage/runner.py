"""Transaction runner: the outer layer around transaction-scoped work.

``TransactionRunner.run(fn)`` opens a transaction, awaits ``fn(tx)`` and
commits.  On ``TransactionConflict`` the whole unit is re-run in a fresh
transaction, up to ``max_retries`` times.  An optional deadline bounds the
whole call (all attempts); when it expires the in-flight transaction is
cancelled, which rolls it back, and ``asyncio.TimeoutError`` is raised.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import TypeVar

from transfer_engine.core.errors import TransactionConflict

from .base import IDocumentStore, ITransaction

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransactionalFn = Callable[[ITransaction], Awaitable[T]]


class TransactionRunner:
    """Run transaction-scoped callables with conflict retry and deadlines.

    Args:
        store: The document store to open transactions on.
        max_retries: Extra attempts after a ``TransactionConflict``.
        default_timeout: Deadline in seconds used when ``run`` gets none.
        backoff_base: First retry delay in seconds; doubles per attempt.
    """

    def __init__(
        self,
        store: IDocumentStore,
        *,
        max_retries: int = 2,
        default_timeout: float | None = None,
        backoff_base: float = 0.005,
    ) -> None:
        self._store = store
        self._max_retries = max_retries
        self._default_timeout = default_timeout
        self._backoff_base = backoff_base
        self._conflicts = 0

    @property
    def store(self) -> IDocumentStore:
        return self._store

    @property
    def conflicts(self) -> int:
        """Conflicts observed (retried or not) since construction."""
        return self._conflicts

    async def run(
        self,
        fn: TransactionalFn[T],
        *,
        timeout: float | None = None,
        label: str = "operation",
    ) -> T:
        deadline = timeout if timeout is not None else self._default_timeout
        if deadline is None:
            return await self._run_with_retries(fn, label)
        return await asyncio.wait_for(self._run_with_retries(fn, label), deadline)

    async def _run_with_retries(self, fn: TransactionalFn[T], label: str) -> T:
        attempts = self._max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                async with self._store.transaction() as tx:
                    result = await fn(tx)
                return result
            except TransactionConflict as exc:
                self._conflicts += 1
                if attempt == attempts:
                    logger.warning(
                        "%s gave up after %d conflicting attempts: %s",
                        label, attempt, exc,
                    )
                    raise
                wait = self._backoff_delay(attempt)
                logger.warning(
                    "Write conflict in %s (attempt %d/%d), retrying in %.3fs: %s",
                    label, attempt, attempts, wait, exc,
                )
                await asyncio.sleep(wait)
        raise AssertionError("unreachable")

    def _backoff_delay(self, attempt: int) -> float:
        base = self._backoff_base * (2 ** (attempt - 1))
        return base + random.uniform(0, base)
