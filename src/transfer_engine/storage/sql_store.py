"""SQLAlchemy async document store.

Stores every document as a JSON body in one ``documents`` table keyed by
``(collection, doc_id)`` with an integer ``version`` column.  Writes go to
the database inside the session transaction; the version column gives the
same optimistic-concurrency contract as the in-memory store (a conditional
``UPDATE ... WHERE version = :seen`` that matches no row is a conflict).

Use ``postgresql+asyncpg://`` URLs in deployment and
``sqlite+aiosqlite://`` in tests.
"""

from __future__ import annotations

import functools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import JSON, DateTime, Integer, String, delete, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import NullPool

from transfer_engine.core.clock import IClock, WallClock
from transfer_engine.core.enums import ChangeOperation
from transfer_engine.core.errors import (
    DocumentExistsError,
    StoreError,
    TransactionClosedError,
    TransactionConflict,
)
from transfer_engine.core.ids import utc_now

from .base import ChangeFeed, ChangeListener, Document, StoreChange, matches

logger = logging.getLogger(__name__)

T = TypeVar("T")

_Key = tuple[str, str]


def _translate_db_errors(method: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """Re-raise driver and SQLAlchemy failures as :class:`StoreError`."""

    @functools.wraps(method)
    async def wrapper(*args: Any, **kwargs: Any) -> T:
        try:
            return await method(*args, **kwargs)
        except SQLAlchemyError as exc:
            raise StoreError(f"{method.__name__} failed: {exc}") from exc

    return wrapper


# ---------------------------------------------------------------------------
# ORM
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    """Declarative base for the document table."""

    pass


class DocumentRecord(Base):
    """One stored document."""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(32), primary_key=True)
    doc_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    body: Mapped[dict] = mapped_column(JSON, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now,
    )


# ---------------------------------------------------------------------------
# Transaction
# ---------------------------------------------------------------------------

class _SqlTransaction:
    """Writes go straight to the session; the change set is kept per document.

    A document written several times in one transaction bumps its version
    once and yields a single change carrying the last post-image, the same
    as the in-memory store.
    """

    def __init__(self, session: AsyncSession, clock: IClock) -> None:
        self._session = session
        self._clock = clock
        # (collection, id) -> version as this transaction knows it (0 = absent)
        self._versions: dict[_Key, int] = {}
        # (collection, id) -> (operation, post-image or None, committed version)
        self._writes: dict[_Key, tuple[ChangeOperation, Document | None, int]] = {}
        self._closed = False

    def _check_open(self) -> None:
        if self._closed:
            raise TransactionClosedError("Transaction already finished")

    async def _load(self, collection: str, doc_id: str) -> DocumentRecord | None:
        result = await self._session.execute(
            select(DocumentRecord).where(
                DocumentRecord.collection == collection,
                DocumentRecord.doc_id == doc_id,
            ).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @_translate_db_errors
    async def get(self, collection: str, doc_id: str) -> Document | None:
        self._check_open()
        record = await self._load(collection, doc_id)
        self._versions.setdefault(
            (collection, doc_id), record.version if record is not None else 0
        )
        return dict(record.body) if record is not None else None

    @_translate_db_errors
    async def find(
        self,
        collection: str,
        where: Mapping[str, Any] | None = None,
    ) -> list[Document]:
        self._check_open()
        result = await self._session.execute(
            select(DocumentRecord)
            .where(DocumentRecord.collection == collection)
            .execution_options(populate_existing=True)
        )
        out: list[Document] = []
        for record in result.scalars():
            if matches(record.body, where):
                self._versions.setdefault((collection, record.doc_id), record.version)
                out.append(dict(record.body))
        return out

    @_translate_db_errors
    async def insert(self, collection: str, document: Document) -> None:
        self._check_open()
        doc_id = _doc_id(document)
        key = (collection, doc_id)
        if await self._load(collection, doc_id) is not None:
            raise DocumentExistsError(f"{collection}/{doc_id} already exists")
        op, version = ChangeOperation.INSERT, 1
        previous = self._writes.get(key)
        if previous is not None and previous[0] == ChangeOperation.DELETE:
            # deleted then re-inserted inside this transaction
            op, version = ChangeOperation.UPDATE, previous[2]
        self._session.add(
            DocumentRecord(
                collection=collection,
                doc_id=doc_id,
                version=version,
                body=document,
                updated_at=self._clock.now(),
            )
        )
        try:
            await self._session.flush()
        except IntegrityError as exc:
            raise DocumentExistsError(f"{collection}/{doc_id} already exists") from exc
        self._versions[key] = version
        self._writes[key] = (op, dict(document), version)

    @_translate_db_errors
    async def replace(self, collection: str, document: Document) -> None:
        self._check_open()
        doc_id = _doc_id(document)
        key = (collection, doc_id)
        if key not in self._versions:
            await self.get(collection, doc_id)
        seen = self._versions[key]
        if seen == 0:
            raise StoreError(f"{collection}/{doc_id} does not exist")
        previous = self._writes.get(key)
        op = ChangeOperation.UPDATE
        version = seen + 1
        if previous is not None:
            op, version = previous[0], seen
        result = await self._session.execute(
            update(DocumentRecord)
            .where(
                DocumentRecord.collection == collection,
                DocumentRecord.doc_id == doc_id,
                DocumentRecord.version == seen,
            )
            .values(version=version, body=document, updated_at=self._clock.now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransactionConflict(f"{collection}/{doc_id} changed since v{seen}")
        self._versions[key] = version
        self._writes[key] = (op, dict(document), version)

    @_translate_db_errors
    async def delete(self, collection: str, doc_id: str) -> None:
        self._check_open()
        key = (collection, doc_id)
        if key not in self._versions:
            await self.get(collection, doc_id)
        seen = self._versions[key]
        if seen == 0:
            raise StoreError(f"{collection}/{doc_id} does not exist")
        result = await self._session.execute(
            delete(DocumentRecord)
            .where(
                DocumentRecord.collection == collection,
                DocumentRecord.doc_id == doc_id,
                DocumentRecord.version == seen,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransactionConflict(f"{collection}/{doc_id} changed since v{seen}")
        self._versions[key] = 0
        previous = self._writes.get(key)
        if previous is None:
            self._writes[key] = (ChangeOperation.DELETE, None, seen + 1)
        elif previous[0] == ChangeOperation.INSERT:
            # never visible outside this transaction
            del self._writes[key]
        else:
            self._writes[key] = (ChangeOperation.DELETE, None, previous[2])

    @_translate_db_errors
    async def validate_reads(self) -> None:
        """Re-check every read-only document's version before commit."""
        for key, seen in self._versions.items():
            if key in self._writes:
                continue
            collection, doc_id = key
            result = await self._session.execute(
                select(DocumentRecord.version).where(
                    DocumentRecord.collection == collection,
                    DocumentRecord.doc_id == doc_id,
                )
            )
            current = result.scalar_one_or_none() or 0
            if current != seen:
                raise TransactionConflict(
                    f"{collection}/{doc_id} changed since it was read"
                )

    def close(self) -> None:
        self._closed = True

    @property
    def pending(self) -> list[tuple[str, ChangeOperation, str, Document | None, int]]:
        """One ``(collection, operation, id, post-image, version)`` per written document."""
        return [
            (collection, op, doc_id, doc, version)
            for (collection, doc_id), (op, doc, version) in self._writes.items()
        ]


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SqlDocumentStore:
    """Document store backed by a SQLAlchemy :class:`AsyncEngine`.

    Args:
        url: Database URL (``postgresql+asyncpg://...`` or
            ``sqlite+aiosqlite:///path``).
        clock: Source of commit timestamps.
        echo: If ``True``, log all emitted SQL statements.
        use_null_pool: If ``True``, disable connection pooling entirely.
    """

    def __init__(
        self,
        url: str,
        *,
        clock: IClock | None = None,
        echo: bool = False,
        use_null_pool: bool = False,
    ) -> None:
        pool_kwargs: dict = {}
        if use_null_pool:
            pool_kwargs["poolclass"] = NullPool
        self._engine: AsyncEngine = create_async_engine(url, echo=echo, **pool_kwargs)
        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        self._clock = clock or WallClock()
        self._feed = ChangeFeed()
        logger.info("Created document store engine for %s", url.split("@")[-1])

    async def create_all(self) -> None:
        """Create the ``documents`` table if it does not exist."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Document tables created / verified.")

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SqlTransaction]:
        session = self._session_factory()
        tx = _SqlTransaction(session, self._clock)
        try:
            yield tx
            await tx.validate_reads()
            try:
                await session.commit()
            except IntegrityError as exc:
                # a concurrent transaction inserted the same document first
                raise TransactionConflict(f"Commit rejected: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            await session.rollback()
            raise StoreError(f"Transaction failed: {exc}") from exc
        except BaseException:
            # CancelledError included
            await session.rollback()
            raise
        finally:
            tx.close()
            await session.close()

        committed_at = self._clock.now()
        self._feed.emit([
            StoreChange(
                collection=collection,
                operation=op,
                doc_id=doc_id,
                document=doc,
                committed_at=committed_at,
                version=version,
                sequence=self._feed.next_sequence(),
            )
            for collection, op, doc_id, doc, version in tx.pending
        ])

    def watch(self, collection: str, listener: ChangeListener) -> Callable[[], None]:
        return self._feed.watch(collection, listener)

    async def close(self) -> None:
        """Dispose of the engine and release all pooled connections."""
        await self._engine.dispose()
        logger.info("Engine disposed.")

    @property
    def engine(self) -> AsyncEngine:
        return self._engine


def _doc_id(document: Document) -> str:
    doc_id = document.get("id")
    if not doc_id:
        raise StoreError("Document has no 'id'")
    return str(doc_id)
