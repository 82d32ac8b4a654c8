"""Change Capture Bus.

Watches the document store's post-commit change feed and republishes each
committed change as a :class:`ChangeRecord` on three channels:

    entity.<type>        e.g. ``entity.player``
    operation.<op>       e.g. ``operation.update``
    all                  every change

Design invariants
-----------------
1.  The bus never blocks or fails a committing transaction.  The store
    listener only enqueues (``put_nowait``); a full queue drops the change
    with a warning.  All stamping, buffering and publishing happens in a
    separate consumer task.
2.  Redelivered store changes are dropped by ``dedupe_key`` within a
    bounded window.  Injected records are never deduplicated.
3.  The buffer keeps the last ``buffer_capacity`` records (oldest evicted).
4.  Last write wins: between two records of one entity the later
    ``captured_at`` is authoritative (ties: higher source version, then
    later capture sequence).  Advisory only; nothing is rolled back.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import OrderedDict, deque
from collections.abc import Callable
from datetime import datetime
from typing import Any

from transfer_engine.core.clock import IClock, WallClock
from transfer_engine.core.config import CaptureConfig
from transfer_engine.core.enums import ChangeOperation, EntityType
from transfer_engine.core.errors import CaptureError
from transfer_engine.storage.base import IDocumentStore, StoreChange

from .channels import ChangeChannels, ChangeHandler
from .records import GLOBAL_TOPIC, ChangeRecord, entity_topic, operation_topic

logger = logging.getLogger(__name__)

_EntityKey = tuple[EntityType, str]


class ChangeCaptureBus:
    """Explicitly constructed CDC component with ``start``/``stop``.

    Args:
        store: Store whose change feed is watched.
        config: Capacity, dedupe window, queue size, tracked entities.
        clock: Source of capture timestamps.
        channels: Channel registry; a fresh one by default.
    """

    def __init__(
        self,
        store: IDocumentStore,
        config: CaptureConfig | None = None,
        clock: IClock | None = None,
        channels: ChangeChannels | None = None,
    ) -> None:
        self._store = store
        self._config = config or CaptureConfig()
        self._clock = clock or WallClock()
        self._channels = channels or ChangeChannels()

        self._buffer: deque[ChangeRecord] = deque(maxlen=self._config.buffer_capacity)
        self._seen: OrderedDict[str, None] = OrderedDict()
        self._latest: dict[_EntityKey, ChangeRecord] = {}

        self._queue: asyncio.Queue[StoreChange] | None = None
        self._consumer: asyncio.Task[None] | None = None
        self._unwatch: list[Callable[[], None]] = []
        self._running = False

        self._sequence = 0
        self._captured = 0
        self._duplicates = 0
        self._dropped = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            raise CaptureError("Change capture bus already started")
        if not self._config.enabled:
            logger.info("Change capture disabled; bus not started")
            return
        self._queue = asyncio.Queue(maxsize=self._config.queue_size)
        for entity_type in self._config.tracked_entities:
            self._unwatch.append(
                self._store.watch(entity_type.value, self._on_store_change)
            )
        self._running = True
        self._consumer = asyncio.create_task(self._consume(), name="change-capture")
        logger.info(
            "Change capture started for %s",
            [e.value for e in self._config.tracked_entities],
        )

    async def stop(self) -> None:
        """Stop watching, drain what is already queued, stop the consumer."""
        if not self._running:
            return
        for unwatch in self._unwatch:
            unwatch()
        self._unwatch.clear()
        await self.flush()
        self._running = False
        if self._consumer is not None:
            self._consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._consumer
            self._consumer = None
        logger.info(
            "Change capture stopped (captured=%d duplicates=%d dropped=%d)",
            self._captured, self._duplicates, self._dropped,
        )

    async def flush(self) -> None:
        """Wait until every change queued so far has been published."""
        if self._queue is not None and self._consumer is not None:
            await self._queue.join()

    # ------------------------------------------------------------------
    # Ingest
    # ------------------------------------------------------------------

    def _on_store_change(self, change: StoreChange) -> None:
        # Runs inside the store's commit path: enqueue only.
        if not self._running or self._queue is None:
            return
        try:
            self._queue.put_nowait(change)
        except asyncio.QueueFull:
            self._dropped += 1
            logger.warning(
                "Change queue full, dropped %s/%s v%d",
                change.collection, change.doc_id, change.version,
            )

    async def _consume(self) -> None:
        assert self._queue is not None
        while True:
            change = await self._queue.get()
            try:
                await self._ingest(change)
            except Exception:
                logger.exception(
                    "Failed to capture %s/%s", change.collection, change.doc_id,
                )
            finally:
                self._queue.task_done()

    async def _ingest(self, change: StoreChange) -> None:
        record = self._stamp(
            EntityType(change.collection),
            change.operation,
            change.doc_id,
            change.document,
            source_timestamp=change.committed_at,
            source_version=change.version,
            injected=False,
        )
        key = record.dedupe_key
        if key in self._seen:
            self._duplicates += 1
            logger.debug(
                "Duplicate delivery of %s/%s v%d ignored",
                change.collection, change.doc_id, change.version,
            )
            return
        self._seen[key] = None
        while len(self._seen) > self._config.dedupe_window:
            self._seen.popitem(last=False)
        await self._record(record)

    def _stamp(
        self,
        entity_type: EntityType,
        operation: ChangeOperation,
        entity_id: str,
        document: dict[str, Any] | None,
        *,
        source_timestamp: datetime,
        source_version: int,
        injected: bool,
    ) -> ChangeRecord:
        self._sequence += 1
        return ChangeRecord(
            entity_type=entity_type,
            operation=operation,
            entity_id=entity_id,
            document=document,
            captured_at=self._clock.now(),
            source_timestamp=source_timestamp,
            source_version=source_version,
            sequence=self._sequence,
            injected=injected,
        )

    async def _record(self, record: ChangeRecord) -> None:
        self._buffer.append(record)
        self._captured += 1
        key = (record.entity_type, record.entity_id)
        current = self._latest.get(key)
        self._latest[key] = record if current is None else self.resolve_conflict(current, record)

        for topic in (
            entity_topic(record.entity_type),
            operation_topic(record.operation),
            GLOBAL_TOPIC,
        ):
            await self._channels.publish(topic, record)

    async def inject(
        self,
        entity_type: EntityType,
        operation: ChangeOperation,
        document: dict[str, Any],
    ) -> ChangeRecord | None:
        """Publish a synthetic change (initial sync, tests).

        Returns ``None`` when capture is disabled.
        """
        if not self._config.enabled:
            return None
        entity_id = document.get("id")
        if not entity_id:
            raise CaptureError("Injected document has no 'id'")
        now = self._clock.now()
        record = self._stamp(
            EntityType(entity_type),
            ChangeOperation(operation),
            str(entity_id),
            dict(document),
            source_timestamp=now,
            source_version=0,
            injected=True,
        )
        await self._record(record)
        return record

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe_entity(
        self,
        entity_type: EntityType,
        handler: ChangeHandler,
        group: str = "default",
    ) -> Callable[[], None]:
        return self._channels.subscribe(entity_topic(EntityType(entity_type)), handler, group)

    def subscribe_operation(
        self,
        operation: ChangeOperation,
        handler: ChangeHandler,
        group: str = "default",
    ) -> Callable[[], None]:
        return self._channels.subscribe(
            operation_topic(ChangeOperation(operation)), handler, group,
        )

    def subscribe_global(self, handler: ChangeHandler, group: str = "default") -> Callable[[], None]:
        return self._channels.subscribe(GLOBAL_TOPIC, handler, group)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def recent(self, limit: int = 100, entity_type: EntityType | None = None) -> list[ChangeRecord]:
        """Up to *limit* most recent buffered records, oldest first."""
        if limit <= 0:
            return []
        records = list(self._buffer)
        if entity_type is not None:
            records = [r for r in records if r.entity_type == EntityType(entity_type)]
        return records[-limit:]

    def latest(self, entity_type: EntityType, entity_id: str) -> ChangeRecord | None:
        """Authoritative (last-write-wins) record for one entity."""
        return self._latest.get((EntityType(entity_type), entity_id))

    def authoritative_view(
        self,
        entity_type: EntityType | None = None,
    ) -> dict[_EntityKey, ChangeRecord]:
        if entity_type is None:
            return dict(self._latest)
        wanted = EntityType(entity_type)
        return {k: v for k, v in self._latest.items() if k[0] == wanted}

    @staticmethod
    def resolve_conflict(first: ChangeRecord, second: ChangeRecord) -> ChangeRecord:
        """Return whichever of two records is authoritative."""
        return first if first.supersedes(second) else second

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def channels(self) -> ChangeChannels:
        return self._channels

    @property
    def captured(self) -> int:
        return self._captured

    @property
    def duplicates(self) -> int:
        return self._duplicates

    @property
    def dropped(self) -> int:
        return self._dropped

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def get_stats(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "captured": self._captured,
            "duplicates": self._duplicates,
            "dropped": self._dropped,
            "buffered": len(self._buffer),
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "handler_errors": sum(self._channels.get_error_counts().values()),
        }
