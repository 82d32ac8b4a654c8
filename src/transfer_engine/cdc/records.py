"""Captured change records.

Design invariants
-----------------
1.  Every record is **immutable** (``frozen=True``).
2.  ``change_id`` is a UUID4 generated at capture time.
3.  ``dedupe_key`` is derived from the source change (entity, id,
    operation, commit timestamp, version).  A redelivered store change has
    the same key and is dropped by the bus.
4.  ``sequence`` is the bus's own capture order, strictly increasing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from transfer_engine.core.enums import ChangeOperation, EntityType
from transfer_engine.core.ids import stable_key
from transfer_engine.core.ids import new_id as _uuid


@dataclass(frozen=True)
class ChangeRecord:
    """One committed mutation as seen by downstream consumers.

    Fields
    ~~~~~~
    entity_type       Collection the change belongs to.
    operation         insert / update / delete.
    entity_id         Identity of the affected document.
    document          Full post-image (``None`` for deletes).
    captured_at       When the bus captured it.  Last-write-wins key.
    source_timestamp  Commit time reported by the store.
    source_version    Document version after the write (0 for injected).
    sequence          Capture order within this bus.
    injected          ``True`` for manually injected synthetic changes.
    """

    entity_type: EntityType
    operation: ChangeOperation
    entity_id: str
    document: dict[str, Any] | None
    captured_at: datetime
    source_timestamp: datetime
    source_version: int = 0
    sequence: int = 0
    injected: bool = False
    change_id: str = field(default_factory=_uuid)

    @property
    def dedupe_key(self) -> str:
        return change_key(
            self.entity_type, self.entity_id, self.operation,
            self.source_timestamp, self.source_version,
        )

    @property
    def topic(self) -> str:
        return entity_topic(self.entity_type)

    def supersedes(self, other: ChangeRecord) -> bool:
        """``True`` if this record wins over *other* under last-write-wins."""
        return _order_key(self) > _order_key(other)


def _order_key(record: ChangeRecord) -> tuple[datetime, int, int]:
    return (record.captured_at, record.source_version, record.sequence)


def change_key(
    entity_type: EntityType,
    entity_id: str,
    operation: ChangeOperation,
    source_timestamp: datetime,
    source_version: int,
) -> str:
    return stable_key(
        entity_type.value,
        entity_id,
        operation.value,
        source_timestamp.isoformat(),
        source_version,
    )


# ---------------------------------------------------------------------------
# Topics
# ---------------------------------------------------------------------------

GLOBAL_TOPIC = "all"


def entity_topic(entity_type: EntityType) -> str:
    return f"entity.{entity_type.value}"


def operation_topic(operation: ChangeOperation) -> str:
    return f"operation.{operation.value}"
