"""Contract and transfer state machines.

    Contract:  Active -> [Terminated | Expired]
    Transfer:  Pending -> [Completed | Cancelled | Failed]

Terminal states cannot be exited.  Terminal records may still receive
annotations (termination clauses, achieved bonuses) but never a status
change.
"""

from __future__ import annotations

from enum import Enum

from transfer_engine.core.enums import ContractStatus, EntityType, TransferStatus
from transfer_engine.core.errors import InvalidStateTransition

CONTRACT_TERMINAL_STATES: frozenset[ContractStatus] = frozenset({
    ContractStatus.TERMINATED,
    ContractStatus.EXPIRED,
})

CONTRACT_TRANSITIONS: dict[ContractStatus, frozenset[ContractStatus]] = {
    ContractStatus.ACTIVE: frozenset({ContractStatus.TERMINATED, ContractStatus.EXPIRED}),
}

TRANSFER_TERMINAL_STATES: frozenset[TransferStatus] = frozenset({
    TransferStatus.COMPLETED,
    TransferStatus.CANCELLED,
    TransferStatus.FAILED,
})

TRANSFER_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({
        TransferStatus.COMPLETED, TransferStatus.CANCELLED, TransferStatus.FAILED,
    }),
}

_TABLES: dict[EntityType, dict] = {
    EntityType.CONTRACT: CONTRACT_TRANSITIONS,
    EntityType.TRANSFER: TRANSFER_TRANSITIONS,
}


def can_transition(entity_type: EntityType, current: Enum, target: Enum) -> bool:
    return target in _TABLES[entity_type].get(current, frozenset())


def ensure_transition(
    entity_type: EntityType,
    entity_id: str,
    current: Enum,
    target: Enum,
) -> None:
    """Raise ``InvalidStateTransition`` unless ``current -> target`` is allowed."""
    if not can_transition(entity_type, current, target):
        raise InvalidStateTransition(
            entity_type.value, entity_id, current.value, target.value,
        )
