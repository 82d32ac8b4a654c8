"""Custom exception hierarchy for the transfer engine."""

from __future__ import annotations

from decimal import Decimal


class EngineError(Exception):
    """Base exception for all transfer engine errors."""


# --- Configuration ---
class ConfigError(EngineError):
    """Invalid or missing configuration."""


# --- Domain ---
class NotFound(EngineError):
    """A referenced player, club, contract or transfer does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"{entity_type} not found with id {entity_id}")


class ValidationError(EngineError):
    """Malformed input or missing required fields."""


class InvariantViolation(EngineError):
    """The operation would break a domain invariant (squad cap, duplicate contract, ...)."""


class InsufficientFunds(EngineError):
    """A budget reservation exceeds what the club has available."""

    def __init__(self, club_id: str, requested: Decimal, available: Decimal):
        self.club_id = club_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Club {club_id} cannot cover {requested} (available {available})"
        )


class InvalidStateTransition(EngineError):
    """Operation attempted on an entity that is not in the required state."""

    def __init__(self, entity_type: str, entity_id: str, current: str, target: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move {entity_type} {entity_id} from {current} to {target}"
        )


# --- Storage ---
class StoreError(EngineError):
    """Document store failure."""


class TransactionConflict(StoreError):
    """A document read or written by the transaction changed before commit."""


class DocumentExistsError(StoreError):
    """Insert of a document whose id is already taken."""


class TransactionClosedError(StoreError):
    """Use of a transaction handle after commit or rollback."""


# --- Change capture ---
class CaptureError(EngineError):
    """Change capture bus misuse (e.g. starting twice)."""
