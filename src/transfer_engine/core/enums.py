"""Enumerations used across the transfer engine."""

from enum import Enum


class EntityType(str, Enum):
    """Document collections the engine reads, writes and captures."""

    PLAYER = "player"
    CLUB = "club"
    CONTRACT = "contract"
    TRANSFER = "transfer"
    AGENT = "agent"


class ChangeOperation(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ContractStatus(str, Enum):
    ACTIVE = "Active"
    EXPIRED = "Expired"
    TERMINATED = "Terminated"


class TransferStatus(str, Enum):
    PENDING = "Pending"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


class TransferType(str, Enum):
    PERMANENT = "Permanent"
    LOAN = "Loan"
    FREE = "Free"
    SWAP = "Swap"


class TransferWindow(str, Enum):
    SUMMER = "Summer"
    WINTER = "Winter"
    OUTSIDE = "Outside"


class Position(str, Enum):
    GOALKEEPER = "Goalkeeper"
    CENTER_BACK = "Center Back"
    RIGHT_BACK = "Right Back"
    LEFT_BACK = "Left Back"
    DEFENSIVE_MIDFIELDER = "Defensive Midfielder"
    CENTRAL_MIDFIELDER = "Central Midfielder"
    ATTACKING_MIDFIELDER = "Attacking Midfielder"
    RIGHT_WINGER = "Right Winger"
    LEFT_WINGER = "Left Winger"
    STRIKER = "Striker"


class Currency(str, Enum):
    EUR = "EUR"
    USD = "USD"
    GBP = "GBP"
    JPY = "JPY"
    CNY = "CNY"


class StorageBackend(str, Enum):
    MEMORY = "memory"
    SQL = "sql"
