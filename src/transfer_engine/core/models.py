"""Core domain models.

These are the canonical records the lifecycle managers read and write.
Documents in the store are the ``model_dump(mode="json")`` form of these
models; relationships are by id, never embedded copies.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, Field, field_validator

from .dates import age_on
from .enums import (
    ContractStatus,
    Currency,
    Position,
    TransferStatus,
    TransferType,
    TransferWindow,
)
from .ids import new_id, utc_now

# Clause keys written when a contract leaves the Active state.
TERMINATION_REASON = "termination_reason"
TERMINATION_DATE = "termination_date"
COMPENSATION_FEE = "compensation_fee"
CANCELLATION_REASON = "cancellation_reason"
FAILURE_REASON = "failure_reason"


# ---------------------------------------------------------------------------
# Player / Club
# ---------------------------------------------------------------------------

class Player(BaseModel):
    """A registered player.  ``current_club_id`` of ``None`` means free agent."""

    id: str = Field(default_factory=new_id)
    name: str
    date_of_birth: date
    nationality: str
    position: Position
    current_club_id: str | None = None
    market_value: Decimal = Field(default=Decimal("0"), ge=0)
    international_caps: int = Field(default=0, ge=0)
    international_goals: int = Field(default=0, ge=0)

    def age_on(self, on: date) -> int:
        return age_on(self.date_of_birth, on)


class Club(BaseModel):
    """A club with its spendable budget and registered squad.

    ``reserved_funds`` tracks fees already debited from ``budget`` for
    transfers that are still Pending.
    """

    id: str = Field(default_factory=new_id)
    name: str
    league: str = ""
    country: str = ""
    budget: Decimal = Field(default=Decimal("0"), ge=0)
    reserved_funds: Decimal = Field(default=Decimal("0"), ge=0)
    squad: list[str] = Field(default_factory=list)

    @property
    def squad_size(self) -> int:
        return len(self.squad)

    def has_player(self, player_id: str) -> bool:
        return player_id in self.squad


class Agent(BaseModel):
    """A player representative.  Only referenced by transfers."""

    id: str = Field(default_factory=new_id)
    name: str
    agency: str = ""
    client_ids: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Contract
# ---------------------------------------------------------------------------

class Contract(BaseModel):
    id: str = Field(default_factory=new_id)
    player_id: str
    club_id: str
    start_date: date
    end_date: date
    salary: Decimal = Field(ge=0)
    buyout_clause: Decimal = Field(default=Decimal("0"), ge=0)
    status: ContractStatus = ContractStatus.ACTIVE
    clauses: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status == ContractStatus.ACTIVE

    @property
    def termination_reason(self) -> str | None:
        return self.clauses.get(TERMINATION_REASON)


class ContractTerms(BaseModel):
    """Terms for a new or renewed contract.

    ``salary`` is optional at the schema level so that a missing value is
    reported by the lifecycle manager as a domain ``ValidationError``.
    """

    start_date: date | None = None
    end_date: date | None = None
    salary: Decimal | None = Field(default=None, ge=0)
    buyout_clause: Decimal = Field(default=Decimal("0"), ge=0)
    clauses: dict[str, Any] = Field(default_factory=dict)


class ContractRequest(ContractTerms):
    player_id: str
    club_id: str


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------

class SellOnClause(BaseModel):
    """Share of this fee owed to a previous club."""

    percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    active: bool = False

    @property
    def effective_percentage(self) -> Decimal:
        return self.percentage if self.active else Decimal("0")


class PerformanceBonus(BaseModel):
    id: str = Field(default_factory=new_id)
    description: str
    amount: Decimal = Field(ge=0)
    condition: str
    achieved: bool = False
    due_date: date | None = None


class Transfer(BaseModel):
    id: str = Field(default_factory=new_id)
    player_id: str
    from_club_id: str
    to_club_id: str
    fee: Decimal = Field(ge=0)
    currency: Currency = Currency.EUR
    transfer_date: date
    transfer_type: TransferType = TransferType.PERMANENT
    status: TransferStatus = TransferStatus.PENDING
    transfer_window: TransferWindow
    agent_id: str | None = None
    contract_id: str | None = None
    loan_duration_months: int | None = Field(default=None, ge=1)
    sell_on_clause: SellOnClause | None = None
    performance_bonuses: list[PerformanceBonus] = Field(default_factory=list)
    additional_terms: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None

    @property
    def sell_on_percentage(self) -> Decimal:
        if self.sell_on_clause is None:
            return Decimal("0")
        return self.sell_on_clause.effective_percentage


class TransferRequest(BaseModel):
    """Payload accepted by ``initiate``."""

    player_id: str
    from_club_id: str
    to_club_id: str
    fee: Decimal = Field(ge=0)
    transfer_date: date | None = None
    currency: Currency = Currency.EUR
    transfer_type: TransferType = TransferType.PERMANENT
    agent_id: str | None = None
    loan_duration_months: int | None = Field(default=None, ge=1)
    sell_on_clause: SellOnClause | None = None
    performance_bonuses: list[PerformanceBonus] = Field(default_factory=list)
    additional_terms: dict[str, Any] = Field(default_factory=dict)

    @field_validator("player_id", "from_club_id", "to_club_id")
    @classmethod
    def _not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


class TransferDetails(BaseModel):
    """A transfer with its referenced records resolved."""

    transfer: Transfer
    player: Player | None = None
    from_club: Club | None = None
    to_club: Club | None = None
    contract: Contract | None = None
