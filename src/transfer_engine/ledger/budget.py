"""Budget ledger: fee movements against club budgets.

Every method runs inside the caller's transaction and writes the Club
documents it touches, so the money movement commits or rolls back with
the transfer that caused it.

Accounting
----------
``reserve``  budget -= amount, reserved_funds += amount   (buying club)
``release``  budget += amount, reserved_funds -= amount   (buying club)
``settle``   reserved_funds -= amount                     (buying club)
             budget += amount - sell_on_deduction         (selling club)

The sell-on deduction is handed to a ``SellOnAllocationPolicy``.  Where the
deducted amount should go is deployment-specific; the default policy only
logs it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from transfer_engine.core.errors import InsufficientFunds, InvariantViolation, ValidationError
from transfer_engine.core.models import Club
from transfer_engine.storage.base import ITransaction
from transfer_engine.storage.repositories import ClubRepo

logger = logging.getLogger(__name__)

_HUNDRED = Decimal("100")


@dataclass(frozen=True)
class SellOnDeduction:
    """The part of a fee withheld from the selling club."""

    transfer_id: str | None
    selling_club_id: str
    buying_club_id: str
    fee: Decimal
    percentage: Decimal
    amount: Decimal


@dataclass(frozen=True)
class Settlement:
    """Outcome of ``BudgetLedger.settle``."""

    fee: Decimal
    credited: Decimal
    sell_on: SellOnDeduction | None


# ---------------------------------------------------------------------------
# Sell-on allocation extension point
# ---------------------------------------------------------------------------

class SellOnAllocationPolicy(Protocol):
    """Decides where a withheld sell-on amount goes.

    Called inside the settling transaction; implementations may write
    through *tx* (e.g. credit a benefiting club) and those writes commit
    atomically with the settlement.
    """

    async def allocate(self, tx: ITransaction, deduction: SellOnDeduction) -> None:
        ...


class RetainSellOnPolicy:
    """Default: the deduction is withheld and credited to nobody."""

    async def allocate(self, tx: ITransaction, deduction: SellOnDeduction) -> None:
        logger.info(
            "Sell-on %s%% of %s withheld from club %s (transfer %s): %s",
            deduction.percentage,
            deduction.fee,
            deduction.selling_club_id,
            deduction.transfer_id,
            deduction.amount,
        )


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

def _check_amount(amount: Decimal) -> None:
    if amount < 0:
        raise ValidationError(f"Amount must be non-negative, got {amount}")


class BudgetLedger:
    def __init__(self, sell_on_policy: SellOnAllocationPolicy | None = None) -> None:
        self._sell_on_policy = sell_on_policy or RetainSellOnPolicy()

    async def reserve(self, tx: ITransaction, club_id: str, amount: Decimal) -> Club:
        """Debit *amount* from the club's budget as a pending reservation."""
        _check_amount(amount)
        clubs = ClubRepo(tx)
        club = await clubs.require(club_id)
        if amount > club.budget:
            raise InsufficientFunds(club_id, amount, club.budget)
        club.budget -= amount
        club.reserved_funds += amount
        await clubs.save(club)
        logger.debug("Reserved %s on club %s", amount, club_id)
        return club

    async def release(self, tx: ITransaction, club_id: str, amount: Decimal) -> Club:
        """Credit back a previously reserved *amount*."""
        _check_amount(amount)
        clubs = ClubRepo(tx)
        club = await clubs.require(club_id)
        if amount > club.reserved_funds:
            raise InvariantViolation(
                f"Club {club_id} has {club.reserved_funds} reserved, cannot release {amount}"
            )
        club.reserved_funds -= amount
        club.budget += amount
        await clubs.save(club)
        logger.debug("Released %s on club %s", amount, club_id)
        return club

    async def settle(
        self,
        tx: ITransaction,
        from_club_id: str,
        to_club_id: str,
        amount: Decimal,
        *,
        sell_on_percentage: Decimal = Decimal("0"),
        transfer_id: str | None = None,
    ) -> Settlement:
        """Finalize the buyer's reservation and credit the seller.

        The buyer's budget was already debited by ``reserve``; only the
        reservation is cleared here.
        """
        _check_amount(amount)
        if not Decimal("0") <= sell_on_percentage <= _HUNDRED:
            raise ValidationError(f"Sell-on percentage out of range: {sell_on_percentage}")

        clubs = ClubRepo(tx)
        buyer = await clubs.require(to_club_id)
        seller = await clubs.require(from_club_id)
        if amount > buyer.reserved_funds:
            raise InvariantViolation(
                f"Club {to_club_id} has {buyer.reserved_funds} reserved, cannot settle {amount}"
            )

        deducted = amount * sell_on_percentage / _HUNDRED
        credited = amount - deducted

        buyer.reserved_funds -= amount
        seller.budget += credited
        await clubs.save(buyer)
        await clubs.save(seller)

        deduction = None
        if deducted > 0:
            deduction = SellOnDeduction(
                transfer_id=transfer_id,
                selling_club_id=from_club_id,
                buying_club_id=to_club_id,
                fee=amount,
                percentage=sell_on_percentage,
                amount=deducted,
            )
            await self._sell_on_policy.allocate(tx, deduction)

        logger.debug(
            "Settled %s from club %s to club %s (credited %s)",
            amount, to_club_id, from_club_id, credited,
        )
        return Settlement(fee=amount, credited=credited, sell_on=deduction)
