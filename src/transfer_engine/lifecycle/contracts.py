"""Contract lifecycle manager.

Transaction-scoped: every method takes the caller's ``ITransaction`` as
its first argument and never commits.  ``TransferEngine`` opens the
transactions; the transfer manager calls in here with its own.

Invariants maintained
---------------------
*  A player holds at most one Active contract.  Every method that creates
   or ends an Active contract also writes the Player document, so two
   concurrent transactions on one player conflict at commit.
*  A club's active salary total never exceeds its budget at signing time.
   Signing always writes the Club document for the same reason.
*  A club's squad never exceeds the configured cap.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from transfer_engine.core.clock import IClock, WallClock
from transfer_engine.core.config import ContractRulesConfig, TransferRulesConfig
from transfer_engine.core.dates import add_months
from transfer_engine.core.enums import ContractStatus, EntityType
from transfer_engine.core.errors import (
    InsufficientFunds,
    InvalidStateTransition,
    InvariantViolation,
    ValidationError,
)
from transfer_engine.core.models import (
    COMPENSATION_FEE,
    TERMINATION_DATE,
    TERMINATION_REASON,
    Club,
    Contract,
    ContractRequest,
    ContractTerms,
    Player,
)
from transfer_engine.storage.base import ITransaction
from transfer_engine.storage.repositories import Repositories
from transfer_engine.valuation.engine import ValuationEngine

from .states import ensure_transition

logger = logging.getLogger(__name__)

DEFAULT_TERMINATION_REASON = "Unspecified"
RENEWAL_REASON = "Renewal"

RESTRICTED_FIELDS = frozenset({"id", "player_id", "club_id", "status"})
UPDATABLE_FIELDS = frozenset({"start_date", "end_date", "salary", "buyout_clause", "clauses"})


class ContractLifecycleManager:
    """Creates, updates, terminates, renews and expires contracts.

    Args:
        valuation: Used for the renewal revaluation.
        rules: Duration bounds and the expiring-soon default.
        transfer_rules: Supplies the squad cap.
        clock: Source of "today" for termination dates and renewals.
    """

    def __init__(
        self,
        valuation: ValuationEngine,
        rules: ContractRulesConfig | None = None,
        transfer_rules: TransferRulesConfig | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._valuation = valuation
        self._rules = rules or ContractRulesConfig()
        self._squad_cap = (transfer_rules or TransferRulesConfig()).squad_cap
        self._clock = clock or WallClock()

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_dates(self, start: date, end: date) -> None:
        if end <= start:
            raise ValidationError("Contract end date must be after start date")
        days = (end - start).days
        if days < self._rules.min_duration_days:
            raise InvariantViolation(
                f"Contract duration must be at least {self._rules.min_duration_days} days"
            )
        if days > self._rules.max_duration_days:
            raise InvariantViolation(
                f"Contract duration cannot exceed {self._rules.max_duration_days} days"
            )

    async def _check_salary(
        self,
        repos: Repositories,
        club: Club,
        salary: Decimal,
        exclude_id: str | None = None,
    ) -> None:
        expense = await repos.contracts.salary_expense(club.id, exclude_id=exclude_id)
        if expense + salary > club.budget:
            raise InsufficientFunds(club.id, salary, max(club.budget - expense, Decimal("0")))

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(self, tx: ITransaction, request: ContractRequest) -> Contract:
        """Sign *request* as a new Active contract.

        Raises:
            ValidationError: Missing fields or end date not after start date.
            NotFound: Player or club does not exist.
            InvariantViolation: Duration out of bounds, player already under
                contract, or squad full.
            InsufficientFunds: Salary would take the club over budget.
        """
        if request.start_date is None or request.end_date is None or request.salary is None:
            raise ValidationError("Missing required contract fields")

        repos = Repositories(tx)
        player = await repos.players.require(request.player_id)
        club = await repos.clubs.require(request.club_id)

        self._check_dates(request.start_date, request.end_date)

        existing = await repos.contracts.active_for_player(player.id)
        if existing is not None:
            if existing.club_id != club.id:
                raise InvariantViolation(
                    f"Player {player.id} already has an active contract with another club"
                )
            raise InvariantViolation(
                f"Player {player.id} already has an active contract with club {club.id}"
            )

        await self._check_salary(repos, club, request.salary)

        if not club.has_player(player.id):
            if club.squad_size >= self._squad_cap:
                raise InvariantViolation(
                    f"Club {club.id} squad is full ({self._squad_cap})"
                )
            club.squad.append(player.id)

        contract = Contract(
            player_id=player.id,
            club_id=club.id,
            start_date=request.start_date,
            end_date=request.end_date,
            salary=request.salary,
            buyout_clause=request.buyout_clause,
            status=ContractStatus.ACTIVE,
            clauses=dict(request.clauses),
            created_at=self._clock.now(),
        )
        await repos.contracts.add(contract)

        player.current_club_id = club.id
        await repos.players.save(player)
        await repos.clubs.save(club)

        logger.info(
            "Contract %s signed: player=%s club=%s until %s",
            contract.id, player.id, club.id, contract.end_date,
        )
        return contract

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(
        self,
        tx: ITransaction,
        contract_id: str,
        changes: dict[str, Any],
    ) -> Contract:
        """Amend the terms of an Active contract.

        Identity, parties and status cannot be changed here.  Dates and
        salary are re-validated with this contract's own salary excluded
        from the club total.
        """
        restricted = RESTRICTED_FIELDS & changes.keys()
        if restricted:
            raise ValidationError(f"Fields cannot be updated: {sorted(restricted)}")
        unknown = changes.keys() - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown contract fields: {sorted(unknown)}")

        repos = Repositories(tx)
        contract = await repos.contracts.require(contract_id)
        if not contract.is_active:
            raise InvalidStateTransition(
                EntityType.CONTRACT.value, contract.id,
                contract.status.value, ContractStatus.ACTIVE.value,
            )

        merged = contract.model_dump()
        merged.update(changes)
        try:
            updated = Contract.model_validate(merged)
        except PydanticValidationError as exc:
            raise ValidationError(f"Invalid contract update: {exc}") from exc

        self._check_dates(updated.start_date, updated.end_date)
        club = await repos.clubs.require(updated.club_id)
        await self._check_salary(repos, club, updated.salary, exclude_id=contract.id)

        await repos.contracts.save(updated)
        await repos.clubs.save(club)
        logger.info("Contract %s updated: %s", contract_id, sorted(changes))
        return updated

    # ------------------------------------------------------------------
    # Terminate / renew
    # ------------------------------------------------------------------

    async def terminate(
        self,
        tx: ITransaction,
        contract_id: str,
        reason: str | None = None,
        compensation_fee: Decimal | None = None,
        *,
        release_player: bool = False,
    ) -> Contract:
        """End an Active contract early.

        With *release_player* the player becomes a free agent, provided
        they are still registered to this contract's club.
        """
        repos = Repositories(tx)
        contract = await repos.contracts.require(contract_id)
        ensure_transition(
            EntityType.CONTRACT, contract.id, contract.status, ContractStatus.TERMINATED,
        )
        if compensation_fee is not None and compensation_fee < 0:
            raise ValidationError("Compensation fee must be non-negative")

        contract.status = ContractStatus.TERMINATED
        contract.clauses[TERMINATION_REASON] = reason or DEFAULT_TERMINATION_REASON
        contract.clauses[TERMINATION_DATE] = self._clock.today().isoformat()
        if compensation_fee is not None:
            contract.clauses[COMPENSATION_FEE] = str(compensation_fee)
        await repos.contracts.save(contract)

        player = await repos.players.require(contract.player_id)
        if release_player:
            await self._release(repos, player, contract.club_id)
        await repos.players.save(player)

        logger.info(
            "Contract %s terminated (%s)", contract.id, contract.clauses[TERMINATION_REASON],
        )
        return contract

    async def renew(
        self,
        tx: ITransaction,
        contract_id: str,
        terms: ContractTerms,
    ) -> Contract:
        """Replace an Active contract with a new one at the same club.

        The old contract is terminated with reason ``Renewal``; the new one
        starts today unless *terms* say otherwise.  The player's market
        value is revised for the new term length.
        """
        repos = Repositories(tx)
        old = await repos.contracts.require(contract_id)
        ensure_transition(
            EntityType.CONTRACT, old.id, old.status, ContractStatus.TERMINATED,
        )

        await self.terminate(tx, old.id, RENEWAL_REASON)

        request = ContractRequest(
            player_id=old.player_id,
            club_id=old.club_id,
            start_date=terms.start_date or self._clock.today(),
            end_date=terms.end_date,
            salary=terms.salary,
            buyout_clause=terms.buyout_clause,
            clauses=dict(terms.clauses),
        )
        new = await self.create(tx, request)

        player = await repos.players.require(old.player_id)
        before = player.market_value
        player.market_value = self._valuation.revalue_after_renewal(
            before,
            self._valuation.renewal_years(new.start_date, new.end_date),
            new.salary,
            player.age_on(self._clock.today()),
        )
        await repos.players.save(player)

        logger.info(
            "Contract %s renewed as %s; player %s value %s -> %s",
            old.id, new.id, player.id, before, player.market_value,
        )
        return new

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    async def find_expired(self, tx: ITransaction, as_of: date) -> list[str]:
        """Ids of Active contracts whose end date is before *as_of*."""
        repos = Repositories(tx)
        return [c.id for c in await repos.contracts.active_ending_before(as_of)]

    async def expire(self, tx: ITransaction, contract_id: str, as_of: date) -> Contract:
        """Move one lapsed contract to Expired.

        The player's club reference is cleared only if it still points at
        this contract's club.
        """
        repos = Repositories(tx)
        contract = await repos.contracts.require(contract_id)
        ensure_transition(
            EntityType.CONTRACT, contract.id, contract.status, ContractStatus.EXPIRED,
        )
        if contract.end_date >= as_of:
            raise ValidationError(
                f"Contract {contract.id} runs until {contract.end_date}, not expired on {as_of}"
            )

        contract.status = ContractStatus.EXPIRED
        await repos.contracts.save(contract)

        player = await repos.players.get(contract.player_id)
        if player is not None:
            await self._release(repos, player, contract.club_id)
            await repos.players.save(player)
        else:
            logger.warning(
                "Expired contract %s references missing player %s",
                contract.id, contract.player_id,
            )
        return contract

    async def _release(self, repos: Repositories, player: Player, club_id: str) -> None:
        if player.current_club_id != club_id:
            return
        player.current_club_id = None
        club = await repos.clubs.get(club_id)
        if club is not None and club.has_player(player.id):
            club.squad.remove(player.id)
            await repos.clubs.save(club)

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    async def get(self, tx: ITransaction, contract_id: str) -> Contract:
        return await Repositories(tx).contracts.require(contract_id)

    async def active_for_player(self, tx: ITransaction, player_id: str) -> Contract | None:
        return await Repositories(tx).contracts.active_for_player(player_id)

    async def history_for_player(self, tx: ITransaction, player_id: str) -> list[Contract]:
        return await Repositories(tx).contracts.history_for_player(player_id)

    async def active_for_club(self, tx: ITransaction, club_id: str) -> list[Contract]:
        repos = Repositories(tx)
        await repos.clubs.require(club_id)
        return await repos.contracts.active_for_club(club_id)

    async def salary_expense(self, tx: ITransaction, club_id: str) -> Decimal:
        repos = Repositories(tx)
        await repos.clubs.require(club_id)
        return await repos.contracts.salary_expense(club_id)

    async def expiring_within(
        self,
        tx: ITransaction,
        months: int | None = None,
        as_of: date | None = None,
    ) -> list[Contract]:
        """Active contracts ending after *as_of* and within *months* of it."""
        months = self._rules.expiring_soon_months if months is None else months
        if months < 0:
            raise ValidationError("Months threshold must be non-negative")
        start = as_of or self._clock.today()
        return await Repositories(tx).contracts.active_ending_between(
            start, add_months(start, months),
        )
