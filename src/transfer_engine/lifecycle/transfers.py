"""Transfer lifecycle manager.

Drives a transfer from Pending to Completed, Cancelled or Failed.  Like
the contract manager, every method works inside the caller's transaction;
a raise at any step leaves the transaction to roll back every write made
before it (reservation, contract changes, squads, player value).

Money flow
----------
initiate   fee reserved on the buying club (budget debited)
complete   reservation finalized, selling club credited fee minus sell-on
cancel     reservation released back to the buying club
fail       same accounting as cancel
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal

from transfer_engine.core.clock import IClock, WallClock
from transfer_engine.core.config import TransferRulesConfig
from transfer_engine.core.enums import (
    EntityType,
    TransferStatus,
    TransferType,
    TransferWindow,
)
from transfer_engine.core.errors import (
    InvalidStateTransition,
    InvariantViolation,
    NotFound,
    ValidationError,
)
from transfer_engine.core.models import (
    CANCELLATION_REASON,
    FAILURE_REASON,
    ContractRequest,
    ContractTerms,
    Transfer,
    TransferDetails,
    TransferRequest,
)
from transfer_engine.ledger.budget import BudgetLedger
from transfer_engine.storage.base import ITransaction
from transfer_engine.storage.repositories import Repositories
from transfer_engine.valuation.engine import ValuationEngine

from .contracts import ContractLifecycleManager
from .states import ensure_transition
from .windows import TransferWindowCalendar

logger = logging.getLogger(__name__)

TRANSFER_REASON = "Transfer"
SELL_ON_DEDUCTION = "sell_on_deduction"


class TransferLifecycleManager:
    def __init__(
        self,
        contracts: ContractLifecycleManager,
        ledger: BudgetLedger,
        valuation: ValuationEngine,
        rules: TransferRulesConfig | None = None,
        clock: IClock | None = None,
    ) -> None:
        self._contracts = contracts
        self._ledger = ledger
        self._valuation = valuation
        self._rules = rules or TransferRulesConfig()
        self._calendar = TransferWindowCalendar(self._rules)
        self._clock = clock or WallClock()

    @property
    def calendar(self) -> TransferWindowCalendar:
        return self._calendar

    # ------------------------------------------------------------------
    # Initiate
    # ------------------------------------------------------------------

    def _check_request(self, request: TransferRequest) -> None:
        if request.from_club_id == request.to_club_id:
            raise ValidationError("Origin and destination clubs must differ")
        if request.transfer_type == TransferType.FREE and request.fee != 0:
            raise ValidationError("Free transfers must have a zero fee")
        if request.transfer_type == TransferType.LOAN and request.loan_duration_months is None:
            raise ValidationError("Loan transfers require a loan duration")

    async def initiate(self, tx: ITransaction, request: TransferRequest) -> Transfer:
        """Validate *request*, reserve the fee and record a Pending transfer.

        Raises:
            ValidationError: Bad request or transfer date outside any window.
            NotFound: Player, a club or the agent does not exist.
            InvariantViolation: No Active contract with the origin club, a
                transfer already pending, or the destination squad is full.
            InsufficientFunds: The destination club cannot cover the fee.
        """
        self._check_request(request)

        repos = Repositories(tx)
        player = await repos.players.require(request.player_id)
        await repos.clubs.require(request.from_club_id)
        to_club = await repos.clubs.require(request.to_club_id)
        if request.agent_id is not None:
            await repos.agents.require(request.agent_id)

        transfer_date = request.transfer_date or self._clock.today()
        window = self._calendar.window_for(transfer_date)
        if window == TransferWindow.OUTSIDE:
            raise ValidationError(
                f"Transfer date {transfer_date} is outside valid transfer windows"
            )

        contract = await repos.contracts.active_for_player(player.id)
        if contract is None:
            raise InvariantViolation(f"Player {player.id} does not have an active contract")
        if contract.club_id != request.from_club_id:
            raise InvariantViolation(
                f"Player {player.id} is contracted to club {contract.club_id}, "
                f"not {request.from_club_id}"
            )

        if await repos.transfers.pending_for_player(player.id):
            raise InvariantViolation(f"Player {player.id} already has a pending transfer")

        if to_club.squad_size >= self._rules.squad_cap:
            raise InvariantViolation(
                f"Club {to_club.id} has reached the maximum squad size ({self._rules.squad_cap})"
            )

        await self._ledger.reserve(tx, to_club.id, request.fee)

        transfer = Transfer(
            player_id=player.id,
            from_club_id=request.from_club_id,
            to_club_id=request.to_club_id,
            fee=request.fee,
            currency=request.currency,
            transfer_date=transfer_date,
            transfer_type=request.transfer_type,
            status=TransferStatus.PENDING,
            transfer_window=window,
            agent_id=request.agent_id,
            loan_duration_months=request.loan_duration_months,
            sell_on_clause=request.sell_on_clause,
            performance_bonuses=list(request.performance_bonuses),
            additional_terms=dict(request.additional_terms),
            created_at=self._clock.now(),
        )
        await repos.transfers.add(transfer)
        # Player write makes concurrent initiations for one player conflict.
        await repos.players.save(player)

        logger.info(
            "Transfer %s initiated: player=%s %s -> %s fee=%s %s (%s window)",
            transfer.id, player.id, transfer.from_club_id, transfer.to_club_id,
            transfer.fee, transfer.currency.value, window.value,
        )
        return transfer

    # ------------------------------------------------------------------
    # Complete
    # ------------------------------------------------------------------

    async def complete(
        self,
        tx: ITransaction,
        transfer_id: str,
        contract_terms: ContractTerms | None = None,
    ) -> Transfer:
        """Move the player, sign the optional new contract and settle the fee."""
        repos = Repositories(tx)
        transfer = await repos.transfers.require(transfer_id)
        ensure_transition(
            EntityType.TRANSFER, transfer.id, transfer.status, TransferStatus.COMPLETED,
        )

        player = await repos.players.require(transfer.player_id)
        await repos.clubs.require(transfer.from_club_id)
        await repos.clubs.require(transfer.to_club_id)

        if player.current_club_id not in (None, transfer.from_club_id):
            raise InvariantViolation(
                f"Player {player.id} is registered with club {player.current_club_id}, "
                f"not the selling club {transfer.from_club_id}"
            )

        old = await repos.contracts.active_for_player(player.id)
        if old is not None:
            if old.club_id != transfer.from_club_id:
                raise InvariantViolation(
                    f"Player {player.id} holds an active contract with club {old.club_id}"
                )
            await self._contracts.terminate(tx, old.id, TRANSFER_REASON)

        if contract_terms is not None:
            new_contract = await self._contracts.create(
                tx,
                ContractRequest(
                    player_id=player.id,
                    club_id=transfer.to_club_id,
                    start_date=contract_terms.start_date or transfer.transfer_date,
                    end_date=contract_terms.end_date,
                    salary=contract_terms.salary,
                    buyout_clause=contract_terms.buyout_clause,
                    clauses=dict(contract_terms.clauses),
                ),
            )
            transfer.contract_id = new_contract.id

        settlement = await self._ledger.settle(
            tx,
            transfer.from_club_id,
            transfer.to_club_id,
            transfer.fee,
            sell_on_percentage=transfer.sell_on_percentage,
            transfer_id=transfer.id,
        )
        if settlement.sell_on is not None:
            transfer.additional_terms[SELL_ON_DEDUCTION] = str(settlement.sell_on.amount)

        # Re-read: contract creation and settlement wrote these documents.
        player = await repos.players.require(transfer.player_id)
        from_club = await repos.clubs.require(transfer.from_club_id)
        to_club = await repos.clubs.require(transfer.to_club_id)

        if from_club.has_player(player.id):
            from_club.squad.remove(player.id)
        if not to_club.has_player(player.id):
            if to_club.squad_size >= self._rules.squad_cap:
                raise InvariantViolation(
                    f"Club {to_club.id} has reached the maximum squad size ({self._rules.squad_cap})"
                )
            to_club.squad.append(player.id)
        await repos.clubs.save(from_club)
        await repos.clubs.save(to_club)

        before = player.market_value
        player.current_club_id = to_club.id
        player.market_value = self._valuation.revalue_after_fee(
            transfer.fee, player.age_on(self._clock.today()),
        )
        await repos.players.save(player)

        transfer.status = TransferStatus.COMPLETED
        transfer.completed_at = self._clock.now()
        await repos.transfers.save(transfer)

        logger.info(
            "Transfer %s completed: player=%s now at %s, value %s -> %s, seller credited %s",
            transfer.id, player.id, to_club.id, before, player.market_value, settlement.credited,
        )
        return transfer

    # ------------------------------------------------------------------
    # Cancel / fail
    # ------------------------------------------------------------------

    async def _abandon(
        self,
        tx: ITransaction,
        transfer_id: str,
        target: TransferStatus,
        reason_key: str,
        reason: str | None,
    ) -> Transfer:
        repos = Repositories(tx)
        transfer = await repos.transfers.require(transfer_id)
        ensure_transition(EntityType.TRANSFER, transfer.id, transfer.status, target)

        await self._ledger.release(tx, transfer.to_club_id, transfer.fee)

        transfer.status = target
        transfer.additional_terms[reason_key] = reason or "Unspecified"
        if target == TransferStatus.CANCELLED:
            transfer.cancelled_at = self._clock.now()
        await repos.transfers.save(transfer)

        logger.info(
            "Transfer %s %s: %s", transfer.id, target.value.lower(),
            transfer.additional_terms[reason_key],
        )
        return transfer

    async def cancel(self, tx: ITransaction, transfer_id: str, reason: str | None = None) -> Transfer:
        """Cancel a Pending transfer and release the reserved fee."""
        return await self._abandon(
            tx, transfer_id, TransferStatus.CANCELLED, CANCELLATION_REASON, reason,
        )

    async def fail(self, tx: ITransaction, transfer_id: str, reason: str | None = None) -> Transfer:
        """Mark a Pending transfer as Failed and release the reserved fee."""
        return await self._abandon(
            tx, transfer_id, TransferStatus.FAILED, FAILURE_REASON, reason,
        )

    # ------------------------------------------------------------------
    # Bonuses
    # ------------------------------------------------------------------

    async def mark_bonus_achieved(
        self,
        tx: ITransaction,
        transfer_id: str,
        bonus_id: str,
    ) -> Transfer:
        repos = Repositories(tx)
        transfer = await repos.transfers.require(transfer_id)
        if transfer.status != TransferStatus.COMPLETED:
            raise InvalidStateTransition(
                EntityType.TRANSFER.value, transfer.id,
                transfer.status.value, TransferStatus.COMPLETED.value,
            )
        for bonus in transfer.performance_bonuses:
            if bonus.id == bonus_id:
                break
        else:
            raise NotFound("performance_bonus", bonus_id)

        if not bonus.achieved:
            bonus.achieved = True
            await repos.transfers.save(transfer)
            logger.info("Transfer %s bonus %s achieved (%s)", transfer.id, bonus.id, bonus.amount)
        return transfer

    # ------------------------------------------------------------------
    # Read accessors
    # ------------------------------------------------------------------

    async def get(self, tx: ITransaction, transfer_id: str) -> Transfer:
        return await Repositories(tx).transfers.require(transfer_id)

    async def details(self, tx: ITransaction, transfer_id: str) -> TransferDetails:
        repos = Repositories(tx)
        transfer = await repos.transfers.require(transfer_id)
        return TransferDetails(
            transfer=transfer,
            player=await repos.players.get(transfer.player_id),
            from_club=await repos.clubs.get(transfer.from_club_id),
            to_club=await repos.clubs.get(transfer.to_club_id),
            contract=(
                await repos.contracts.get(transfer.contract_id)
                if transfer.contract_id else None
            ),
        )

    async def history(self, tx: ITransaction, player_id: str) -> list[Transfer]:
        repos = Repositories(tx)
        await repos.players.require(player_id)
        return await repos.transfers.history_for_player(player_id)

    async def appraise(
        self,
        tx: ITransaction,
        player_id: str,
        as_of: date | None = None,
    ) -> Decimal:
        """Current valuation of a player.  Nothing is written."""
        repos = Repositories(tx)
        player = await repos.players.require(player_id)
        contract = await repos.contracts.active_for_player(player.id)
        recent = await repos.transfers.recent_completed(
            player.id, self._valuation.config.history_lookback,
        )
        return self._valuation.compute_value(
            player, contract, recent, as_of or self._clock.today(),
        )
