"""TransferEngine: the outer, transaction-opening layer.

Each public coroutine is one lifecycle operation: it binds an operation id
for log correlation, opens a transaction through the
:class:`TransactionRunner` (conflict retry, optional deadline) and calls
the transaction-scoped manager method inside it.  Any raise rolls the
whole operation back.

Request payloads may be given as the pydantic request models or as plain
dicts; malformed payloads raise the engine's ``ValidationError``.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from transfer_engine.cdc.bus import ChangeCaptureBus
from transfer_engine.core.clock import IClock, WallClock
from transfer_engine.core.config import Settings
from transfer_engine.core.enums import StorageBackend
from transfer_engine.core.errors import ConfigError, ValidationError
from transfer_engine.core.models import (
    Agent,
    Club,
    Contract,
    ContractRequest,
    ContractTerms,
    Player,
    Transfer,
    TransferDetails,
    TransferRequest,
)
from transfer_engine.ledger.budget import BudgetLedger, SellOnAllocationPolicy
from transfer_engine.lifecycle.contracts import ContractLifecycleManager
from transfer_engine.lifecycle.transfers import TransferLifecycleManager
from transfer_engine.observability.logger import operation_scope
from transfer_engine.storage.base import IDocumentStore, ITransaction
from transfer_engine.storage.memory_store import InMemoryDocumentStore
from transfer_engine.storage.repositories import Repositories
from transfer_engine.storage.runner import TransactionRunner, TransactionalFn
from transfer_engine.valuation.engine import ValuationEngine

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)
T = TypeVar("T")


def _coerce(model_cls: type[M], data: M | dict[str, Any]) -> M:
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid {model_cls.__name__}: {exc}") from exc


class TransferEngine:
    """Wires the managers, ledger, valuation and capture bus around one store.

    Args:
        store: Transactional document store.
        settings: Engine settings; defaults when omitted.
        clock: Source of dates and timestamps.
        sell_on_policy: Where withheld sell-on amounts go.
    """

    def __init__(
        self,
        store: IDocumentStore,
        settings: Settings | None = None,
        clock: IClock | None = None,
        sell_on_policy: SellOnAllocationPolicy | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._clock = clock or WallClock()
        self._store = store

        self._valuation = ValuationEngine(self._settings.valuation)
        self._ledger = BudgetLedger(sell_on_policy)
        self._contracts = ContractLifecycleManager(
            self._valuation,
            self._settings.contracts,
            self._settings.transfers,
            self._clock,
        )
        self._transfers = TransferLifecycleManager(
            self._contracts,
            self._ledger,
            self._valuation,
            self._settings.transfers,
            self._clock,
        )
        self._runner = TransactionRunner(
            store,
            max_retries=self._settings.transactions.max_retries,
            default_timeout=self._settings.transactions.timeout_seconds,
        )
        self._capture = ChangeCaptureBus(store, self._settings.capture, self._clock)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        await self._capture.start()

    async def stop(self) -> None:
        await self._capture.stop()

    async def close(self) -> None:
        await self.stop()
        await self._store.close()

    async def __aenter__(self) -> TransferEngine:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    @property
    def capture(self) -> ChangeCaptureBus:
        return self._capture

    @property
    def store(self) -> IDocumentStore:
        return self._store

    @property
    def runner(self) -> TransactionRunner:
        return self._runner

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def valuation(self) -> ValuationEngine:
        return self._valuation

    @property
    def contracts(self) -> ContractLifecycleManager:
        """Transaction-scoped contract manager, for callers composing their own units."""
        return self._contracts

    @property
    def transfers(self) -> TransferLifecycleManager:
        return self._transfers

    async def _run(
        self,
        name: str,
        fn: TransactionalFn[T],
        timeout: float | None = None,
    ) -> T:
        with operation_scope(name):
            result = await self._runner.run(fn, timeout=timeout, label=name)
            logger.debug("%s committed", name)
            return result

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def add_player(self, player: Player | dict[str, Any]) -> Player:
        player = _coerce(Player, player)

        async def _add(tx: ITransaction) -> Player:
            return await Repositories(tx).players.add(player)

        return await self._run("add_player", _add)

    async def add_club(self, club: Club | dict[str, Any]) -> Club:
        club = _coerce(Club, club)

        async def _add(tx: ITransaction) -> Club:
            return await Repositories(tx).clubs.add(club)

        return await self._run("add_club", _add)

    async def add_agent(self, agent: Agent | dict[str, Any]) -> Agent:
        agent = _coerce(Agent, agent)

        async def _add(tx: ITransaction) -> Agent:
            return await Repositories(tx).agents.add(agent)

        return await self._run("add_agent", _add)

    async def get_player(self, player_id: str) -> Player:
        return await self._run(
            "get_player", lambda tx: Repositories(tx).players.require(player_id),
        )

    async def get_club(self, club_id: str) -> Club:
        return await self._run(
            "get_club", lambda tx: Repositories(tx).clubs.require(club_id),
        )

    # ------------------------------------------------------------------
    # Contracts
    # ------------------------------------------------------------------

    async def create_contract(
        self,
        request: ContractRequest | dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Contract:
        request = _coerce(ContractRequest, request)
        return await self._run(
            "create_contract",
            lambda tx: self._contracts.create(tx, request),
            timeout,
        )

    async def update_contract(
        self,
        contract_id: str,
        changes: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Contract:
        return await self._run(
            "update_contract",
            lambda tx: self._contracts.update(tx, contract_id, dict(changes)),
            timeout,
        )

    async def terminate_contract(
        self,
        contract_id: str,
        reason: str | None = None,
        compensation_fee: Decimal | None = None,
        *,
        release_player: bool = False,
        timeout: float | None = None,
    ) -> Contract:
        return await self._run(
            "terminate_contract",
            lambda tx: self._contracts.terminate(
                tx, contract_id, reason, compensation_fee, release_player=release_player,
            ),
            timeout,
        )

    async def renew_contract(
        self,
        contract_id: str,
        terms: ContractTerms | dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Contract:
        terms = _coerce(ContractTerms, terms)
        return await self._run(
            "renew_contract",
            lambda tx: self._contracts.renew(tx, contract_id, terms),
            timeout,
        )

    async def sweep_expired_contracts(self, as_of: date | None = None) -> int:
        """Expire every Active contract that ended before *as_of*.

        Each contract is expired in its own transaction; a failure is
        logged and skipped.  Returns the number of contracts expired.
        """
        as_of = as_of or self._clock.today()
        with operation_scope("sweep_expired_contracts"):
            expired_ids = await self._runner.run(
                lambda tx: self._contracts.find_expired(tx, as_of),
                label="sweep_expired_contracts",
            )
            updated = 0
            for contract_id in expired_ids:
                try:
                    await self._runner.run(
                        lambda tx, cid=contract_id: self._contracts.expire(tx, cid, as_of),
                        label="expire_contract",
                    )
                except Exception:
                    logger.warning("Could not expire contract %s", contract_id, exc_info=True)
                    continue
                updated += 1
            logger.info(
                "Expiry sweep as of %s: %d of %d contracts expired",
                as_of, updated, len(expired_ids),
            )
            return updated

    async def get_contract(self, contract_id: str) -> Contract:
        return await self._run("get_contract", lambda tx: self._contracts.get(tx, contract_id))

    async def get_active_contract(self, player_id: str) -> Contract | None:
        return await self._run(
            "get_active_contract",
            lambda tx: self._contracts.active_for_player(tx, player_id),
        )

    async def get_contract_history(self, player_id: str) -> list[Contract]:
        return await self._run(
            "get_contract_history",
            lambda tx: self._contracts.history_for_player(tx, player_id),
        )

    async def get_club_contracts(self, club_id: str) -> list[Contract]:
        return await self._run(
            "get_club_contracts",
            lambda tx: self._contracts.active_for_club(tx, club_id),
        )

    async def get_club_salary_expense(self, club_id: str) -> Decimal:
        return await self._run(
            "get_club_salary_expense",
            lambda tx: self._contracts.salary_expense(tx, club_id),
        )

    async def get_expiring_contracts(
        self,
        months: int | None = None,
        as_of: date | None = None,
    ) -> list[Contract]:
        return await self._run(
            "get_expiring_contracts",
            lambda tx: self._contracts.expiring_within(tx, months, as_of),
        )

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def initiate_transfer(
        self,
        request: TransferRequest | dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> Transfer:
        request = _coerce(TransferRequest, request)
        return await self._run(
            "initiate_transfer",
            lambda tx: self._transfers.initiate(tx, request),
            timeout,
        )

    async def complete_transfer(
        self,
        transfer_id: str,
        contract_terms: ContractTerms | dict[str, Any] | None = None,
        *,
        timeout: float | None = None,
    ) -> Transfer:
        terms = _coerce(ContractTerms, contract_terms) if contract_terms is not None else None
        return await self._run(
            "complete_transfer",
            lambda tx: self._transfers.complete(tx, transfer_id, terms),
            timeout,
        )

    async def cancel_transfer(
        self,
        transfer_id: str,
        reason: str | None = None,
        *,
        timeout: float | None = None,
    ) -> Transfer:
        return await self._run(
            "cancel_transfer",
            lambda tx: self._transfers.cancel(tx, transfer_id, reason),
            timeout,
        )

    async def fail_transfer(
        self,
        transfer_id: str,
        reason: str | None = None,
        *,
        timeout: float | None = None,
    ) -> Transfer:
        return await self._run(
            "fail_transfer",
            lambda tx: self._transfers.fail(tx, transfer_id, reason),
            timeout,
        )

    async def mark_bonus_achieved(self, transfer_id: str, bonus_id: str) -> Transfer:
        return await self._run(
            "mark_bonus_achieved",
            lambda tx: self._transfers.mark_bonus_achieved(tx, transfer_id, bonus_id),
        )

    async def get_transfer(self, transfer_id: str) -> Transfer:
        return await self._run("get_transfer", lambda tx: self._transfers.get(tx, transfer_id))

    async def get_transfer_details(self, transfer_id: str) -> TransferDetails:
        return await self._run(
            "get_transfer_details",
            lambda tx: self._transfers.details(tx, transfer_id),
        )

    async def get_player_transfer_history(self, player_id: str) -> list[Transfer]:
        return await self._run(
            "get_player_transfer_history",
            lambda tx: self._transfers.history(tx, player_id),
        )

    async def calculate_player_value(
        self,
        player_id: str,
        as_of: date | None = None,
    ) -> Decimal:
        return await self._run(
            "calculate_player_value",
            lambda tx: self._transfers.appraise(tx, player_id, as_of),
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

async def build_store(settings: Settings, clock: IClock | None = None) -> IDocumentStore:
    """Create the document store selected by ``settings.storage``."""
    storage = settings.storage
    if storage.backend == StorageBackend.MEMORY:
        return InMemoryDocumentStore(clock)
    if storage.backend == StorageBackend.SQL:
        from transfer_engine.storage.sql_store import SqlDocumentStore

        store = SqlDocumentStore(storage.url, clock=clock, echo=storage.echo)
        if storage.create_tables:
            await store.create_all()
        return store
    raise ConfigError(f"Unknown storage backend: {storage.backend}")


async def build_engine(
    settings: Settings | None = None,
    clock: IClock | None = None,
    sell_on_policy: SellOnAllocationPolicy | None = None,
) -> TransferEngine:
    """Build a :class:`TransferEngine` (not yet started) from settings."""
    settings = settings or Settings()
    store = await build_store(settings, clock)
    return TransferEngine(store, settings, clock, sell_on_policy)
