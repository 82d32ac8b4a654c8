"""Repository pattern over the document store.

Each repository encapsulates query logic for a single aggregate root and
is bound to one :class:`~transfer_engine.storage.base.ITransaction`, so
every read it performs is validated at commit with the writes around it.

Documents are the ``model_dump(mode="json")`` form of the core models.
"""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from transfer_engine.core.enums import ContractStatus, EntityType, TransferStatus
from transfer_engine.core.errors import NotFound
from transfer_engine.core.models import Agent, Club, Contract, Player, Transfer

from .base import Document, ITransaction

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# ---------------------------------------------------------------------------
# Conversion helpers
# ---------------------------------------------------------------------------

def to_document(model: BaseModel) -> Document:
    """Convert a core model to its stored JSON form."""
    return model.model_dump(mode="json")


def from_document(model_cls: type[M], document: Document) -> M:
    """Convert a stored document back to a core model."""
    return model_cls.model_validate(document)


# ---------------------------------------------------------------------------
# Base repository
# ---------------------------------------------------------------------------

class _DocumentRepo(Generic[M]):
    entity_type: EntityType
    model_cls: type[M]

    def __init__(self, tx: ITransaction) -> None:
        self._tx = tx

    @property
    def collection(self) -> str:
        return self.entity_type.value

    async def get(self, entity_id: str) -> M | None:
        doc = await self._tx.get(self.collection, entity_id)
        return from_document(self.model_cls, doc) if doc is not None else None

    async def require(self, entity_id: str) -> M:
        """Like :meth:`get` but raises :class:`NotFound`."""
        found = await self.get(entity_id)
        if found is None:
            raise NotFound(self.entity_type.value, entity_id)
        return found

    async def add(self, model: M) -> M:
        await self._tx.insert(self.collection, to_document(model))
        return model

    async def save(self, model: M) -> M:
        await self._tx.replace(self.collection, to_document(model))
        return model

    async def find(self, **where: Any) -> list[M]:
        docs = await self._tx.find(self.collection, where or None)
        return [from_document(self.model_cls, d) for d in docs]


# ---------------------------------------------------------------------------
# Aggregates
# ---------------------------------------------------------------------------

class PlayerRepo(_DocumentRepo[Player]):
    entity_type = EntityType.PLAYER
    model_cls = Player


class ClubRepo(_DocumentRepo[Club]):
    entity_type = EntityType.CLUB
    model_cls = Club


class AgentRepo(_DocumentRepo[Agent]):
    entity_type = EntityType.AGENT
    model_cls = Agent


class ContractRepo(_DocumentRepo[Contract]):
    entity_type = EntityType.CONTRACT
    model_cls = Contract

    async def active_for_player(self, player_id: str) -> Contract | None:
        found = await self.find(player_id=player_id, status=ContractStatus.ACTIVE.value)
        if len(found) > 1:
            # Should be unreachable while every write goes through the managers.
            logger.error(
                "Player %s has %d active contracts", player_id, len(found),
            )
        return found[0] if found else None

    async def history_for_player(self, player_id: str) -> list[Contract]:
        """All contracts of a player, newest start date first."""
        found = await self.find(player_id=player_id)
        return sorted(found, key=lambda c: (c.start_date, c.created_at), reverse=True)

    async def active_for_club(self, club_id: str) -> list[Contract]:
        return await self.find(club_id=club_id, status=ContractStatus.ACTIVE.value)

    async def salary_expense(self, club_id: str, exclude_id: str | None = None) -> Decimal:
        """Sum of salaries over the club's active contracts."""
        return sum(
            (c.salary for c in await self.active_for_club(club_id) if c.id != exclude_id),
            Decimal("0"),
        )

    async def active_ending_before(self, as_of: date) -> list[Contract]:
        found = await self.find(status=ContractStatus.ACTIVE.value)
        return [c for c in found if c.end_date < as_of]

    async def active_ending_between(self, start: date, end: date) -> list[Contract]:
        """Active contracts with ``start < end_date <= end``, soonest first."""
        found = await self.find(status=ContractStatus.ACTIVE.value)
        return sorted(
            (c for c in found if start < c.end_date <= end),
            key=lambda c: c.end_date,
        )


class TransferRepo(_DocumentRepo[Transfer]):
    entity_type = EntityType.TRANSFER
    model_cls = Transfer

    async def history_for_player(self, player_id: str) -> list[Transfer]:
        """All transfers of a player, most recent transfer date first."""
        found = await self.find(player_id=player_id)
        return sorted(found, key=lambda t: (t.transfer_date, t.created_at), reverse=True)

    async def pending_for_player(self, player_id: str) -> list[Transfer]:
        return await self.find(player_id=player_id, status=TransferStatus.PENDING.value)

    async def recent_completed(self, player_id: str, limit: int) -> list[Transfer]:
        history = await self.history_for_player(player_id)
        return [t for t in history if t.status == TransferStatus.COMPLETED][:limit]


class Repositories:
    """All repositories bound to one transaction."""

    def __init__(self, tx: ITransaction) -> None:
        self.tx = tx
        self.players = PlayerRepo(tx)
        self.clubs = ClubRepo(tx)
        self.agents = AgentRepo(tx)
        self.contracts = ContractRepo(tx)
        self.transfers = TransferRepo(tx)
