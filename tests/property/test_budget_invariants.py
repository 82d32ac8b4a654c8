"""Property test: money and contract invariants under random operation sequences.

Generates random sequences of initiate / complete / cancel / fail calls over
a small fixed world and checks after every step that:

*  no club budget or reservation is ever negative,
*  budget + reserved funds across all clubs is conserved (no sell-on),
*  each club's reservation equals the fees of transfers pending towards it,
*  no player holds more than one Active contract.
"""

import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

from hypothesis import given, settings, strategies as st

from transfer_engine.core.clock import SimClock
from transfer_engine.core.config import CaptureConfig, Settings
from transfer_engine.core.enums import ContractStatus, Position, TransferStatus
from transfer_engine.core.errors import EngineError
from transfer_engine.core.models import Club, Player
from transfer_engine.engine import TransferEngine
from transfer_engine.storage.memory_store import InMemoryDocumentStore

CLUB_BUDGET = Decimal("10000000")
N = 3

operations = st.lists(
    st.tuples(
        st.sampled_from(["initiate", "complete", "cancel", "fail"]),
        st.integers(0, N - 1),      # player
        st.integers(0, N - 1),      # destination club
        st.integers(0, 12),         # fee in millions
        st.booleans(),              # sign a new contract on completion
    ),
    max_size=20,
)


async def _world(engine):
    clubs, players = [], []
    for i in range(N):
        club = await engine.add_club(Club(name=f"Club {i}", budget=CLUB_BUDGET))
        player = await engine.add_player(
            Player(
                name=f"Player {i}",
                date_of_birth=date(1998, 3, 14),
                nationality="Italian",
                position=Position.CENTRAL_MIDFIELDER,
                market_value=Decimal("5000000"),
            )
        )
        await engine.create_contract({
            "player_id": player.id,
            "club_id": club.id,
            "start_date": "2024-07-01",
            "end_date": "2027-06-30",
            "salary": "100000",
        })
        clubs.append(club)
        players.append(player)
    return clubs, players


async def _pending(engine, player_id):
    history = await engine.get_player_transfer_history(player_id)
    return [t for t in history if t.status == TransferStatus.PENDING]


async def _step(engine, clubs, players, op, p, c, fee, with_terms):
    player = players[p]
    if op == "initiate":
        current = (await engine.get_player(player.id)).current_club_id
        await engine.initiate_transfer({
            "player_id": player.id,
            "from_club_id": current or clubs[0].id,
            "to_club_id": clubs[c].id,
            "fee": Decimal(fee) * 1_000_000,
            "transfer_date": "2024-07-15",
        })
        return
    pending = await _pending(engine, player.id)
    if not pending:
        return
    transfer_id = pending[0].id
    if op == "complete":
        terms = {"end_date": "2026-06-30", "salary": "100000"} if with_terms else None
        await engine.complete_transfer(transfer_id, terms)
    elif op == "cancel":
        await engine.cancel_transfer(transfer_id)
    else:
        await engine.fail_transfer(transfer_id)


async def _check(engine, clubs, players):
    stored = [await engine.get_club(c.id) for c in clubs]
    for club in stored:
        assert club.budget >= 0
        assert club.reserved_funds >= 0
    assert sum(c.budget + c.reserved_funds for c in stored) == CLUB_BUDGET * N

    pending_fees = {c.id: Decimal("0") for c in clubs}
    for player in players:
        for transfer in await _pending(engine, player.id):
            pending_fees[transfer.to_club_id] += transfer.fee
        active = [
            k for k in await engine.get_contract_history(player.id)
            if k.status == ContractStatus.ACTIVE
        ]
        assert len(active) <= 1
    for club in stored:
        assert club.reserved_funds == pending_fees[club.id]


async def _run(ops):
    clock = SimClock(datetime(2024, 7, 1, tzinfo=timezone.utc))
    engine = TransferEngine(
        InMemoryDocumentStore(clock),
        Settings(capture=CaptureConfig(enabled=False)),
        clock,
    )
    clubs, players = await _world(engine)
    for op in ops:
        try:
            await _step(engine, clubs, players, *op)
        except EngineError:
            pass
        await _check(engine, clubs, players)


@given(ops=operations)
@settings(max_examples=40, deadline=None)
def test_money_and_contract_invariants(ops):
    asyncio.run(_run(ops))
