"""Shared fixtures for the transfer-engine test suite."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
import pytest_asyncio

from transfer_engine.core.clock import SimClock
from transfer_engine.core.config import Settings
from transfer_engine.core.enums import Position
from transfer_engine.core.models import Club, Contract, Player
from transfer_engine.engine import TransferEngine
from transfer_engine.storage.memory_store import InMemoryDocumentStore
from transfer_engine.storage.sql_store import SqlDocumentStore


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def make_player(**overrides) -> Player:
    fields = {
        "name": "Player X",
        "date_of_birth": date(1998, 3, 14),
        "nationality": "Italian",
        "position": Position.CENTRAL_MIDFIELDER,
        "market_value": Decimal("5000000"),
    }
    fields.update(overrides)
    return Player(**fields)


def make_club(**overrides) -> Club:
    fields = {
        "name": "Club",
        "league": "Serie A",
        "country": "Italy",
        "budget": Decimal("10000000"),
    }
    fields.update(overrides)
    return Club(**fields)


# ---------------------------------------------------------------------------
# Clock / settings / store
# ---------------------------------------------------------------------------

@pytest.fixture
def sim_clock() -> SimClock:
    """Simulated clock fixed at 2024-07-01 UTC (summer window)."""
    return SimClock(datetime(2024, 7, 1, tzinfo=timezone.utc))


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def store(sim_clock) -> InMemoryDocumentStore:
    return InMemoryDocumentStore(sim_clock)


async def open_sqlite_store(path, clock) -> SqlDocumentStore:
    """SqlDocumentStore over a throwaway SQLite file, tables created."""
    pytest.importorskip("aiosqlite")
    sql = SqlDocumentStore(f"sqlite+aiosqlite:///{path}/docs.db", clock=clock)
    await sql.create_all()
    return sql


@pytest_asyncio.fixture
async def sql_store(tmp_path, sim_clock):
    sql = await open_sqlite_store(tmp_path, sim_clock)
    yield sql
    await sql.close()


@pytest_asyncio.fixture
async def engine(store, settings, sim_clock):
    """A started engine over the ``store`` fixture."""
    eng = TransferEngine(store, settings, sim_clock)
    await eng.start()
    yield eng
    await eng.stop()


# ---------------------------------------------------------------------------
# Seeded world
# ---------------------------------------------------------------------------

@dataclass
class World:
    club_a: Club
    club_b: Club
    player_x: Player
    player_y: Player
    contract_x: Contract


@pytest_asyncio.fixture
async def world(engine) -> World:
    """Club A (10M) holds Player X (5M, age 26) until mid-2027.

    Club B has 15M.  Player Y (age 21, 2M) is a free agent.
    """
    club_a = await engine.add_club(make_club(name="Club A", budget=Decimal("10000000")))
    club_b = await engine.add_club(make_club(name="Club B", budget=Decimal("15000000")))
    player_x = await engine.add_player(make_player())
    player_y = await engine.add_player(
        make_player(
            name="Player Y",
            date_of_birth=date(2003, 1, 10),
            position=Position.STRIKER,
            market_value=Decimal("2000000"),
        )
    )
    contract_x = await engine.create_contract({
        "player_id": player_x.id,
        "club_id": club_a.id,
        "start_date": date(2023, 7, 1),
        "end_date": date(2027, 6, 30),
        "salary": Decimal("1000000"),
    })
    return World(
        club_a=await engine.get_club(club_a.id),
        club_b=await engine.get_club(club_b.id),
        player_x=await engine.get_player(player_x.id),
        player_y=player_y,
        contract_x=contract_x,
    )
