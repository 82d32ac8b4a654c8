"""Test SqlDocumentStore against a file-backed SQLite database."""

from datetime import date
from decimal import Decimal

import pytest
import pytest_asyncio

pytest.importorskip("aiosqlite")

from sqlalchemy.exc import OperationalError  # noqa: E402

from conftest import make_club, make_player  # noqa: E402
from transfer_engine.core.enums import ChangeOperation, ContractStatus, EntityType  # noqa: E402
from transfer_engine.core.errors import (  # noqa: E402
    DocumentExistsError,
    StoreError,
    TransactionConflict,
)
from transfer_engine.engine import TransferEngine  # noqa: E402
from transfer_engine.storage.sql_store import SqlDocumentStore, _SqlTransaction  # noqa: E402


@pytest_asyncio.fixture
async def sql_engine(sql_store, settings, sim_clock):
    engine = TransferEngine(sql_store, settings, sim_clock)
    await engine.start()
    yield engine
    await engine.stop()


class TestSqlDocumentStore:
    async def test_insert_and_get(self, sql_store):
        async with sql_store.transaction() as tx:
            await tx.insert("player", {"id": "p1", "name": "A"})
        async with sql_store.transaction() as tx:
            assert await tx.get("player", "p1") == {"id": "p1", "name": "A"}
            assert await tx.get("player", "missing") is None

    async def test_rollback_on_error(self, sql_store):
        with pytest.raises(RuntimeError):
            async with sql_store.transaction() as tx:
                await tx.insert("player", {"id": "p1"})
                raise RuntimeError("boom")
        async with sql_store.transaction() as tx:
            assert await tx.get("player", "p1") is None

    async def test_duplicate_insert(self, sql_store):
        async with sql_store.transaction() as tx:
            await tx.insert("club", {"id": "c1"})
        with pytest.raises(DocumentExistsError):
            async with sql_store.transaction() as tx:
                await tx.insert("club", {"id": "c1"})

    async def test_replace_missing(self, sql_store):
        with pytest.raises(StoreError):
            async with sql_store.transaction() as tx:
                await tx.replace("club", {"id": "ghost"})

    async def test_find_filters_by_fields(self, sql_store):
        async with sql_store.transaction() as tx:
            await tx.insert("contract", {"id": "k1", "player_id": "p1", "status": "Active"})
            await tx.insert("contract", {"id": "k2", "player_id": "p1", "status": "Terminated"})
        async with sql_store.transaction() as tx:
            found = await tx.find("contract", {"status": "Active"})
        assert [d["id"] for d in found] == ["k1"]

    async def test_stale_replace_conflicts(self, sql_store):
        async with sql_store.transaction() as tx:
            await tx.insert("club", {"id": "c1", "budget": "10"})

        with pytest.raises(TransactionConflict):
            async with sql_store.transaction() as tx1:
                await tx1.get("club", "c1")
                async with sql_store.transaction() as tx2:
                    await tx2.replace("club", {"id": "c1", "budget": "5"})
                await tx1.replace("club", {"id": "c1", "budget": "0"})

        async with sql_store.transaction() as tx:
            assert (await tx.get("club", "c1"))["budget"] == "5"


class TestChangeFeed:
    async def test_change_feed_after_commit(self, sql_store, sim_clock):
        changes = []
        sql_store.watch("player", changes.append)
        async with sql_store.transaction() as tx:
            await tx.insert("player", {"id": "p1", "v": 1})
        async with sql_store.transaction() as tx:
            await tx.replace("player", {"id": "p1", "v": 2})
        async with sql_store.transaction() as tx:
            await tx.delete("player", "p1")

        assert [c.operation for c in changes] == [
            ChangeOperation.INSERT, ChangeOperation.UPDATE, ChangeOperation.DELETE,
        ]
        assert [c.version for c in changes] == [1, 2, 3]
        assert changes[0].committed_at == sim_clock.now()

    async def test_rollback_emits_nothing(self, sql_store):
        changes = []
        sql_store.watch("player", changes.append)
        with pytest.raises(ValueError):
            async with sql_store.transaction() as tx:
                await tx.insert("player", {"id": "p1"})
                raise ValueError
        assert changes == []

    async def test_repeated_replace_emits_last_image_once(self, sql_store):
        async with sql_store.transaction() as tx:
            await tx.insert("player", {"id": "p1", "club": "A"})
        changes = []
        sql_store.watch("player", changes.append)

        async with sql_store.transaction() as tx:
            await tx.replace("player", {"id": "p1", "club": "A", "value": "5"})
            await tx.replace("player", {"id": "p1", "club": "B", "value": "5"})
            await tx.replace("player", {"id": "p1", "club": "B", "value": "6"})

        assert len(changes) == 1
        assert changes[0].operation == ChangeOperation.UPDATE
        assert changes[0].document == {"id": "p1", "club": "B", "value": "6"}
        assert changes[0].version == 2

        async with sql_store.transaction() as tx:
            await tx.replace("player", {"id": "p1", "club": "C", "value": "6"})
        assert changes[1].version == 3

    async def test_insert_then_replace_reports_insert(self, sql_store):
        changes = []
        sql_store.watch("club", changes.append)
        async with sql_store.transaction() as tx:
            await tx.insert("club", {"id": "c1", "budget": "1"})
            await tx.replace("club", {"id": "c1", "budget": "2"})
        assert [(c.operation, c.version) for c in changes] == [(ChangeOperation.INSERT, 1)]
        assert changes[0].document["budget"] == "2"

    async def test_insert_then_delete_emits_nothing(self, sql_store):
        changes = []
        sql_store.watch("agent", changes.append)
        async with sql_store.transaction() as tx:
            await tx.insert("agent", {"id": "a1"})
            await tx.delete("agent", "a1")
        assert changes == []
        async with sql_store.transaction() as tx:
            assert await tx.get("agent", "a1") is None

    async def test_delete_then_insert_reports_update(self, sql_store):
        async with sql_store.transaction() as tx:
            await tx.insert("agent", {"id": "a1", "name": "old"})
        changes = []
        sql_store.watch("agent", changes.append)
        async with sql_store.transaction() as tx:
            await tx.delete("agent", "a1")
            await tx.insert("agent", {"id": "a1", "name": "new"})
        assert [(c.operation, c.version) for c in changes] == [(ChangeOperation.UPDATE, 2)]
        assert changes[0].document == {"id": "a1", "name": "new"}


class TestDriverErrors:
    async def test_database_error_raised_as_store_error(self, tmp_path):
        # no create_all: every statement hits a missing table
        store = SqlDocumentStore(f"sqlite+aiosqlite:///{tmp_path}/empty.db")
        try:
            with pytest.raises(StoreError) as excinfo:
                async with store.transaction() as tx:
                    await tx.get("player", "p1")
        finally:
            await store.close()
        assert isinstance(excinfo.value.__cause__, OperationalError)

    async def test_raw_driver_error_in_unit_of_work(self, sql_store):
        with pytest.raises(StoreError):
            async with sql_store.transaction() as tx:
                await tx.insert("player", {"id": "p1"})
                raise OperationalError("UPDATE documents", {}, Exception("database is locked"))
        async with sql_store.transaction() as tx:
            assert await tx.get("player", "p1") is None


async def _seed(engine):
    club_a = await engine.add_club(make_club(name="Club A", budget=Decimal("10000000")))
    club_b = await engine.add_club(make_club(name="Club B", budget=Decimal("15000000")))
    player = await engine.add_player(make_player())
    await engine.create_contract({
        "player_id": player.id,
        "club_id": club_a.id,
        "start_date": date(2023, 7, 1),
        "end_date": date(2027, 6, 30),
        "salary": Decimal("1000000"),
    })
    return club_a, club_b, player


class TestEngineOverSql:
    async def test_contract_roundtrip(self, sql_engine):
        club = await sql_engine.add_club(make_club())
        player = await sql_engine.add_player(make_player())
        contract = await sql_engine.create_contract({
            "player_id": player.id,
            "club_id": club.id,
            "start_date": date(2024, 7, 1),
            "end_date": date(2026, 6, 30),
            "salary": Decimal("500000"),
        })
        active = await sql_engine.get_active_contract(player.id)
        stored = await sql_engine.get_player(player.id)

        assert active.id == contract.id
        assert stored.current_club_id == club.id

    async def test_completion_captures_only_committed_images(self, sql_engine):
        club_a, club_b, player = await _seed(sql_engine)
        transfer = await sql_engine.initiate_transfer({
            "player_id": player.id,
            "from_club_id": club_a.id,
            "to_club_id": club_b.id,
            "fee": "7000000",
            "transfer_date": "2024-07-15",
        })
        await sql_engine.capture.flush()
        mark = sql_engine.capture.captured

        await sql_engine.complete_transfer(transfer.id, {"end_date": "2029-06-30", "salary": "1"})
        await sql_engine.capture.flush()
        records = sql_engine.capture.recent(limit=sql_engine.capture.captured - mark)

        keys = [(r.entity_type, r.entity_id) for r in records]
        assert len(keys) == len(set(keys))
        player_records = [r for r in records if r.entity_type == EntityType.PLAYER]
        assert len(player_records) == 1
        assert player_records[0].document["current_club_id"] == club_b.id
        assert Decimal(player_records[0].document["market_value"]) == Decimal("6300000")

    async def test_sweep_skips_contract_hitting_driver_error(self, sql_engine, monkeypatch):
        club = await sql_engine.add_club(make_club())
        ids = []
        for name in ("Broken", "Fine"):
            player = await sql_engine.add_player(make_player(name=name))
            contract = await sql_engine.create_contract({
                "player_id": player.id,
                "club_id": club.id,
                "start_date": date(2024, 7, 1),
                "end_date": date(2024, 8, 31),
                "salary": "1000",
            })
            ids.append(contract.id)

        original = _SqlTransaction.replace

        async def locked_replace(self, collection, document):
            if document.get("id") == ids[0]:
                raise OperationalError("UPDATE documents", {}, Exception("database is locked"))
            await original(self, collection, document)

        monkeypatch.setattr(_SqlTransaction, "replace", locked_replace)
        assert await sql_engine.sweep_expired_contracts(date(2024, 9, 1)) == 1
        monkeypatch.undo()

        assert (await sql_engine.get_contract(ids[0])).status == ContractStatus.ACTIVE
        assert (await sql_engine.get_contract(ids[1])).status == ContractStatus.EXPIRED
