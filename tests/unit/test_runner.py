"""Test TransactionRunner conflict retry and deadlines."""

import asyncio

import pytest

from transfer_engine.core.errors import TransactionConflict, ValidationError
from transfer_engine.storage.runner import TransactionRunner


async def _seed(store, doc):
    async with store.transaction() as tx:
        await tx.insert("club", doc)


class TestRetry:
    async def test_returns_result_and_commits(self, store):
        runner = TransactionRunner(store)

        async def work(tx):
            await tx.insert("club", {"id": "c1"})
            return "ok"

        assert await runner.run(work) == "ok"
        assert store.count("club") == 1
        assert runner.conflicts == 0

    async def test_conflict_is_retried(self, store):
        await _seed(store, {"id": "c1", "budget": 10})
        runner = TransactionRunner(store, max_retries=2, backoff_base=0)
        attempts = []

        async def work(tx):
            attempts.append(1)
            club = await tx.get("club", "c1")
            if len(attempts) == 1:
                # a competing writer commits between our read and our commit
                async with store.transaction() as other:
                    await other.replace("club", {"id": "c1", "budget": 99})
            club["budget"] -= 1
            await tx.replace("club", club)
            return club["budget"]

        assert await runner.run(work) == 98
        assert len(attempts) == 2
        assert runner.conflicts == 1

    async def test_gives_up_after_max_retries(self, store):
        await _seed(store, {"id": "c1", "budget": 0})
        runner = TransactionRunner(store, max_retries=1, backoff_base=0)
        attempts = []

        async def always_stale(tx):
            attempts.append(1)
            club = await tx.get("club", "c1")
            async with store.transaction() as other:
                await other.replace("club", {"id": "c1", "budget": len(attempts)})
            await tx.replace("club", club)

        with pytest.raises(TransactionConflict):
            await runner.run(always_stale)
        assert len(attempts) == 2
        assert runner.conflicts == 2

    async def test_domain_errors_are_not_retried(self, store):
        runner = TransactionRunner(store, max_retries=3)
        attempts = []

        async def invalid(tx):
            attempts.append(1)
            await tx.insert("club", {"id": "c1"})
            raise ValidationError("bad input")

        with pytest.raises(ValidationError):
            await runner.run(invalid)
        assert len(attempts) == 1
        assert store.count("club") == 0


class TestDeadline:
    async def test_timeout_rolls_back(self, store):
        runner = TransactionRunner(store)

        async def slow(tx):
            await tx.insert("club", {"id": "c1"})
            await asyncio.sleep(5)

        with pytest.raises(asyncio.TimeoutError):
            await runner.run(slow, timeout=0.05)
        assert store.count("club") == 0

    async def test_default_timeout_applies(self, store):
        runner = TransactionRunner(store, default_timeout=0.05)

        async def slow(tx):
            await asyncio.sleep(5)

        with pytest.raises(asyncio.TimeoutError):
            await runner.run(slow)

    def test_backoff_grows(self, store):
        runner = TransactionRunner(store, backoff_base=0.01)
        assert 0.01 <= runner._backoff_delay(1) <= 0.02
        assert 0.04 <= runner._backoff_delay(3) <= 0.08
