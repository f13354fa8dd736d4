"""
Tests for per-contract serialization
"""

import pytest
import asyncio

from caisse_ledger.locking import ContractLocks


class TestContractLocks:

    @pytest.mark.asyncio
    async def test_same_contract_is_serialized(self):
        locks = ContractLocks()
        trace = []

        async def worker(name):
            async with locks.hold("ci-1"):
                trace.append(f"{name}-in")
                await asyncio.sleep(0.01)
                trace.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert trace in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    @pytest.mark.asyncio
    async def test_different_contracts_run_concurrently(self):
        locks = ContractLocks()
        inside = asyncio.Event()
        release = asyncio.Event()

        async def holder():
            async with locks.hold("ci-1"):
                inside.set()
                await release.wait()

        task = asyncio.create_task(holder())
        await inside.wait()
        assert locks.is_locked("ci-1")

        # Would deadlock if contracts shared a lock
        async with locks.hold("ci-2"):
            assert locks.is_locked("ci-1")
            assert locks.is_locked("ci-2")
            assert len(locks) == 2

        release.set()
        await task

    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self):
        locks = ContractLocks()
        async with locks.hold("ci-1"):
            assert len(locks) == 1
        assert len(locks) == 0
        assert not locks.is_locked("ci-1")

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = ContractLocks()
        with pytest.raises(ValueError):
            async with locks.hold("ci-1"):
                raise ValueError("boom")
        assert len(locks) == 0

        async with locks.hold("ci-1"):
            assert locks.is_locked("ci-1")
