"""
Tests for the storage layer

AsyncInMemoryStorage CRUD, bounded store calls, UnitOfWork rollback and
the typed DocumentRecordStore.
"""

import pytest
import pytest_asyncio
import asyncio
from datetime import date, datetime, timezone
from decimal import Decimal

from caisse_ledger.contracts import Installment
from caisse_ledger.errors import NotFoundError, PersistenceError
from caisse_ledger.records import AUDIT, CONTRACTS, INSTALLMENTS, DocumentRecordStore
from caisse_ledger.storage import AsyncInMemoryStorage, UnitOfWork, bounded


# Configure pytest-asyncio
pytest_plugins = ('pytest_asyncio',)

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FailingStorage(AsyncInMemoryStorage):
    """Raises on save of selected keys"""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = set(fail_on)

    async def save(self, table, record_id, data):
        if (table, record_id) in self.fail_on:
            raise RuntimeError("disk full")
        await super().save(table, record_id, data)


class SlowStorage(AsyncInMemoryStorage):
    """Writes selected keys, then hangs before acknowledging"""

    def __init__(self, slow_on):
        super().__init__()
        self.slow_on = set(slow_on)

    async def save(self, table, record_id, data):
        await super().save(table, record_id, data)
        if (table, record_id) in self.slow_on:
            await asyncio.sleep(5)


def installment(month_index, version=1, accumulated="0"):
    return Installment(
        id=f"c-1:v{version}:{month_index}",
        created_at=NOW,
        updated_at=NOW,
        contract_id="c-1",
        month_index=month_index,
        due_date=date(2024, 1 + month_index, 1),
        target_amount=Decimal('1000'),
        accumulated_amount=Decimal(accumulated),
        schedule_version=version,
    )


class TestAsyncInMemoryStorage:
    """Test AsyncInMemoryStorage functionality"""

    @pytest_asyncio.fixture
    async def storage(self):
        return AsyncInMemoryStorage()

    @pytest.mark.asyncio
    async def test_basic_crud_operations(self, storage):
        data = {"id": "r-1", "amount": "123.45"}
        await storage.save("t", "r-1", data)

        assert await storage.load("t", "r-1") == data
        assert await storage.exists("t", "r-1") is True
        assert await storage.count("t") == 1
        assert await storage.load_all("t") == [data]

        assert await storage.delete("t", "r-1") is True
        assert await storage.load("t", "r-1") is None
        assert await storage.delete("t", "r-1") is False

    @pytest.mark.asyncio
    async def test_records_are_copied(self, storage):
        data = {"id": "r-1", "nested": {"a": 1}}
        await storage.save("t", "r-1", data)
        data["nested"]["a"] = 2

        loaded = await storage.load("t", "r-1")
        assert loaded["nested"]["a"] == 1
        loaded["nested"]["a"] = 3
        assert (await storage.load("t", "r-1"))["nested"]["a"] == 1

    @pytest.mark.asyncio
    async def test_find_and_clear(self, storage):
        await storage.save("t", "a", {"contract_id": "c-1", "status": "active"})
        await storage.save("t", "b", {"contract_id": "c-1", "status": "repaid"})
        await storage.save("t", "c", {"contract_id": "c-2", "status": "active"})

        assert len(await storage.find("t", {"contract_id": "c-1"})) == 2
        assert len(await storage.find("t", {"contract_id": "c-1", "status": "active"})) == 1
        assert await storage.find("t", {"missing": 1}) == []

        await storage.clear_table("t")
        assert await storage.count("t") == 0


class TestBounded:

    @pytest.mark.asyncio
    async def test_timeout_becomes_persistence_error(self):
        with pytest.raises(PersistenceError) as exc_info:
            await bounded(asyncio.sleep(1), 0.01, "load contracts")
        assert exc_info.value.context['operation'] == "load contracts"

    @pytest.mark.asyncio
    async def test_backend_error_becomes_persistence_error(self):
        async def broken():
            raise ConnectionError("connection reset")

        with pytest.raises(PersistenceError) as exc_info:
            await bounded(broken(), 1.0, "find installments")
        assert isinstance(exc_info.value.__cause__, ConnectionError)

    @pytest.mark.asyncio
    async def test_ledger_errors_pass_through(self):
        async def missing():
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError):
            await bounded(missing(), 1.0, "load")


class TestUnitOfWork:
    """Multi-document commit with compensation"""

    @pytest.mark.asyncio
    async def test_commit_writes_everything(self):
        storage = AsyncInMemoryStorage()
        uow = UnitOfWork(storage, timeout=1.0)
        uow.stage("a", "1", {"v": 1})
        uow.stage("b", "2", {"v": 2})
        uow.stage("a", "1", {"v": 3})
        assert len(uow) == 2
        assert uow.staged_keys == [("a", "1"), ("b", "2")]

        await uow.commit()
        assert await storage.load("a", "1") == {"v": 3}
        assert await storage.load("b", "2") == {"v": 2}

        with pytest.raises(RuntimeError):
            uow.stage("a", "3", {})
        with pytest.raises(RuntimeError):
            await uow.commit()

    @pytest.mark.asyncio
    async def test_failure_restores_snapshots(self):
        storage = FailingStorage(fail_on={("c", "3")})
        await storage.save("a", "1", {"v": "before"})

        uow = UnitOfWork(storage, timeout=1.0)
        uow.stage("a", "1", {"v": "after"})
        uow.stage("b", "2", {"v": "new"})
        uow.stage("c", "3", {"v": "new"})

        with pytest.raises(PersistenceError):
            await uow.commit()

        assert await storage.load("a", "1") == {"v": "before"}
        assert await storage.load("b", "2") is None
        assert await storage.load("c", "3") is None
        assert not uow.committed

    @pytest.mark.asyncio
    async def test_timed_out_write_is_rolled_back(self):
        storage = SlowStorage(slow_on=set())
        await storage.save("b", "2", {"v": "before"})
        storage.slow_on = {("b", "2")}

        uow = UnitOfWork(storage, timeout=0.05)
        uow.stage("a", "1", {"v": "new"})
        uow.stage("b", "2", {"v": "after"})
        uow.stage("c", "3", {"v": "new"})

        with pytest.raises(PersistenceError):
            await uow.commit()

        assert await storage.load("a", "1") is None
        assert await storage.load("b", "2") == {"v": "before"}
        assert await storage.load("c", "3") is None


class TestDocumentRecordStore:
    """Typed reads and writes over a document store"""

    @pytest_asyncio.fixture
    async def store(self):
        return DocumentRecordStore(AsyncInMemoryStorage(), timeout=1.0)

    @pytest.mark.asyncio
    async def test_later_version_supersedes_from_its_first_month(self, store):
        for month_index in range(4):
            await store.save_installment(installment(month_index, version=1))
        # Version 2 takes over from month 2 and is one period shorter
        await store.save_installment(installment(2, version=2, accumulated="500"))

        current = await store.get_installments("c-1")
        assert [(i.month_index, i.schedule_version) for i in current] == [(0, 1), (1, 1), (2, 2)]
        assert current[2].accumulated_amount == Decimal('500')

        everything = await store.get_installments("c-1", include_superseded=True)
        assert len(everything) == 5

    @pytest.mark.asyncio
    async def test_missing_records(self, store):
        assert await store.get_contract("nope") is None
        assert await store.get_refund_request("nope") is None
        assert await store.get_active_advance("nope") is None
        assert await store.get_schedule("nope", 1) is None
        assert await store.get_installments("nope") == []

    @pytest.mark.asyncio
    async def test_batch_stages_audit_tail(self, store):
        batch = store.batch()
        batch.installment(installment(0))
        batch.audit_event("e-1", {"id": "e-1", "entity_id": "c-1", "sequence": 1})
        assert batch.audit_tail["c-1"]["sequence"] == 1
        await batch.commit()

        assert len(await store.get_installments("c-1")) == 1
        assert [e["id"] for e in await store.get_audit_events("c-1")] == ["e-1"]
        assert await store.storage.count(CONTRACTS) == 0
        assert await store.storage.count(INSTALLMENTS) == 1
        assert await store.storage.count(AUDIT) == 1
