"""
Tests for the engine facade wiring
"""

import logging

import pytest

from caisse_ledger.config import LedgerConfig
from caisse_ledger.documents import InMemoryDocumentStorage
from caisse_ledger.engine import LedgerEngine
from caisse_ledger.errors import NotFoundError
from caisse_ledger.records import DocumentRecordStore
from caisse_ledger.storage import AsyncInMemoryStorage


class TestLedgerEngine:

    def test_services_share_one_context(self):
        engine = LedgerEngine.in_memory()
        assert engine.ledger.ctx is engine.context
        assert engine.advances.ctx is engine.context
        assert engine.refunds.ctx is engine.context
        assert engine.ledger.advances is engine.advances
        assert isinstance(engine.context.documents, InMemoryDocumentStorage)
        assert engine.audit.store is engine.store

    def test_from_storage_uses_persistence_timeout(self):
        config = LedgerConfig(persistence_timeout_seconds=0.5, tolerance_days=2, penalty_max_days=10)
        engine = LedgerEngine.from_storage(AsyncInMemoryStorage(), config=config)

        assert isinstance(engine.store, DocumentRecordStore)
        assert engine.store.timeout == 0.5
        assert engine.ledger.penalties.tolerance_days == 2
        assert engine.ledger.penalties.max_penalty_days == 10
        assert engine.context.documents is None

    def test_configure_logging(self):
        config = LedgerConfig(log_level="WARNING", log_format="text")
        LedgerEngine.in_memory(config=config, configure_logging=True)
        logger = logging.getLogger("caisse_ledger")
        try:
            assert logger.level == logging.WARNING
            assert len(logger.handlers) == 1
        finally:
            logger.handlers.clear()
            logger.setLevel(logging.NOTSET)
            logger.propagate = True

    @pytest.mark.asyncio
    async def test_unknown_contract(self, engine):
        with pytest.raises(NotFoundError):
            await engine.ledger.summary("nope")
