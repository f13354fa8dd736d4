"""
Ledger Engine

Wires configuration, record store, locks, notifier, audit trail and policy
provider into the three services the admin application calls:

    engine = LedgerEngine.in_memory(policies=StaticPolicyProvider({...}))
    await engine.ledger.apply_payment(contract_id, 0, 50000)
    await engine.advances.request_advance(contract_id, 30000)
    await engine.refunds.request_final(contract_id)
"""

from typing import Optional
import logging

from .advances import SupportAdvanceManager
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .context import Clock, LedgerContext
from .contracts import utc_now
from .documents import DocumentStorage, InMemoryDocumentStorage
from .events import EventDispatcher, DispatcherSink, NotificationSink, Notifier
from .ledger import InstallmentLedger
from .locking import ContractLocks
from .logging_config import setup_logging
from .policies import PolicyProvider, StaticPolicyProvider
from .records import DocumentRecordStore, RecordStore
from .refunds import RefundWorkflow
from .storage import AsyncInMemoryStorage, AsyncStorageInterface

logger = logging.getLogger("caisse_ledger.engine")


class LedgerEngine:
    """Facade over the ledger services sharing one context"""

    def __init__(
        self,
        store: RecordStore,
        policies: Optional[PolicyProvider] = None,
        sink: Optional[NotificationSink] = None,
        documents: Optional[DocumentStorage] = None,
        config: Optional[LedgerConfig] = None,
        clock: Clock = utc_now,
        configure_logging: bool = False
    ):
        self.config = config or get_config()
        if configure_logging:
            setup_logging(self.config.log_level, fmt=self.config.log_format)

        self.context = LedgerContext(
            store=store,
            locks=ContractLocks(),
            notifier=Notifier(sink, timeout=self.config.notification_timeout_seconds),
            policies=policies or StaticPolicyProvider(),
            config=self.config,
            documents=documents,
            clock=clock,
            audit=AuditTrail(store),
        )
        self.advances = SupportAdvanceManager(self.context)
        self.ledger = InstallmentLedger(self.context, advances=self.advances)
        self.refunds = RefundWorkflow(self.context)
        logger.debug("Ledger engine initialized")

    @property
    def store(self) -> RecordStore:
        return self.context.store

    @property
    def audit(self) -> AuditTrail:
        return self.context.audit

    @classmethod
    def from_storage(cls, storage: AsyncStorageInterface, **kwargs) -> "LedgerEngine":
        config = kwargs.get("config") or get_config()
        store = DocumentRecordStore(storage, timeout=config.persistence_timeout_seconds)
        return cls(store, **kwargs)

    @classmethod
    def in_memory(cls, dispatcher: Optional[EventDispatcher] = None, **kwargs) -> "LedgerEngine":
        """Engine over in-memory storage; events go to ``dispatcher`` when given"""
        if dispatcher is not None:
            kwargs.setdefault("sink", DispatcherSink(dispatcher))
        kwargs.setdefault("documents", InMemoryDocumentStorage())
        return cls.from_storage(AsyncInMemoryStorage(), **kwargs)

