"""
Shared collaborators of the ledger services.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional
import asyncio
import logging

from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .contracts import Contract, utc_now
from .documents import DocumentRef, DocumentStorage, ProofFile
from .errors import ContractClosedError, LedgerError, NotFoundError, PersistenceError
from .events import Notifier
from .locking import ContractLocks
from .policies import PolicyProvider, StaticPolicyProvider
from .records import RecordStore

Clock = Callable[[], datetime]


@dataclass
class LedgerContext:
    """Everything a ledger service talks to"""
    store: RecordStore
    locks: ContractLocks = field(default_factory=ContractLocks)
    notifier: Notifier = field(default_factory=Notifier)
    policies: PolicyProvider = field(default_factory=StaticPolicyProvider)
    config: LedgerConfig = field(default_factory=get_config)
    documents: Optional[DocumentStorage] = None
    clock: Clock = utc_now
    audit: Optional[AuditTrail] = None

    def __post_init__(self):
        if self.audit is None:
            self.audit = AuditTrail(self.store)

    def now(self) -> datetime:
        return self.clock()

    async def require_contract(self, contract_id: str) -> Contract:
        contract = await self.store.get_contract(contract_id)
        if contract is None:
            raise NotFoundError(f"Contract {contract_id} not found", contract_id=contract_id)
        return contract

    async def require_active_contract(self, contract_id: str) -> Contract:
        contract = await self.require_contract(contract_id)
        if not contract.is_active:
            raise ContractClosedError(
                f"Contract {contract_id} is {contract.status.value}; no further mutation is accepted",
                contract_id=contract_id,
                status=contract.status.value,
            )
        return contract

    async def upload_proof(self, file: ProofFile, path: str) -> DocumentRef:
        """Upload through the document collaborator under the upload timeout"""
        if self.documents is None:
            raise PersistenceError("No document storage configured for proof uploads", path=path)
        timeout = self.config.upload_timeout_seconds
        try:
            return await asyncio.wait_for(self.documents.upload(file, path), timeout=timeout)
        except asyncio.TimeoutError:
            raise PersistenceError(f"Proof upload timed out after {timeout}s", path=path)
        except LedgerError:
            raise
        except Exception as e:
            logging.getLogger("caisse_ledger.documents").error(f"Proof upload to {path} failed: {e}")
            raise PersistenceError(f"Proof upload failed: {e}", path=path) from e
