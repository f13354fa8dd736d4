"""
Record Store Module

Typed persistence collaborator for the ledger. Every read and write is keyed
by contract id and bounded by the persistence timeout. Multi-document
mutations go through ``RecordStore.batch()`` so they commit or roll back as
one unit.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .contracts import (
    Contract, Installment, Penalty, ScheduleVersion, SupportAdvance, RefundRequest,
    AdvanceStatus, contract_from_dict,
)
from .storage import AsyncStorageInterface, UnitOfWork, bounded

CONTRACTS = "contracts"
INSTALLMENTS = "installments"
SCHEDULES = "schedules"
ADVANCES = "advances"
REFUNDS = "refund_requests"
PENALTIES = "penalties"
AUDIT = "audit_events"


class LedgerBatch:
    """Typed staging front for a UnitOfWork"""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow
        # Last audit document staged per contract, so chains extend within a batch
        self.audit_tail: Dict[str, Dict[str, Any]] = {}

    def contract(self, contract: Contract) -> None:
        self.uow.stage(CONTRACTS, contract.id, contract.to_dict())

    def installment(self, installment: Installment) -> None:
        self.uow.stage(INSTALLMENTS, installment.id, installment.to_dict())

    def schedule(self, schedule: ScheduleVersion) -> None:
        self.uow.stage(SCHEDULES, schedule.id, schedule.to_dict())

    def advance(self, advance: SupportAdvance) -> None:
        self.uow.stage(ADVANCES, advance.id, advance.to_dict())

    def refund_request(self, request: RefundRequest) -> None:
        self.uow.stage(REFUNDS, request.id, request.to_dict())

    def penalty(self, penalty: Penalty) -> None:
        self.uow.stage(PENALTIES, penalty.id, penalty.to_dict())

    def audit_event(self, event_id: str, data: Dict[str, Any]) -> None:
        self.uow.stage(AUDIT, event_id, data)
        self.audit_tail[data['entity_id']] = data

    async def commit(self) -> None:
        await self.uow.commit()


class RecordStore(ABC):
    """Persistent record store collaborator"""

    @abstractmethod
    async def get_contract(self, contract_id: str) -> Optional[Contract]:
        pass

    @abstractmethod
    async def save_contract(self, contract: Contract) -> None:
        pass

    @abstractmethod
    async def get_installments(self, contract_id: str,
                               include_superseded: bool = False) -> List[Installment]:
        """
        Current installments ordered by month index: for each month, the one
        from the latest schedule version. ``include_superseded`` returns every
        version.
        """
        pass

    @abstractmethod
    async def save_installment(self, installment: Installment) -> None:
        pass

    @abstractmethod
    async def get_active_advance(self, contract_id: str) -> Optional[SupportAdvance]:
        pass

    @abstractmethod
    async def get_advances(self, contract_id: str) -> List[SupportAdvance]:
        """Every advance of a contract, oldest first"""
        pass

    @abstractmethod
    async def save_advance(self, advance: SupportAdvance) -> None:
        pass

    @abstractmethod
    async def get_refund_requests(self, contract_id: str) -> List[RefundRequest]:
        pass

    @abstractmethod
    async def get_refund_request(self, request_id: str) -> Optional[RefundRequest]:
        pass

    @abstractmethod
    async def save_refund_request(self, request: RefundRequest) -> None:
        pass

    @abstractmethod
    async def get_penalties(self, contract_id: str, unpaid_only: bool = False) -> List[Penalty]:
        """Penalties of a contract ordered by month index"""
        pass

    @abstractmethod
    async def get_schedule(self, contract_id: str, version: int) -> Optional[ScheduleVersion]:
        pass

    @abstractmethod
    async def get_schedules(self, contract_id: str) -> List[ScheduleVersion]:
        pass

    @abstractmethod
    async def get_audit_events(self, contract_id: str) -> List[Dict[str, Any]]:
        """Raw audit documents of a contract, in chain order"""
        pass

    @abstractmethod
    def batch(self) -> LedgerBatch:
        """Start a multi-document write"""
        pass


class DocumentRecordStore(RecordStore):
    """RecordStore over any AsyncStorageInterface document store"""

    def __init__(self, storage: AsyncStorageInterface, timeout: float = 5.0):
        self.storage = storage
        self.timeout = timeout

    async def _load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await bounded(self.storage.load(table, record_id), self.timeout, f"load {table}")

    async def _find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await bounded(self.storage.find(table, filters), self.timeout, f"find {table}")

    async def _save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await bounded(self.storage.save(table, record_id, data), self.timeout, f"save {table}")

    async def get_contract(self, contract_id: str) -> Optional[Contract]:
        data = await self._load(CONTRACTS, contract_id)
        return contract_from_dict(data) if data else None

    async def save_contract(self, contract: Contract) -> None:
        await self._save(CONTRACTS, contract.id, contract.to_dict())

    async def get_installments(self, contract_id: str,
                               include_superseded: bool = False) -> List[Installment]:
        rows = await self._find(INSTALLMENTS, {'contract_id': contract_id})
        installments = [Installment.from_dict(r) for r in rows]
        installments.sort(key=lambda i: (i.month_index, i.schedule_version))
        if include_superseded:
            return installments

        # A version replaces every installment from its first month onward
        starts: Dict[int, int] = {}
        for installment in installments:
            version = installment.schedule_version
            starts[version] = min(starts.get(version, installment.month_index), installment.month_index)
        return [
            i for i in installments
            if not any(v > i.schedule_version and start <= i.month_index for v, start in starts.items())
        ]

    async def save_installment(self, installment: Installment) -> None:
        await self._save(INSTALLMENTS, installment.id, installment.to_dict())

    async def get_active_advance(self, contract_id: str) -> Optional[SupportAdvance]:
        rows = await self._find(ADVANCES, {
            'contract_id': contract_id,
            'status': AdvanceStatus.ACTIVE.value,
        })
        if not rows:
            return None
        return SupportAdvance.from_dict(rows[0])

    async def get_advances(self, contract_id: str) -> List[SupportAdvance]:
        rows = await self._find(ADVANCES, {'contract_id': contract_id})
        advances = [SupportAdvance.from_dict(r) for r in rows]
        advances.sort(key=lambda a: a.created_at)
        return advances

    async def save_advance(self, advance: SupportAdvance) -> None:
        await self._save(ADVANCES, advance.id, advance.to_dict())

    async def get_refund_requests(self, contract_id: str) -> List[RefundRequest]:
        rows = await self._find(REFUNDS, {'contract_id': contract_id})
        requests = [RefundRequest.from_dict(r) for r in rows]
        requests.sort(key=lambda r: r.created_at)
        return requests

    async def get_refund_request(self, request_id: str) -> Optional[RefundRequest]:
        data = await self._load(REFUNDS, request_id)
        return RefundRequest.from_dict(data) if data else None

    async def save_refund_request(self, request: RefundRequest) -> None:
        await self._save(REFUNDS, request.id, request.to_dict())

    async def get_penalties(self, contract_id: str, unpaid_only: bool = False) -> List[Penalty]:
        filters: Dict[str, Any] = {'contract_id': contract_id}
        if unpaid_only:
            filters['paid'] = False
        penalties = [Penalty.from_dict(r) for r in await self._find(PENALTIES, filters)]
        penalties.sort(key=lambda p: (p.month_index, p.created_at))
        return penalties

    async def get_schedule(self, contract_id: str, version: int) -> Optional[ScheduleVersion]:
        rows = await self._find(SCHEDULES, {'contract_id': contract_id, 'version': version})
        return ScheduleVersion.from_dict(rows[0]) if rows else None

    async def get_schedules(self, contract_id: str) -> List[ScheduleVersion]:
        rows = await self._find(SCHEDULES, {'contract_id': contract_id})
        schedules = [ScheduleVersion.from_dict(r) for r in rows]
        schedules.sort(key=lambda s: s.version)
        return schedules

    async def get_audit_events(self, contract_id: str) -> List[Dict[str, Any]]:
        rows = await self._find(AUDIT, {'entity_id': contract_id})
        rows.sort(key=lambda r: r['sequence'])
        return rows

    def batch(self) -> LedgerBatch:
        return LedgerBatch(UnitOfWork(self.storage, self.timeout))
