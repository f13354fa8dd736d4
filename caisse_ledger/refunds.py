"""
Refund Workflow Module

Early and final withdrawal requests. Creating a request is what closes a
contract: EARLY moves it to CANCELED, FINAL to FINISHED. Afterwards the
request itself goes PENDING -> APPROVED -> PAID, and may be ARCHIVED at any
point, which frees the slot for a new request of the same type.
"""

from datetime import datetime, timedelta
from decimal import Decimal
from typing import List, Optional
import uuid

from .audit import AuditEventType
from .context import LedgerContext
from .contracts import (
    ContractStatus, Installment, RefundRequest, RefundStatus, RefundType,
    SupportAdvance,
)
from .currency import Money, ZERO
from .documents import DocumentRef, ProofFile
from .errors import DuplicateRequestError, NotEligibleError, NotFoundError
from .events import DomainEvent
from .logging_config import get_logger, log_action

logger = get_logger("caisse_ledger.refunds")

CLOSING_STATUS = {
    RefundType.EARLY: ContractStatus.CANCELED,
    RefundType.FINAL: ContractStatus.FINISHED,
}


def nominal_amount(installments: List[Installment]) -> Decimal:
    """Money the member actually put in"""
    return sum((i.accumulated_amount for i in installments), ZERO)


class RefundWorkflow:
    """Withdrawal requests closing out a contract"""

    def __init__(self, context: LedgerContext):
        self.ctx = context

    async def list_requests(self, contract_id: str) -> List[RefundRequest]:
        return await self.ctx.store.get_refund_requests(contract_id)

    async def request_early(self, contract_id: str, reason: Optional[str] = None,
                            requested_by: Optional[str] = None) -> RefundRequest:
        """
        Early withdrawal: needs at least one paid installment and at least
        one still open. The contract becomes CANCELED.
        """
        return await self._request(contract_id, RefundType.EARLY, reason, requested_by)

    async def request_final(self, contract_id: str, reason: Optional[str] = None,
                            requested_by: Optional[str] = None) -> RefundRequest:
        """
        Final withdrawal: needs every installment paid. The contract becomes
        FINISHED and the payout is due within the deadline counted from the
        last due date.
        """
        return await self._request(contract_id, RefundType.FINAL, reason, requested_by)

    def _check_installments(self, contract_id: str, refund_type: RefundType,
                            installments: List[Installment],
                            advance: Optional[SupportAdvance] = None) -> None:
        paid = sum(1 for i in installments if i.is_paid)
        total = len(installments)
        context = dict(contract_id=contract_id, paid_installments=paid,
                       total_installments=total,
                       total_accumulated=nominal_amount(installments))

        if advance is not None:
            raise NotEligibleError(
                f"Advance {advance.id} must be repaid before a refund "
                f"({Money(advance.amount_remaining)} outstanding)",
                advance_id=advance.id,
                amount_remaining=advance.amount_remaining,
                **context,
            )
        if refund_type == RefundType.EARLY:
            if paid < 1:
                raise NotEligibleError("Early refund needs at least one paid installment", **context)
            if paid == total:
                raise NotEligibleError(
                    "Every installment is paid; request a final refund instead", **context
                )
        elif total == 0 or paid < total:
            raise NotEligibleError(
                f"Final refund needs every installment paid ({paid}/{total})", **context
            )

    @staticmethod
    def _deadline_anchor(refund_type: RefundType, installments: List[Installment],
                         now: datetime) -> datetime:
        """Early refunds count from the request, final ones from the contract end"""
        if refund_type == RefundType.EARLY or not installments:
            return now
        end = max(i.due_date for i in installments)
        return datetime(end.year, end.month, end.day, tzinfo=now.tzinfo)

    async def _request(self, contract_id: str, refund_type: RefundType,
                       reason: Optional[str], requested_by: Optional[str]) -> RefundRequest:
        async with self.ctx.locks.hold(contract_id):
            existing = await self.ctx.store.get_refund_requests(contract_id)
            duplicate = next((r for r in existing if r.refund_type == refund_type
                              and r.status != RefundStatus.ARCHIVED), None)
            if duplicate is not None:
                log_action(logger, "warning", f"Duplicate {refund_type.value} refund request",
                           action="request_refund", resource=f"contract:{contract_id}")
                raise DuplicateRequestError(
                    f"A {refund_type.value} refund request already exists for contract {contract_id}",
                    contract_id=contract_id,
                    request_id=duplicate.id,
                    status=duplicate.status.value,
                )

            contract = await self.ctx.require_active_contract(contract_id)
            installments = await self.ctx.store.get_installments(contract_id)
            advance = await self.ctx.store.get_active_advance(contract_id)
            self._check_installments(contract_id, refund_type, installments, advance)

            now = self.ctx.now()
            deadline_days = (self.ctx.config.early_refund_deadline_days
                             if refund_type == RefundType.EARLY
                             else self.ctx.config.final_refund_deadline_days)
            deadline_at = self._deadline_anchor(refund_type, installments, now) + timedelta(days=deadline_days)
            request = RefundRequest(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                contract_id=contract_id,
                refund_type=refund_type,
                amount_nominal=nominal_amount(installments),
                # Withdrawals carry no bonus
                amount_bonus=ZERO,
                deadline_at=deadline_at,
                reason=reason,
                requested_by=requested_by,
            )
            previous = contract.status
            contract.transition_to(CLOSING_STATUS[refund_type], now)

            batch = self.ctx.store.batch()
            batch.refund_request(request)
            batch.contract(contract)
            await self.ctx.audit.stage_event(
                batch, contract_id, AuditEventType.REFUND_REQUESTED, now,
                metadata={
                    'request_id': request.id,
                    'refund_type': refund_type,
                    'amount_nominal': request.amount_nominal,
                    'deadline_at': request.deadline_at,
                },
                user_id=requested_by,
            )
            await self.ctx.audit.stage_event(
                batch, contract_id, AuditEventType.CONTRACT_CLOSED, now,
                metadata={'from': previous, 'to': contract.status, 'request_id': request.id},
                user_id=requested_by,
            )
            await batch.commit()

        log_action(logger, "info",
                   f"{refund_type.value.capitalize()} refund of {Money(request.amount_nominal)} requested; "
                   f"contract {contract.status.value}",
                   action="request_refund", resource=f"contract:{contract_id}",
                   extra={'request_id': request.id})
        await self.ctx.notifier.emit(DomainEvent.REFUND_REQUESTED, contract_id, {
            'request_id': request.id,
            'refund_type': refund_type.value,
            'amount_nominal': str(request.amount_nominal),
            'amount_bonus': str(request.amount_bonus),
            'deadline_at': request.deadline_at.isoformat(),
            'contract_status': contract.status.value,
        })
        return request

    # ------------------------------------------------------------------
    # Request lifecycle
    # ------------------------------------------------------------------

    async def approve(self, request_id: str, approved_by: Optional[str] = None) -> RefundRequest:
        return await self._move_to(request_id, RefundStatus.APPROVED,
                                   AuditEventType.REFUND_APPROVED, DomainEvent.REFUND_APPROVED,
                                   approved_by)

    async def mark_paid(self, request_id: str, proof: Optional[ProofFile] = None,
                        proof_ref: Optional[DocumentRef] = None,
                        paid_by: Optional[str] = None) -> RefundRequest:
        """APPROVED -> PAID, optionally attaching the payout proof"""
        return await self._move_to(request_id, RefundStatus.PAID,
                                   AuditEventType.REFUND_PAID, DomainEvent.REFUND_PAID,
                                   paid_by, proof=proof, proof_ref=proof_ref)

    async def archive(self, request_id: str, archived_by: Optional[str] = None) -> RefundRequest:
        return await self._move_to(request_id, RefundStatus.ARCHIVED,
                                   AuditEventType.REFUND_ARCHIVED, DomainEvent.REFUND_ARCHIVED,
                                   archived_by)

    async def _move_to(self, request_id: str, status: RefundStatus,
                       audit_type: AuditEventType, event_type: DomainEvent,
                       actor: Optional[str], proof: Optional[ProofFile] = None,
                       proof_ref: Optional[DocumentRef] = None) -> RefundRequest:
        request = await self.ctx.store.get_refund_request(request_id)
        if request is None:
            raise NotFoundError(f"Refund request {request_id} not found", request_id=request_id)

        contract_id = request.contract_id
        async with self.ctx.locks.hold(contract_id):
            # Re-read under the lock
            request = await self.ctx.store.get_refund_request(request_id)
            if request is None:
                raise NotFoundError(f"Refund request {request_id} not found", request_id=request_id)
            now = self.ctx.now()
            request.transition_to(status, now)
            if proof is not None:
                proof_ref = await self.ctx.upload_proof(proof, f"refunds/{contract_id}/{request_id}")
            if proof_ref is not None:
                request.proof = proof_ref

            batch = self.ctx.store.batch()
            batch.refund_request(request)
            await self.ctx.audit.stage_event(
                batch, contract_id, audit_type, now,
                metadata={'request_id': request_id, 'status': status,
                          'proof': request.proof.path if request.proof else None},
                user_id=actor,
            )
            await batch.commit()

        log_action(logger, "info", f"Refund request moved to {status.value}",
                   action="refund_lifecycle", resource=f"contract:{contract_id}",
                   extra={'request_id': request_id})
        await self.ctx.notifier.emit(event_type, contract_id, {
            'request_id': request_id,
            'refund_type': request.refund_type.value,
            'status': status.value,
        })
        return request
