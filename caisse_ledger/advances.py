"""
Support Advance Module

Emergency advances on emergency-savings contracts: eligibility, deduction
bookkeeping against recently paid installments, and the repayment gate the
installment ledger applies before crediting any payment.

An advance must be repaid in full by a single payment before anything is
credited to an installment again.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional
import uuid

from .audit import AuditEventType
from .context import LedgerContext
from .contracts import (
    AdvanceDeduction, Contract, ContractFamily, Installment, SupportAdvance,
)
from .currency import Amount, Money, ZERO, to_decimal
from .documents import DocumentRef, ProofFile
from .errors import (
    AdvanceOutstandingError, NotEligibleError, OutOfBoundsError, ValidationError,
)
from .events import DomainEvent
from .logging_config import get_logger, log_action

logger = get_logger("caisse_ledger.advances")


@dataclass(frozen=True)
class AdvanceEligibility:
    eligible: bool
    reason: Optional[str]
    paid_installments: int
    active_advance_id: Optional[str] = None


def compute_deductions(paid_installments: List[Installment], amount: Decimal,
                       window: int) -> List[AdvanceDeduction]:
    """
    Spread ``amount`` over the last ``window`` paid installments, walking
    from the oldest of them forward. Informational only: the installments'
    accumulated amounts are left untouched.
    """
    recent = sorted(paid_installments, key=lambda i: i.month_index)[-window:] if window > 0 else []
    deductions = []
    remaining = amount
    for installment in recent:
        if remaining <= ZERO:
            break
        share = min(remaining, installment.accumulated_amount)
        if share <= ZERO:
            continue
        deductions.append(AdvanceDeduction(
            installment_id=installment.id,
            month_index=installment.month_index,
            amount=share,
        ))
        remaining -= share
    return deductions


class SupportAdvanceManager:
    """Advance lifecycle on top of the installment ledger"""

    def __init__(self, context: LedgerContext):
        self.ctx = context

    def _eligibility(self, contract: Contract, installments: List[Installment],
                     active: Optional[SupportAdvance]) -> AdvanceEligibility:
        paid = sum(1 for i in installments if i.is_paid)
        required = self.ctx.config.advance_min_paid_installments
        if contract.family != ContractFamily.EMERGENCY_SAVINGS:
            return AdvanceEligibility(False, "advances exist only on emergency savings contracts", paid)
        if not contract.is_active:
            return AdvanceEligibility(False, f"contract is {contract.status.value}", paid)
        if paid < required:
            return AdvanceEligibility(
                False, f"{paid} paid installment(s), at least {required} required", paid
            )
        if paid == len(installments):
            # Nothing left to collect the repayment against
            return AdvanceEligibility(False, "every installment is already paid", paid)
        if active is not None:
            return AdvanceEligibility(
                False, f"advance {active.id} is still outstanding ({Money(active.amount_remaining)})",
                paid, active.id,
            )
        return AdvanceEligibility(True, None, paid)

    async def check_eligibility(self, contract_id: str) -> AdvanceEligibility:
        """Same checks as request_advance, reported instead of raised"""
        contract = await self.ctx.require_contract(contract_id)
        installments = await self.ctx.store.get_installments(contract_id)
        active = await self.ctx.store.get_active_advance(contract_id)
        return self._eligibility(contract, installments, active)

    async def get_active_advance(self, contract_id: str) -> Optional[SupportAdvance]:
        return await self.ctx.store.get_active_advance(contract_id)

    async def list_history(self, contract_id: str) -> List[SupportAdvance]:
        return await self.ctx.store.get_advances(contract_id)

    async def request_advance(
        self,
        contract_id: str,
        amount: Amount,
        proof: Optional[ProofFile] = None,
        proof_ref: Optional[DocumentRef] = None,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None
    ) -> SupportAdvance:
        """
        Grant an advance.

        Raises:
            NotEligibleError: fewer paid installments than required, no
                installment left open, an advance already ACTIVE, or not an
                emergency savings contract
            OutOfBoundsError: amount outside the contract's support bounds
            PersistenceError: store or upload failure; nothing was applied
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError("Advance amount must be positive", amount=amount)

        async with self.ctx.locks.hold(contract_id):
            contract = await self.ctx.require_contract(contract_id)
            installments = await self.ctx.store.get_installments(contract_id)
            active = await self.ctx.store.get_active_advance(contract_id)

            eligibility = self._eligibility(contract, installments, active)
            if not eligibility.eligible:
                log_action(logger, "warning", f"Advance refused: {eligibility.reason}",
                           action="request_advance", resource=f"contract:{contract_id}")
                raise NotEligibleError(
                    f"Contract {contract_id} is not eligible for an advance: {eligibility.reason}",
                    contract_id=contract_id,
                    paid_installments=eligibility.paid_installments,
                    required_paid_installments=self.ctx.config.advance_min_paid_installments,
                    active_advance_id=eligibility.active_advance_id,
                    amount_remaining=active.amount_remaining if active else ZERO,
                )

            if not contract.support_min <= amount <= contract.support_max:
                raise OutOfBoundsError(
                    f"Advance of {Money(amount)} outside bounds "
                    f"{Money(contract.support_min)} - {Money(contract.support_max)}",
                    contract_id=contract_id,
                    amount=amount,
                    support_min=contract.support_min,
                    support_max=contract.support_max,
                )

            now = self.ctx.now()
            advance_id = str(uuid.uuid4())
            if proof is not None:
                proof_ref = await self.ctx.upload_proof(proof, f"advances/{contract_id}/{advance_id}")

            paid = [i for i in installments if i.is_paid]
            advance = SupportAdvance(
                id=advance_id,
                created_at=now,
                updated_at=now,
                contract_id=contract_id,
                amount=amount,
                amount_remaining=amount,
                deductions=compute_deductions(paid, amount, self.ctx.config.advance_deduction_window),
                proof=proof_ref,
                reason=reason,
            )

            batch = self.ctx.store.batch()
            batch.advance(advance)
            await self.ctx.audit.stage_event(
                batch, contract_id, AuditEventType.ADVANCE_REQUESTED, now,
                metadata={
                    'advance_id': advance.id,
                    'amount': amount,
                    'deductions': [
                        {'month_index': d.month_index, 'amount': d.amount} for d in advance.deductions
                    ],
                },
                user_id=requested_by,
            )
            await batch.commit()

        log_action(logger, "info", f"Advance of {Money(amount)} granted",
                   action="request_advance", resource=f"contract:{contract_id}",
                   extra={'advance_id': advance.id})
        await self.ctx.notifier.emit(DomainEvent.ADVANCE_REQUESTED, contract_id, {
            'advance_id': advance.id,
            'amount': str(amount),
        })
        return advance

    def settle(self, advance: SupportAdvance, payment_amount: Decimal,
               payment_id: str, now: datetime) -> Decimal:
        """
        Repay ``advance`` out of an incoming payment. Runs inside the caller's
        contract lock and only mutates the in-memory advance; the caller
        stages it with the rest of the payment.

        Returns the repaid amount; the residual is the caller's to credit.
        """
        if payment_amount < advance.amount_remaining:
            log_action(logger, "warning",
                       f"Payment of {Money(payment_amount)} below outstanding advance "
                       f"{Money(advance.amount_remaining)}",
                       action="apply_payment", resource=f"contract:{advance.contract_id}")
            raise AdvanceOutstandingError(
                f"An advance of {Money(advance.amount_remaining)} must be repaid in full "
                f"before installments are credited",
                contract_id=advance.contract_id,
                advance_id=advance.id,
                amount_remaining=advance.amount_remaining,
                attempted_amount=payment_amount,
            )
        return advance.repay(payment_id, now)
