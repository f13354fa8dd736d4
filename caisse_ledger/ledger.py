"""
Installment Ledger Module

Single point of truth for how much has been paid against each installment
of a contract. Owns the contract lifecycle up to activation, builds the
schedule the installments are created from, and applies payments:

    lock contract -> load -> advance gate -> penalty/bonus -> credit
    -> commit (installment, advance, contract, audit) -> unlock -> notify

Penalty and bonus amounts are stored on the payment event and on the
contract totals; they never change an installment's accumulated amount.
Each charged penalty is also written as its own Penalty record, settled
later through ``pay_penalties``.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import List, Optional, Tuple
import uuid

from .advances import SupportAdvanceManager
from .amortization import AmortizationCalculator, AmortizationRow, PaymentPolicy
from .audit import AuditEventType
from .bonus import BonusCalculator
from .context import LedgerContext
from .contracts import (
    Contract, ContractFamily, ContractStatus, FixedCreditContract,
    FreeScheduleContract, Installment, InstallmentStatus, PaymentEvent,
    PaymentMode, Penalty, ScheduleVersion, SupportAdvance, installment_id, schedule_id,
)
from .currency import Amount, Money, ZERO, to_decimal
from .errors import (
    ContractClosedError, ContractDefaultedError, NotEligibleError, NotFoundError,
    ScheduleError, ValidationError,
)
from .events import DomainEvent
from .logging_config import get_logger, log_action
from .penalties import PenaltyCalculator, PenaltyMode

logger = get_logger("caisse_ledger.ledger")


@dataclass
class PaymentResult:
    """Outcome of apply_payment"""
    payment: PaymentEvent
    installment: Installment
    advance_repayment: Decimal = ZERO
    advance_id: Optional[str] = None
    contract_fully_paid: bool = False


@dataclass
class LedgerSummary:
    """Ledger totals of a contract"""
    contract_id: str
    status: ContractStatus
    installment_count: int
    paid_count: int
    late_count: int
    total_target: Decimal
    total_accumulated: Decimal
    penalties_total: Decimal
    bonus_total: Decimal
    penalties_unpaid: Decimal = ZERO
    next_due: Optional[Installment] = None

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, self.total_target - self.total_accumulated)

    @property
    def all_paid(self) -> bool:
        return self.installment_count > 0 and self.paid_count == self.installment_count


@dataclass
class _Pending:
    """Events to emit once the lock is released"""
    events: List[Tuple[DomainEvent, str, dict]] = field(default_factory=list)

    def add(self, event_type: DomainEvent, contract_id: str, payload: dict) -> None:
        self.events.append((event_type, contract_id, payload))


class InstallmentLedger:
    """
    Per-contract aggregate of installments.

    Every mutating method holds the contract lock for its whole
    read-compute-write cycle and commits through a single batch.
    """

    def __init__(
        self,
        context: LedgerContext,
        advances: Optional[SupportAdvanceManager] = None,
        penalties: Optional[PenaltyCalculator] = None,
        bonuses: Optional[BonusCalculator] = None
    ):
        self.ctx = context
        self.advances = advances or SupportAdvanceManager(context)
        self.penalties = penalties or PenaltyCalculator(
            tolerance_days=context.config.tolerance_days,
            max_penalty_days=context.config.penalty_max_days,
        )
        self.bonuses = bonuses or BonusCalculator()

    # ------------------------------------------------------------------
    # Contract lifecycle
    # ------------------------------------------------------------------

    async def register_contract(self, contract: Contract, actor: Optional[str] = None) -> Contract:
        """Store a new contract in PENDING after checking its terms"""
        contract.validate_terms()
        if contract.status != ContractStatus.PENDING:
            raise ValidationError("New contracts start in PENDING",
                                  contract_id=contract.id, status=contract.status.value)
        async with self.ctx.locks.hold(contract.id):
            if await self.ctx.store.get_contract(contract.id) is not None:
                raise ValidationError(f"Contract {contract.id} already exists", contract_id=contract.id)
            await self.ctx.store.save_contract(contract)
        log_action(logger, "info", f"Contract registered ({contract.family.value})",
                   action="register_contract", resource=f"contract:{contract.id}",
                   extra={'member_id': contract.member_id, 'actor': actor})
        return contract

    async def submit_for_review(self, contract_id: str, actor: Optional[str] = None) -> Contract:
        return await self._review_transition(contract_id, ContractStatus.UNDER_REVIEW,
                                             AuditEventType.CONTRACT_SUBMITTED, actor)

    async def return_to_pending(self, contract_id: str, reason: Optional[str] = None,
                                actor: Optional[str] = None) -> Contract:
        return await self._review_transition(contract_id, ContractStatus.PENDING,
                                             AuditEventType.CONTRACT_RETURNED, actor, reason)

    async def _review_transition(self, contract_id: str, status: ContractStatus,
                                 audit_type: AuditEventType, actor: Optional[str],
                                 reason: Optional[str] = None) -> Contract:
        async with self.ctx.locks.hold(contract_id):
            contract = await self.ctx.require_contract(contract_id)
            now = self.ctx.now()
            previous = contract.status
            contract.transition_to(status, now)

            batch = self.ctx.store.batch()
            batch.contract(contract)
            await self.ctx.audit.stage_event(batch, contract_id, audit_type, now, metadata={
                'from': previous.value, 'to': status.value, 'reason': reason,
            }, user_id=actor)
            await batch.commit()
        log_action(logger, "info", f"Contract moved from {previous.value} to {status.value}",
                   action="review", resource=f"contract:{contract_id}")
        return contract

    async def activate_contract(self, contract_id: str, actor: Optional[str] = None) -> Contract:
        """
        PENDING/UNDER_REVIEW -> ACTIVE. Builds schedule version 1 and every
        installment, and stores them with the contract in one batch.

        Raises:
            ScheduleError: a declared credit installment does not clear the
                balance within the allowed duration (carries the suggestion)
        """
        async with self.ctx.locks.hold(contract_id):
            contract = await self.ctx.require_contract(contract_id)
            contract.validate_terms()
            now = self.ctx.now()
            contract.transition_to(ContractStatus.ACTIVE, now)

            schedule = self._build_schedule(contract, now)
            contract.schedule_version = schedule.version
            contract.installment_amount = schedule.installment or contract.installment_amount
            installments = self._installments_from_schedule(contract, schedule, now)

            batch = self.ctx.store.batch()
            batch.schedule(schedule)
            for installment in installments:
                batch.installment(installment)
            batch.contract(contract)
            await self.ctx.audit.stage_event(
                batch, contract_id, AuditEventType.CONTRACT_ACTIVATED, now,
                metadata={
                    'schedule_version': schedule.version,
                    'installments': len(installments),
                    'installment_amount': contract.installment_amount,
                    'policy': schedule.policy.value,
                },
                user_id=actor,
            )
            await batch.commit()

        log_action(logger, "info", f"Contract activated with {len(installments)} installments",
                   action="activate_contract", resource=f"contract:{contract_id}")
        await self.ctx.notifier.emit(DomainEvent.CONTRACT_ACTIVATED, contract_id, {
            'family': contract.family.value,
            'installments': len(installments),
            'installment_amount': str(contract.installment_amount),
            'first_due_date': contract.first_due_date.isoformat(),
        })
        return contract

    def _build_schedule(self, contract: Contract, now: datetime) -> ScheduleVersion:
        calculator = AmortizationCalculator(contract.cadence)
        if isinstance(contract, FixedCreditContract):
            if contract.declared_installment is not None:
                result = calculator.fixed_installment(
                    contract.principal, contract.monthly_rate, contract.declared_installment,
                    contract.first_due_date, max_duration=contract.planned_duration,
                )
                calculator.require_valid(result)
            else:
                result = calculator.fixed_duration(
                    contract.principal, contract.monthly_rate, contract.planned_duration,
                    contract.first_due_date,
                )
            return ScheduleVersion(
                id=schedule_id(contract.id, 1),
                created_at=now,
                updated_at=now,
                contract_id=contract.id,
                version=1,
                policy=result.policy,
                installment=result.installment,
                rows=result.rows,
                montant_global=calculator.montant_global(
                    contract.principal, contract.monthly_rate, contract.planned_duration
                ),
            )

        target = self._savings_target(contract)
        rows = [
            AmortizationRow(
                month=index + 1,
                date=contract.due_date(index),
                payment=target,
                interest=ZERO,
                principal=target,
                remaining_balance=target * (contract.planned_duration - index - 1),
            )
            for index in range(contract.planned_duration)
        ]
        return ScheduleVersion(
            id=schedule_id(contract.id, 1),
            created_at=now,
            updated_at=now,
            contract_id=contract.id,
            version=1,
            policy=PaymentPolicy.CUSTOM,
            installment=target,
            rows=rows,
        )

    @staticmethod
    def _savings_target(contract: Contract) -> Decimal:
        if isinstance(contract, FreeScheduleContract):
            return contract.effective_target
        if contract.installment_amount <= ZERO:
            raise ValidationError("Savings amount must be positive",
                                  contract_id=contract.id, installment_amount=contract.installment_amount)
        return contract.installment_amount

    @staticmethod
    def _installments_from_schedule(contract: Contract, schedule: ScheduleVersion,
                                    now: datetime) -> List[Installment]:
        installments = []
        for row in schedule.rows:
            if row.payment <= ZERO:
                continue
            month_index = schedule.first_month_index + row.month - 1
            installments.append(Installment(
                id=installment_id(contract.id, schedule.version, month_index),
                created_at=now,
                updated_at=now,
                contract_id=contract.id,
                month_index=month_index,
                due_date=row.date,
                target_amount=row.payment,
                schedule_version=schedule.version,
            ))
        return installments

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def _penalty_mode(self, contract: Contract) -> PenaltyMode:
        if contract.family == ContractFamily.FIXED:
            return PenaltyMode.ESTIMATED
        if contract.is_monthly_savings:
            return PenaltyMode.PER_DAY
        return PenaltyMode.NONE

    async def _find_or_create_installment(self, contract: Contract, month_index: int,
                                          installments: List[Installment],
                                          now: datetime) -> Installment:
        for installment in installments:
            if installment.month_index == month_index:
                return installment

        # Lazily rebuilt from the current schedule version
        schedule = await self.ctx.store.get_schedule(contract.id, contract.schedule_version)
        if schedule is not None:
            for candidate in self._installments_from_schedule(contract, schedule, now):
                if candidate.month_index == month_index:
                    log_action(logger, "info", f"Installment {month_index} recreated from schedule",
                               action="apply_payment", resource=f"contract:{contract.id}")
                    return candidate

        raise NotFoundError(
            f"Contract {contract.id} has no installment {month_index}",
            contract_id=contract.id,
            month_index=month_index,
            installments=len(installments),
        )

    async def apply_payment(
        self,
        contract_id: str,
        month_index: int,
        amount: Amount,
        paid_at: Optional[datetime] = None,
        mode: PaymentMode = PaymentMode.CASH,
        recorded_by: Optional[str] = None
    ) -> PaymentResult:
        """
        Record a payment against installment ``month_index``.

        An ACTIVE advance is repaid first; only the residual is credited.

        Raises:
            ValidationError: non-positive amount
            NotFoundError: unknown contract or installment
            ContractClosedError: contract not ACTIVE
            ContractDefaultedError: payment too late on a monthly savings
                contract; the contract has been moved to DEFAULTED
            AdvanceOutstandingError: amount below the outstanding advance
            NotEligibleError: installment already paid
            PersistenceError: nothing was applied
        """
        amount = to_decimal(amount)
        if amount <= ZERO:
            raise ValidationError("Payment amount must be positive", amount=amount)

        pending = _Pending()
        try:
            async with self.ctx.locks.hold(contract_id):
                result = await self._apply_payment_locked(
                    contract_id, month_index, amount, paid_at, mode, recorded_by, pending
                )
        finally:
            await self.ctx.notifier.emit_all(pending.events)
        return result

    async def _apply_payment_locked(self, contract_id: str, month_index: int, amount: Decimal,
                                    paid_at: Optional[datetime], mode: PaymentMode,
                                    recorded_by: Optional[str], pending: _Pending) -> PaymentResult:
        contract = await self.ctx.require_active_contract(contract_id)
        now = self.ctx.now()
        paid_at = paid_at or now
        installments = await self.ctx.store.get_installments(contract_id)
        installment = await self._find_or_create_installment(contract, month_index, installments, now)
        advance = await self.ctx.store.get_active_advance(contract_id)

        if installment.is_paid:
            # Only an advance repayment may land on a paid installment
            if advance is None or amount > advance.amount_remaining:
                raise NotEligibleError(
                    f"Installment {month_index} of contract {contract_id} is already paid",
                    contract_id=contract_id,
                    month_index=month_index,
                    accumulated_amount=installment.accumulated_amount,
                    target_amount=installment.target_amount,
                    amount_remaining=advance.amount_remaining if advance else ZERO,
                )
            return await self._repay_advance_only(contract, installment, installments, advance,
                                                  amount, paid_at, mode, recorded_by, now, pending)

        policy = self.ctx.policies.get_policy(contract.family)
        assessment = self.penalties.assess(
            installment.due_date, installment.target_amount, paid_date=paid_at,
            rules=policy.penalty_rules, mode=self._penalty_mode(contract),
        )

        if assessment.exceeds_default and contract.is_monthly_savings:
            await self._default_contract(contract, installment, assessment.days_late, now,
                                         recorded_by, pending)
            raise ContractDefaultedError(
                f"Payment {assessment.days_late} days late; contract {contract_id} defaulted",
                contract_id=contract_id,
                month_index=month_index,
                days_late=assessment.days_late,
                max_days=self.penalties.max_penalty_days,
            )

        payment_id = str(uuid.uuid4())
        batch = self.ctx.store.batch()

        repayment, advance_id = ZERO, None
        if advance is not None:
            repayment = self.advances.settle(advance, amount, payment_id, now)
            advance_id = advance.id
            batch.advance(advance)
        credited = amount - repayment

        # Penalty is charged once per installment
        already_charged = any(p.applied_penalty > ZERO for p in installment.payments)
        applied_penalty = ZERO if already_charged else assessment.applied_penalty
        penalty = None
        if applied_penalty > ZERO:
            penalty = Penalty(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                contract_id=contract_id,
                installment_id=installment.id,
                month_index=month_index,
                due_date=installment.due_date,
                amount=applied_penalty,
                days_late=assessment.days_late,
                payment_id=payment_id,
            )
            batch.penalty(penalty)

        completes = installment.accumulated_amount + credited >= installment.target_amount
        bonus = self.bonuses.compute(
            month_index, contract.planned_duration, policy.bonus_table, contract.family,
            installment.accumulated_amount + credited, contract.installment_amount,
        )
        bonus_amount = bonus.bonus_amount if completes and contract.family != ContractFamily.FIXED else ZERO

        payment = PaymentEvent(
            id=payment_id,
            amount=amount,
            credited_amount=credited,
            paid_at=paid_at,
            mode=mode,
            recorded_by=recorded_by,
            days_late=assessment.days_late,
            penalty_window=assessment.window.value,
            estimated_penalty=assessment.estimated_penalty,
            applied_penalty=applied_penalty,
            penalty_id=penalty.id if penalty else None,
            quality_score=assessment.quality_score,
            quality_remark=assessment.quality_remark,
            bonus_percent=bonus.percent,
            bonus_amount=bonus_amount,
            advance_id=advance_id,
            advance_repayment=repayment,
        )
        installment.credit(payment, now.date())
        installment.touch(now)

        contract.penalties_total += applied_penalty
        contract.bonus_total += bonus_amount
        contract.touch(now)

        current = [installment if i.month_index == month_index else i for i in installments]
        if installment not in current:
            current.append(installment)
        fully_paid = all(i.is_paid for i in current)

        batch.installment(installment)
        batch.contract(contract)
        await self.ctx.audit.stage_event(
            batch, contract_id, AuditEventType.PAYMENT_RECORDED, now,
            metadata={
                'payment_id': payment_id,
                'month_index': month_index,
                'amount': amount,
                'credited_amount': credited,
                'advance_repayment': repayment,
                'applied_penalty': applied_penalty,
                'penalty_id': penalty.id if penalty else None,
                'bonus_amount': bonus_amount,
                'status': installment.status,
            },
            user_id=recorded_by,
        )
        if advance_id is not None:
            await self.ctx.audit.stage_event(
                batch, contract_id, AuditEventType.ADVANCE_REPAID, now,
                metadata={'advance_id': advance_id, 'repayment': repayment,
                          'payment_id': payment_id},
                user_id=recorded_by,
            )
        await batch.commit()

        log_action(logger, "info",
                   f"Payment of {Money(amount)} recorded on installment {month_index}, "
                   f"{Money(credited)} credited",
                   action="apply_payment", resource=f"contract:{contract_id}",
                   extra={'payment_id': payment_id, 'status': installment.status.value,
                          'days_late': assessment.days_late})

        if advance_id is not None:
            pending.add(DomainEvent.ADVANCE_REPAID, contract_id, {
                'advance_id': advance_id, 'repayment': str(repayment), 'payment_id': payment_id,
            })
        event_type = (DomainEvent.INSTALLMENT_PAID if installment.is_paid
                      else DomainEvent.INSTALLMENT_PARTIAL)
        pending.add(event_type, contract_id, {
            'month_index': month_index,
            'payment_id': payment_id,
            'amount': str(amount),
            'credited_amount': str(credited),
            'accumulated_amount': str(installment.accumulated_amount),
            'target_amount': str(installment.target_amount),
            'applied_penalty': str(applied_penalty),
        })
        if fully_paid:
            pending.add(DomainEvent.CONTRACT_FULLY_PAID, contract_id, {
                'total_accumulated': str(sum((i.accumulated_amount for i in current), ZERO)),
            })

        return PaymentResult(
            payment=payment,
            installment=installment,
            advance_repayment=repayment,
            advance_id=advance_id,
            contract_fully_paid=fully_paid,
        )

    async def _repay_advance_only(self, contract: Contract, installment: Installment,
                                  installments: List[Installment], advance: SupportAdvance,
                                  amount: Decimal, paid_at: datetime, mode: PaymentMode,
                                  recorded_by: Optional[str], now: datetime,
                                  pending: _Pending) -> PaymentResult:
        """Payment on a paid installment that only clears the outstanding advance"""
        payment_id = str(uuid.uuid4())
        repayment = self.advances.settle(advance, amount, payment_id, now)
        payment = PaymentEvent(
            id=payment_id,
            amount=amount,
            credited_amount=ZERO,
            paid_at=paid_at,
            mode=mode,
            recorded_by=recorded_by,
            advance_id=advance.id,
            advance_repayment=repayment,
        )
        installment.credit(payment, now.date())
        installment.touch(now)

        batch = self.ctx.store.batch()
        batch.advance(advance)
        batch.installment(installment)
        await self.ctx.audit.stage_event(
            batch, contract.id, AuditEventType.PAYMENT_RECORDED, now,
            metadata={
                'payment_id': payment_id,
                'month_index': installment.month_index,
                'amount': amount,
                'credited_amount': ZERO,
                'advance_repayment': repayment,
                'status': installment.status,
            },
            user_id=recorded_by,
        )
        await self.ctx.audit.stage_event(
            batch, contract.id, AuditEventType.ADVANCE_REPAID, now,
            metadata={'advance_id': advance.id, 'repayment': repayment, 'payment_id': payment_id},
            user_id=recorded_by,
        )
        await batch.commit()

        log_action(logger, "info",
                   f"Advance repaid with {Money(amount)} on paid installment {installment.month_index}",
                   action="apply_payment", resource=f"contract:{contract.id}",
                   extra={'payment_id': payment_id, 'advance_id': advance.id})
        pending.add(DomainEvent.ADVANCE_REPAID, contract.id, {
            'advance_id': advance.id, 'repayment': str(repayment), 'payment_id': payment_id,
        })
        return PaymentResult(
            payment=payment,
            installment=installment,
            advance_repayment=repayment,
            advance_id=advance.id,
            contract_fully_paid=all(i.is_paid for i in installments),
        )

    async def _default_contract(self, contract: Contract, installment: Installment,
                                days_late: int, now: datetime, actor: Optional[str],
                                pending: _Pending) -> None:
        contract.transition_to(ContractStatus.DEFAULTED, now)
        batch = self.ctx.store.batch()
        batch.contract(contract)
        await self.ctx.audit.stage_event(
            batch, contract.id, AuditEventType.CONTRACT_DEFAULTED, now,
            metadata={'month_index': installment.month_index, 'days_late': days_late},
            user_id=actor,
        )
        await batch.commit()
        log_action(logger, "warning",
                   f"Contract defaulted: installment {installment.month_index} paid {days_late} days late",
                   action="apply_payment", resource=f"contract:{contract.id}")
        pending.add(DomainEvent.CONTRACT_DEFAULTED, contract.id, {
            'month_index': installment.month_index, 'days_late': days_late,
        })

    # ------------------------------------------------------------------
    # Penalties
    # ------------------------------------------------------------------

    async def list_unpaid_penalties(self, contract_id: str) -> List[Penalty]:
        await self.ctx.require_contract(contract_id)
        return await self.ctx.store.get_penalties(contract_id, unpaid_only=True)

    async def pay_penalties(
        self,
        contract_id: str,
        penalty_ids: List[str],
        amount: Amount,
        paid_at: Optional[datetime] = None,
        mode: PaymentMode = PaymentMode.CASH,
        recorded_by: Optional[str] = None
    ) -> List[Penalty]:
        """
        Settle the given penalties with one payment covering exactly their sum.

        Penalties stay payable after a contract defaulted; closed contracts
        accept nothing.

        Raises:
            ValidationError: empty selection, or amount differs from the sum
            NotFoundError: a penalty id does not belong to the contract
            NotEligibleError: a selected penalty is already paid
            ContractClosedError: contract canceled, finished or not yet active
        """
        amount = to_decimal(amount)
        if not penalty_ids:
            raise ValidationError("Select at least one penalty to pay", contract_id=contract_id)

        async with self.ctx.locks.hold(contract_id):
            contract = await self.ctx.require_contract(contract_id)
            if contract.status not in (ContractStatus.ACTIVE, ContractStatus.DEFAULTED):
                raise ContractClosedError(
                    f"Contract {contract_id} is {contract.status.value}; penalties cannot be paid",
                    contract_id=contract_id,
                    status=contract.status.value,
                )

            by_id = {p.id: p for p in await self.ctx.store.get_penalties(contract_id)}
            selected = []
            for penalty_id in dict.fromkeys(penalty_ids):
                penalty = by_id.get(penalty_id)
                if penalty is None:
                    raise NotFoundError(f"Penalty {penalty_id} not found on contract {contract_id}",
                                        contract_id=contract_id, penalty_id=penalty_id)
                if penalty.paid:
                    raise NotEligibleError(f"Penalty {penalty_id} is already paid",
                                           contract_id=contract_id, penalty_id=penalty_id,
                                           paid_at=penalty.paid_at)
                selected.append(penalty)

            due = sum((p.amount for p in selected), ZERO)
            if amount != due:
                raise ValidationError(
                    f"Penalty payment of {Money(amount)} does not match the {Money(due)} owed",
                    contract_id=contract_id,
                    amount=amount,
                    amount_due=due,
                )

            now = self.ctx.now()
            paid_at = paid_at or now
            payment_id = str(uuid.uuid4())
            batch = self.ctx.store.batch()
            for penalty in selected:
                penalty.settle(payment_id, paid_at, now)
                batch.penalty(penalty)
            await self.ctx.audit.stage_event(
                batch, contract_id, AuditEventType.PENALTIES_PAID, now,
                metadata={
                    'payment_id': payment_id,
                    'penalty_ids': [p.id for p in selected],
                    'amount': amount,
                    'mode': mode,
                },
                user_id=recorded_by,
            )
            await batch.commit()

        log_action(logger, "info", f"{len(selected)} penalty(ies) paid for {Money(amount)}",
                   action="pay_penalties", resource=f"contract:{contract_id}",
                   extra={'payment_id': payment_id})
        await self.ctx.notifier.emit(DomainEvent.PENALTIES_PAID, contract_id, {
            'payment_id': payment_id,
            'penalty_ids': [p.id for p in selected],
            'amount': str(amount),
        })
        return selected

    # ------------------------------------------------------------------
    # Rescheduling
    # ------------------------------------------------------------------

    async def reschedule(self, contract_id: str, installment_amount: Amount,
                         reason: Optional[str] = None,
                         actor: Optional[str] = None) -> ScheduleVersion:
        """
        New schedule version for a FIXED contract over its outstanding
        balance. Installments of earlier versions are never modified; the
        new version's first installment carries forward money already paid
        against the installment it replaces.
        """
        installment_amount = to_decimal(installment_amount)
        async with self.ctx.locks.hold(contract_id):
            contract = await self.ctx.require_active_contract(contract_id)
            if not isinstance(contract, FixedCreditContract):
                raise NotEligibleError("Only credit contracts can be rescheduled",
                                       contract_id=contract_id, family=contract.family.value)

            installments = await self.ctx.store.get_installments(contract_id)
            first_open = next((i for i in installments if not i.is_paid), None)
            if first_open is None:
                raise NotEligibleError("Every installment is already paid",
                                       contract_id=contract_id)

            current = await self.ctx.store.get_schedule(contract_id, contract.schedule_version)
            if current is None:
                raise NotFoundError(f"Schedule version {contract.schedule_version} not found",
                                    contract_id=contract_id)
            position = first_open.month_index - current.first_month_index
            outstanding = current.rows[position - 1].remaining_balance if position > 0 else (
                current.rows[0].remaining_balance + current.rows[0].principal
            )

            cap = contract.max_duration or contract.planned_duration
            remaining_periods = cap - first_open.month_index
            if remaining_periods < 1:
                raise ScheduleError("No period left within the allowed duration",
                                    contract_id=contract_id, max_duration=cap)

            now = self.ctx.now()
            calculator = AmortizationCalculator(contract.cadence)
            result = calculator.require_valid(calculator.fixed_installment(
                outstanding, contract.monthly_rate, installment_amount,
                first_open.due_date, max_duration=remaining_periods,
            ))

            version = contract.schedule_version + 1
            schedule = ScheduleVersion(
                id=schedule_id(contract_id, version),
                created_at=now,
                updated_at=now,
                contract_id=contract_id,
                version=version,
                policy=PaymentPolicy.FIXED_INSTALLMENT,
                installment=installment_amount,
                rows=result.rows,
                reason=reason,
                first_month_index=first_open.month_index,
            )
            new_installments = self._installments_from_schedule(contract, schedule, now)
            if new_installments and first_open.accumulated_amount > ZERO:
                carried = new_installments[0]
                carried.accumulated_amount = first_open.accumulated_amount
                carried.payments = list(first_open.payments)
                carried.refresh_status(now.date())

            contract.schedule_version = version
            contract.installment_amount = installment_amount
            contract.planned_duration = first_open.month_index + len(result.rows)
            contract.touch(now)

            batch = self.ctx.store.batch()
            batch.schedule(schedule)
            for installment in new_installments:
                batch.installment(installment)
            batch.contract(contract)
            await self.ctx.audit.stage_event(
                batch, contract_id, AuditEventType.CONTRACT_RESCHEDULED, now,
                metadata={
                    'version': version,
                    'outstanding': outstanding,
                    'installment_amount': installment_amount,
                    'from_month_index': first_open.month_index,
                    'reason': reason,
                },
                user_id=actor,
            )
            await batch.commit()

        log_action(logger, "info", f"Contract rescheduled to version {version}",
                   action="reschedule", resource=f"contract:{contract_id}",
                   extra={'installment_amount': str(installment_amount)})
        await self.ctx.notifier.emit(DomainEvent.CONTRACT_RESCHEDULED, contract_id, {
            'version': version,
            'installment_amount': str(installment_amount),
            'installments': len(new_installments),
        })
        return schedule

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    async def refresh_statuses(self, contract_id: str) -> List[Installment]:
        """Re-derive statuses against today's date; returns the installments that changed"""
        async with self.ctx.locks.hold(contract_id):
            contract = await self.ctx.require_contract(contract_id)
            now = self.ctx.now()
            installments = await self.ctx.store.get_installments(contract_id)
            changed = []
            for installment in installments:
                if installment.refresh_status(now.date()):
                    installment.touch(now)
                    changed.append(installment)
            if not changed:
                return []

            batch = self.ctx.store.batch()
            for installment in changed:
                batch.installment(installment)
            await self.ctx.audit.stage_event(
                batch, contract.id, AuditEventType.STATUSES_REFRESHED, now,
                metadata={'changed': [
                    {'month_index': i.month_index, 'status': i.status} for i in changed
                ]},
            )
            await batch.commit()

        log_action(logger, "info", f"{len(changed)} installment status(es) refreshed",
                   action="refresh_statuses", resource=f"contract:{contract_id}")
        return changed

    async def get_installments(self, contract_id: str) -> List[Installment]:
        await self.ctx.require_contract(contract_id)
        return await self.ctx.store.get_installments(contract_id)

    async def summary(self, contract_id: str, today: Optional[date] = None) -> LedgerSummary:
        contract = await self.ctx.require_contract(contract_id)
        installments = await self.ctx.store.get_installments(contract_id)
        today = today or self.ctx.now().date()
        statuses = [i.derive_status(today) for i in installments]
        unpaid = await self.ctx.store.get_penalties(contract_id, unpaid_only=True)
        return LedgerSummary(
            contract_id=contract_id,
            status=contract.status,
            installment_count=len(installments),
            paid_count=statuses.count(InstallmentStatus.PAID),
            late_count=statuses.count(InstallmentStatus.LATE),
            total_target=sum((i.target_amount for i in installments), ZERO),
            total_accumulated=sum((i.accumulated_amount for i in installments), ZERO),
            penalties_total=contract.penalties_total,
            bonus_total=contract.bonus_total,
            penalties_unpaid=sum((p.amount for p in unpaid), ZERO),
            next_due=next((i for i in installments if not i.is_paid), None),
        )
