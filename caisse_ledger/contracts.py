"""
Contract Model Module

Records owned by a contract: the contract itself (one tagged variant per
family), its installments with their payment events, immutable schedule
versions, penalties, support advances and refund requests.

Records resolve to their concrete type once, at load time, through
``contract_from_dict`` and the ``from_dict`` constructors below.
"""

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, List, Optional, Type

from .amortization import AmortizationRow, Cadence, PaymentPolicy, due_date_for
from .currency import ZERO
from .documents import DocumentRef
from .errors import InvalidTransitionError, ValidationError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ContractFamily(Enum):
    """Contract families sharing the ledger engine"""
    FIXED = "fixed"                          # credit with compound interest
    FREE_SCHEDULE = "free_schedule"          # caisse spéciale, "LIBRE"
    EMERGENCY_SAVINGS = "emergency_savings"  # caisse imprévue


class CreditKind(Enum):
    """Credit product kind and its maximum duration in months"""
    SPECIALE = ("speciale", 7)
    AIDE = ("aide", 3)
    FIXE = ("fixe", None)

    def __init__(self, code: str, max_duration: Optional[int]):
        self.code = code
        self.max_duration = max_duration

    @classmethod
    def from_code(cls, code: str) -> "CreditKind":
        for kind in cls:
            if kind.code == code:
                return kind
        raise ValidationError(f"Unknown credit kind: {code}", credit_kind=code)


class ContractStatus(Enum):
    """Contract lifecycle states"""
    PENDING = "pending"
    UNDER_REVIEW = "under_review"
    ACTIVE = "active"
    DEFAULTED = "defaulted"
    CANCELED = "canceled"      # closed by an early refund
    FINISHED = "finished"      # closed by a final refund


# Allowed transitions; PENDING <-> UNDER_REVIEW is the only loop
CONTRACT_TRANSITIONS: Dict[ContractStatus, frozenset] = {
    ContractStatus.PENDING: frozenset({
        ContractStatus.UNDER_REVIEW, ContractStatus.ACTIVE, ContractStatus.CANCELED,
    }),
    ContractStatus.UNDER_REVIEW: frozenset({
        ContractStatus.PENDING, ContractStatus.ACTIVE, ContractStatus.CANCELED,
    }),
    ContractStatus.ACTIVE: frozenset({
        ContractStatus.DEFAULTED, ContractStatus.CANCELED, ContractStatus.FINISHED,
    }),
    ContractStatus.DEFAULTED: frozenset(),
    ContractStatus.CANCELED: frozenset(),
    ContractStatus.FINISHED: frozenset(),
}

FREE_SCHEDULE_MAX_DURATION = 60
EMERGENCY_SAVINGS_MAX_DURATION = 12
FREE_SCHEDULE_MINIMUM_TARGET = Decimal('100000')


class InstallmentStatus(Enum):
    DUE = "due"
    PARTIAL = "partial"
    PAID = "paid"
    LATE = "late"


class PaymentMode(Enum):
    """How the member paid"""
    CASH = "cash"
    AIRTEL_MONEY = "airtel_money"
    MOBICASH = "mobicash"
    BANK_TRANSFER = "bank_transfer"
    OTHER = "other"


class AdvanceStatus(Enum):
    ACTIVE = "active"
    REPAID = "repaid"


class RefundType(Enum):
    EARLY = "early"
    FINAL = "final"


class RefundStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PAID = "paid"
    ARCHIVED = "archived"


REFUND_TRANSITIONS: Dict[RefundStatus, frozenset] = {
    RefundStatus.PENDING: frozenset({RefundStatus.APPROVED, RefundStatus.ARCHIVED}),
    RefundStatus.APPROVED: frozenset({RefundStatus.PAID, RefundStatus.ARCHIVED}),
    RefundStatus.PAID: frozenset({RefundStatus.ARCHIVED}),
    RefundStatus.ARCHIVED: frozenset(),
}


# ----------------------------------------------------------------------
# Serialization helpers
# ----------------------------------------------------------------------

def _primitive(value: Any) -> Any:
    """Convert a value to something JSON can store without loss"""
    if isinstance(value, Enum):
        return value.value if not isinstance(value.value, tuple) else value.value[0]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value):
        if hasattr(value, 'to_dict'):
            return value.to_dict()
        return {f.name: _primitive(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: _primitive(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_primitive(v) for v in value]
    return value


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else ZERO


def _optional_decimal(value: Any) -> Optional[Decimal]:
    return Decimal(str(value)) if value is not None else None


def _datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _date(value: Any) -> Optional[date]:
    if value is None or isinstance(value, date):
        return value
    return date.fromisoformat(value)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {f.name: _primitive(getattr(self, f.name)) for f in fields(self)}

    def touch(self, now: datetime) -> None:
        self.updated_at = now


# ----------------------------------------------------------------------
# Contracts
# ----------------------------------------------------------------------

@dataclass
class Contract(StorageRecord):
    """
    Shared shape of every contract family.

    ``installment_amount`` is the per-period target: the credit installment
    for FIXED contracts, the monthly (or daily) savings amount otherwise.
    """
    planned_duration: int
    first_due_date: date
    principal: Decimal = ZERO
    monthly_rate: Decimal = ZERO
    cadence: Cadence = Cadence.MONTHLY
    status: ContractStatus = ContractStatus.PENDING
    installment_amount: Decimal = ZERO
    member_id: Optional[str] = None
    schedule_version: int = 0
    penalties_total: Decimal = ZERO
    bonus_total: Decimal = ZERO

    FAMILY: ClassVar[ContractFamily]

    @property
    def family(self) -> ContractFamily:
        return self.FAMILY

    @property
    def max_duration(self) -> Optional[int]:
        """Family duration cap (None when unbounded)"""
        return None

    @property
    def is_active(self) -> bool:
        return self.status == ContractStatus.ACTIVE

    @property
    def is_monthly_savings(self) -> bool:
        return self.family != ContractFamily.FIXED and self.cadence == Cadence.MONTHLY

    def due_date(self, month_index: int) -> date:
        return due_date_for(self.first_due_date, month_index, self.cadence)

    def can_transition_to(self, status: ContractStatus) -> bool:
        return status in CONTRACT_TRANSITIONS[self.status]

    def transition_to(self, status: ContractStatus, now: datetime) -> None:
        if not self.can_transition_to(status):
            raise InvalidTransitionError(
                f"Contract {self.id} cannot go from {self.status.value} to {status.value}",
                contract_id=self.id,
                current_status=self.status.value,
                requested_status=status.value,
            )
        self.status = status
        self.touch(now)

    def validate_terms(self) -> None:
        """Check the terms against the family's rules before activation"""
        if self.planned_duration < 1:
            raise ValidationError("Planned duration must be at least one period",
                                  planned_duration=self.planned_duration)
        cap = self.max_duration
        if cap is not None and self.planned_duration > cap:
            raise ValidationError(
                f"Planned duration {self.planned_duration} exceeds the {self.family.value} cap of {cap}",
                planned_duration=self.planned_duration,
                max_duration=cap,
            )
        if self.principal < ZERO or self.monthly_rate < ZERO:
            raise ValidationError("Principal and rate cannot be negative",
                                  principal=self.principal, monthly_rate=self.monthly_rate)

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data['family'] = self.family.value
        return data

    @classmethod
    def _base_kwargs(cls, data: Dict[str, Any]) -> Dict[str, Any]:
        return dict(
            id=data['id'],
            created_at=_datetime(data['created_at']),
            updated_at=_datetime(data['updated_at']),
            planned_duration=int(data['planned_duration']),
            first_due_date=_date(data['first_due_date']),
            principal=_decimal(data.get('principal')),
            monthly_rate=_decimal(data.get('monthly_rate')),
            cadence=Cadence(data.get('cadence', Cadence.MONTHLY.value)),
            status=ContractStatus(data.get('status', ContractStatus.PENDING.value)),
            installment_amount=_decimal(data.get('installment_amount')),
            member_id=data.get('member_id'),
            schedule_version=int(data.get('schedule_version', 0)),
            penalties_total=_decimal(data.get('penalties_total')),
            bonus_total=_decimal(data.get('bonus_total')),
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contract":
        return cls(**cls._base_kwargs(data))


@dataclass
class FixedCreditContract(Contract):
    """Credit repaid with compound monthly interest"""
    credit_kind: CreditKind = CreditKind.FIXE
    declared_installment: Optional[Decimal] = None

    FAMILY: ClassVar[ContractFamily] = ContractFamily.FIXED

    @property
    def max_duration(self) -> Optional[int]:
        return self.credit_kind.max_duration

    def validate_terms(self) -> None:
        super().validate_terms()
        if self.principal <= ZERO:
            raise ValidationError("Credit principal must be positive", principal=self.principal)
        if self.declared_installment is not None and self.declared_installment <= ZERO:
            raise ValidationError("Declared installment must be positive",
                                  declared_installment=self.declared_installment)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FixedCreditContract":
        return cls(
            **cls._base_kwargs(data),
            credit_kind=CreditKind.from_code(data.get('credit_kind', CreditKind.FIXE.code)),
            declared_installment=_optional_decimal(data.get('declared_installment')),
        )


@dataclass
class FreeScheduleContract(Contract):
    """Free-form savings ("caisse spéciale"); the member chooses the monthly amount"""
    minimum_monthly_target: Decimal = FREE_SCHEDULE_MINIMUM_TARGET

    FAMILY: ClassVar[ContractFamily] = ContractFamily.FREE_SCHEDULE

    @property
    def max_duration(self) -> Optional[int]:
        return FREE_SCHEDULE_MAX_DURATION

    @property
    def effective_target(self) -> Decimal:
        return max(self.installment_amount, self.minimum_monthly_target)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FreeScheduleContract":
        return cls(
            **cls._base_kwargs(data),
            minimum_monthly_target=_decimal(
                data.get('minimum_monthly_target', FREE_SCHEDULE_MINIMUM_TARGET)
            ),
        )


@dataclass
class EmergencySavingsContract(Contract):
    """Emergency savings ("caisse imprévue") with support advances"""
    support_min: Decimal = ZERO
    support_max: Decimal = ZERO

    FAMILY: ClassVar[ContractFamily] = ContractFamily.EMERGENCY_SAVINGS

    @property
    def max_duration(self) -> Optional[int]:
        return EMERGENCY_SAVINGS_MAX_DURATION

    def validate_terms(self) -> None:
        super().validate_terms()
        if self.installment_amount <= ZERO:
            raise ValidationError("Savings amount must be positive",
                                  installment_amount=self.installment_amount)
        if self.support_min < ZERO or self.support_max < self.support_min:
            raise ValidationError("Support bounds must satisfy 0 <= min <= max",
                                  support_min=self.support_min, support_max=self.support_max)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmergencySavingsContract":
        return cls(
            **cls._base_kwargs(data),
            support_min=_decimal(data.get('support_min')),
            support_max=_decimal(data.get('support_max')),
        )


CONTRACT_TYPES: Dict[ContractFamily, Type[Contract]] = {
    ContractFamily.FIXED: FixedCreditContract,
    ContractFamily.FREE_SCHEDULE: FreeScheduleContract,
    ContractFamily.EMERGENCY_SAVINGS: EmergencySavingsContract,
}


def contract_from_dict(data: Dict[str, Any]) -> Contract:
    """Resolve the family tag and build the matching contract variant"""
    try:
        family = ContractFamily(data['family'])
    except (KeyError, ValueError):
        raise ValidationError("Stored contract has no valid family tag",
                              contract_id=data.get('id'), family=data.get('family'))
    return CONTRACT_TYPES[family].from_dict(data)


# ----------------------------------------------------------------------
# Installments and payments
# ----------------------------------------------------------------------

@dataclass
class PaymentEvent:
    """
    Single recorded inflow against an installment.

    ``amount`` is what the member handed over; ``credited_amount`` is what
    reached the installment after an outstanding advance was repaid.
    Penalty and bonus values are stored for audit and never change the
    installment's accumulated amount.
    """
    id: str
    amount: Decimal
    credited_amount: Decimal
    paid_at: datetime
    mode: PaymentMode = PaymentMode.CASH
    recorded_by: Optional[str] = None
    days_late: int = 0
    penalty_window: str = "on_time"
    estimated_penalty: Decimal = ZERO
    applied_penalty: Decimal = ZERO
    penalty_id: Optional[str] = None
    quality_score: int = 10
    quality_remark: str = ""
    bonus_percent: Optional[Decimal] = None
    bonus_amount: Decimal = ZERO
    advance_id: Optional[str] = None
    advance_repayment: Decimal = ZERO

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _primitive(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PaymentEvent":
        return cls(
            id=data['id'],
            amount=_decimal(data['amount']),
            credited_amount=_decimal(data['credited_amount']),
            paid_at=_datetime(data['paid_at']),
            mode=PaymentMode(data.get('mode', PaymentMode.CASH.value)),
            recorded_by=data.get('recorded_by'),
            days_late=int(data.get('days_late', 0)),
            penalty_window=data.get('penalty_window', "on_time"),
            estimated_penalty=_decimal(data.get('estimated_penalty')),
            applied_penalty=_decimal(data.get('applied_penalty')),
            penalty_id=data.get('penalty_id'),
            quality_score=int(data.get('quality_score', 10)),
            quality_remark=data.get('quality_remark', ""),
            bonus_percent=_optional_decimal(data.get('bonus_percent')),
            bonus_amount=_decimal(data.get('bonus_amount')),
            advance_id=data.get('advance_id'),
            advance_repayment=_decimal(data.get('advance_repayment')),
        )


def installment_id(contract_id: str, version: int, month_index: int) -> str:
    return f"{contract_id}:v{version}:{month_index}"


@dataclass
class Installment(StorageRecord):
    """One due period of a contract's schedule"""
    contract_id: str
    month_index: int                  # 0-based
    due_date: date
    target_amount: Decimal
    accumulated_amount: Decimal = ZERO
    status: InstallmentStatus = InstallmentStatus.DUE
    schedule_version: int = 1
    payments: List[PaymentEvent] = field(default_factory=list)

    @property
    def is_paid(self) -> bool:
        return self.status == InstallmentStatus.PAID

    @property
    def outstanding(self) -> Decimal:
        return max(ZERO, self.target_amount - self.accumulated_amount)

    def derive_status(self, today: date) -> InstallmentStatus:
        """Status from accumulated vs target and the calendar only"""
        if self.accumulated_amount >= self.target_amount:
            return InstallmentStatus.PAID
        if today > self.due_date:
            return InstallmentStatus.LATE
        if self.accumulated_amount > ZERO:
            return InstallmentStatus.PARTIAL
        return InstallmentStatus.DUE

    def refresh_status(self, today: date) -> bool:
        """Re-derive the status; True when it changed"""
        status = self.derive_status(today)
        changed = status != self.status
        self.status = status
        return changed

    def credit(self, payment: PaymentEvent, today: date) -> None:
        if payment.credited_amount < ZERO:
            raise ValidationError("Credited amount cannot be negative",
                                  credited_amount=payment.credited_amount)
        self.accumulated_amount += payment.credited_amount
        self.payments.append(payment)
        self.refresh_status(today)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Installment":
        return cls(
            id=data['id'],
            created_at=_datetime(data['created_at']),
            updated_at=_datetime(data['updated_at']),
            contract_id=data['contract_id'],
            month_index=int(data['month_index']),
            due_date=_date(data['due_date']),
            target_amount=_decimal(data['target_amount']),
            accumulated_amount=_decimal(data.get('accumulated_amount')),
            status=InstallmentStatus(data.get('status', InstallmentStatus.DUE.value)),
            schedule_version=int(data.get('schedule_version', 1)),
            payments=[PaymentEvent.from_dict(p) for p in data.get('payments', [])],
        )


@dataclass
class ScheduleVersion(StorageRecord):
    """Immutable schedule snapshot; rescheduling writes a new version"""
    contract_id: str
    version: int
    policy: PaymentPolicy
    installment: Optional[Decimal]
    rows: List[AmortizationRow] = field(default_factory=list)
    reason: Optional[str] = None
    montant_global: Optional[Decimal] = None
    first_month_index: int = 0       # month index of the first row

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduleVersion":
        return cls(
            id=data['id'],
            created_at=_datetime(data['created_at']),
            updated_at=_datetime(data['updated_at']),
            contract_id=data['contract_id'],
            version=int(data['version']),
            policy=PaymentPolicy(data['policy']),
            installment=_optional_decimal(data.get('installment')),
            rows=[AmortizationRow.from_dict(r) for r in data.get('rows', [])],
            reason=data.get('reason'),
            montant_global=_optional_decimal(data.get('montant_global')),
            first_month_index=int(data.get('first_month_index', 0)),
        )


def schedule_id(contract_id: str, version: int) -> str:
    return f"{contract_id}:v{version}"


@dataclass
class Penalty(StorageRecord):
    """
    Late-payment penalty owed on an installment.

    Recorded as its own ledger line by the payment that triggered it and
    settled separately through ``InstallmentLedger.pay_penalties``.
    """
    contract_id: str
    installment_id: str
    month_index: int
    due_date: date
    amount: Decimal
    days_late: int
    payment_id: str
    paid: bool = False
    paid_at: Optional[datetime] = None
    paid_by_payment_id: Optional[str] = None

    def settle(self, payment_id: str, paid_at: datetime, now: datetime) -> None:
        if self.paid:
            raise InvalidTransitionError(f"Penalty {self.id} is already paid",
                                         penalty_id=self.id, paid_at=self.paid_at)
        self.paid = True
        self.paid_at = paid_at
        self.paid_by_payment_id = payment_id
        self.touch(now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Penalty":
        return cls(
            id=data['id'],
            created_at=_datetime(data['created_at']),
            updated_at=_datetime(data['updated_at']),
            contract_id=data['contract_id'],
            installment_id=data['installment_id'],
            month_index=int(data['month_index']),
            due_date=_date(data['due_date']),
            amount=_decimal(data['amount']),
            days_late=int(data.get('days_late', 0)),
            payment_id=data['payment_id'],
            paid=bool(data.get('paid', False)),
            paid_at=_datetime(data.get('paid_at')),
            paid_by_payment_id=data.get('paid_by_payment_id'),
        )


# ----------------------------------------------------------------------
# Advances and refunds
# ----------------------------------------------------------------------

@dataclass
class AdvanceDeduction:
    """Where part of an advance notionally came from"""
    installment_id: str
    month_index: int
    amount: Decimal

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AdvanceDeduction":
        return cls(
            installment_id=data['installment_id'],
            month_index=int(data['month_index']),
            amount=_decimal(data['amount']),
        )


@dataclass
class SupportAdvance(StorageRecord):
    """Emergency cash advance against an emergency-savings contract"""
    contract_id: str
    amount: Decimal
    amount_repaid: Decimal = ZERO
    amount_remaining: Decimal = ZERO
    status: AdvanceStatus = AdvanceStatus.ACTIVE
    deductions: List[AdvanceDeduction] = field(default_factory=list)
    proof: Optional[DocumentRef] = None
    reason: Optional[str] = None
    repaid_at: Optional[datetime] = None
    repaid_by_payment_id: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == AdvanceStatus.ACTIVE

    def repay(self, payment_id: str, now: datetime) -> Decimal:
        """Settle the whole outstanding balance; returns the repaid amount"""
        repayment = self.amount_remaining
        self.amount_repaid += repayment
        self.amount_remaining = ZERO
        self.status = AdvanceStatus.REPAID
        self.repaid_at = now
        self.repaid_by_payment_id = payment_id
        self.touch(now)
        return repayment

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SupportAdvance":
        proof = data.get('proof')
        return cls(
            id=data['id'],
            created_at=_datetime(data['created_at']),
            updated_at=_datetime(data['updated_at']),
            contract_id=data['contract_id'],
            amount=_decimal(data['amount']),
            amount_repaid=_decimal(data.get('amount_repaid')),
            amount_remaining=_decimal(data.get('amount_remaining')),
            status=AdvanceStatus(data.get('status', AdvanceStatus.ACTIVE.value)),
            deductions=[AdvanceDeduction.from_dict(d) for d in data.get('deductions', [])],
            proof=DocumentRef.from_dict(proof) if proof else None,
            reason=data.get('reason'),
            repaid_at=_datetime(data.get('repaid_at')),
            repaid_by_payment_id=data.get('repaid_by_payment_id'),
        )


@dataclass
class RefundRequest(StorageRecord):
    """Early or final withdrawal closing out a contract"""
    contract_id: str
    refund_type: RefundType
    amount_nominal: Decimal
    amount_bonus: Decimal
    deadline_at: datetime
    status: RefundStatus = RefundStatus.PENDING
    reason: Optional[str] = None
    requested_by: Optional[str] = None
    proof: Optional[DocumentRef] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None

    @property
    def amount_total(self) -> Decimal:
        return self.amount_nominal + self.amount_bonus

    def transition_to(self, status: RefundStatus, now: datetime) -> None:
        if status not in REFUND_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Refund request {self.id} cannot go from {self.status.value} to {status.value}",
                refund_id=self.id,
                current_status=self.status.value,
                requested_status=status.value,
            )
        self.status = status
        if status == RefundStatus.APPROVED:
            self.approved_at = now
        elif status == RefundStatus.PAID:
            self.paid_at = now
        elif status == RefundStatus.ARCHIVED:
            self.archived_at = now
        self.touch(now)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefundRequest":
        proof = data.get('proof')
        return cls(
            id=data['id'],
            created_at=_datetime(data['created_at']),
            updated_at=_datetime(data['updated_at']),
            contract_id=data['contract_id'],
            refund_type=RefundType(data['refund_type']),
            amount_nominal=_decimal(data['amount_nominal']),
            amount_bonus=_decimal(data.get('amount_bonus')),
            deadline_at=_datetime(data['deadline_at']),
            status=RefundStatus(data.get('status', RefundStatus.PENDING.value)),
            reason=data.get('reason'),
            requested_by=data.get('requested_by'),
            proof=DocumentRef.from_dict(proof) if proof else None,
            approved_at=_datetime(data.get('approved_at')),
            paid_at=_datetime(data.get('paid_at')),
            archived_at=_datetime(data.get('archived_at')),
        )
