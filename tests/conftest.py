"""
Shared fixtures: a controllable clock, an in-memory engine whose events are
captured, and factories for activated contracts of each family.
"""

import pytest
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal

from caisse_ledger.config import LedgerConfig
from caisse_ledger.contracts import (
    ContractFamily, CreditKind, EmergencySavingsContract, FixedCreditContract,
    FreeScheduleContract,
)
from caisse_ledger.engine import LedgerEngine
from caisse_ledger.events import EventDispatcher
from caisse_ledger.policies import (
    BonusTable, FamilyPolicy, PenaltyRules, StaticPolicyProvider,
)


class FrozenClock:
    """Clock returning a settable instant"""

    def __init__(self, current: datetime):
        self.current = current

    def __call__(self) -> datetime:
        return self.current

    def set(self, day: date, hour: int = 10) -> None:
        self.current = datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)

    def advance(self, days: int) -> None:
        self.current += timedelta(days=days)


def at(day: date, hour: int = 10) -> datetime:
    return datetime(day.year, day.month, day.day, hour, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    return FrozenClock(at(date(2024, 1, 1)))


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def captured(dispatcher):
    """Every event published through the engine, in order"""
    events = []
    dispatcher.subscribe_all(events.append)
    return events


@pytest.fixture
def policies():
    savings_policy = FamilyPolicy(
        bonus_table=BonusTable.of({"M4": 2, "M7": 5}),
        penalty_rules=PenaltyRules(per_day=Decimal("1")),
    )
    return StaticPolicyProvider({
        ContractFamily.EMERGENCY_SAVINGS: savings_policy,
        ContractFamily.FREE_SCHEDULE: savings_policy,
    })


@pytest.fixture
def config():
    return LedgerConfig()


@pytest.fixture
def engine(clock, dispatcher, policies, config):
    return LedgerEngine.in_memory(dispatcher=dispatcher, policies=policies,
                                  config=config, clock=clock)


@pytest.fixture
def make_emergency(engine, clock):
    """Register and activate an emergency savings contract"""
    async def factory(contract_id="ci-1", monthly=Decimal("10000"), duration=12,
                      support_min=Decimal("5000"), support_max=Decimal("30000")):
        now = clock()
        contract = EmergencySavingsContract(
            id=contract_id,
            created_at=now,
            updated_at=now,
            planned_duration=duration,
            first_due_date=date(2024, 1, 1),
            installment_amount=monthly,
            member_id="member-1",
            support_min=support_min,
            support_max=support_max,
        )
        await engine.ledger.register_contract(contract)
        return await engine.ledger.activate_contract(contract_id)
    return factory


@pytest.fixture
def make_free(engine, clock):
    """Register and activate a free-schedule savings contract"""
    async def factory(contract_id="cs-1", monthly=Decimal("100000"), duration=3):
        now = clock()
        contract = FreeScheduleContract(
            id=contract_id,
            created_at=now,
            updated_at=now,
            planned_duration=duration,
            first_due_date=date(2024, 1, 1),
            installment_amount=monthly,
            member_id="member-2",
        )
        await engine.ledger.register_contract(contract)
        return await engine.ledger.activate_contract(contract_id)
    return factory


@pytest.fixture
def make_credit(engine, clock):
    """Register and activate a credit contract"""
    async def factory(contract_id="cr-1", principal=Decimal("500000"), rate=Decimal("0.05"),
                      duration=7, kind=CreditKind.SPECIALE, declared=Decimal("100000")):
        now = clock()
        contract = FixedCreditContract(
            id=contract_id,
            created_at=now,
            updated_at=now,
            planned_duration=duration,
            first_due_date=date(2024, 1, 1),
            principal=principal,
            monthly_rate=rate,
            member_id="member-3",
            credit_kind=kind,
            declared_installment=declared,
        )
        await engine.ledger.register_contract(contract)
        return await engine.ledger.activate_contract(contract_id)
    return factory


@pytest.fixture
def pay_on_time(engine):
    """Pay installments in full on their due dates"""
    async def pay(contract_id, *month_indexes):
        results = []
        for month_index in month_indexes:
            installments = await engine.ledger.get_installments(contract_id)
            installment = next(i for i in installments if i.month_index == month_index)
            results.append(await engine.ledger.apply_payment(
                contract_id, month_index, installment.outstanding,
                paid_at=at(installment.due_date),
            ))
        return results
    return pay
