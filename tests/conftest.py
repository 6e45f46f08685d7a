"""
Global pytest configuration and fixtures for the subscription ledger tests.

Every test gets its own in-memory SQLite database (aiosqlite + StaticPool),
a frozen clock and a fake payment gateway.
"""

import asyncio
import os
import sys
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
import pytest_asyncio

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("OBSERVABILITY__LOG_FORMAT", "console")
os.environ.setdefault("OBSERVABILITY__LOG_LEVEL", "WARNING")

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from subledger.billing.config import (
    BillingConfig,
    DunningConfig,
    PaymentConfig,
    RenewalConfig,
    set_billing_config,
)
from subledger.billing.exceptions import PaymentFailedError
from subledger.billing.subscriptions.models import (
    BillingCycle,
    ChangeTiming,
    Customer,
    CyclePrice,
    Plan,
    Subscription,
    SubscriptionRules,
    SubscriptionStatus,
)
from subledger.billing.subscriptions.recorder import LedgerTransactionRecorder
from subledger.billing.subscriptions.repository import SqlAlchemyUnitOfWork
from subledger.billing.subscriptions.service import SubscriptionLifecycleService
from subledger.db import create_all_tables_async

NOW = datetime(2024, 1, 15, 12, 0, tzinfo=UTC)


class FrozenClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


class FakeGateway:
    """Payment gateway double: records charges, optionally declines or stalls."""

    def __init__(self) -> None:
        self.charges: list[tuple[Decimal, str]] = []
        self.decline_reason: str | None = None
        self.delay: float = 0

    async def charge(self, amount, currency, payment_data, customer) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.decline_reason:
            raise PaymentFailedError(
                f"Card declined: {self.decline_reason}",
                amount=amount,
                reason=self.decline_reason,
            )
        self.charges.append((Decimal(amount), currency))
        return f"ch_{len(self.charges)}"


def make_plan(plan_id: str, base_price: str, **overrides) -> Plan:
    """Plan with monthly (base price) and annual (10x base) cycles."""
    base = Decimal(base_price)
    data = {
        "plan_id": plan_id,
        "name": plan_id.replace("_", " ").title(),
        "base_price": base,
        "billing_cycles": {
            BillingCycle.MONTHLY: CyclePrice(),
            BillingCycle.ANNUAL: CyclePrice(price=base * 10),
        },
    }
    data.update(overrides)
    return Plan(**data)


def make_subscription(**overrides) -> Subscription:
    """Active monthly subscription to ``basic`` for ``cust_1``."""
    data = {
        "subscriber_id": "cust_1",
        "plan_id": "basic",
        "status": SubscriptionStatus.ACTIVE,
        "billing_cycle": BillingCycle.MONTHLY,
        "current_price": Decimal("10.00"),
        "start_date": NOW - timedelta(days=60),
        "next_billing_date": NOW + timedelta(days=15),
    }
    data.update(overrides)
    return Subscription(**data)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def subscription_factory():
    return make_subscription


@pytest.fixture
def plan_factory():
    return make_plan


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def billing_config() -> BillingConfig:
    return BillingConfig(
        renewal=RenewalConfig(look_ahead_days=3, conflict_retry_attempts=3),
        payment=PaymentConfig(
            timeout_seconds=1.0,
            max_retry_attempts=3,
            retry_base_days=1,
            retry_max_days=30,
            retry_jitter=0.0,
            retry_claim_minutes=15,
        ),
        dunning=DunningConfig(max_billing_attempts=3, final_status="canceled"),
    )


@pytest.fixture(autouse=True)
def reset_billing_config():
    yield
    set_billing_config(None)


@pytest_asyncio.fixture
async def async_engine():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    await create_all_tables_async(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        async_engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )


@pytest.fixture
def uow_factory(session_maker):
    return lambda: SqlAlchemyUnitOfWork(session_maker)


@pytest_asyncio.fixture
async def seeded(uow_factory):
    """Customers and a small plan catalog."""
    async with uow_factory() as uow:
        for customer_id in ("cust_1", "cust_2", "cust_3"):
            await uow.customers.add(
                Customer(customer_id=customer_id, email=f"{customer_id}@example.com")
            )
        await uow.plans.add(make_plan("basic", "10.00"))
        await uow.plans.add(make_plan("pro", "20.00"))
        await uow.plans.add(make_plan("enterprise", "50.00"))
        await uow.plans.add(make_plan("trial_plan", "15.00", trial_days=14))
        await uow.plans.add(make_plan("legacy", "5.00", is_active=False))
        await uow.plans.add(
            make_plan(
                "flex",
                "8.00",
                subscription_rules=SubscriptionRules(downgrade_policy=ChangeTiming.IMMEDIATE),
            )
        )
        await uow.commit()
    return uow_factory


@pytest.fixture
def service(uow_factory, gateway, billing_config, clock) -> SubscriptionLifecycleService:
    return SubscriptionLifecycleService(
        uow_factory=uow_factory,
        recorder=LedgerTransactionRecorder(gateway),
        config=billing_config,
        clock=clock,
    )


@pytest.fixture
def add_subscription(seeded):
    """Insert a ledger row directly, bypassing the lifecycle rules."""

    async def _add(**overrides) -> Subscription:
        subscription = make_subscription(**overrides)
        async with seeded() as uow:
            await uow.subscriptions.add(subscription)
            await uow.commit()
        return subscription

    return _add
