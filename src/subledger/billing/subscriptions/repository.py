"""
SQLAlchemy implementations of the ledger stores and the unit of work.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subledger.billing.dunning.repository import SqlAlchemyFailedPaymentStore
from subledger.billing.exceptions import CustomerNotFoundError, SubscriptionNotFoundError
from subledger.billing.subscriptions.entities import (
    CustomerTable,
    PlanTable,
    SubscriptionTable,
    SubscriptionTransactionTable,
)
from subledger.billing.subscriptions.mappers import (
    CustomerMapper,
    PlanMapper,
    SubscriptionMapper,
    TransactionMapper,
)
from subledger.billing.subscriptions.models import (
    Customer,
    Plan,
    Subscription,
    SubscriptionStatus,
    TransactionRecord,
)
from subledger.db import get_async_session_maker

_PROJECTION_FIELDS = frozenset(
    {
        "subscription_status",
        "subscription_plan_id",
        "subscription_plan_name",
        "next_billing_date",
        "last_billing_date",
        "subscription_end_date",
    }
)


class SqlAlchemySubscriptionLedger:
    """Subscription ledger rows, versioned for write-conflict detection."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _get_row(
        self, subscription_id: str, for_update: bool = False
    ) -> SubscriptionTable | None:
        stmt = select(SubscriptionTable).where(SubscriptionTable.subscription_id == subscription_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, subscription_id: str, for_update: bool = False) -> Subscription | None:
        row = await self._get_row(subscription_id, for_update=for_update)
        return SubscriptionMapper.to_model(row) if row else None

    async def add(self, subscription: Subscription) -> Subscription:
        self.session.add(SubscriptionMapper.to_table(subscription))
        await self.session.flush()
        return subscription

    async def save(self, subscription: Subscription) -> Subscription:
        row = await self.session.get(SubscriptionTable, subscription.subscription_id)
        if row is None:
            raise SubscriptionNotFoundError(
                f"Subscription {subscription.subscription_id} not found",
                subscription_id=subscription.subscription_id,
            )
        SubscriptionMapper.apply_to_table(subscription, row)
        # Flushing bumps the version column; a concurrent commit raises StaleDataError here
        await self.session.flush()
        return subscription

    async def find_overlapping(self, subscriber_id: str, plan_id: str) -> list[Subscription]:
        stmt = select(SubscriptionTable).where(
            SubscriptionTable.subscriber_id == subscriber_id,
            SubscriptionTable.plan_id == plan_id,
            SubscriptionTable.status.in_(
                [SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIAL.value]
            ),
        )
        result = await self.session.execute(stmt)
        return [SubscriptionMapper.to_model(row) for row in result.scalars().all()]

    async def list_due_for_renewal(self, cutoff: datetime) -> list[Subscription]:
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.status == SubscriptionStatus.ACTIVE.value,
                SubscriptionTable.auto_renew.is_(True),
                SubscriptionTable.next_billing_date.is_not(None),
                SubscriptionTable.next_billing_date <= cutoff,
            )
            .order_by(SubscriptionTable.next_billing_date.asc())
        )
        result = await self.session.execute(stmt)
        return [SubscriptionMapper.to_model(row) for row in result.scalars().all()]

    async def list_with_due_changes(self, now: datetime) -> list[Subscription]:
        stmt = (
            select(SubscriptionTable)
            .where(
                SubscriptionTable.next_scheduled_change_at.is_not(None),
                SubscriptionTable.next_scheduled_change_at <= now,
            )
            .order_by(SubscriptionTable.next_scheduled_change_at.asc())
        )
        result = await self.session.execute(stmt)
        return [SubscriptionMapper.to_model(row) for row in result.scalars().all()]


class SqlAlchemyCustomerStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, customer_id: str) -> Customer | None:
        row = await self.session.get(CustomerTable, customer_id)
        return CustomerMapper.to_model(row) if row else None

    async def add(self, customer: Customer) -> Customer:
        self.session.add(CustomerMapper.to_table(customer))
        await self.session.flush()
        return customer

    async def update_billing_projection(self, customer_id: str, **fields: Any) -> None:
        """Update the customer's denormalised subscription fields."""
        unknown = set(fields) - _PROJECTION_FIELDS
        if unknown:
            raise ValueError(f"Unknown projection fields: {sorted(unknown)}")

        row = await self.session.get(CustomerTable, customer_id)
        if row is None:
            raise CustomerNotFoundError(
                f"Customer {customer_id} not found", customer_id=customer_id
            )

        for field, value in fields.items():
            setattr(row, field, value.value if isinstance(value, Enum) else value)
        await self.session.flush()


class SqlAlchemyPlanCatalog:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, plan_id: str) -> Plan | None:
        row = await self.session.get(PlanTable, plan_id)
        return PlanMapper.to_model(row) if row else None

    async def add(self, plan: Plan) -> Plan:
        self.session.add(PlanMapper.to_table(plan))
        await self.session.flush()
        return plan


class SqlAlchemyTransactionStore:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, record: TransactionRecord) -> TransactionRecord:
        self.session.add(TransactionMapper.to_table(record))
        await self.session.flush()
        return record

    async def list_for_subscription(self, subscription_id: str) -> list[TransactionRecord]:
        stmt = (
            select(SubscriptionTransactionTable)
            .where(SubscriptionTransactionTable.subscription_id == subscription_id)
            .order_by(SubscriptionTransactionTable.created_at.asc())
        )
        result = await self.session.execute(stmt)
        return [TransactionMapper.to_model(row) for row in result.scalars().all()]


class SqlAlchemyUnitOfWork:
    """One ``AsyncSession`` shared by every store for the duration of a transition.

    Nothing is committed unless ``commit()`` is called; leaving the context
    rolls back whatever is still pending.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._session_factory = session_factory
        self.session: AsyncSession | None = None

    async def __aenter__(self) -> "SqlAlchemyUnitOfWork":
        factory = self._session_factory or get_async_session_maker()
        self.session = factory()
        self.subscriptions = SqlAlchemySubscriptionLedger(self.session)
        self.customers = SqlAlchemyCustomerStore(self.session)
        self.plans = SqlAlchemyPlanCatalog(self.session)
        self.transactions = SqlAlchemyTransactionStore(self.session)
        self.failed_payments = SqlAlchemyFailedPaymentStore(self.session)
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if self.session is None:
            return
        try:
            await self.session.rollback()
        finally:
            await self.session.close()
            self.session = None

    async def commit(self) -> None:
        if self.session is None:
            raise RuntimeError("Unit of work is not active")
        await self.session.commit()

    async def rollback(self) -> None:
        if self.session is not None:
            await self.session.rollback()
