"""
Collaborator interfaces for the lifecycle engine.

The engine only talks to storage, the plan catalog and the payment side
through these protocols; ``repository.py`` provides the SQLAlchemy versions.
"""

from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from subledger.billing.dunning.models import FailedPayment
from subledger.billing.subscriptions.models import (
    Customer,
    PaymentData,
    Plan,
    Subscription,
    SubscriptionSummary,
    TransactionRecord,
)


class SubscriptionLedger(Protocol):
    async def get(self, subscription_id: str, for_update: bool = False) -> Subscription | None: ...

    async def add(self, subscription: Subscription) -> Subscription: ...

    async def save(self, subscription: Subscription) -> Subscription: ...

    async def find_overlapping(self, subscriber_id: str, plan_id: str) -> list[Subscription]: ...

    async def list_due_for_renewal(self, cutoff: datetime) -> list[Subscription]: ...

    async def list_with_due_changes(self, now: datetime) -> list[Subscription]: ...


class CustomerStore(Protocol):
    async def get(self, customer_id: str) -> Customer | None: ...

    async def add(self, customer: Customer) -> Customer: ...

    async def update_billing_projection(self, customer_id: str, **fields: Any) -> None: ...


class PlanCatalog(Protocol):
    async def get(self, plan_id: str) -> Plan | None: ...

    async def add(self, plan: Plan) -> Plan: ...


class TransactionStore(Protocol):
    async def add(self, record: TransactionRecord) -> TransactionRecord: ...

    async def list_for_subscription(self, subscription_id: str) -> list[TransactionRecord]: ...


class FailedPaymentStore(Protocol):
    async def add(self, failed_payment: FailedPayment) -> FailedPayment: ...

    async def get(self, failed_payment_id: str) -> FailedPayment | None: ...

    async def save(self, failed_payment: FailedPayment) -> FailedPayment: ...

    async def claim(
        self,
        failed_payment_id: str,
        expected_attempts: int,
        expected_next_retry: datetime | None,
        lease_until: datetime,
    ) -> bool: ...

    async def list_due(self, now: datetime, limit: int = 100) -> list[FailedPayment]: ...

    async def find_open_for_subscription(self, subscription_id: str) -> FailedPayment | None: ...


class UnitOfWork(Protocol):
    """One atomic scope over the ledger and its collaborator records."""

    subscriptions: SubscriptionLedger
    customers: CustomerStore
    plans: PlanCatalog
    transactions: TransactionStore
    failed_payments: FailedPaymentStore

    async def __aenter__(self) -> "UnitOfWork": ...  # pragma: no cover - protocol definition
    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> Any: ...  # pragma: no cover

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]


class PaymentGateway(Protocol):
    """Charges a customer; raises ``PaymentFailedError`` on decline."""

    async def charge(
        self,
        amount: Any,
        currency: str,
        payment_data: PaymentData,
        customer: Customer,
    ) -> str | None: ...


class TransactionRecorder(Protocol):
    async def create_subscription_transaction(
        self,
        uow: UnitOfWork,
        payment_data: PaymentData,
        summary: SubscriptionSummary,
        customer: Customer,
    ) -> TransactionRecord: ...
