"""
Transaction recording for charge-bearing transitions.
"""

import structlog

from subledger.billing.subscriptions.interfaces import PaymentGateway, UnitOfWork
from subledger.billing.subscriptions.models import (
    Customer,
    PaymentData,
    SubscriptionSummary,
    TransactionRecord,
    TransactionStatus,
)

logger = structlog.get_logger(__name__)


class LedgerTransactionRecorder:
    """Writes the transaction row through the caller's unit of work.

    When a ``PaymentGateway`` is configured the charge is taken first; a
    decline surfaces as ``PaymentFailedError`` and nothing is written.
    """

    def __init__(self, gateway: PaymentGateway | None = None) -> None:
        self.gateway = gateway

    async def create_subscription_transaction(
        self,
        uow: UnitOfWork,
        payment_data: PaymentData,
        summary: SubscriptionSummary,
        customer: Customer,
    ) -> TransactionRecord:
        currency = payment_data.currency or summary.currency

        external_reference = None
        if self.gateway is not None:
            external_reference = await self.gateway.charge(
                summary.amount, currency, payment_data, customer
            )

        record = TransactionRecord(
            tenant_id=customer.tenant_id,
            subscription_id=summary.subscription_id,
            customer_id=customer.customer_id,
            plan_id=summary.plan_id,
            amount=summary.amount,
            currency=currency,
            transaction_type=summary.transaction_type,
            status=TransactionStatus.COMPLETED,
            payment_method=payment_data.payment_method,
            external_reference=external_reference,
        )
        await uow.transactions.add(record)

        logger.info(
            "subscription.transaction_recorded",
            transaction_id=record.transaction_id,
            subscription_id=summary.subscription_id,
            transaction_type=summary.transaction_type.value,
            amount=str(summary.amount),
            currency=currency,
        )
        return record
