"""
SQLAlchemy store for failed payments.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from subledger.billing.dunning.entities import FailedPaymentTable
from subledger.billing.dunning.models import (
    OPEN_FAILED_PAYMENT_STATUSES,
    FailedPayment,
    FailedPaymentStatus,
)

_OPEN_STATUS_VALUES = [status.value for status in OPEN_FAILED_PAYMENT_STATUSES]


def _to_model(row: FailedPaymentTable) -> FailedPayment:
    return FailedPayment(
        failed_payment_id=row.failed_payment_id,
        tenant_id=row.tenant_id,
        customer_id=row.customer_id,
        subscription_id=row.subscription_id,
        amount=Decimal(row.amount),
        currency=row.currency,
        reason=row.reason,
        attempts=row.attempts,
        next_retry=row.next_retry,
        status=FailedPaymentStatus(row.status),
        last_attempt_at=row.last_attempt_at,
        recovered_at=row.recovered_at,
        created_at=row.created_at,
    )


class SqlAlchemyFailedPaymentStore:
    """Failed-payment records persisted through the unit of work's session."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def add(self, failed_payment: FailedPayment) -> FailedPayment:
        self.session.add(
            FailedPaymentTable(
                failed_payment_id=failed_payment.failed_payment_id,
                tenant_id=failed_payment.tenant_id,
                customer_id=failed_payment.customer_id,
                subscription_id=failed_payment.subscription_id,
                amount=failed_payment.amount,
                currency=failed_payment.currency,
                reason=failed_payment.reason,
                attempts=failed_payment.attempts,
                next_retry=failed_payment.next_retry,
                status=failed_payment.status.value,
                last_attempt_at=failed_payment.last_attempt_at,
                recovered_at=failed_payment.recovered_at,
                created_at=failed_payment.created_at,
            )
        )
        await self.session.flush()
        return failed_payment

    async def get(self, failed_payment_id: str) -> FailedPayment | None:
        row = await self.session.get(FailedPaymentTable, failed_payment_id)
        return _to_model(row) if row else None

    async def save(self, failed_payment: FailedPayment) -> FailedPayment:
        row = await self.session.get(FailedPaymentTable, failed_payment.failed_payment_id)
        if row is None:
            return await self.add(failed_payment)

        row.reason = failed_payment.reason
        row.attempts = failed_payment.attempts
        row.next_retry = failed_payment.next_retry
        row.status = failed_payment.status.value
        row.last_attempt_at = failed_payment.last_attempt_at
        row.recovered_at = failed_payment.recovered_at
        await self.session.flush()
        return failed_payment

    async def claim(
        self,
        failed_payment_id: str,
        expected_attempts: int,
        expected_next_retry: datetime | None,
        lease_until: datetime,
    ) -> bool:
        """Compare-and-set the retry slot; only one caller wins a given slot."""
        stmt = (
            update(FailedPaymentTable)
            .where(
                FailedPaymentTable.failed_payment_id == failed_payment_id,
                FailedPaymentTable.attempts == expected_attempts,
                FailedPaymentTable.status.in_(_OPEN_STATUS_VALUES),
            )
            .values(next_retry=lease_until)
            .execution_options(synchronize_session=False)
        )
        if expected_next_retry is None:
            stmt = stmt.where(FailedPaymentTable.next_retry.is_(None))
        else:
            stmt = stmt.where(FailedPaymentTable.next_retry == expected_next_retry)

        result = await self.session.execute(stmt)
        return result.rowcount == 1

    async def list_due(self, now: datetime, limit: int = 100) -> list[FailedPayment]:
        stmt = (
            select(FailedPaymentTable)
            .where(
                FailedPaymentTable.status.in_(_OPEN_STATUS_VALUES),
                FailedPaymentTable.next_retry <= now,
            )
            .order_by(FailedPaymentTable.next_retry.asc())
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return [_to_model(row) for row in result.scalars().all()]

    async def find_open_for_subscription(self, subscription_id: str) -> FailedPayment | None:
        stmt = (
            select(FailedPaymentTable)
            .where(
                FailedPaymentTable.subscription_id == subscription_id,
                FailedPaymentTable.status.in_(_OPEN_STATUS_VALUES),
            )
            .order_by(FailedPaymentTable.created_at.desc())
            .limit(1)
        )
        result = await self.session.execute(stmt)
        row = result.scalar_one_or_none()
        return _to_model(row) if row else None
