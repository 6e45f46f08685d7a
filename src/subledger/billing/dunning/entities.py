"""
Database table for failed renewal payments.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from subledger.db import Base, TenantMixin, TimestampMixin, UTCDateTime


class FailedPaymentTable(Base, TimestampMixin, TenantMixin):
    """Failed payments awaiting retry."""

    __tablename__ = "billing_failed_payments"

    failed_payment_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    reason: Mapped[str | None] = mapped_column(Text)

    # Retry tracking
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    next_retry: Mapped[datetime | None] = mapped_column(UTCDateTime())
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    last_attempt_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    recovered_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    __table_args__ = (
        Index("ix_billing_failed_payments_due", "status", "next_retry"),
        {"extend_existing": True},
    )

    def __repr__(self) -> str:
        return f"<FailedPaymentTable {self.failed_payment_id} status={self.status}>"
