"""
Database tables for the subscription ledger and its collaborator records.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Boolean, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from subledger.db import Base, TenantMixin, TimestampMixin, UTCDateTime


class SubscriptionTable(Base, TimestampMixin, TenantMixin):
    """SQLAlchemy table for subscription ledger rows."""

    __tablename__ = "billing_subscriptions"

    subscription_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscriber_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[str] = mapped_column(String(30), nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    current_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")

    # Lifecycle dates
    start_date: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    trial_start_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    trial_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    last_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    canceled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    resumed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    auto_renew: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Embedded tagged-union entries, plus the earliest pending date for scans
    scheduled_changes: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    next_scheduled_change_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), index=True)

    prorated_credits: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0")
    )

    cancellation_reason: Mapped[str | None] = mapped_column(String(30))
    cancellation_note: Mapped[str | None] = mapped_column(Text)
    pause_reason: Mapped[str | None] = mapped_column(Text)
    paused_until: Mapped[datetime | None] = mapped_column(UTCDateTime())

    billing_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid: Mapped[Decimal] = mapped_column(
        Numeric(15, 2), nullable=False, default=Decimal("0")
    )
    churn_risk: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    seats: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    metadata_json: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_billing_subscriptions_overlap", "subscriber_id", "plan_id", "status"),
        Index("ix_billing_subscriptions_renewal", "status", "auto_renew", "next_billing_date"),
        {"extend_existing": True},
    )

    def __repr__(self) -> str:
        return f"<SubscriptionTable {self.subscription_id} status={self.status}>"


class CustomerTable(Base, TimestampMixin, TenantMixin):
    """Customer record with the denormalised subscription projection."""

    __tablename__ = "billing_customers"

    customer_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    name: Mapped[str | None] = mapped_column(String(255))

    subscription_status: Mapped[str | None] = mapped_column(String(30))
    subscription_plan_id: Mapped[str | None] = mapped_column(String(50))
    subscription_plan_name: Mapped[str | None] = mapped_column(String(255))
    next_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    last_billing_date: Mapped[datetime | None] = mapped_column(UTCDateTime())
    subscription_end_date: Mapped[datetime | None] = mapped_column(UTCDateTime())

    __table_args__ = ({"extend_existing": True},)


class PlanTable(Base, TimestampMixin, TenantMixin):
    """Membership plan catalog."""

    __tablename__ = "billing_plans"

    plan_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    billing_cycles: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    trial_days: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    subscription_rules: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    __table_args__ = ({"extend_existing": True},)


class SubscriptionTransactionTable(Base, TimestampMixin, TenantMixin):
    """Charges recorded by subscription transitions."""

    __tablename__ = "billing_subscription_transactions"

    transaction_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    subscription_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    customer_id: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    plan_id: Mapped[str] = mapped_column(String(50), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_method: Mapped[str | None] = mapped_column(String(50))
    external_reference: Mapped[str | None] = mapped_column(String(255))

    __table_args__ = ({"extend_existing": True},)
