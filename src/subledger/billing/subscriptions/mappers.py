"""
Data mappers for the subscription ledger.

Transforms between database tables and pydantic domain models.
"""

from decimal import Decimal
from typing import Any

from subledger.billing.subscriptions.entities import (
    CustomerTable,
    PlanTable,
    SubscriptionTable,
    SubscriptionTransactionTable,
)
from subledger.billing.subscriptions.models import (
    BillingCycle,
    CancellationReason,
    ChurnRisk,
    Customer,
    CyclePrice,
    Plan,
    Seats,
    Subscription,
    SubscriptionRules,
    SubscriptionStatus,
    TransactionRecord,
    scheduled_changes_adapter,
)


class SubscriptionMapper:
    """Maps subscriptions between the ledger table and the domain model."""

    @staticmethod
    def to_model(row: SubscriptionTable) -> Subscription:
        return Subscription(
            subscription_id=row.subscription_id,
            tenant_id=row.tenant_id,
            subscriber_id=row.subscriber_id,
            plan_id=row.plan_id,
            status=SubscriptionStatus(row.status),
            billing_cycle=BillingCycle(row.billing_cycle),
            current_price=Decimal(row.current_price),
            currency=row.currency,
            start_date=row.start_date,
            end_date=row.end_date,
            trial_start_date=row.trial_start_date,
            trial_end_date=row.trial_end_date,
            next_billing_date=row.next_billing_date,
            last_billing_date=row.last_billing_date,
            canceled_at=row.canceled_at,
            paused_at=row.paused_at,
            resumed_at=row.resumed_at,
            auto_renew=row.auto_renew,
            scheduled_changes=scheduled_changes_adapter.validate_python(
                row.scheduled_changes or []
            ),
            prorated_credits=Decimal(row.prorated_credits),
            cancellation_reason=(
                CancellationReason(row.cancellation_reason) if row.cancellation_reason else None
            ),
            cancellation_note=row.cancellation_note,
            pause_reason=row.pause_reason,
            paused_until=row.paused_until,
            billing_attempts=row.billing_attempts,
            total_paid=Decimal(row.total_paid),
            churn_risk=ChurnRisk.model_validate(row.churn_risk or {}),
            seats=Seats.model_validate(row.seats or {}),
            metadata=dict(row.metadata_json or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    @staticmethod
    def to_columns(subscription: Subscription) -> dict[str, Any]:
        """Column values for a subscription, excluding keys and the version counter."""
        return {
            "tenant_id": subscription.tenant_id,
            "plan_id": subscription.plan_id,
            "status": subscription.status.value,
            "current_price": subscription.current_price,
            "currency": subscription.currency,
            "end_date": subscription.end_date,
            "trial_start_date": subscription.trial_start_date,
            "trial_end_date": subscription.trial_end_date,
            "next_billing_date": subscription.next_billing_date,
            "last_billing_date": subscription.last_billing_date,
            "canceled_at": subscription.canceled_at,
            "paused_at": subscription.paused_at,
            "resumed_at": subscription.resumed_at,
            "auto_renew": subscription.auto_renew,
            "scheduled_changes": scheduled_changes_adapter.dump_python(
                subscription.scheduled_changes, mode="json"
            ),
            "next_scheduled_change_at": subscription.next_scheduled_change_at(),
            "prorated_credits": subscription.prorated_credits,
            "cancellation_reason": (
                subscription.cancellation_reason.value if subscription.cancellation_reason else None
            ),
            "cancellation_note": subscription.cancellation_note,
            "pause_reason": subscription.pause_reason,
            "paused_until": subscription.paused_until,
            "billing_attempts": subscription.billing_attempts,
            "total_paid": subscription.total_paid,
            "churn_risk": subscription.churn_risk.model_dump(mode="json"),
            "seats": subscription.seats.model_dump(mode="json"),
            "metadata_json": dict(subscription.metadata),
        }

    @staticmethod
    def to_table(subscription: Subscription) -> SubscriptionTable:
        return SubscriptionTable(
            subscription_id=subscription.subscription_id,
            subscriber_id=subscription.subscriber_id,
            billing_cycle=subscription.billing_cycle.value,
            start_date=subscription.start_date,
            **SubscriptionMapper.to_columns(subscription),
        )

    @staticmethod
    def apply_to_table(subscription: Subscription, row: SubscriptionTable) -> None:
        """Copy mutable fields onto an already-loaded row."""
        for column, value in SubscriptionMapper.to_columns(subscription).items():
            setattr(row, column, value)


class CustomerMapper:
    @staticmethod
    def to_model(row: CustomerTable) -> Customer:
        return Customer(
            customer_id=row.customer_id,
            tenant_id=row.tenant_id,
            email=row.email,
            name=row.name,
            subscription_status=(
                SubscriptionStatus(row.subscription_status) if row.subscription_status else None
            ),
            subscription_plan_id=row.subscription_plan_id,
            subscription_plan_name=row.subscription_plan_name,
            next_billing_date=row.next_billing_date,
            last_billing_date=row.last_billing_date,
            subscription_end_date=row.subscription_end_date,
        )

    @staticmethod
    def to_table(customer: Customer) -> CustomerTable:
        return CustomerTable(
            customer_id=customer.customer_id,
            tenant_id=customer.tenant_id,
            email=customer.email,
            name=customer.name,
            subscription_status=(
                customer.subscription_status.value if customer.subscription_status else None
            ),
            subscription_plan_id=customer.subscription_plan_id,
            subscription_plan_name=customer.subscription_plan_name,
            next_billing_date=customer.next_billing_date,
            last_billing_date=customer.last_billing_date,
            subscription_end_date=customer.subscription_end_date,
        )


class PlanMapper:
    @staticmethod
    def to_model(row: PlanTable) -> Plan:
        return Plan(
            plan_id=row.plan_id,
            tenant_id=row.tenant_id,
            name=row.name,
            base_price=Decimal(row.base_price),
            currency=row.currency,
            billing_cycles={
                BillingCycle(cycle): CyclePrice.model_validate(data)
                for cycle, data in (row.billing_cycles or {}).items()
            },
            trial_days=row.trial_days,
            subscription_rules=SubscriptionRules.model_validate(row.subscription_rules or {}),
            is_active=row.is_active,
        )

    @staticmethod
    def to_table(plan: Plan) -> PlanTable:
        return PlanTable(
            plan_id=plan.plan_id,
            tenant_id=plan.tenant_id,
            name=plan.name,
            base_price=plan.base_price,
            currency=plan.currency,
            billing_cycles={
                cycle.value: data.model_dump(mode="json")
                for cycle, data in plan.billing_cycles.items()
            },
            trial_days=plan.trial_days,
            subscription_rules=plan.subscription_rules.model_dump(mode="json"),
            is_active=plan.is_active,
        )


class TransactionMapper:
    @staticmethod
    def to_model(row: SubscriptionTransactionTable) -> TransactionRecord:
        return TransactionRecord(
            transaction_id=row.transaction_id,
            tenant_id=row.tenant_id,
            subscription_id=row.subscription_id,
            customer_id=row.customer_id,
            plan_id=row.plan_id,
            amount=Decimal(row.amount),
            currency=row.currency,
            transaction_type=row.transaction_type,
            status=row.status,
            payment_method=row.payment_method,
            external_reference=row.external_reference,
            created_at=row.created_at,
        )

    @staticmethod
    def to_table(record: TransactionRecord) -> SubscriptionTransactionTable:
        return SubscriptionTransactionTable(
            transaction_id=record.transaction_id,
            tenant_id=record.tenant_id,
            subscription_id=record.subscription_id,
            customer_id=record.customer_id,
            plan_id=record.plan_id,
            amount=record.amount,
            currency=record.currency,
            transaction_type=record.transaction_type.value,
            status=record.status.value,
            payment_method=record.payment_method,
            external_reference=record.external_reference,
            created_at=record.created_at,
        )
