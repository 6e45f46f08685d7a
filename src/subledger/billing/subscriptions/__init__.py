"""
Subscription lifecycle.

Ledger models, the pure transition functions, and the orchestrating
``SubscriptionLifecycleService`` live in the submodules of this package.
"""

from subledger.billing.subscriptions.models import (
    BillingCycle,
    Cancellation,
    CancellationReason,
    ChurnRisk,
    ChurnRiskLevel,
    Customer,
    PaymentData,
    Pause,
    Plan,
    PlanChange,
    Resume,
    ScheduledChange,
    ScheduledChangeStatus,
    ScheduledChangeType,
    Subscription,
    SubscriptionStatus,
    UserActivity,
)

__all__ = [
    "BillingCycle",
    "Cancellation",
    "CancellationReason",
    "ChurnRisk",
    "ChurnRiskLevel",
    "Customer",
    "PaymentData",
    "Pause",
    "Plan",
    "PlanChange",
    "Resume",
    "ScheduledChange",
    "ScheduledChangeStatus",
    "ScheduledChangeType",
    "Subscription",
    "SubscriptionStatus",
    "UserActivity",
]
