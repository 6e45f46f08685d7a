"""
Subscription lifecycle transitions.

Pure functions over the ``Subscription`` model: each checks its precondition,
raises the matching ``SubscriptionStateError`` subclass when it does not
hold, and mutates the subscription in place. No I/O happens here; the
service loads and persists the rows around these calls.
"""

from datetime import datetime, timedelta
from decimal import Decimal

from subledger.billing.exceptions import (
    SubscriptionAlreadyCanceledError,
    SubscriptionNotRenewableError,
    SubscriptionNotUpgradableError,
    SubscriptionStateError,
    SubscriptionValidationError,
)
from subledger.billing.subscriptions.cycles import (
    add_billing_cycle,
    calculate_next_billing_date,
)
from subledger.billing.subscriptions.models import (
    RENEWABLE_STATUSES,
    BillingCycle,
    Cancellation,
    CancellationPolicy,
    CancellationReason,
    ChangeTiming,
    Customer,
    Pause,
    Plan,
    PlanChange,
    ProrationResult,
    Resume,
    ScheduledChangeStatus,
    ScheduledChangeType,
    Subscription,
    SubscriptionStatus,
)
from subledger.billing.subscriptions.proration import prorate_subscription_change

AnyScheduledChange = PlanChange | Cancellation | Pause | Resume


# ============================================================================
# Scheduled change bookkeeping
# ============================================================================


def schedule_change(
    subscription: Subscription, change: AnyScheduledChange, now: datetime
) -> AnyScheduledChange:
    """Add ``change``, superseding any pending entry of the same type."""
    for existing in subscription.pending_changes(ScheduledChangeType(change.change_type)):
        mark_cancelled(existing, now)
    subscription.scheduled_changes.append(change)
    return change


def mark_processed(change: AnyScheduledChange, now: datetime) -> None:
    change.status = ScheduledChangeStatus.PROCESSED
    change.processed_at = now


def mark_cancelled(change: AnyScheduledChange, now: datetime) -> None:
    change.status = ScheduledChangeStatus.CANCELLED
    change.processed_at = now


def cancel_pending_changes(subscription: Subscription, now: datetime) -> None:
    for change in subscription.pending_changes():
        mark_cancelled(change, now)


def due_changes(subscription: Subscription, now: datetime) -> list[AnyScheduledChange]:
    """Pending entries whose date has arrived, oldest first."""
    due = [change for change in subscription.scheduled_changes if change.is_due(now)]
    return sorted(due, key=lambda change: change.scheduled_date)


def cancel_scheduled_change(
    subscription: Subscription, change_type: ScheduledChangeType, now: datetime
) -> AnyScheduledChange:
    """Withdraw the pending entry of ``change_type``."""
    change = subscription.pending_change(change_type)
    if change is None:
        raise SubscriptionValidationError(
            f"No scheduled {change_type.value} to cancel",
            field="change_type",
            value=change_type.value,
        )

    mark_cancelled(change, now)
    if change_type == ScheduledChangeType.CANCELLATION and not subscription.is_terminal:
        subscription.auto_renew = subscription.status != SubscriptionStatus.PAUSED
        subscription.end_date = None
        subscription.canceled_at = None
        subscription.cancellation_reason = None
        subscription.cancellation_note = None
    return change


# ============================================================================
# Create / renew
# ============================================================================


def build_subscription(
    customer: Customer,
    plan: Plan,
    billing_cycle: BillingCycle,
    start_date: datetime,
) -> Subscription:
    """New ledger row: ``trial`` when the plan has trial days, else ``active``."""
    price = plan.get_price_for_cycle(billing_cycle)

    subscription = Subscription(
        tenant_id=customer.tenant_id,
        subscriber_id=customer.customer_id,
        plan_id=plan.plan_id,
        status=SubscriptionStatus.ACTIVE,
        billing_cycle=billing_cycle,
        current_price=price,
        currency=plan.currency,
        start_date=start_date,
        auto_renew=plan.subscription_rules.auto_renewal,
    )

    if plan.trial_days > 0:
        trial_end = start_date + timedelta(days=plan.trial_days)
        subscription.status = SubscriptionStatus.TRIAL
        subscription.trial_start_date = start_date
        subscription.trial_end_date = trial_end

    subscription.next_billing_date = calculate_next_billing_date(
        start_date, billing_cycle, subscription.trial_end_date
    )
    return subscription


def apply_renewal(subscription: Subscription, now: datetime) -> None:
    if subscription.status not in RENEWABLE_STATUSES:
        raise SubscriptionNotRenewableError(
            f"Subscription in status {subscription.status.value} cannot be renewed",
            current_state=subscription.status.value,
        )

    subscription.last_billing_date = now
    subscription.next_billing_date = add_billing_cycle(now, subscription.billing_cycle)
    subscription.billing_attempts = 0
    subscription.status = SubscriptionStatus.ACTIVE


# ============================================================================
# Cancel
# ============================================================================


def resolve_cancellation_date(
    subscription: Subscription,
    plan: Plan | None,
    now: datetime,
    effective_date: datetime | None = None,
    immediate: bool = False,
) -> datetime:
    if immediate:
        return now
    if effective_date is not None:
        return effective_date
    policy = plan.subscription_rules.cancellation_policy if plan is not None else None
    if policy == CancellationPolicy.END_OF_PERIOD:
        return subscription.next_billing_date or subscription.end_date or now
    return now


def apply_cancellation(
    subscription: Subscription,
    now: datetime,
    effective_date: datetime,
    reason: CancellationReason = CancellationReason.VOLUNTARY,
    note: str | None = None,
    created_by: str | None = None,
) -> bool:
    """Cancel now or schedule it; returns True when the cancel took effect now."""
    if subscription.is_terminal:
        raise SubscriptionAlreadyCanceledError(
            f"Subscription is already {subscription.status.value}",
            current_state=subscription.status.value,
        )

    subscription.canceled_at = min(now, effective_date)
    subscription.end_date = effective_date
    subscription.cancellation_reason = reason
    subscription.cancellation_note = note
    subscription.auto_renew = False

    if effective_date <= now:
        subscription.status = SubscriptionStatus.CANCELED
        cancel_pending_changes(subscription, now)
        return True

    schedule_change(
        subscription,
        Cancellation(
            scheduled_date=effective_date,
            effective_date=effective_date,
            reason=reason,
            description=f"Cancellation scheduled: {reason.value}",
            created_by=created_by,
            created_at=now,
        ),
        now,
    )
    return False


def apply_scheduled_cancellation(
    subscription: Subscription, change: Cancellation, now: datetime
) -> None:
    """Carry out a cancellation whose effective date has arrived."""
    if subscription.is_terminal:
        raise SubscriptionAlreadyCanceledError(
            f"Subscription is already {subscription.status.value}",
            current_state=subscription.status.value,
        )

    subscription.status = SubscriptionStatus.CANCELED
    subscription.auto_renew = False
    subscription.end_date = change.effective_date
    subscription.canceled_at = subscription.canceled_at or min(now, change.effective_date)
    subscription.cancellation_reason = change.reason
    cancel_pending_changes(subscription, now)


# ============================================================================
# Upgrade / downgrade
# ============================================================================


def _require_plan_change_allowed(subscription: Subscription, new_plan: Plan, verb: str) -> None:
    if not subscription.is_active():
        raise SubscriptionNotUpgradableError(
            f"Only active subscriptions can be {verb}",
            current_state=subscription.status.value,
        )
    if new_plan.plan_id == subscription.plan_id:
        raise SubscriptionValidationError(
            f"Subscription is already on plan {new_plan.plan_id}",
            field="new_plan_id",
            value=new_plan.plan_id,
        )


def _swap_plan(subscription: Subscription, new_plan: Plan, new_price: Decimal) -> None:
    subscription.plan_id = new_plan.plan_id
    subscription.current_price = new_price


def upgrade_timing(new_plan: Plan, immediate: bool = False) -> ChangeTiming:
    if immediate or new_plan.subscription_rules.upgrade_policy == ChangeTiming.IMMEDIATE:
        return ChangeTiming.IMMEDIATE
    return ChangeTiming.END_OF_PERIOD


def downgrade_timing(current_plan: Plan | None, immediate: bool = False) -> ChangeTiming:
    policy = (
        current_plan.subscription_rules.downgrade_policy
        if current_plan is not None
        else ChangeTiming.END_OF_PERIOD
    )
    if immediate or policy == ChangeTiming.IMMEDIATE:
        return ChangeTiming.IMMEDIATE
    return ChangeTiming.END_OF_PERIOD


def apply_upgrade(
    subscription: Subscription,
    current_plan: Plan | None,
    new_plan: Plan,
    now: datetime,
    immediate: bool = False,
    reason: str | None = None,
) -> ProrationResult | None:
    """Swap to ``new_plan`` now; prorate only when the upgrade is immediate.

    The plan and price change right away for either timing; only the
    immediate timing produces a credit and a charge.
    """
    _require_plan_change_allowed(subscription, new_plan, "upgraded")
    new_price = new_plan.get_price_for_cycle(subscription.billing_cycle)

    proration = None
    if upgrade_timing(new_plan, immediate) == ChangeTiming.IMMEDIATE:
        proration = prorate_subscription_change(subscription, new_price, now)
        subscription.prorated_credits += proration.credit

    _swap_plan(subscription, new_plan, new_price)
    # A deferred downgrade would undo the upgrade at the period boundary
    for change in subscription.pending_changes(ScheduledChangeType.PLAN_CHANGE):
        mark_cancelled(change, now)
    if current_plan is not None:
        subscription.metadata["previous_plan"] = current_plan.name
    subscription.metadata["upgrade_date"] = now.isoformat()
    subscription.metadata["upgrade_reason"] = reason or "user_request"
    return proration


def apply_immediate_downgrade(
    subscription: Subscription,
    current_plan: Plan | None,
    new_plan: Plan,
    now: datetime,
) -> ProrationResult:
    """Swap to the cheaper plan now and bank the unused difference as credit."""
    _require_plan_change_allowed(subscription, new_plan, "downgraded")
    new_price = new_plan.get_price_for_cycle(subscription.billing_cycle)

    # Prorate against the price being left, before the swap
    proration = prorate_subscription_change(subscription, new_price, now)
    subscription.prorated_credits += proration.net_credit

    _swap_plan(subscription, new_plan, new_price)
    _record_downgrade_metadata(subscription, current_plan, now, "immediate")
    return proration


def schedule_downgrade(
    subscription: Subscription,
    current_plan: Plan | None,
    new_plan: Plan,
    now: datetime,
    created_by: str | None = None,
) -> PlanChange:
    """Queue the plan change for the end of the current period."""
    _require_plan_change_allowed(subscription, new_plan, "downgraded")
    # Validates the cycle is available on the target plan
    new_plan.get_price_for_cycle(subscription.billing_cycle)

    effective_date = subscription.next_billing_date or now
    change = PlanChange(
        scheduled_date=effective_date,
        effective_date=effective_date,
        new_plan_id=new_plan.plan_id,
        description=f"Downgrade to {new_plan.name}",
        created_by=created_by,
        created_at=now,
    )
    schedule_change(subscription, change, now)
    _record_downgrade_metadata(subscription, current_plan, now, "scheduled")
    return change


def _record_downgrade_metadata(
    subscription: Subscription, current_plan: Plan | None, now: datetime, downgrade_type: str
) -> None:
    if current_plan is not None:
        subscription.metadata["previous_plan"] = current_plan.name
    subscription.metadata["downgrade_date"] = now.isoformat()
    subscription.metadata["downgrade_type"] = downgrade_type


def apply_plan_change(
    subscription: Subscription, current_plan: Plan | None, new_plan: Plan, now: datetime
) -> None:
    """Apply a due scheduled plan change at the period boundary (no proration)."""
    _require_plan_change_allowed(subscription, new_plan, "changed")
    new_price = new_plan.get_price_for_cycle(subscription.billing_cycle)
    _swap_plan(subscription, new_plan, new_price)
    if current_plan is not None:
        subscription.metadata["previous_plan"] = current_plan.name
    subscription.metadata["plan_change_date"] = now.isoformat()


# ============================================================================
# Pause / resume
# ============================================================================


def apply_pause(
    subscription: Subscription,
    now: datetime,
    reason: str | None = None,
    paused_until: datetime | None = None,
    created_by: str | None = None,
) -> None:
    if not subscription.is_active():
        raise SubscriptionStateError(
            "Only active subscriptions can be paused",
            current_state=subscription.status.value,
            requested_state=SubscriptionStatus.PAUSED.value,
        )
    if paused_until is not None and paused_until <= now:
        raise SubscriptionValidationError(
            "paused_until must be in the future",
            field="paused_until",
            value=paused_until.isoformat(),
        )

    subscription.status = SubscriptionStatus.PAUSED
    subscription.auto_renew = False
    subscription.paused_at = now
    subscription.pause_reason = reason
    subscription.paused_until = paused_until

    if paused_until is not None:
        schedule_change(
            subscription,
            Resume(
                scheduled_date=paused_until,
                description="Automatic resume",
                created_by=created_by,
                created_at=now,
            ),
            now,
        )


def build_scheduled_pause(
    subscription: Subscription,
    pause_at: datetime,
    now: datetime,
    reason: str | None = None,
    paused_until: datetime | None = None,
    created_by: str | None = None,
) -> Pause:
    if subscription.is_terminal:
        raise SubscriptionStateError(
            f"Cannot schedule a pause on a {subscription.status.value} subscription",
            current_state=subscription.status.value,
            requested_state=SubscriptionStatus.PAUSED.value,
        )
    if paused_until is not None and paused_until <= pause_at:
        raise SubscriptionValidationError(
            "paused_until must be after the pause date",
            field="paused_until",
            value=paused_until.isoformat(),
        )

    change = Pause(
        scheduled_date=pause_at,
        until=paused_until,
        description=reason,
        created_by=created_by,
        created_at=now,
    )
    schedule_change(subscription, change, now)
    return change


def apply_resume(subscription: Subscription, now: datetime) -> None:
    if subscription.status != SubscriptionStatus.PAUSED:
        raise SubscriptionStateError(
            "Only paused subscriptions can be resumed",
            current_state=subscription.status.value,
            requested_state=SubscriptionStatus.ACTIVE.value,
        )

    subscription.status = SubscriptionStatus.ACTIVE
    subscription.paused_at = None
    subscription.pause_reason = None
    subscription.paused_until = None
    subscription.resumed_at = now
    subscription.auto_renew = not subscription.has_scheduled_cancellation

    if subscription.next_billing_date is None or subscription.next_billing_date <= now:
        subscription.next_billing_date = add_billing_cycle(now, subscription.billing_cycle)

    for change in subscription.pending_changes(ScheduledChangeType.RESUME):
        mark_cancelled(change, now)


# ============================================================================
# Dunning
# ============================================================================


def apply_payment_failure(
    subscription: Subscription,
    now: datetime,
    max_billing_attempts: int,
    final_status: SubscriptionStatus = SubscriptionStatus.CANCELED,
    exhaust: bool = False,
) -> bool:
    """Count a failed renewal; returns True once dunning is exhausted.

    ``exhaust`` forces the final status regardless of the attempt count, for
    when the payment retries run out before ``max_billing_attempts`` does.
    """
    if subscription.status not in RENEWABLE_STATUSES:
        raise SubscriptionStateError(
            f"Cannot record a payment failure on a {subscription.status.value} subscription",
            current_state=subscription.status.value,
            requested_state=SubscriptionStatus.PAST_DUE.value,
        )

    subscription.billing_attempts += 1
    subscription.status = SubscriptionStatus.PAST_DUE

    if subscription.billing_attempts <= max_billing_attempts and not exhaust:
        return False

    if final_status == SubscriptionStatus.CANCELED:
        subscription.status = SubscriptionStatus.CANCELED
        subscription.cancellation_reason = CancellationReason.PAYMENT_FAILED
        subscription.auto_renew = False
        subscription.canceled_at = now
        subscription.end_date = now
        cancel_pending_changes(subscription, now)
    else:
        subscription.status = final_status
        subscription.auto_renew = False
    return True
