"""
Mid-cycle proration for plan changes.

Credit for the unused part of the current plan and the charge for the new
plan over the same remaining days, both on the fixed cycle day counts.
"""

from datetime import datetime
from decimal import Decimal

from subledger.billing.money_utils import money_handler
from subledger.billing.subscriptions.cycles import cycle_length_days, remaining_days
from subledger.billing.subscriptions.models import ProrationResult, Subscription


def calculate_proration(
    current_price: Decimal,
    new_price: Decimal,
    days_remaining: int,
    cycle_days: int,
    currency: str = "USD",
) -> ProrationResult:
    """
    Prorate a price change over the remaining days of a cycle.

    Args:
        current_price: Price of the plan being left
        new_price: Price of the plan being moved to
        days_remaining: Whole days left in the period
        cycle_days: Day count of the billing cycle
        currency: Used for rounding to the currency's precision

    Returns:
        ProrationResult with credit and charge rounded half-up
    """
    return ProrationResult(
        remaining_days=days_remaining,
        cycle_days=cycle_days,
        credit=money_handler.prorate(current_price, days_remaining, cycle_days, currency),
        charge=money_handler.prorate(new_price, days_remaining, cycle_days, currency),
    )


def prorate_subscription_change(
    subscription: Subscription, new_price: Decimal, now: datetime
) -> ProrationResult:
    """Prorate moving ``subscription`` from its current price to ``new_price`` at ``now``."""
    return calculate_proration(
        current_price=subscription.current_price,
        new_price=new_price,
        days_remaining=remaining_days(subscription.next_billing_date, now),
        cycle_days=cycle_length_days(subscription.billing_cycle),
        currency=subscription.currency,
    )
