"""
Billing cycle arithmetic.

Next billing dates use calendar arithmetic (monthly 2024-01-31 -> 2024-02-29);
proration uses the fixed day counts in ``CYCLE_DAYS``.
"""

import math
from datetime import datetime

from dateutil.relativedelta import relativedelta

from subledger.billing.exceptions import SubscriptionValidationError
from subledger.billing.subscriptions.models import SECONDS_PER_DAY, BillingCycle

CYCLE_DAYS: dict[BillingCycle, int] = {
    BillingCycle.WEEKLY: 7,
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.SEMIANNUAL: 180,
    BillingCycle.ANNUAL: 365,
}

_CYCLE_DELTAS: dict[BillingCycle, relativedelta] = {
    BillingCycle.WEEKLY: relativedelta(weeks=1),
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.QUARTERLY: relativedelta(months=3),
    BillingCycle.SEMIANNUAL: relativedelta(months=6),
    BillingCycle.ANNUAL: relativedelta(years=1),
}


def parse_billing_cycle(value: BillingCycle | str) -> BillingCycle:
    """Coerce user input to a ``BillingCycle``."""
    try:
        return BillingCycle(value)
    except ValueError as exc:
        raise SubscriptionValidationError(
            f"Unknown billing cycle: {value}", field="billing_cycle", value=value
        ) from exc


def cycle_length_days(cycle: BillingCycle) -> int:
    return CYCLE_DAYS[cycle]


def add_billing_cycle(from_date: datetime, cycle: BillingCycle) -> datetime:
    return from_date + _CYCLE_DELTAS[cycle]


def calculate_next_billing_date(
    from_date: datetime,
    cycle: BillingCycle,
    trial_end_date: datetime | None = None,
) -> datetime:
    """One cycle after ``from_date``, or after the trial end when there is one."""
    return add_billing_cycle(trial_end_date or from_date, cycle)


def remaining_days(next_billing_date: datetime | None, now: datetime) -> int:
    """Whole days left in the current period, rounded up; never negative."""
    if next_billing_date is None:
        return 0
    seconds = (next_billing_date - now).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))
