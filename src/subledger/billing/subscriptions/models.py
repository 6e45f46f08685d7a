"""
Subscription domain models.

Pydantic models for the subscription ledger, plans, customers and the
tagged-union scheduled changes embedded in a subscription.
"""

import math
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from subledger.billing.exceptions import SubscriptionValidationError

SECONDS_PER_DAY = 86400


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def generate_subscription_id() -> str:
    return f"sub_{uuid4().hex[:16]}"


def generate_change_id() -> str:
    return f"chg_{uuid4().hex[:12]}"


def generate_transaction_id() -> str:
    return f"txn_{uuid4().hex[:16]}"


class SubscriptionStatus(str, Enum):
    """Subscription status."""

    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    PAUSED = "paused"
    SUSPENDED = "suspended"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.INCOMPLETE_EXPIRED})
RENEWABLE_STATUSES = frozenset(
    {SubscriptionStatus.ACTIVE, SubscriptionStatus.PAST_DUE, SubscriptionStatus.TRIAL}
)


class BillingCycle(str, Enum):
    """Billing cycle."""

    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    SEMIANNUAL = "semiannual"
    ANNUAL = "annual"


class ScheduledChangeType(str, Enum):
    PLAN_CHANGE = "plan_change"
    CANCELLATION = "cancellation"
    PAUSE = "pause"
    RESUME = "resume"


class ScheduledChangeStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSED = "processed"
    CANCELLED = "cancelled"


class CancellationReason(str, Enum):
    """Why a subscription was canceled."""

    VOLUNTARY = "voluntary"
    PAYMENT_FAILED = "payment_failed"
    CHARGEBACK = "chargeback"
    FRAUD = "fraud"
    ADMIN_ACTION = "admin_action"
    DOWNGRADE = "downgrade"
    UPGRADE = "upgrade"
    OTHER = "other"


class CancellationPolicy(str, Enum):
    IMMEDIATE = "immediate"
    END_OF_PERIOD = "end_of_period"
    NO_CANCELLATION = "no_cancellation"


class ChangeTiming(str, Enum):
    """When a plan change takes effect."""

    IMMEDIATE = "immediate"
    END_OF_PERIOD = "end_of_period"


class ChurnRiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TransactionType(str, Enum):
    NEW = "new"
    RENEWAL = "renewal"
    UPGRADE = "upgrade"


class TransactionStatus(str, Enum):
    COMPLETED = "completed"
    PENDING = "pending"
    FAILED = "failed"


# ============================================================================
# Embedded value objects
# ============================================================================


class Seats(BaseModel):
    """Seat allocation for team plans."""

    model_config = ConfigDict()

    allocated: int = Field(1, ge=1, description="Seats paid for")
    used: int = Field(0, ge=0, description="Seats in use")

    @model_validator(mode="after")
    def validate_usage(self) -> "Seats":
        if self.used > self.allocated:
            raise ValueError("Used seats cannot exceed allocated seats")
        return self


class ChurnRisk(BaseModel):
    """Derived churn risk snapshot."""

    model_config = ConfigDict()

    score: int = Field(0, ge=0, le=100)
    level: ChurnRiskLevel = ChurnRiskLevel.LOW
    factors: list[str] = Field(default_factory=list)
    last_calculated: datetime | None = None


class UserActivity(BaseModel):
    """Usage signals supplied by the caller for churn scoring."""

    model_config = ConfigDict()

    last_login_days: int | None = Field(None, ge=0, description="Days since the last login")
    support_tickets: int = Field(0, ge=0, description="Open support tickets")


# ============================================================================
# Scheduled changes (tagged union on ``change_type``)
# ============================================================================


class _ScheduledChangeBase(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    change_id: str = Field(default_factory=generate_change_id)
    scheduled_date: datetime = Field(description="When the change becomes due")
    status: ScheduledChangeStatus = ScheduledChangeStatus.SCHEDULED
    description: str | None = Field(None, description="Free-text reason for the change")
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    processed_at: datetime | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == ScheduledChangeStatus.SCHEDULED

    def is_due(self, now: datetime) -> bool:
        return self.is_pending and self.scheduled_date <= now


class PlanChange(_ScheduledChangeBase):
    change_type: Literal["plan_change"] = "plan_change"
    new_plan_id: str
    effective_date: datetime


class Cancellation(_ScheduledChangeBase):
    change_type: Literal["cancellation"] = "cancellation"
    effective_date: datetime
    reason: CancellationReason = CancellationReason.VOLUNTARY


class Pause(_ScheduledChangeBase):
    change_type: Literal["pause"] = "pause"
    until: datetime | None = None


class Resume(_ScheduledChangeBase):
    change_type: Literal["resume"] = "resume"


ScheduledChange = Annotated[
    PlanChange | Cancellation | Pause | Resume, Field(discriminator="change_type")
]

scheduled_changes_adapter: TypeAdapter[list[ScheduledChange]] = TypeAdapter(list[ScheduledChange])


# ============================================================================
# Subscription ledger row
# ============================================================================


class Subscription(BaseModel):
    """A subscriber's current plan, status, billing cycle and dates."""

    model_config = ConfigDict(validate_assignment=True)

    subscription_id: str = Field(default_factory=generate_subscription_id)
    tenant_id: str | None = Field(None, description="Tenant scope")
    subscriber_id: str = Field(description="Owning customer")
    plan_id: str = Field(description="Current plan")
    status: SubscriptionStatus
    billing_cycle: BillingCycle
    current_price: Decimal = Field(ge=0, description="Plan price snapshot")
    currency: str = Field("USD", min_length=3, max_length=3)

    start_date: datetime
    end_date: datetime | None = None
    trial_start_date: datetime | None = None
    trial_end_date: datetime | None = None
    next_billing_date: datetime | None = None
    last_billing_date: datetime | None = None
    canceled_at: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None

    auto_renew: bool = True
    scheduled_changes: list[ScheduledChange] = Field(default_factory=list)
    prorated_credits: Decimal = Decimal("0")

    cancellation_reason: CancellationReason | None = None
    cancellation_note: str | None = None
    pause_reason: str | None = None
    paused_until: datetime | None = None

    billing_attempts: int = Field(0, ge=0)
    total_paid: Decimal = Decimal("0")
    churn_risk: ChurnRisk = Field(default_factory=ChurnRisk)
    seats: Seats = Field(default_factory=Seats)
    metadata: dict[str, str] = Field(default_factory=dict)

    created_at: datetime | None = None
    updated_at: datetime | None = None

    def is_active(self) -> bool:
        return self.status in (SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_in_trial(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return (
            self.status == SubscriptionStatus.TRIAL
            and self.trial_end_date is not None
            and now < self.trial_end_date
        )

    def trial_days_remaining(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        if not self.is_in_trial(now) or self.trial_end_date is None:
            return 0
        return math.floor((self.trial_end_date - now).total_seconds() / SECONDS_PER_DAY)

    def age_in_days(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        return math.floor((now - self.start_date).total_seconds() / SECONDS_PER_DAY)

    def days_until_next_billing(self, now: datetime | None = None) -> int | None:
        if self.next_billing_date is None:
            return None
        now = now or utcnow()
        return math.floor((self.next_billing_date - now).total_seconds() / SECONDS_PER_DAY)

    @property
    def mrr(self) -> Decimal:
        """Monthly recurring revenue normalised from the cycle price."""
        if self.status in (SubscriptionStatus.CANCELED, SubscriptionStatus.PAUSED):
            return Decimal("0")

        price = self.current_price
        if self.billing_cycle == BillingCycle.WEEKLY:
            return price * 52 / 12
        if self.billing_cycle == BillingCycle.QUARTERLY:
            return price / 3
        if self.billing_cycle == BillingCycle.SEMIANNUAL:
            return price / 6
        if self.billing_cycle == BillingCycle.ANNUAL:
            return price / 12
        return price

    def pending_changes(
        self, change_type: ScheduledChangeType | None = None
    ) -> list[PlanChange | Cancellation | Pause | Resume]:
        """Scheduled entries that have not been processed or cancelled."""
        return [
            change
            for change in self.scheduled_changes
            if change.is_pending
            and (change_type is None or change.change_type == change_type.value)
        ]

    def pending_change(
        self, change_type: ScheduledChangeType
    ) -> PlanChange | Cancellation | Pause | Resume | None:
        pending = self.pending_changes(change_type)
        return pending[0] if pending else None

    @property
    def has_scheduled_cancellation(self) -> bool:
        return self.pending_change(ScheduledChangeType.CANCELLATION) is not None

    def next_scheduled_change_at(self) -> datetime | None:
        dates = [change.scheduled_date for change in self.pending_changes()]
        return min(dates) if dates else None


# ============================================================================
# Collaborator records
# ============================================================================


class CyclePrice(BaseModel):
    """Price configuration for one billing cycle of a plan."""

    model_config = ConfigDict()

    enabled: bool = True
    price: Decimal | None = Field(None, ge=0)
    multiplier: Decimal = Field(Decimal("1"), ge=0)


class SubscriptionRules(BaseModel):
    model_config = ConfigDict()

    auto_renewal: bool = True
    cancellation_policy: CancellationPolicy = CancellationPolicy.END_OF_PERIOD
    upgrade_policy: ChangeTiming = ChangeTiming.IMMEDIATE
    downgrade_policy: ChangeTiming = ChangeTiming.END_OF_PERIOD


class Plan(BaseModel):
    """Membership plan with per-cycle pricing."""

    model_config = ConfigDict()

    plan_id: str
    tenant_id: str | None = None
    name: str
    base_price: Decimal = Field(ge=0)
    currency: str = Field("USD", min_length=3, max_length=3)
    billing_cycles: dict[BillingCycle, CyclePrice] = Field(default_factory=dict)
    trial_days: int = Field(0, ge=0)
    subscription_rules: SubscriptionRules = Field(default_factory=SubscriptionRules)
    is_active: bool = True

    def get_price_for_cycle(self, cycle: BillingCycle | str) -> Decimal:
        """Price charged per cycle; falls back to ``base_price * multiplier``."""
        try:
            cycle = BillingCycle(cycle)
        except ValueError as exc:
            raise SubscriptionValidationError(
                f"Unknown billing cycle: {cycle}", field="billing_cycle", value=cycle
            ) from exc

        cycle_data = self.billing_cycles.get(cycle)
        if cycle_data is None or not cycle_data.enabled:
            raise SubscriptionValidationError(
                f"Billing cycle {cycle.value} is not available for plan {self.plan_id}",
                field="billing_cycle",
                value=cycle.value,
            )
        if cycle_data.price is not None:
            return cycle_data.price
        return self.base_price * cycle_data.multiplier


class Customer(BaseModel):
    """Customer with its denormalised subscription projection."""

    model_config = ConfigDict()

    customer_id: str
    tenant_id: str | None = None
    email: str
    name: str | None = None

    subscription_status: SubscriptionStatus | None = None
    subscription_plan_id: str | None = None
    subscription_plan_name: str | None = None
    next_billing_date: datetime | None = None
    last_billing_date: datetime | None = None
    subscription_end_date: datetime | None = None


class PaymentData(BaseModel):
    """Payment details supplied with a charge-bearing transition."""

    model_config = ConfigDict(str_strip_whitespace=True)

    amount: Decimal = Field(Decimal("0"), ge=0)
    currency: str | None = Field(None, min_length=3, max_length=3)
    payment_method: str | None = Field(None, description="e.g. card, bank_transfer")
    payment_method_id: str | None = Field(None, description="Stored payment method reference")
    metadata: dict[str, Any] = Field(default_factory=dict)


class SubscriptionSummary(BaseModel):
    """What a transaction is being recorded for."""

    model_config = ConfigDict()

    subscription_id: str
    plan_id: str
    plan_name: str
    billing_cycle: BillingCycle
    amount: Decimal
    currency: str = "USD"
    transaction_type: TransactionType


class TransactionRecord(BaseModel):
    """Billing transaction persisted alongside a transition."""

    model_config = ConfigDict(from_attributes=True)

    transaction_id: str = Field(default_factory=generate_transaction_id)
    tenant_id: str | None = None
    subscription_id: str
    customer_id: str
    plan_id: str
    amount: Decimal = Field(ge=0)
    currency: str = "USD"
    transaction_type: TransactionType
    status: TransactionStatus = TransactionStatus.COMPLETED
    payment_method: str | None = None
    external_reference: str | None = None
    created_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Operation results
# ============================================================================


class ProrationResult(BaseModel):
    """Day-count proration of a mid-cycle plan change."""

    model_config = ConfigDict()

    remaining_days: int
    cycle_days: int
    credit: Decimal = Field(description="Unused value of the current plan")
    charge: Decimal = Field(description="Cost of the new plan for the remaining days")

    @property
    def immediate_charge(self) -> Decimal:
        return max(Decimal("0"), self.charge - self.credit)

    @property
    def net_credit(self) -> Decimal:
        return max(Decimal("0"), self.credit - self.charge)


class LifecycleResult(BaseModel):
    """Outcome of a lifecycle transition."""

    model_config = ConfigDict()

    subscription: Subscription
    transaction: TransactionRecord | None = None
    message: str


class CancellationResult(LifecycleResult):
    effective_date: datetime
    immediate: bool


class PlanChangeResult(LifecycleResult):
    from_plan_id: str
    to_plan_id: str
    timing: ChangeTiming
    effective_date: datetime
    proration: ProrationResult | None = None
    immediate_charge: Decimal = Decimal("0")
    prorated_credit: Decimal = Decimal("0")


class SubscriptionDetails(BaseModel):
    """Read projection of a subscription with its computed properties."""

    model_config = ConfigDict()

    subscription: Subscription
    is_active: bool
    is_in_trial: bool
    trial_days_remaining: int
    mrr: Decimal
    age_in_days: int
    days_until_next_billing: int | None
    scheduled_changes: list[ScheduledChange] = Field(default_factory=list)
