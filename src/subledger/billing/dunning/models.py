"""
Dunning domain models.

Failed renewal charges are tracked as failed-payment records and retried
with exponential backoff until they are recovered or given up on.
"""

from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def generate_failed_payment_id() -> str:
    return f"fp_{uuid4().hex[:16]}"


class FailedPaymentStatus(str, Enum):
    """Failed payment status."""

    PENDING = "pending"
    RETRYING = "retrying"
    FAILED = "failed"
    RECOVERED = "recovered"


OPEN_FAILED_PAYMENT_STATUSES = frozenset(
    {FailedPaymentStatus.PENDING, FailedPaymentStatus.RETRYING}
)


class FailedPayment(BaseModel):
    """A renewal charge that failed and is awaiting retry."""

    model_config = ConfigDict(validate_assignment=True)

    failed_payment_id: str = Field(default_factory=generate_failed_payment_id)
    tenant_id: str | None = None
    customer_id: str
    subscription_id: str
    amount: Decimal = Field(ge=0)
    currency: str = "USD"
    reason: str | None = Field(None, description="Processor decline reason")
    attempts: int = Field(0, ge=0, description="Retries attempted so far")
    next_retry: datetime | None = None
    status: FailedPaymentStatus = FailedPaymentStatus.PENDING
    last_attempt_at: datetime | None = None
    recovered_at: datetime | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class DunningRunResult(BaseModel):
    """Counts from one pass over due retries."""

    model_config = ConfigDict()

    processed: int = 0
    recovered: int = 0
    retrying: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = Field(default_factory=list)
