"""
Dunning of failed renewal payments.

Failed-payment records with exponential retry backoff, claimed before each
retry so concurrent scanners never charge the same record twice.
"""

from subledger.billing.dunning.models import (
    DunningRunResult,
    FailedPayment,
    FailedPaymentStatus,
)

__all__ = [
    "DunningRunResult",
    "FailedPayment",
    "FailedPaymentStatus",
]
