"""
Billing module.

Subscription lifecycle ledger, dunning of failed payments, and the shared
configuration, exceptions and money helpers they use.
"""

from subledger.billing.config import BillingConfig, get_billing_config, set_billing_config
from subledger.billing.exceptions import (
    BillingError,
    CustomerNotFoundError,
    DuplicateSubscriptionError,
    PaymentError,
    PaymentFailedError,
    PlanNotFoundError,
    SubscriptionAlreadyCanceledError,
    SubscriptionConcurrencyError,
    SubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionNotRenewableError,
    SubscriptionNotUpgradableError,
    SubscriptionStateError,
    SubscriptionValidationError,
)

__all__ = [
    # Configuration
    "BillingConfig",
    "get_billing_config",
    "set_billing_config",
    # Exceptions
    "BillingError",
    "SubscriptionError",
    "SubscriptionNotFoundError",
    "PlanNotFoundError",
    "CustomerNotFoundError",
    "SubscriptionStateError",
    "SubscriptionNotRenewableError",
    "SubscriptionNotUpgradableError",
    "SubscriptionAlreadyCanceledError",
    "DuplicateSubscriptionError",
    "SubscriptionValidationError",
    "SubscriptionConcurrencyError",
    "PaymentError",
    "PaymentFailedError",
]
