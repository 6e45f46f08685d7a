"""
Billing system exceptions.

Every failure of a lifecycle operation maps to its own exception type so a
caller can tell "not found" from "wrong state" from "payment declined"
without parsing messages. Each carries a machine-readable ``error_code``, an
HTTP-style ``status_code``, structured ``context`` and a ``recovery_hint``.
"""

from typing import Any


def _context(**values: Any) -> dict[str, Any]:
    """Drop unset values so ``context`` only names what is known."""
    return {key: value for key, value in values.items() if value is not None and value != ""}


class BillingError(Exception):
    """
    Base billing system error.

    Subclasses set ``error_code``, ``status_code`` and ``recovery_hint`` as
    class attributes; instances may override any of them.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code for API responses
        status_code: HTTP status code for this error type
        context: Identifiers and values involved in the failure
        recovery_hint: Suggested action to resolve the error
    """

    error_code: str = "BILLING_ERROR"
    status_code: int = 400
    recovery_hint: str | None = None

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
        recovery_hint: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if status_code is not None:
            self.status_code = status_code
        if recovery_hint is not None:
            self.recovery_hint = recovery_hint
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for API responses and task results."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "status_code": self.status_code,
            "context": self.context,
            "recovery_hint": self.recovery_hint,
        }


class SubscriptionError(BillingError):
    """Subscription-related errors."""

    error_code = "SUBSCRIPTION_ERROR"


class SubscriptionNotFoundError(SubscriptionError):
    error_code = "SUBSCRIPTION_NOT_FOUND"
    status_code = 404
    recovery_hint = "Verify the subscription ID and ensure it exists and is accessible"

    def __init__(
        self, message: str, subscription_id: str | None = None, customer_id: str | None = None
    ):
        super().__init__(
            message, context=_context(subscription_id=subscription_id, customer_id=customer_id)
        )


class PlanNotFoundError(SubscriptionError):
    error_code = "PLAN_NOT_FOUND"
    status_code = 404
    recovery_hint = "Verify the plan ID and ensure it exists and is active"

    def __init__(self, message: str, plan_id: str | None = None) -> None:
        super().__init__(message, context=_context(plan_id=plan_id))


class CustomerNotFoundError(SubscriptionError):
    error_code = "CUSTOMER_NOT_FOUND"
    status_code = 404
    recovery_hint = "Verify the customer ID and ensure the customer record exists"

    def __init__(self, message: str, customer_id: str | None = None) -> None:
        super().__init__(message, context=_context(customer_id=customer_id))


class SubscriptionStateError(SubscriptionError):
    """The subscription's status does not allow the requested transition."""

    error_code = "INVALID_SUBSCRIPTION_STATE"
    status_code = 409

    def __init__(self, message: str, current_state: str, requested_state: str) -> None:
        super().__init__(
            message,
            context={"current_state": current_state, "requested_state": requested_state},
            recovery_hint=(
                f"Cannot transition from {current_state} to {requested_state}. "
                "Check subscription status first."
            ),
        )


class SubscriptionNotRenewableError(SubscriptionStateError):
    error_code = "SUBSCRIPTION_NOT_RENEWABLE"

    def __init__(self, message: str, current_state: str) -> None:
        super().__init__(message, current_state=current_state, requested_state="active")


class SubscriptionNotUpgradableError(SubscriptionStateError):
    """Plan change attempted on a subscription that is not active."""

    error_code = "SUBSCRIPTION_NOT_UPGRADABLE"

    def __init__(self, message: str, current_state: str) -> None:
        super().__init__(message, current_state=current_state, requested_state="active")


class SubscriptionAlreadyCanceledError(SubscriptionStateError):
    error_code = "SUBSCRIPTION_ALREADY_CANCELED"

    def __init__(self, message: str, current_state: str) -> None:
        super().__init__(message, current_state=current_state, requested_state="canceled")


class DuplicateSubscriptionError(SubscriptionError):
    """Customer already holds an active or trial subscription to the plan."""

    error_code = "DUPLICATE_SUBSCRIPTION"
    status_code = 409
    recovery_hint = "Upgrade, downgrade or renew the existing subscription instead"

    def __init__(self, message: str, customer_id: str, plan_id: str) -> None:
        super().__init__(message, context={"customer_id": customer_id, "plan_id": plan_id})


class SubscriptionValidationError(SubscriptionError):
    error_code = "SUBSCRIPTION_VALIDATION_ERROR"
    status_code = 422
    recovery_hint = "Correct the request payload and try again"

    def __init__(self, message: str, field: str | None = None, value: Any = None) -> None:
        super().__init__(
            message,
            context=_context(field=field, value=None if value is None else str(value)),
        )


class SubscriptionConcurrencyError(SubscriptionError):
    """Optimistic-lock retries ran out while other writers kept winning."""

    error_code = "SUBSCRIPTION_WRITE_CONFLICT"
    status_code = 409
    recovery_hint = "Retry the operation once concurrent updates have finished"

    def __init__(self, message: str, subscription_id: str | None = None) -> None:
        super().__init__(message, context=_context(subscription_id=subscription_id))


class PaymentError(BillingError):
    """Payment processing errors."""

    error_code = "PAYMENT_ERROR"
    status_code = 402


class PaymentFailedError(PaymentError):
    """
    The charge for a transition did not go through.

    ``reason`` is the processor's decline code, or ``"timeout"`` when the
    call did not return in time. It falls back to the message.
    """

    error_code = "PAYMENT_FAILED"
    recovery_hint = "Verify payment method is valid and has sufficient funds"

    def __init__(
        self,
        message: str,
        subscription_id: str | None = None,
        amount: Any = None,
        reason: str | None = None,
    ) -> None:
        super().__init__(
            message,
            context=_context(
                subscription_id=subscription_id,
                amount=None if amount is None else str(amount),
                reason=reason,
            ),
        )
        self.reason = reason or message
