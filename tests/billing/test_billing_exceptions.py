"""Tests for billing exception types."""

import pytest

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

pytestmark = pytest.mark.unit


class TestBillingError:
    def test_defaults(self):
        error = BillingError("Something broke")

        assert str(error) == "Something broke"
        assert error.error_code == "BILLING_ERROR"
        assert error.status_code == 400
        assert error.context == {}
        assert error.recovery_hint is None

    def test_instance_overrides_class_defaults(self):
        error = BillingError("Gone", error_code="GONE", status_code=410, recovery_hint="Stop")

        assert (error.error_code, error.status_code, error.recovery_hint) == ("GONE", 410, "Stop")
        assert BillingError.error_code == "BILLING_ERROR"

    def test_unset_context_values_are_dropped(self):
        error = SubscriptionValidationError("Bad input", field="plan_id")

        assert error.context == {"field": "plan_id"}

    def test_to_dict(self):
        error = SubscriptionNotFoundError(
            "Subscription sub_1 not found", subscription_id="sub_1", customer_id="cust_1"
        )

        assert error.to_dict() == {
            "error_code": "SUBSCRIPTION_NOT_FOUND",
            "message": "Subscription sub_1 not found",
            "status_code": 404,
            "context": {"subscription_id": "sub_1", "customer_id": "cust_1"},
            "recovery_hint": "Verify the subscription ID and ensure it exists and is accessible",
        }


@pytest.mark.parametrize(
    ("error", "code", "status"),
    [
        (SubscriptionNotFoundError("x"), "SUBSCRIPTION_NOT_FOUND", 404),
        (PlanNotFoundError("x", plan_id="pro"), "PLAN_NOT_FOUND", 404),
        (CustomerNotFoundError("x", customer_id="c"), "CUSTOMER_NOT_FOUND", 404),
        (SubscriptionStateError("x", "active", "paused"), "INVALID_SUBSCRIPTION_STATE", 409),
        (SubscriptionNotRenewableError("x", "canceled"), "SUBSCRIPTION_NOT_RENEWABLE", 409),
        (SubscriptionNotUpgradableError("x", "paused"), "SUBSCRIPTION_NOT_UPGRADABLE", 409),
        (SubscriptionAlreadyCanceledError("x", "canceled"), "SUBSCRIPTION_ALREADY_CANCELED", 409),
        (DuplicateSubscriptionError("x", "c", "pro"), "DUPLICATE_SUBSCRIPTION", 409),
        (SubscriptionValidationError("x", field="plan_id"), "SUBSCRIPTION_VALIDATION_ERROR", 422),
        (SubscriptionConcurrencyError("x", "sub_1"), "SUBSCRIPTION_WRITE_CONFLICT", 409),
        (PaymentError("x"), "PAYMENT_ERROR", 402),
        (PaymentFailedError("x", reason="timeout"), "PAYMENT_FAILED", 402),
    ],
)
def test_error_codes(error, code, status):
    assert isinstance(error, BillingError)
    assert error.error_code == code
    assert error.status_code == status
    assert error.to_dict()["error_code"] == code


class TestHierarchy:
    def test_state_errors_share_a_base(self):
        for error_type in (
            SubscriptionNotRenewableError,
            SubscriptionNotUpgradableError,
            SubscriptionAlreadyCanceledError,
        ):
            assert issubclass(error_type, SubscriptionStateError)
            assert issubclass(error_type, SubscriptionError)

    def test_state_error_context(self):
        error = SubscriptionStateError("Cannot pause", "canceled", "paused")

        assert error.context == {"current_state": "canceled", "requested_state": "paused"}
        assert "from canceled to paused" in error.recovery_hint


class TestPaymentFailedError:
    def test_reason_defaults_to_message(self):
        error = PaymentFailedError("Card declined")

        assert error.reason == "Card declined"
        assert error.context == {}

    def test_context(self):
        error = PaymentFailedError(
            "Payment timed out", subscription_id="sub_1", amount="10.00", reason="timeout"
        )

        assert error.reason == "timeout"
        assert error.context == {"subscription_id": "sub_1", "amount": "10.00", "reason": "timeout"}
        assert isinstance(error, PaymentError)
