"""
Billing module configuration
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class CurrencyConfig(BaseModel):
    """Currency configuration - Single currency support"""

    model_config = ConfigDict()

    default_currency: str = Field("USD", description="Default currency code")
    default_locale: str = Field("en_US", description="Locale used to format amounts")


class RenewalConfig(BaseModel):
    """Renewal scan configuration"""

    model_config = ConfigDict()

    look_ahead_days: int = Field(3, ge=0, description="Days ahead to consider for renewal")
    conflict_retry_attempts: int = Field(
        3, ge=1, description="Attempts for a transition that hits a write conflict"
    )


class PaymentConfig(BaseModel):
    """Payment configuration"""

    model_config = ConfigDict()

    timeout_seconds: float = Field(30.0, gt=0, description="Payment processor call timeout")
    max_retry_attempts: int = Field(3, ge=0, description="Maximum payment retry attempts")
    retry_base_days: int = Field(1, ge=1, description="Delay before the first retry")
    retry_max_days: int = Field(30, ge=1, description="Cap on the delay between retries")
    retry_jitter: float = Field(0.2, ge=0, le=1, description="Random jitter ratio for retries")
    retry_claim_minutes: int = Field(
        15, ge=1, description="Lease held on a failed payment while a retry runs"
    )


class DunningConfig(BaseModel):
    """Dunning configuration"""

    model_config = ConfigDict()

    max_billing_attempts: int = Field(
        3, ge=1, description="Failed renewals tolerated before the final action"
    )
    final_status: Literal["canceled", "suspended"] = Field(
        "canceled", description="Status applied once dunning is exhausted"
    )


def _default_currency_config() -> CurrencyConfig:
    """Create default CurrencyConfig instance"""
    return CurrencyConfig(default_currency="USD", default_locale="en_US")


def _default_renewal_config() -> RenewalConfig:
    """Create default RenewalConfig instance"""
    return RenewalConfig(look_ahead_days=3, conflict_retry_attempts=3)


def _default_payment_config() -> PaymentConfig:
    """Create default PaymentConfig instance"""
    return PaymentConfig(
        timeout_seconds=30.0,
        max_retry_attempts=3,
        retry_base_days=1,
        retry_max_days=30,
        retry_jitter=0.2,
        retry_claim_minutes=15,
    )


def _default_dunning_config() -> DunningConfig:
    """Create default DunningConfig instance"""
    return DunningConfig(max_billing_attempts=3, final_status="canceled")


class BillingConfig(BaseModel):
    """Main billing configuration"""

    model_config = ConfigDict()

    currency: CurrencyConfig = Field(default_factory=_default_currency_config)
    renewal: RenewalConfig = Field(default_factory=_default_renewal_config)
    payment: PaymentConfig = Field(default_factory=_default_payment_config)
    dunning: DunningConfig = Field(default_factory=_default_dunning_config)

    audit_log_enabled: bool = Field(True, description="Enable billing audit logging")

    @classmethod
    def from_settings(cls) -> "BillingConfig":
        """Create configuration from the centralized settings."""
        from subledger.settings import settings

        billing = settings.billing
        return cls(
            currency=CurrencyConfig(
                default_currency=billing.default_currency,
                default_locale=billing.default_locale,
            ),
            renewal=RenewalConfig(
                look_ahead_days=billing.renewal_look_ahead_days,
                conflict_retry_attempts=billing.conflict_retry_attempts,
            ),
            payment=PaymentConfig(
                timeout_seconds=billing.payment_timeout_seconds,
                max_retry_attempts=billing.payment_retry_attempts,
                retry_base_days=billing.retry_base_days,
                retry_max_days=billing.retry_max_days,
                retry_jitter=billing.retry_jitter,
                retry_claim_minutes=billing.retry_claim_minutes,
            ),
            dunning=DunningConfig(
                max_billing_attempts=billing.max_billing_attempts,
                final_status=billing.dunning_final_status,  # type: ignore[arg-type]
            ),
        )


# Global configuration instance
_billing_config: BillingConfig | None = None


def get_billing_config() -> BillingConfig:
    """Get the global billing configuration instance"""
    global _billing_config
    if _billing_config is None:
        _billing_config = BillingConfig.from_settings()
    return _billing_config


def set_billing_config(config: BillingConfig | None) -> None:
    """Set the global billing configuration instance"""
    global _billing_config
    _billing_config = config
