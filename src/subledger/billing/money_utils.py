"""
Money helpers for ledger amounts, backed by py-moneyed and Babel.

Ledger amounts are plain ``Decimal`` values stored next to a currency code.
Anything that computes a charge or a credit goes through ``MoneyHandler`` so
that every amount lands on the currency's minor unit with half-up rounding.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

if TYPE_CHECKING:
    from subledger.billing.config import CurrencyConfig

USD = Currency("USD")
EUR = Currency("EUR")
GBP = Currency("GBP")
JPY = Currency("JPY")

DEFAULT_LOCALE = "en_US"

AmountLike = int | float | Decimal | str


class MoneyHandler:
    """Currency-aware rounding, proration and display of ledger amounts."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    @classmethod
    def from_config(cls, config: "CurrencyConfig") -> "MoneyHandler":
        return cls(default_currency=config.default_currency, default_locale=config.default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        # Unknown locales format with the default rather than failing a charge
        try:
            Locale.parse(locale_code)
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE
        return locale_code

    def create_money(self, amount: AmountLike, currency: str | None = None) -> Money:
        """Build a Money value; floats go through ``str`` so 0.1 stays 0.1."""
        code = self._validate_currency(currency or self.default_currency.code)
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        return Money(amount=value, currency=code)

    def get_currency_precision(self, currency_code: str) -> int:
        return get_currency_precision(currency_code.upper())

    def _quantum(self, currency_code: str) -> Decimal:
        return Decimal(1).scaleb(-self.get_currency_precision(currency_code))

    def round_money(self, money: Money) -> Money:
        """Round to the currency's minor unit, half-up."""
        amount = money.amount.quantize(self._quantum(money.currency.code), rounding=ROUND_HALF_UP)
        return Money(amount=amount, currency=money.currency)

    def prorate(
        self, amount: AmountLike, days: int, cycle_days: int, currency: str | None = None
    ) -> Decimal:
        """
        Share of ``amount`` covering ``days`` of a ``cycle_days`` period.

        The division runs at full Decimal precision and only the result is
        rounded, so credit and charge for the same period stay symmetric.
        """
        if cycle_days <= 0:
            raise ValueError("cycle_days must be positive")
        money = self.create_money(amount, currency)
        return self.round_money(money * days / cycle_days).amount

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        validated_locale = self._validate_locale(locale or self.default_locale)
        try:
            return format_currency(
                number=money.amount,
                currency=money.currency.code,
                locale=validated_locale,
                **kwargs,
            )
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"

    def format_amount(self, amount: AmountLike, currency: str | None = None) -> str:
        """Display a bare ledger amount in its currency."""
        return self.format_money(self.create_money(amount, currency))


money_handler = MoneyHandler()


__all__ = [
    "MoneyHandler",
    "money_handler",
    "USD",
    "EUR",
    "GBP",
    "JPY",
]
