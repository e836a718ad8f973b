"""
Money and currency utilities using py-moneyed and Babel.

Amounts travel through the engine as integers in minor units; these helpers
convert to ``Money`` for arithmetic that needs rounding and for display.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

from ledgerline.billing.exceptions import ValidationError

# Default locale for formatting
DEFAULT_LOCALE = "en_US"


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(self, default_currency: str = "USD", default_locale: str = DEFAULT_LOCALE) -> None:
        self.default_currency = self.validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValidationError(
                f"Invalid currency code: {currency_code}", field="currency"
            ) from None

    def _validate_locale(self, locale_code: str) -> str:
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def get_currency_precision(self, currency_code: str) -> int:
        """Get decimal precision for a currency (2 for USD, 0 for JPY)."""
        return get_currency_precision(currency_code.upper())

    def money_from_minor_units(self, minor_units: int, currency: str) -> Money:
        """Create Money from minor units (e.g., cents)."""
        validated_currency = self.validate_currency(currency)
        precision = self.get_currency_precision(currency)
        amount = Decimal(minor_units) / Decimal(10**precision)
        return Money(amount=amount, currency=validated_currency)

    def money_to_minor_units(self, money: Money) -> int:
        """Convert Money to minor units, rounding half-up."""
        precision = self.get_currency_precision(money.currency.code)
        scaled = money.amount * Decimal(10**precision)
        return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))

    def scale_minor_units(self, minor_units: int, factor: Decimal, currency: str) -> int:
        """Multiply a minor-unit amount by ``factor`` and round half-up to a minor unit."""
        money = self.money_from_minor_units(minor_units, currency) * factor
        return self.money_to_minor_units(money)

    def format_minor_units(
        self, minor_units: int, currency: str, locale: str | None = None, **kwargs: Any
    ) -> str:
        """Format an amount with locale-aware formatting."""
        money = self.money_from_minor_units(minor_units, currency)
        locale = self._validate_locale(locale or self.default_locale)
        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=locale, **kwargs
            )
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"


# Global instance for convenience
money_handler = MoneyHandler()


def format_minor_units(minor_units: int, currency: str = "USD") -> str:
    """Format minor units with the default handler."""
    return money_handler.format_minor_units(minor_units, currency)


__all__ = [
    "MoneyHandler",
    "money_handler",
    "format_minor_units",
]
