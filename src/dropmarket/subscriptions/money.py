"""
Money helpers using py-moneyed and Babel.

Amounts move through the engine as ``Decimal``. ``MoneyFormatter`` turns them
into locale-aware strings for notification payloads.
"""

from decimal import ROUND_CEILING, Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

from dropmarket.settings import settings

ZERO = Decimal("0")
FALLBACK_LOCALE = "en_US"


def to_decimal(amount: int | float | Decimal | str) -> Decimal:
    """Convert to Decimal without binary float artefacts."""
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))


def ceil_units(amount: Decimal) -> Decimal:
    """Round up to a whole currency unit."""
    return amount.to_integral_value(rounding=ROUND_CEILING)


def within_tolerance(left: Decimal, right: Decimal, tolerance: Decimal) -> bool:
    return abs(left - right) <= tolerance


class MoneyFormatter:
    """Locale-aware formatting for a single configured currency."""

    def __init__(self, currency: str | None = None, locale: str | None = None) -> None:
        self.currency = self._validate_currency(currency or settings.subscriptions.currency)
        self.locale = self._validate_locale(locale or settings.subscriptions.locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return FALLBACK_LOCALE

    def money(self, amount: int | float | Decimal | str) -> Money:
        return Money(amount=to_decimal(amount), currency=self.currency)

    def format(self, amount: int | float | Decimal | str) -> str:
        """Format an amount, e.g. ``NGN 5,000.00`` rendered for the configured locale."""
        money = self.money(amount)
        try:
            return format_currency(money.amount, money.currency.code, locale=self.locale)
        except (TypeError, ValueError):
            return f"{money.currency.code} {money.amount}"

    def payload(self, amount: Decimal) -> dict[str, Any]:
        """Amount fields embedded in notification payloads."""
        return {
            "amount": str(amount),
            "currency": self.currency.code,
            "formatted_amount": self.format(amount),
        }
