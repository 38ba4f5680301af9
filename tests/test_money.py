"""Tests for Money/Rate primitives and the fixed rate and price providers."""

from datetime import date
from decimal import Decimal

import pytest

from investledger.currency import Currency, FixedExchangeRateManager
from investledger.errors import CurrencyMismatchError, InvalidRateError
from investledger.money import Money, Rate, to_decimal
from investledger.pricingdata import FixedPricingDataManager


def test_money_arithmetic_same_currency():
    """Verify addition, subtraction and scaling keep the currency and exact amounts."""
    a = Money("10.10", Currency.USD)
    b = Money("5.05", Currency.USD)

    assert a + b == Money("15.15", Currency.USD)
    assert a - b == Money("5.05", Currency.USD)
    assert a * 3 == Money("30.30", Currency.USD)
    assert Decimal("2") * b == Money("10.10", Currency.USD)
    assert -a == Money("-10.10", Currency.USD)
    assert a / b == Decimal("2")


def test_money_mixed_currencies_rejected():
    """Verify combining two currencies without a rate raises CurrencyMismatchError."""
    usd = Money("1", Currency.USD)
    twd = Money("1", Currency.TWD)

    with pytest.raises(CurrencyMismatchError, match="without an exchange rate"):
        usd + twd
    with pytest.raises(TypeError):
        usd < twd
    assert usd != twd


def test_money_rejects_float_scaling():
    """Verify floats cannot leak into Money arithmetic."""
    with pytest.raises(TypeError):
        Money("1", Currency.USD) * 1.5


def test_to_decimal_avoids_float_noise():
    assert to_decimal(0.1) == Decimal("0.1")
    assert to_decimal("31.25") == Decimal("31.25")
    assert to_decimal(3) == Decimal("3")


def test_money_quantize_rounds_half_up():
    assert Money("1.005", Currency.USD).quantize() == Money("1.01", Currency.USD)
    assert Money("2.12345", Currency.USD).quantize(4) == Money("2.1235", Currency.USD)


def test_rate_convert_and_inverse():
    """Verify a rate converts only its source currency and inverts exactly."""
    rate = Rate(Currency.USD, Currency.TWD, Decimal("32"))

    assert rate.convert(Money("100", Currency.USD)) == Money("3200", Currency.TWD)
    assert rate.inverse().value == Decimal("0.03125")
    assert rate.inverse().from_currency == Currency.TWD

    with pytest.raises(CurrencyMismatchError):
        rate.convert(Money("100", Currency.TWD))


@pytest.mark.parametrize("value", [Decimal("0"), Decimal("-1"), None])
def test_rate_must_be_positive(value):
    """Verify zero, negative and missing rates raise InvalidRateError (a ValueError)."""
    with pytest.raises(InvalidRateError):
        Rate(Currency.USD, Currency.TWD, value)
    with pytest.raises(ValueError):
        Rate(Currency.USD, Currency.TWD, value)


def test_fixed_exchange_rate_manager_lookups():
    """Verify identity, direct, inverse and USD-triangulated lookups."""
    manager = FixedExchangeRateManager({
        (Currency.CAD, Currency.USD): Decimal("0.75"),
        (Currency.USD, Currency.TWD): Decimal("32"),
    })

    assert manager.get_exchange_rate(Currency.TWD, Currency.TWD).value == Decimal("1")
    assert manager.get_exchange_rate(Currency.CAD, Currency.USD).value == Decimal("0.75")
    assert manager.get_exchange_rate(Currency.TWD, Currency.USD).value == Decimal("0.03125")
    assert manager.get_exchange_rate(Currency.CAD, Currency.TWD).value == Decimal("24.00")
    assert manager.get_exchange_rate(Currency.EUR, Currency.TWD) is None


def test_fixed_exchange_rate_manager_set_rate():
    manager = FixedExchangeRateManager()
    assert manager.get_exchange_rate(Currency.USD, Currency.TWD, date(2025, 1, 2)) is None

    manager.set_exchange_rate(Currency.USD, Currency.TWD, Decimal("31.5"))
    rate = manager.get_exchange_rate(Currency.USD, Currency.TWD, date(2025, 1, 2))
    assert rate == Rate(Currency.USD, Currency.TWD, Decimal("31.5"))


def test_fixed_pricing_manager_missing_price_is_none():
    """Verify a missing price is reported as None rather than an error."""
    manager = FixedPricingDataManager({"aapl": Decimal("190.50")})

    point = manager.get_price_point("AAPL", date(2025, 1, 2))
    assert point is not None
    assert point.price == Decimal("190.50")
    assert point.base_currency == Currency.USD
    assert manager.get_price_point("MSFT", date(2025, 1, 2)) is None
