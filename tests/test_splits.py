"""Tests for the stock split registry and market detection."""

from datetime import date
from decimal import Decimal

import pytest

from investledger.errors import InvalidShareCountError
from investledger.splits import Market, StockSplit, adjusted_values, cumulative_split_ratio, detect_market


@pytest.mark.parametrize(
    "key, market",
    [
        ("0050", Market.TW),
        ("2330", Market.TW),
        ("6547R", Market.TW),
        ("VWRA.L", Market.UK),
        ("vwra.l", Market.UK),
        ("AAPL", Market.US),
        ("", Market.US),
    ],
)
def test_detect_market(key, market):
    assert detect_market(key) == market


def test_cumulative_ratio_only_counts_later_splits():
    """Verify only splits effective after the trade date contribute to the ratio."""
    splits = [
        StockSplit("NVDA", date(2021, 7, 20), Decimal("4")),
        StockSplit("NVDA", date(2024, 6, 10), Decimal("10")),
        StockSplit("AAPL", date(2020, 8, 31), Decimal("4")),
    ]

    assert cumulative_split_ratio("NVDA", date(2021, 1, 4), splits) == Decimal("40")
    assert cumulative_split_ratio("NVDA", date(2022, 1, 4), splits) == Decimal("10")
    assert cumulative_split_ratio("NVDA", date(2024, 6, 10), splits) == Decimal("1")
    assert cumulative_split_ratio("nvda", date(2025, 1, 2), splits) == Decimal("1")


def test_adjusted_values_preserve_total():
    """Verify shares scale up and price scales down so the trade total is unchanged."""
    splits = [StockSplit("NVDA", date(2024, 6, 10), Decimal("10"))]

    shares, price = adjusted_values("NVDA", date(2024, 1, 2), Decimal("3"), Decimal("480.00"), splits)

    assert shares == Decimal("30")
    assert price == Decimal("48")
    assert shares * price == Decimal("3") * Decimal("480.00")


def test_adjusted_values_without_split_are_untouched():
    shares, price = adjusted_values("AAPL", date(2024, 1, 2), Decimal("3"), Decimal("185.5"), [])
    assert (shares, price) == (Decimal("3"), Decimal("185.5"))


def test_split_ratio_must_be_positive():
    with pytest.raises(InvalidShareCountError, match="must be positive"):
        StockSplit("NVDA", date(2024, 6, 10), Decimal("0"))


def test_registry_keys_are_normalized_like_transactions():
    """Verify stray whitespace or lower case in a registry key still matches the instrument."""
    split = StockSplit(" nvda ", date(2024, 6, 10), Decimal("10"))

    assert split.instrument_key == "NVDA"
    assert cumulative_split_ratio(" NVDA ", date(2024, 1, 2), [split]) == Decimal("10")
