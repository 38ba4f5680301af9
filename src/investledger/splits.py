"""Stock split registry and market detection.

Splits are kept as separate records and consulted at replay time. Recorded
transactions are never rewritten; a transaction dated before a split is
reported in post-split units by multiplying its shares and dividing its
price by the cumulative ratio of every later split.
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Iterable

from .errors import InvalidShareCountError
from .money import to_decimal


class Market(Enum):
    US = "US"
    TW = "TW"
    UK = "UK"


def detect_market(instrument_key: str) -> Market:
    """Guess the listing market from the ticker.

    Taiwan tickers are numeric ("0050", "2330"), London tickers carry an
    ".L" suffix, everything else is treated as US.
    """
    if not instrument_key:
        return Market.US
    key = instrument_key.strip().upper()
    if key[:1].isdigit():
        return Market.TW
    if key.endswith(".L"):
        return Market.UK
    return Market.US


def is_taiwan_instrument(instrument_key: str) -> bool:
    return detect_market(instrument_key) == Market.TW


@dataclass(frozen=True)
class StockSplit:
    """A split effective on ``effective_date``; ratio 4 means one share became four."""

    instrument_key: str
    effective_date: date
    ratio: Decimal

    def __post_init__(self):
        ratio = to_decimal(self.ratio)
        if ratio <= 0:
            raise InvalidShareCountError(
                f"Split ratio for {self.instrument_key} on {self.effective_date} must be positive, got {ratio}"
            )
        object.__setattr__(self, "ratio", ratio)
        object.__setattr__(self, "instrument_key", self.instrument_key.strip().upper())


def splits_for(instrument_key: str, splits: Iterable[StockSplit]) -> list[StockSplit]:
    """Return the splits that apply to ``instrument_key``, oldest first."""
    key = instrument_key.strip().upper()
    return sorted((s for s in splits if s.instrument_key == key), key=lambda s: s.effective_date)


def cumulative_split_ratio(instrument_key: str, transaction_date: date, splits: Iterable[StockSplit]) -> Decimal:
    """Product of the ratios of every split effective after ``transaction_date``.

    A split effective on the transaction date itself does not apply; the
    trade is assumed to be recorded in post-split units already.
    """
    ratio = Decimal("1")
    for split in splits_for(instrument_key, splits):
        if split.effective_date > transaction_date:
            ratio *= split.ratio
    return ratio


def adjusted_values(
    instrument_key: str,
    transaction_date: date,
    shares: Decimal,
    price_per_share: Decimal,
    splits: Iterable[StockSplit],
) -> tuple[Decimal, Decimal]:
    """Return (shares, price) expressed in today's post-split units.

    The total ``shares * price`` is preserved up to Decimal precision.
    """
    ratio = cumulative_split_ratio(instrument_key, transaction_date, splits)
    if ratio == 1:
        return shares, price_per_share
    return shares * ratio, price_per_share / ratio
