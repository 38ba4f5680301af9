"""Position recalculation.

A position is never stored; it is rebuilt from the first transaction on every
call by folding the instrument's history in (date, sequence) order. Cost is
tracked with the moving-average method in both the source currency and the
reporting currency, using the conversion rate recorded on each transaction.
"""

import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Sequence

from . import config
from .currency import Currency, DEFAULT_REPORTING_CURRENCY, ExchangeRateManager
from .errors import InsufficientSharesError, InvalidRateError, InvalidShareCountError, ValidationError
from .money import Money, Rate, to_decimal
from .pricingdata import PricePoint, PricingDataManager
from .splits import StockSplit, adjusted_values, is_taiwan_instrument


class TransactionType(Enum):
    """Enumeration of supported instrument transaction types."""

    BUY = "BUY"
    SELL = "SELL"
    SPLIT_ADJUSTMENT = "SPLIT_ADJUSTMENT" # shares holds the split ratio (e.g. 2 for a 2-for-1 split)
    ADJUSTMENT = "ADJUSTMENT" # signed shares; positive behaves like BUY, negative like SELL


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class InstrumentTransaction:
    """A single recorded trade or correction for one instrument.

    Values are rounded to their storage precision on construction. Records are
    immutable; an edit replaces the whole record (``dataclasses.replace``).
    """

    instrument_key: str
    transaction_date: date
    transaction_type: TransactionType
    shares: Decimal
    conversion_rate: Decimal
    price_per_share: Decimal = Decimal("0")
    fees: Decimal = Decimal("0")
    currency: Currency = Currency.USD
    id: str = field(default_factory=_new_id)
    funding_link: str | None = None
    sequence: int = 0
    is_deleted: bool = False

    def __post_init__(self):
        if not self.instrument_key or not self.instrument_key.strip():
            raise ValidationError("Instrument key is required")
        object.__setattr__(self, "instrument_key", self.instrument_key.strip().upper())

        if self.conversion_rate is None:
            raise InvalidRateError(f"Conversion rate is required for transaction {self.id}")
        rate = to_decimal(self.conversion_rate)
        if rate <= 0:
            raise InvalidRateError(f"Conversion rate must be positive, got {rate} for transaction {self.id}")

        shares = to_decimal(self.shares)
        if self.transaction_type == TransactionType.ADJUSTMENT:
            if shares == 0:
                raise InvalidShareCountError(f"Adjustment shares must be non-zero for transaction {self.id}")
        elif shares <= 0:
            raise InvalidShareCountError(
                f"Shares must be positive for {self.transaction_type.value} transaction {self.id}, got {shares}"
            )

        price = to_decimal(self.price_per_share)
        fees = to_decimal(self.fees)
        if price < 0:
            raise ValidationError(f"Price per share cannot be negative, got {price} for transaction {self.id}")
        if fees < 0:
            raise ValidationError(f"Fees cannot be negative, got {fees} for transaction {self.id}")

        object.__setattr__(self, "shares", shares.quantize(config.quantum(config.SHARE_DECIMALS), rounding=ROUND_HALF_UP))
        object.__setattr__(self, "price_per_share", price.quantize(config.quantum(config.PRICE_DECIMALS), rounding=ROUND_HALF_UP))
        object.__setattr__(self, "fees", fees.quantize(config.quantum(config.FEE_DECIMALS), rounding=ROUND_HALF_UP))
        object.__setattr__(self, "conversion_rate", rate.quantize(config.quantum(config.RATE_DECIMALS), rounding=ROUND_HALF_UP))

        # Rounding may have collapsed a tiny value to zero
        if self.shares == 0:
            raise InvalidShareCountError(f"Shares round to zero for transaction {self.id}")
        if self.conversion_rate == 0:
            raise InvalidRateError(f"Conversion rate rounds to zero for transaction {self.id}")

    @property
    def subtotal(self) -> Money:
        """``|shares| * price`` in the source currency; Taiwan trades floor to a whole unit."""
        subtotal = abs(self.shares) * self.price_per_share
        if is_taiwan_instrument(self.instrument_key):
            subtotal = subtotal.to_integral_value(rounding=ROUND_FLOOR)
        return Money(subtotal, self.currency)

    @property
    def total_cost_source(self) -> Money:
        """What a purchase costs: subtotal plus fees."""
        return self.subtotal + Money(self.fees, self.currency)

    @property
    def net_proceeds_source(self) -> Money:
        """What a sale returns: subtotal minus fees."""
        return self.subtotal - Money(self.fees, self.currency)

    def rate_to(self, reporting_currency: Currency) -> Rate:
        return Rate(self.currency, reporting_currency, self.conversion_rate)

    def __repr__(self):
        return (
            f"InstrumentTransaction(id={self.id}, key={self.instrument_key}, date={self.transaction_date}, "
            f"type={self.transaction_type.value}, shares={self.shares}, price={self.price_per_share}, "
            f"fees={self.fees}, rate={self.conversion_rate}, currency={self.currency.value})"
        )


@dataclass
class Position:
    """Derived holding for one instrument after replaying its history.

    ``realized_by_transaction`` maps each sell (or negative adjustment) id to
    the profit it realized in the reporting currency. These values are
    read-only output; they are never written back to the transactions.
    """

    instrument_key: str
    total_shares: Decimal
    total_cost_reporting: Money
    total_cost_source: Money
    realized_pnl_reporting: Money
    realized_by_transaction: dict[str, Money] = field(default_factory=dict)

    @property
    def currency(self) -> Currency:
        return self.total_cost_source.currency

    @property
    def reporting_currency(self) -> Currency:
        return self.total_cost_reporting.currency

    @property
    def is_open(self) -> bool:
        return self.total_shares > 0

    @property
    def average_cost_reporting(self) -> Money | None:
        """Average cost per share in the reporting currency, None with no shares held."""
        if self.total_shares == 0:
            return None
        return self.total_cost_reporting / self.total_shares

    @property
    def average_cost_source(self) -> Money | None:
        if self.total_shares == 0:
            return None
        return self.total_cost_source / self.total_shares

    def __repr__(self):
        return (
            f"Position(key={self.instrument_key}, shares={self.total_shares}, "
            f"cost={self.total_cost_reporting}, realized={self.realized_pnl_reporting})"
        )


class PositionState():
    """Running totals for a position while its history is folded.

    ``apply`` validates a transaction against the current state before
    touching any total, so a rejected transaction leaves the state as it was.
    """

    def __init__(self, instrument_key: str, reporting_currency: Currency, splits: Sequence[StockSplit] = ()):
        self.instrument_key = instrument_key
        self.reporting_currency = reporting_currency
        self.splits = tuple(splits)
        self.total_shares = Decimal("0")
        self.total_cost_reporting = Money.zero(reporting_currency)
        self.total_cost_source: Money | None = None
        self.realized_pnl_reporting = Money.zero(reporting_currency)
        self.realized_by_transaction: dict[str, Money] = {}

    def _adjusted_shares(self, txn: InstrumentTransaction) -> Decimal:
        shares, _ = adjusted_values(txn.instrument_key, txn.transaction_date, abs(txn.shares), txn.price_per_share, self.splits)
        return shares

    def _add(self, txn: InstrumentTransaction, shares: Decimal):
        cost_source = txn.total_cost_source
        cost_reporting = txn.rate_to(self.reporting_currency).convert(cost_source)
        if self.total_cost_source is None:
            self.total_cost_source = cost_source
        else:
            self.total_cost_source = self.total_cost_source + cost_source
        self.total_cost_reporting = self.total_cost_reporting + cost_reporting
        self.total_shares += shares

    def _remove(self, txn: InstrumentTransaction, shares: Decimal):
        if shares > self.total_shares:
            raise InsufficientSharesError(self.instrument_key, shares, self.total_shares, txn.id)

        # Average cost is taken before the sell changes any total
        avg_reporting = self.total_cost_reporting.amount / self.total_shares
        avg_source = self.total_cost_source.amount / self.total_shares

        proceeds_reporting = txn.rate_to(self.reporting_currency).convert(txn.net_proceeds_source)
        realized = proceeds_reporting - Money(shares * avg_reporting, self.reporting_currency)

        self.total_shares -= shares
        if self.total_shares == 0:
            self.total_cost_reporting = Money.zero(self.reporting_currency)
            self.total_cost_source = Money.zero(self.total_cost_source.currency)
        else:
            self.total_cost_reporting = self.total_cost_reporting - Money(shares * avg_reporting, self.reporting_currency)
            self.total_cost_source = self.total_cost_source - Money(shares * avg_source, self.total_cost_source.currency)

        self.realized_by_transaction[txn.id] = realized
        self.realized_pnl_reporting = self.realized_pnl_reporting + realized

    def apply(self, txn: InstrumentTransaction):
        if txn.transaction_type == TransactionType.BUY:
            self._add(txn, self._adjusted_shares(txn))

        elif txn.transaction_type == TransactionType.SELL:
            self._remove(txn, self._adjusted_shares(txn))

        elif txn.transaction_type == TransactionType.SPLIT_ADJUSTMENT:
            # Cost is unchanged; only the share count scales
            self.total_shares *= txn.shares

        elif txn.transaction_type == TransactionType.ADJUSTMENT:
            if txn.shares > 0:
                self._add(txn, self._adjusted_shares(txn))
            else:
                self._remove(txn, self._adjusted_shares(txn))

    def to_position(self) -> Position:
        total_cost_source = self.total_cost_source
        if total_cost_source is None:
            total_cost_source = Money.zero(self.reporting_currency)
        return Position(
            instrument_key=self.instrument_key,
            total_shares=self.total_shares,
            total_cost_reporting=self.total_cost_reporting,
            total_cost_source=total_cost_source,
            realized_pnl_reporting=self.realized_pnl_reporting,
            realized_by_transaction=dict(self.realized_by_transaction),
        )


def ordered_transactions(transactions: Iterable[InstrumentTransaction]) -> list[InstrumentTransaction]:
    """Drop soft-deleted records and sort by (date, sequence); ties keep input order."""
    return sorted(
        (t for t in transactions if not t.is_deleted),
        key=lambda t: (t.transaction_date, t.sequence),
    )


def recalculate_position(
    transactions: Iterable[InstrumentTransaction],
    instrument_key: str | None = None,
    splits: Sequence[StockSplit] = (),
    reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
) -> Position:
    """
    Replay an instrument's history from the beginning into a Position.

    Args:
        transactions: Transactions to replay. Records for other instruments
            and soft-deleted records are ignored.
        instrument_key: Instrument to rebuild. If None, the key of the first
            transaction is used (an empty input needs an explicit key).
        splits: Split registry consulted for transactions dated before a split.
        reporting_currency: Currency the cost basis and realized PnL are reported in.

    Returns:
        The derived Position. The same input always yields the same Position.

    Raises:
        InsufficientSharesError: If a sell exceeds the shares held at its point in history.
        CurrencyMismatchError: If the instrument's transactions use different source currencies.
    """
    transactions = list(transactions)
    if instrument_key is None:
        if not transactions:
            raise ValidationError("instrument_key is required when there are no transactions")
        instrument_key = transactions[0].instrument_key
    key = instrument_key.strip().upper()

    state = PositionState(key, reporting_currency, splits)
    for txn in ordered_transactions(t for t in transactions if t.instrument_key == key):
        state.apply(txn)
    return state.to_position()


def recalculate_all_positions(
    transactions: Iterable[InstrumentTransaction],
    splits: Sequence[StockSplit] = (),
    reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
) -> dict[str, Position]:
    """Rebuild one Position per instrument present in ``transactions``, keyed by instrument."""
    by_key: dict[str, list[InstrumentTransaction]] = defaultdict(list)
    for txn in transactions:
        if not txn.is_deleted:
            by_key[txn.instrument_key].append(txn)

    return {
        key: recalculate_position(by_key[key], key, splits, reporting_currency)
        for key in sorted(by_key)
    }


@dataclass
class UnrealizedPnl:
    market_value_reporting: Money
    unrealized_pnl_reporting: Money
    percentage: Decimal


def calculate_unrealized_pnl(
    position: Position,
    current_price: Money | None,
    current_rate: Rate | None = None,
) -> UnrealizedPnl | None:
    """
    Value a position at a current price.

    Args:
        position: The position to value.
        current_price: Current price per share, or None when no price is known.
        current_rate: Rate from the price's currency to the reporting currency.
            Not needed when the price is already in the reporting currency.

    Returns:
        The unrealized PnL, or None when the price (or a needed rate) is unavailable.
    """
    reporting = position.reporting_currency
    if current_price is None:
        return None

    if position.total_shares == 0:
        zero = Money.zero(reporting)
        return UnrealizedPnl(zero, zero, Decimal("0"))

    market_value = current_price * position.total_shares
    if market_value.currency != reporting:
        if current_rate is None:
            return None
        market_value = current_rate.convert(market_value)

    pnl = market_value - position.total_cost_reporting
    if position.total_cost_reporting.amount > 0:
        percentage = pnl.amount / position.total_cost_reporting.amount * 100
    else:
        percentage = Decimal("0")
    return UnrealizedPnl(market_value, pnl, percentage)


@dataclass
class PositionValuation:
    """An open position together with its current price and unrealized PnL (if known)."""

    position: Position
    price_point: PricePoint | None
    unrealized: UnrealizedPnl | None

    @property
    def instrument_key(self) -> str:
        return self.position.instrument_key


def get_positions(
    transactions: Iterable[InstrumentTransaction],
    as_of: date,
    pricing_manager: PricingDataManager,
    exchange_rate_manager: ExchangeRateManager,
    splits: Sequence[StockSplit] = (),
    reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
) -> list[PositionValuation]:
    """
    Get all open positions as of a date, valued through the pricing providers.

    Transactions dated after ``as_of`` are ignored. A missing price or rate
    leaves that position's ``unrealized`` as None rather than failing.

    Args:
        transactions: Full transaction history.
        as_of: Valuation date.
        pricing_manager: Source of the current price per instrument.
        exchange_rate_manager: Source of the rate from the price currency to
            the reporting currency.
        splits: Split registry.
        reporting_currency: Currency to report in.

    Returns:
        A list of valuations for every instrument with shares held, sorted by key.
    """
    dated = [t for t in transactions if t.transaction_date <= as_of]
    positions = recalculate_all_positions(dated, splits, reporting_currency)

    valuations: list[PositionValuation] = []
    for key, position in positions.items():
        if not position.is_open:
            continue

        price_point = pricing_manager.get_price_point(key, as_of)
        unrealized = None
        if price_point is not None:
            price = Money(price_point.price, price_point.base_currency)
            rate = exchange_rate_manager.get_exchange_rate(price_point.base_currency, reporting_currency, as_of)
            unrealized = calculate_unrealized_pnl(position, price, rate)

        valuations.append(PositionValuation(position=position, price_point=price_point, unrealized=unrealized))

    return valuations
