"""Foreign-currency ledger recalculation.

A ledger holds one foreign currency. Its balance and the weighted-average
rate at which that balance was acquired are rebuilt from the full event
history on every call, in (date, sequence) order.
"""

import uuid
import warnings
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Iterable, Union

from . import config
from .currency import Currency, DEFAULT_REPORTING_CURRENCY
from .errors import InsufficientBalanceError, InvalidRateError, ValidationError
from .money import Money, to_decimal


class CurrencyEventType(Enum):
    """Enumeration of supported currency ledger events."""

    EXCHANGE_IN = "EXCHANGE_IN" # reporting currency converted into the ledger currency
    EXCHANGE_OUT = "EXCHANGE_OUT" # ledger currency converted back into the reporting currency
    INTEREST = "INTEREST"
    SPEND = "SPEND" # ledger currency used to pay for something, usually a trade


INFLOWS = (CurrencyEventType.EXCHANGE_IN, CurrencyEventType.INTEREST)
OUTFLOWS = (CurrencyEventType.EXCHANGE_OUT, CurrencyEventType.SPEND)


@dataclass(frozen=True)
class CurrencyLedger:
    ledger_id: str
    currency: Currency
    owner: str | None = None
    name: str | None = None


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class CurrencyEvent:
    """A single movement on a currency ledger.

    ``foreign_amount`` is always positive; the event type decides the
    direction. Exchanges must carry both the reporting-currency amount and
    the rate. ``allow_negative_balance`` records that an overdraft was
    approved for this event, so later replays accept it again.
    """

    ledger_id: str
    event_date: date
    event_type: CurrencyEventType
    foreign_amount: Decimal
    currency: Currency
    reporting_amount: Decimal | None = None
    rate: Decimal | None = None
    id: str = field(default_factory=_new_id)
    linked_instrument_transaction_id: str | None = None
    allow_negative_balance: bool = False
    sequence: int = 0
    is_deleted: bool = False
    notes: str | None = None

    def __post_init__(self):
        amount = to_decimal(self.foreign_amount)
        # A zero interest posting is allowed; every other event must move money
        if amount < 0 or (amount == 0 and self.event_type != CurrencyEventType.INTEREST):
            raise ValidationError(f"Foreign amount must be positive, got {amount} for event {self.id}")
        object.__setattr__(self, "foreign_amount", amount.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP))
        if self.foreign_amount == 0 and self.event_type != CurrencyEventType.INTEREST:
            raise ValidationError(f"Foreign amount rounds to zero for event {self.id}")

        if self.rate is not None:
            rate = to_decimal(self.rate)
            if rate <= 0:
                raise InvalidRateError(f"Rate must be positive, got {rate} for event {self.id}")
            object.__setattr__(self, "rate", rate.quantize(config.quantum(config.RATE_DECIMALS), rounding=ROUND_HALF_UP))

        if self.reporting_amount is not None:
            reporting_amount = to_decimal(self.reporting_amount)
            if reporting_amount < 0:
                raise ValidationError(f"Reporting amount cannot be negative, got {reporting_amount} for event {self.id}")
            object.__setattr__(self, "reporting_amount", reporting_amount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

        if self.event_type in (CurrencyEventType.EXCHANGE_IN, CurrencyEventType.EXCHANGE_OUT):
            if self.rate is None:
                raise InvalidRateError(f"{self.event_type.value} event {self.id} requires an exchange rate")
            if self.reporting_amount is None or self.reporting_amount <= 0:
                raise ValidationError(f"{self.event_type.value} event {self.id} requires a positive reporting amount")

    @property
    def amount(self) -> Money:
        return Money(self.foreign_amount, self.currency)

    @property
    def is_inflow(self) -> bool:
        return self.event_type in INFLOWS

    def __repr__(self):
        return (
            f"CurrencyEvent(id={self.id}, ledger={self.ledger_id}, date={self.event_date}, "
            f"type={self.event_type.value}, amount={self.foreign_amount} {self.currency.value}, rate={self.rate})"
        )


@dataclass
class LedgerSummary:
    """Derived state of a ledger after replaying its events.

    ``average_rate`` is None while the balance is exactly zero; it is
    undefined until the next inflow.
    """

    ledger_id: str | None
    balance: Money
    average_rate: Decimal | None
    total_cost_reporting: Money
    realized_pnl_reporting: Money
    realized_by_event: dict[str, Money] = field(default_factory=dict)

    @property
    def currency(self) -> Currency:
        return self.balance.currency

    @property
    def is_overdrawn(self) -> bool:
        return self.balance.is_negative()

    def __repr__(self):
        return (
            f"LedgerSummary(ledger={self.ledger_id}, balance={self.balance}, "
            f"average_rate={self.average_rate}, realized={self.realized_pnl_reporting})"
        )


class LedgerState():
    """Running balance and weighted-average rate while a ledger's events are folded."""

    def __init__(self, ledger_id: str | None, currency: Currency, reporting_currency: Currency, allow_overdraft: bool = False):
        self.ledger_id = ledger_id
        self.currency = currency
        self.reporting_currency = reporting_currency
        self.allow_overdraft = allow_overdraft
        self.balance = Money.zero(currency)
        self.average_rate: Decimal | None = None
        self.realized_pnl_reporting = Money.zero(reporting_currency)
        self.realized_by_event: dict[str, Money] = {}

    def _inflow(self, event: CurrencyEvent, rate: Decimal):
        amount = event.amount
        new_balance = self.balance + amount
        if self.balance.amount > 0 and self.average_rate is not None:
            held_cost = self.balance.amount * self.average_rate
            new_average = (held_cost + amount.amount * rate) / new_balance.amount
        else:
            # Nothing held (or overdrawn): the inflow alone sets the rate
            new_average = rate
        self.balance = new_balance
        self.average_rate = None if new_balance.is_zero() else new_average

    def _outflow(self, event: CurrencyEvent) -> Decimal | None:
        """Debit the balance and return the average rate in force before the debit."""
        amount = event.amount
        new_balance = self.balance - amount
        if new_balance.is_negative():
            if not (self.allow_overdraft or event.allow_negative_balance):
                raise InsufficientBalanceError(self.ledger_id, amount.amount, self.balance.amount, event.id)
            if not event.allow_negative_balance:
                warnings.warn(
                    f"Ledger {self.ledger_id} overdrawn to {new_balance} by {event}",
                    UserWarning
                )
        rate_before = self.average_rate
        self.balance = new_balance
        if new_balance.is_zero():
            self.average_rate = None
        return rate_before

    def apply(self, event: CurrencyEvent):
        if event.event_type == CurrencyEventType.EXCHANGE_IN:
            self._inflow(event, event.rate)

        elif event.event_type == CurrencyEventType.INTEREST:
            # Zero cost: the held cost is spread over a larger balance
            self._inflow(event, Decimal("0"))

        elif event.event_type == CurrencyEventType.EXCHANGE_OUT:
            rate_before = self._outflow(event)
            if rate_before is None:
                realized = Money.zero(self.reporting_currency)
            else:
                realized = Money(event.foreign_amount * (event.rate - rate_before), self.reporting_currency)
            self.realized_by_event[event.id] = realized
            self.realized_pnl_reporting = self.realized_pnl_reporting + realized

        elif event.event_type == CurrencyEventType.SPEND:
            self._outflow(event)

    def to_summary(self) -> LedgerSummary:
        if self.balance.amount > 0 and self.average_rate is not None:
            total_cost = Money(self.balance.amount * self.average_rate, self.reporting_currency)
        else:
            total_cost = Money.zero(self.reporting_currency)
        return LedgerSummary(
            ledger_id=self.ledger_id,
            balance=self.balance,
            average_rate=self.average_rate,
            total_cost_reporting=total_cost,
            realized_pnl_reporting=self.realized_pnl_reporting,
            realized_by_event=dict(self.realized_by_event),
        )


def ordered_events(events: Iterable[CurrencyEvent]) -> list[CurrencyEvent]:
    """Drop soft-deleted events and sort by (date, sequence); ties keep input order."""
    return sorted(
        (e for e in events if not e.is_deleted),
        key=lambda e: (e.event_date, e.sequence),
    )


def recalculate_ledger(
    events: Iterable[CurrencyEvent],
    ledger_id: str | None = None,
    allow_overdraft: bool = False,
    reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
    currency: Currency | None = None,
) -> LedgerSummary:
    """
    Replay a ledger's events from the beginning into a LedgerSummary.

    Args:
        events: Events to replay. Events for other ledgers and soft-deleted
            events are ignored.
        ledger_id: Ledger to rebuild. If None, the ledger of the first event is used.
        allow_overdraft: If True, debits past zero are applied (with a
            UserWarning) instead of raising.
        reporting_currency: Currency realized PnL and cost are reported in.
        currency: Ledger currency. Only needed when there are no events.

    Returns:
        The derived LedgerSummary.

    Raises:
        InsufficientBalanceError: If a debit takes the balance below zero and
            neither the call nor the event allows it.
        CurrencyMismatchError: If the events are not all in one currency.
    """
    events = list(events)
    if ledger_id is None and events:
        ledger_id = events[0].ledger_id
    selected = [e for e in events if e.ledger_id == ledger_id]

    if currency is None:
        if not selected:
            raise ValidationError(f"Currency is required to summarize ledger {ledger_id} with no events")
        currency = selected[0].currency

    state = LedgerState(ledger_id, currency, reporting_currency, allow_overdraft)
    for event in ordered_events(selected):
        state.apply(event)
    return state.to_summary()


def can_spend(
    events: Iterable[CurrencyEvent],
    amount: Union[Money, Decimal],
    ledger_id: str | None = None,
    currency: Currency | None = None,
) -> bool:
    """Return True when the replayed balance covers ``amount``."""
    if isinstance(amount, Money):
        currency = currency or amount.currency
    summary = recalculate_ledger(events, ledger_id, currency=currency)
    if isinstance(amount, Money):
        return summary.balance >= amount
    return summary.balance.amount >= to_decimal(amount)
