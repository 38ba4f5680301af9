"""Tests for currency ledger replay: balance, weighted-average rate and realized FX gains."""

import warnings
from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from investledger.currency import Currency
from investledger.errors import InsufficientBalanceError, InvalidRateError, ValidationError
from investledger.ledger import CurrencyEvent, CurrencyEventType, can_spend, recalculate_ledger
from investledger.money import Money


TWD = Currency.TWD
USD = Currency.USD


def exchange_in(amount, rate, d=date(2024, 1, 2), ledger_id="usd", **kwargs):
    amount = Decimal(amount)
    rate = Decimal(rate)
    return CurrencyEvent(
        ledger_id=ledger_id,
        event_date=d,
        event_type=CurrencyEventType.EXCHANGE_IN,
        foreign_amount=amount,
        currency=USD,
        reporting_amount=amount * rate,
        rate=rate,
        **kwargs,
    )


def exchange_out(amount, rate, d=date(2024, 3, 1), ledger_id="usd", **kwargs):
    amount = Decimal(amount)
    rate = Decimal(rate)
    return CurrencyEvent(
        ledger_id=ledger_id,
        event_date=d,
        event_type=CurrencyEventType.EXCHANGE_OUT,
        foreign_amount=amount,
        currency=USD,
        reporting_amount=amount * rate,
        rate=rate,
        **kwargs,
    )


def simple_event(kind, amount, d=date(2024, 2, 1), ledger_id="usd", **kwargs):
    return CurrencyEvent(
        ledger_id=ledger_id,
        event_date=d,
        event_type=kind,
        foreign_amount=Decimal(amount),
        currency=USD,
        **kwargs,
    )


def test_spend_keeps_average_rate():
    """Verify 3200 USD @ 31.25 less a 2005 USD spend leaves 1195 USD @ 31.25."""
    events = [
        exchange_in("3200", "31.25"),
        simple_event(CurrencyEventType.SPEND, "2005"),
    ]

    summary = recalculate_ledger(events, "usd", reporting_currency=TWD)

    assert summary.balance == Money("1195", USD)
    assert summary.average_rate == Decimal("31.25")
    assert summary.total_cost_reporting == Money("37343.75", TWD)
    assert summary.realized_pnl_reporting == Money("0", TWD)


def test_exchange_in_blends_rates():
    events = [
        exchange_in("1000", "30"),
        exchange_in("500", "33", d=date(2024, 1, 5)),
    ]

    summary = recalculate_ledger(events, reporting_currency=TWD)

    assert summary.balance == Money("1500", USD)
    assert summary.average_rate == Decimal("31")


def test_interest_dilutes_average_rate():
    """Verify zero-cost interest lowers the rate to b*r/(b+a) and a zero posting changes nothing."""
    events = [
        exchange_in("1000", "30"),
        simple_event(CurrencyEventType.INTEREST, "200"),
    ]
    summary = recalculate_ledger(events, reporting_currency=TWD)
    assert summary.balance == Money("1200", USD)
    assert summary.average_rate == Decimal("25")

    events.append(simple_event(CurrencyEventType.INTEREST, "0", d=date(2024, 2, 2)))
    summary = recalculate_ledger(events, reporting_currency=TWD)
    assert summary.balance == Money("1200", USD)
    assert summary.average_rate == Decimal("25")


def test_exchange_out_realizes_gain():
    out = exchange_out("400", "32")
    events = [exchange_in("1000", "30"), out]

    summary = recalculate_ledger(events, reporting_currency=TWD)

    assert summary.balance == Money("600", USD)
    assert summary.average_rate == Decimal("30")
    assert summary.realized_pnl_reporting == Money("800", TWD)
    assert summary.realized_by_event[out.id] == Money("800", TWD)


def test_zero_balance_clears_rate_until_next_inflow():
    events = [
        exchange_in("1000", "30"),
        simple_event(CurrencyEventType.SPEND, "1000"),
    ]
    summary = recalculate_ledger(events, reporting_currency=TWD)
    assert summary.balance.is_zero()
    assert summary.average_rate is None
    assert summary.total_cost_reporting == Money("0", TWD)

    events.append(exchange_in("200", "33", d=date(2024, 4, 1)))
    summary = recalculate_ledger(events, reporting_currency=TWD)
    assert summary.average_rate == Decimal("33")


def test_overspend_raises_insufficient_balance():
    spend = simple_event(CurrencyEventType.SPEND, "1500")
    events = [exchange_in("1000", "30"), spend]

    with pytest.raises(InsufficientBalanceError, match="Insufficient balance in ledger usd") as excinfo:
        recalculate_ledger(events, reporting_currency=TWD)

    assert excinfo.value.event_id == spend.id
    assert excinfo.value.shortfall == Decimal("500")


def test_overdraft_mode_warns_and_goes_negative():
    """Verify a call-level overdraft is applied with a UserWarning."""
    events = [exchange_in("1000", "30"), simple_event(CurrencyEventType.SPEND, "1500")]

    with pytest.warns(UserWarning, match="overdrawn"):
        summary = recalculate_ledger(events, allow_overdraft=True, reporting_currency=TWD)

    assert summary.balance == Money("-500", USD)
    assert summary.is_overdrawn
    assert summary.average_rate == Decimal("30")
    assert summary.total_cost_reporting == Money("0", TWD)


def test_approved_overdraft_replays_silently():
    """Verify an event flagged allow_negative_balance is accepted on every replay."""
    events = [
        exchange_in("1000", "30"),
        simple_event(CurrencyEventType.SPEND, "1500", allow_negative_balance=True),
    ]

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        summary = recalculate_ledger(events, reporting_currency=TWD)
    assert summary.balance == Money("-500", USD)

    events.append(exchange_in("1000", "32", d=date(2024, 4, 1)))
    summary = recalculate_ledger(events, reporting_currency=TWD)
    assert summary.balance == Money("500", USD)
    assert summary.average_rate == Decimal("32")


def test_replay_order_and_filters():
    """Verify (date, sequence) ordering, soft deletes and ledger filtering."""
    first = exchange_in("1000", "30", sequence=1)
    spend = simple_event(CurrencyEventType.SPEND, "1000", d=date(2024, 1, 2), sequence=2)
    other_ledger = exchange_in("999", "29", ledger_id="eur-ish")

    summary = recalculate_ledger([spend, other_ledger, first], "usd", reporting_currency=TWD)
    assert summary.balance.is_zero()

    deleted = replace(spend, is_deleted=True)
    summary = recalculate_ledger([deleted, first], "usd", reporting_currency=TWD)
    assert summary.balance == Money("1000", USD)

    with pytest.raises(InsufficientBalanceError):
        recalculate_ledger([replace(spend, sequence=0), first], "usd", reporting_currency=TWD)


def test_replay_is_deterministic():
    events = [
        exchange_in("1000", "30.1"),
        simple_event(CurrencyEventType.INTEREST, "3.3333"),
        exchange_out("123.45", "31.7"),
        simple_event(CurrencyEventType.SPEND, "200", d=date(2024, 3, 5)),
    ]

    assert recalculate_ledger(events, reporting_currency=TWD) == recalculate_ledger(list(reversed(events)), "usd", reporting_currency=TWD)


def test_event_validation():
    with pytest.raises(InvalidRateError, match="requires an exchange rate"):
        CurrencyEvent("usd", date(2024, 1, 2), CurrencyEventType.EXCHANGE_IN, Decimal("10"), USD, reporting_amount=Decimal("300"))
    with pytest.raises(ValidationError, match="positive reporting amount"):
        CurrencyEvent("usd", date(2024, 1, 2), CurrencyEventType.EXCHANGE_OUT, Decimal("10"), USD, rate=Decimal("30"))
    with pytest.raises(ValidationError, match="must be positive"):
        simple_event(CurrencyEventType.SPEND, "0")
    with pytest.raises(InvalidRateError):
        exchange_in("10", "-1")

    event = simple_event(CurrencyEventType.SPEND, "10.123456")
    assert event.foreign_amount == Decimal("10.1235")


def test_empty_ledger_needs_currency():
    summary = recalculate_ledger([], "usd", currency=USD, reporting_currency=TWD)
    assert summary.balance == Money("0", USD)
    assert summary.average_rate is None

    with pytest.raises(ValidationError, match="Currency is required"):
        recalculate_ledger([], "usd")


def test_can_spend():
    events = [exchange_in("3200", "31.25")]

    assert can_spend(events, Money("2005", USD))
    assert can_spend(events, Decimal("3200"))
    assert not can_spend(events, Decimal("3200.01"))
