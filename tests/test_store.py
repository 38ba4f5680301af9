"""Tests for the in-memory event store and its unit of work."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from investledger.currency import Currency
from investledger.errors import EventStoreError, RecordNotFoundError
from investledger.ledger import CurrencyEvent, CurrencyEventType, CurrencyLedger
from investledger.portfolio import InstrumentTransaction, TransactionType
from investledger.store import InMemoryEventStore, ledger_lock_key


USD = Currency.USD


def buy(key="AAPL", shares="10", d=date(2024, 1, 10)):
    return InstrumentTransaction(
        instrument_key=key,
        transaction_date=d,
        transaction_type=TransactionType.BUY,
        shares=Decimal(shares),
        price_per_share=Decimal("100"),
        conversion_rate=Decimal("30"),
    )


def interest(amount="5", ledger_id="usd"):
    return CurrencyEvent(ledger_id, date(2024, 1, 31), CurrencyEventType.INTEREST, Decimal(amount), USD)


@pytest.fixture
def store():
    store = InMemoryEventStore()
    store.add_ledger(CurrencyLedger("usd", USD, owner="alice", name="USD cash"))
    return store


def test_add_assigns_increasing_sequence(store):
    first = store.add_instrument_transaction(buy())
    event = store.add_currency_event(interest())
    second = store.add_instrument_transaction(buy(shares="5"))

    assert first.sequence < event.sequence < second.sequence
    assert [t.id for t in store.list_instrument_transactions("aapl")] == [first.id, second.id]


def test_replace_keeps_sequence(store):
    stored = store.add_instrument_transaction(buy())
    store.add_instrument_transaction(buy(shares="1"))

    edited = store.replace_instrument_transaction(InstrumentTransaction(
        instrument_key="AAPL",
        transaction_date=date(2024, 1, 10),
        transaction_type=TransactionType.BUY,
        shares=Decimal("12"),
        price_per_share=Decimal("100"),
        conversion_rate=Decimal("30"),
        id=stored.id,
    ))

    assert edited.sequence == stored.sequence
    assert store.get_instrument_transaction(stored.id).shares == Decimal("12")


def test_duplicate_and_missing_records(store):
    stored = store.add_instrument_transaction(buy())

    with pytest.raises(EventStoreError, match="already exists"):
        store.add_instrument_transaction(stored)
    with pytest.raises(EventStoreError, match="already exists"):
        store.add_ledger(CurrencyLedger("usd", USD))
    with pytest.raises(RecordNotFoundError):
        store.get_instrument_transaction("missing")
    with pytest.raises(RecordNotFoundError):
        store.get_currency_event("missing")
    with pytest.raises(KeyError):
        store.get_ledger("eur")


def test_event_requires_existing_ledger(store):
    with pytest.raises(RecordNotFoundError, match="Ledger eur not found"):
        store.add_currency_event(interest(ledger_id="eur"))


def test_unit_of_work_soft_delete(store):
    stored = store.add_instrument_transaction(buy())

    with store.unit_of_work(instrument_keys=["AAPL"]) as uow:
        uow.delete_instrument_transaction(stored.id)
        uow.commit()

    assert store.list_instrument_transactions("AAPL") == []
    deleted = store.list_instrument_transactions("AAPL", include_deleted=True)
    assert len(deleted) == 1
    assert deleted[0].is_deleted


def test_unit_of_work_rolls_back_without_commit(store):
    """Verify leaving a unit of work without commit undoes adds, replaces and deletes."""
    kept = store.add_instrument_transaction(buy())
    event = store.add_currency_event(interest())

    with store.unit_of_work(["usd"], ["AAPL"]) as uow:
        uow.add_instrument_transaction(buy(shares="3"))
        uow.delete_instrument_transaction(kept.id)
        uow.delete_currency_event(event.id)
        uow.add_currency_event(interest("7"))
        assert uow.writes == 4

    assert store.list_instrument_transactions(include_deleted=True) == [kept]
    assert store.list_currency_events("usd", include_deleted=True) == [event]
    assert uow.writes == 4


def test_unit_of_work_rolls_back_on_exception(store):
    with pytest.raises(RuntimeError, match="boom"):
        with store.unit_of_work(instrument_keys=["AAPL"]) as uow:
            uow.add_instrument_transaction(buy())
            raise RuntimeError("boom")

    assert store.list_instrument_transactions(include_deleted=True) == []


def test_lock_timeout_raises_store_error():
    """Verify a second writer gives up with EventStoreError when a lock is held too long."""
    store = InMemoryEventStore(lock_timeout=0.01)
    store.add_ledger(CurrencyLedger("usd", USD))
    held = threading.Event()
    release = threading.Event()

    def hold():
        with store.lock([ledger_lock_key("usd")]):
            held.set()
            release.wait(5)

    holder = threading.Thread(target=hold)
    holder.start()
    try:
        assert held.wait(5)
        with pytest.raises(EventStoreError, match="Timed out"):
            store.add_currency_event(interest())
    finally:
        release.set()
        holder.join()

    assert store.add_currency_event(interest()).sequence > 0


def test_locks_are_reentrant_within_a_thread(store):
    with store.unit_of_work(["usd"], ["AAPL"]) as uow:
        uow.add_currency_event(interest())
        assert len(store.list_currency_events("usd")) == 1
        uow.commit()
