"""Event log boundary.

The engines only ever see plain lists of records. This module is where those
lists come from: an abstract ``EventStore`` plus a thread-safe in-memory
implementation used by the coordinator and the tests. Records are never
purged; a delete flips ``is_deleted`` on a replaced copy.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterable, Iterator

from . import config
from .errors import EventStoreError, RecordNotFoundError
from .ledger import CurrencyEvent, CurrencyLedger
from .portfolio import InstrumentTransaction


def ledger_lock_key(ledger_id: str) -> str:
    return f"ledger:{ledger_id}"


def instrument_lock_key(instrument_key: str) -> str:
    return f"instrument:{instrument_key.strip().upper()}"


class EventStore(ABC):
    """Abstract store of ledgers, instrument transactions and currency events."""

    @abstractmethod
    def add_ledger(self, ledger: CurrencyLedger) -> CurrencyLedger:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_ledger(self, ledger_id: str) -> CurrencyLedger:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def add_instrument_transaction(self, transaction: InstrumentTransaction) -> InstrumentTransaction:
        """Insert a new transaction and return the stored copy (with its sequence assigned)."""
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def replace_instrument_transaction(self, transaction: InstrumentTransaction) -> InstrumentTransaction:
        """Overwrite an existing transaction (matched by id) and return the stored copy."""
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_instrument_transaction(self, transaction_id: str) -> InstrumentTransaction:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def list_instrument_transactions(self, instrument_key: str | None = None, include_deleted: bool = False) -> list[InstrumentTransaction]:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def restore_instrument_transaction(self, transaction_id: str, previous: InstrumentTransaction | None):
        """Put back ``previous`` for ``transaction_id``; None removes the record entirely.

        Only a unit of work rolling back its own writes should call this.
        """
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def add_currency_event(self, event: CurrencyEvent) -> CurrencyEvent:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def replace_currency_event(self, event: CurrencyEvent) -> CurrencyEvent:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def get_currency_event(self, event_id: str) -> CurrencyEvent:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def list_currency_events(self, ledger_id: str, include_deleted: bool = False) -> list[CurrencyEvent]:
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def restore_currency_event(self, event_id: str, previous: CurrencyEvent | None):
        raise NotImplementedError("This method should be overridden by subclasses.")

    @abstractmethod
    def lock(self, lock_keys: Iterable[str]):
        """Context manager holding exclusive locks on the given aggregates."""
        raise NotImplementedError("This method should be overridden by subclasses.")

    def unit_of_work(self, ledger_ids: Iterable[str] = (), instrument_keys: Iterable[str] = ()) -> "UnitOfWork":
        keys = [ledger_lock_key(lid) for lid in ledger_ids] + [instrument_lock_key(k) for k in instrument_keys]
        return UnitOfWork(self, keys)


class UnitOfWork():
    """A set of writes that either all stay or are all undone.

    Used as a context manager: entering takes the aggregate locks, every write
    goes through the unit of work and is journaled, and leaving without
    ``commit()`` (or with an exception) replays the journal backwards.
    """

    def __init__(self, store: EventStore, lock_keys: Iterable[str]):
        self.store = store
        self.lock_keys = sorted(set(lock_keys))
        self._journal: list[Callable[[], None]] = []
        self._lock_context = None
        self.committed = False
        # Writes attempted, including ones already rolled back
        self.writes = 0

    def __enter__(self) -> "UnitOfWork":
        self._lock_context = self.store.lock(self.lock_keys)
        self._lock_context.__enter__()
        return self

    def __exit__(self, exc_type, exc, tb):
        try:
            if not self.committed:
                self.rollback()
        finally:
            self._lock_context.__exit__(exc_type, exc, tb)
        return False

    def add_instrument_transaction(self, transaction: InstrumentTransaction) -> InstrumentTransaction:
        self.writes += 1
        stored = self.store.add_instrument_transaction(transaction)
        self._journal.append(lambda: self.store.restore_instrument_transaction(stored.id, None))
        return stored

    def replace_instrument_transaction(self, transaction: InstrumentTransaction) -> InstrumentTransaction:
        previous = self.store.get_instrument_transaction(transaction.id)
        self.writes += 1
        stored = self.store.replace_instrument_transaction(transaction)
        self._journal.append(lambda: self.store.restore_instrument_transaction(previous.id, previous))
        return stored

    def delete_instrument_transaction(self, transaction_id: str) -> InstrumentTransaction:
        previous = self.store.get_instrument_transaction(transaction_id)
        return self.replace_instrument_transaction(replace(previous, is_deleted=True))

    def add_currency_event(self, event: CurrencyEvent) -> CurrencyEvent:
        self.writes += 1
        stored = self.store.add_currency_event(event)
        self._journal.append(lambda: self.store.restore_currency_event(stored.id, None))
        return stored

    def replace_currency_event(self, event: CurrencyEvent) -> CurrencyEvent:
        previous = self.store.get_currency_event(event.id)
        self.writes += 1
        stored = self.store.replace_currency_event(event)
        self._journal.append(lambda: self.store.restore_currency_event(previous.id, previous))
        return stored

    def delete_currency_event(self, event_id: str) -> CurrencyEvent:
        previous = self.store.get_currency_event(event_id)
        return self.replace_currency_event(replace(previous, is_deleted=True))

    def commit(self):
        self._journal.clear()
        self.committed = True

    def rollback(self):
        while self._journal:
            undo = self._journal.pop()
            undo()


class InMemoryEventStore(EventStore):
    """Thread-safe in-memory event store.

    Each ledger and instrument has its own re-entrant lock. Reads of one
    aggregate take that aggregate's lock, so a reader never observes a
    unit of work half way through.
    """

    def __init__(self, lock_timeout: float = config.LOCK_TIMEOUT_SECONDS):
        self.lock_timeout = lock_timeout
        self._ledgers: dict[str, CurrencyLedger] = {}
        self._transactions: dict[str, InstrumentTransaction] = {}
        self._events: dict[str, CurrencyEvent] = {}
        self._sequence = itertools.count(1)
        self._mutex = threading.RLock()
        self._aggregate_locks: dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._mutex:
            if key not in self._aggregate_locks:
                self._aggregate_locks[key] = threading.RLock()
            return self._aggregate_locks[key]

    @contextmanager
    def lock(self, lock_keys: Iterable[str]) -> Iterator[None]:
        # Sorted acquisition order keeps two units of work from deadlocking
        acquired: list[threading.RLock] = []
        try:
            for key in sorted(set(lock_keys)):
                lock = self._lock_for(key)
                if not lock.acquire(timeout=self.lock_timeout):
                    raise EventStoreError(f"Timed out after {self.lock_timeout}s waiting for lock on {key}")
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()

    # Ledgers

    def add_ledger(self, ledger: CurrencyLedger) -> CurrencyLedger:
        with self._mutex:
            if ledger.ledger_id in self._ledgers:
                raise EventStoreError(f"Ledger {ledger.ledger_id} already exists")
            self._ledgers[ledger.ledger_id] = ledger
            return ledger

    def get_ledger(self, ledger_id: str) -> CurrencyLedger:
        with self._mutex:
            if ledger_id not in self._ledgers:
                raise RecordNotFoundError(f"Ledger {ledger_id} not found")
            return self._ledgers[ledger_id]

    # Instrument transactions

    def add_instrument_transaction(self, transaction: InstrumentTransaction) -> InstrumentTransaction:
        with self.lock([instrument_lock_key(transaction.instrument_key)]), self._mutex:
            if transaction.id in self._transactions:
                raise EventStoreError(f"Transaction {transaction.id} already exists")
            stored = replace(transaction, sequence=next(self._sequence))
            self._transactions[stored.id] = stored
            return stored

    def replace_instrument_transaction(self, transaction: InstrumentTransaction) -> InstrumentTransaction:
        with self.lock([instrument_lock_key(transaction.instrument_key)]), self._mutex:
            previous = self._transactions.get(transaction.id)
            if previous is None:
                raise RecordNotFoundError(f"Transaction {transaction.id} not found")
            # An edit keeps the original insertion order
            stored = replace(transaction, sequence=previous.sequence)
            self._transactions[stored.id] = stored
            return stored

    def get_instrument_transaction(self, transaction_id: str) -> InstrumentTransaction:
        with self._mutex:
            if transaction_id not in self._transactions:
                raise RecordNotFoundError(f"Transaction {transaction_id} not found")
            return self._transactions[transaction_id]

    def list_instrument_transactions(self, instrument_key: str | None = None, include_deleted: bool = False) -> list[InstrumentTransaction]:
        if instrument_key is None:
            with self._mutex:
                records = list(self._transactions.values())
        else:
            key = instrument_key.strip().upper()
            with self.lock([instrument_lock_key(key)]), self._mutex:
                records = [t for t in self._transactions.values() if t.instrument_key == key]
        if not include_deleted:
            records = [t for t in records if not t.is_deleted]
        return sorted(records, key=lambda t: t.sequence)

    def restore_instrument_transaction(self, transaction_id: str, previous: InstrumentTransaction | None):
        with self._mutex:
            if previous is None:
                self._transactions.pop(transaction_id, None)
            else:
                self._transactions[transaction_id] = previous

    # Currency events

    def add_currency_event(self, event: CurrencyEvent) -> CurrencyEvent:
        with self.lock([ledger_lock_key(event.ledger_id)]), self._mutex:
            if event.ledger_id not in self._ledgers:
                raise RecordNotFoundError(f"Ledger {event.ledger_id} not found")
            if event.id in self._events:
                raise EventStoreError(f"Currency event {event.id} already exists")
            stored = replace(event, sequence=next(self._sequence))
            self._events[stored.id] = stored
            return stored

    def replace_currency_event(self, event: CurrencyEvent) -> CurrencyEvent:
        with self.lock([ledger_lock_key(event.ledger_id)]), self._mutex:
            previous = self._events.get(event.id)
            if previous is None:
                raise RecordNotFoundError(f"Currency event {event.id} not found")
            stored = replace(event, sequence=previous.sequence)
            self._events[stored.id] = stored
            return stored

    def get_currency_event(self, event_id: str) -> CurrencyEvent:
        with self._mutex:
            if event_id not in self._events:
                raise RecordNotFoundError(f"Currency event {event_id} not found")
            return self._events[event_id]

    def list_currency_events(self, ledger_id: str, include_deleted: bool = False) -> list[CurrencyEvent]:
        with self.lock([ledger_lock_key(ledger_id)]), self._mutex:
            records = [e for e in self._events.values() if e.ledger_id == ledger_id]
        if not include_deleted:
            records = [e for e in records if not e.is_deleted]
        return sorted(records, key=lambda e: e.sequence)

    def restore_currency_event(self, event_id: str, previous: CurrencyEvent | None):
        with self._mutex:
            if previous is None:
                self._events.pop(event_id, None)
            else:
                self._events[event_id] = previous
