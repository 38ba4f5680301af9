"""Atomic recording of trades and their currency funding.

A trade funded from a currency ledger is two records: the instrument
transaction and a linked ledger event. The coordinator writes both inside
one unit of work, recalculates the position and the ledger from scratch,
and only then commits. Every failure after the first write undoes all of
the unit's writes.
"""

import warnings
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Sequence

from .currency import Currency, DEFAULT_REPORTING_CURRENCY
from .errors import (
    CurrencyMismatchError,
    EventStoreError,
    InsufficientBalanceError,
    RecalculationError,
    RecordNotFoundError,
    RolledBackError,
    ValidationError,
)
from .ledger import CurrencyEvent, CurrencyEventType, CurrencyLedger, LedgerSummary, recalculate_ledger
from .money import Money
from .portfolio import InstrumentTransaction, Position, TransactionType, recalculate_position
from .splits import StockSplit
from .store import EventStore, UnitOfWork


class ShortfallPolicy(Enum):
    """What to do when the funding ledger cannot cover a purchase."""

    REJECT = "REJECT"
    ALLOW_NEGATIVE = "ALLOW_NEGATIVE" # record the debit and let the ledger go negative
    AUTO_TOP_UP = "AUTO_TOP_UP" # record an EXCHANGE_IN for the shortfall before the debit


@dataclass(frozen=True)
class FundingChoice:
    """Where a trade's cash comes from (or goes to).

    ``ledger_id`` None means the trade is not linked to any ledger.
    ``top_up_rate`` is the rate used for an automatic top-up; it defaults
    to the trade's own conversion rate.
    """

    ledger_id: str | None = None
    shortfall_policy: ShortfallPolicy = ShortfallPolicy.REJECT
    top_up_rate: Decimal | None = None

    @property
    def is_funded(self) -> bool:
        return self.ledger_id is not None


NO_FUNDING = FundingChoice()


class OutcomeStatus(Enum):
    COMMITTED = "COMMITTED"
    REJECTED_INSUFFICIENT_FUNDS = "REJECTED_INSUFFICIENT_FUNDS"
    REJECTED_INVALID = "REJECTED_INVALID"
    ROLLED_BACK = "ROLLED_BACK"


@dataclass
class CoordinatorOutcome:
    """Terminal result of a coordinator call.

    On COMMITTED the recalculated aggregates are attached. On any other
    status nothing written by the call remains and ``error`` says why.
    """

    status: OutcomeStatus
    instrument_transaction_id: str | None = None
    currency_event_id: str | None = None
    top_up_event_id: str | None = None
    position: Position | None = None
    ledger_summary: LedgerSummary | None = None
    shortfall: Money | None = None
    error: Exception | None = None

    @property
    def committed(self) -> bool:
        return self.status == OutcomeStatus.COMMITTED

    def __repr__(self):
        return (
            f"CoordinatorOutcome(status={self.status.value}, transaction={self.instrument_transaction_id}, "
            f"event={self.currency_event_id}, error={self.error!r})"
        )


class _InsufficientFunds(Exception):
    """Internal signal: the ledger is short and the policy does not cover it."""

    def __init__(self, shortfall: Money, error: InsufficientBalanceError):
        self.shortfall = shortfall
        self.error = error
        super().__init__(str(error))


class TransactionCoordinator():
    """Records trades and ledger events atomically against an EventStore."""

    def __init__(
        self,
        store: EventStore,
        splits: Sequence[StockSplit] = (),
        reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
    ):
        self.store = store
        self.splits = tuple(splits)
        self.reporting_currency = reporting_currency

    # Recalculation

    def position(self, instrument_key: str) -> Position:
        return recalculate_position(
            self.store.list_instrument_transactions(instrument_key),
            instrument_key,
            self.splits,
            self.reporting_currency,
        )

    def ledger_summary(self, ledger_id: str) -> LedgerSummary:
        ledger = self.store.get_ledger(ledger_id)
        return self._replay(ledger, self.store.list_currency_events(ledger_id))

    # Helpers

    def _check_ledger(self, ledger_id: str, currency: Currency) -> CurrencyLedger:
        ledger = self.store.get_ledger(ledger_id)
        if ledger.currency != currency:
            raise CurrencyMismatchError(
                f"Ledger {ledger_id} holds {ledger.currency.value}, cannot fund a {currency.value} trade"
            )
        return ledger

    def _replay(self, ledger: CurrencyLedger, events: list[CurrencyEvent]) -> LedgerSummary:
        return recalculate_ledger(
            events,
            ledger.ledger_id,
            reporting_currency=self.reporting_currency,
            currency=ledger.currency,
        )

    def _shortfall(
        self,
        ledger: CurrencyLedger,
        debit: CurrencyEvent,
        exclude_event_id: str | None = None,
    ) -> tuple[Money, InsufficientBalanceError | None]:
        """
        Replay the ledger with ``debit`` in place and size the missing funds.

        The debit is replayed at its own date, after every stored event of
        that date, so a back-dated debit is checked against the balance it
        will actually see. Later events must stay covered as well.

        Args:
            ledger: Ledger to debit.
            debit: Candidate outflow, not yet stored.
            exclude_event_id: Stored event left out of the replay (the
                funding an edit is about to reverse).

        Returns:
            (top-up needed on the debit's date, first InsufficientBalanceError
            hit), or (zero, None) when the ledger stays non-negative at every
            replay point.
        """
        existing = [e for e in self.store.list_currency_events(ledger.ledger_id) if e.id != exclude_event_id]
        sequence = max((e.sequence for e in existing), default=0) + 1
        debit = replace(debit, sequence=sequence + 1)

        # A ledger that is already inconsistent fails here, not in the loop
        self._replay(ledger, existing)

        needed = Decimal("0")
        first_error: InsufficientBalanceError | None = None
        while True:
            candidates = [debit]
            if needed > 0:
                # Zero-cost stand-in for a top-up; only the balance matters here
                candidates.insert(0, CurrencyEvent(
                    ledger_id=ledger.ledger_id,
                    event_date=debit.event_date,
                    event_type=CurrencyEventType.INTEREST,
                    foreign_amount=needed,
                    currency=ledger.currency,
                    sequence=sequence,
                ))
            try:
                self._replay(ledger, existing + candidates)
                return Money(needed, ledger.currency), first_error
            except InsufficientBalanceError as e:
                if first_error is None:
                    first_error = e
                needed += e.shortfall

    def _approve_overdraft(
        self,
        ledger: CurrencyLedger,
        debit: CurrencyEvent,
        shortfall: Money,
        exclude_event_id: str | None = None,
    ) -> CurrencyEvent:
        """Flag ``debit`` as an approved overdraft, or fail if that alone cannot keep the ledger valid."""
        flagged = replace(debit, allow_negative_balance=True)
        remaining, error = self._shortfall(ledger, flagged, exclude_event_id)
        if error is not None:
            # A later stored event would be overdrawn, and it was never approved
            raise _InsufficientFunds(remaining, error)
        warnings.warn(
            f"Ledger {ledger.ledger_id} will go negative by {shortfall.amount} {shortfall.currency.value} "
            f"after event {debit.id} on {debit.event_date}",
            UserWarning
        )
        return flagged

    def _funding_events(
        self,
        trade: InstrumentTransaction,
        funding: FundingChoice,
        ledger: CurrencyLedger,
        exclude_event_id: str | None = None,
    ) -> list[CurrencyEvent]:
        """Build the ledger events a trade needs: an optional top-up, then the debit or credit.

        ``exclude_event_id`` is the funding event an edit reverses; it is
        left out of the balance check.
        """
        if trade.transaction_type == TransactionType.SELL:
            proceeds = trade.net_proceeds_source
            if proceeds.amount <= 0:
                return []
            return [
                CurrencyEvent(
                    ledger_id=ledger.ledger_id,
                    event_date=trade.transaction_date,
                    event_type=CurrencyEventType.EXCHANGE_IN,
                    foreign_amount=proceeds.amount,
                    currency=ledger.currency,
                    reporting_amount=(proceeds.amount * trade.conversion_rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
                    rate=trade.conversion_rate,
                    linked_instrument_transaction_id=trade.id,
                )
            ]

        if trade.transaction_type != TransactionType.BUY:
            raise ValidationError(
                f"Only BUY and SELL transactions can be funded from a ledger, got {trade.transaction_type.value}"
            )

        spend = CurrencyEvent(
            ledger_id=ledger.ledger_id,
            event_date=trade.transaction_date,
            event_type=CurrencyEventType.SPEND,
            foreign_amount=trade.total_cost_source.amount,
            currency=ledger.currency,
            linked_instrument_transaction_id=trade.id,
        )

        shortfall, error = self._shortfall(ledger, spend, exclude_event_id)
        if error is None:
            return [spend]

        if funding.shortfall_policy == ShortfallPolicy.REJECT:
            raise _InsufficientFunds(shortfall, error)

        if funding.shortfall_policy == ShortfallPolicy.ALLOW_NEGATIVE:
            return [self._approve_overdraft(ledger, spend, shortfall, exclude_event_id)]

        rate = funding.top_up_rate if funding.top_up_rate is not None else trade.conversion_rate
        top_up = CurrencyEvent(
            ledger_id=ledger.ledger_id,
            event_date=trade.transaction_date,
            event_type=CurrencyEventType.EXCHANGE_IN,
            foreign_amount=shortfall.amount,
            currency=ledger.currency,
            reporting_amount=(shortfall.amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
            rate=rate,
            notes=f"Automatic top-up for transaction {trade.id}",
        )
        warnings.warn(
            f"Topping up ledger {ledger.ledger_id} with {shortfall} at {rate} to fund transaction {trade.id}",
            UserWarning
        )
        return [top_up, spend]

    def _run(self, uow: UnitOfWork, work) -> CoordinatorOutcome:
        """Run ``work(uow)`` and turn any failure into a terminal outcome."""
        try:
            with uow:
                outcome = work(uow)
                if outcome.committed:
                    uow.commit()
                return outcome
        except _InsufficientFunds as e:
            return CoordinatorOutcome(
                status=OutcomeStatus.REJECTED_INSUFFICIENT_FUNDS,
                shortfall=e.shortfall,
                error=e.error,
            )
        except (ValidationError, CurrencyMismatchError, RecordNotFoundError) as e:
            if uow.writes == 0:
                return CoordinatorOutcome(status=OutcomeStatus.REJECTED_INVALID, error=e)
            return CoordinatorOutcome(
                status=OutcomeStatus.ROLLED_BACK,
                error=RolledBackError(f"Unit of work rolled back: {e}", cause=e),
            )
        except (RecalculationError, EventStoreError) as e:
            return CoordinatorOutcome(
                status=OutcomeStatus.ROLLED_BACK,
                error=RolledBackError(f"Unit of work rolled back: {e}", cause=e),
            )

    # Operations

    def execute(self, trade: InstrumentTransaction, funding: FundingChoice = NO_FUNDING) -> CoordinatorOutcome:
        """
        Record a new trade and, if funded, its linked ledger event.

        Args:
            trade: The instrument transaction to record.
            funding: Ledger to debit (BUY) or credit (SELL), and what to do
                when a debit exceeds the ledger balance.

        Returns:
            COMMITTED with the recalculated position (and ledger summary),
            REJECTED_INSUFFICIENT_FUNDS when the policy is REJECT and the
            ledger is short, REJECTED_INVALID for input that fails validation
            before any write, or ROLLED_BACK when a write or recalculation
            failed and every write was undone.
        """
        ledger_ids = [funding.ledger_id] if funding.is_funded else []
        uow = self.store.unit_of_work(ledger_ids, [trade.instrument_key])

        def work(uow: UnitOfWork) -> CoordinatorOutcome:
            events: list[CurrencyEvent] = []
            if funding.is_funded:
                ledger = self._check_ledger(funding.ledger_id, trade.currency)
                events = self._funding_events(trade, funding, ledger)

            stored_events = [uow.add_currency_event(e) for e in events]
            linked = [e for e in stored_events if e.linked_instrument_transaction_id == trade.id]
            funding_link = linked[0].id if linked else None
            top_ups = [e for e in stored_events if e.linked_instrument_transaction_id is None]

            stored = uow.add_instrument_transaction(replace(trade, funding_link=funding_link))

            position = self.position(stored.instrument_key)
            summary = self.ledger_summary(funding.ledger_id) if funding.is_funded else None
            return CoordinatorOutcome(
                status=OutcomeStatus.COMMITTED,
                instrument_transaction_id=stored.id,
                currency_event_id=funding_link,
                top_up_event_id=top_ups[0].id if top_ups else None,
                position=position,
                ledger_summary=summary,
            )

        return self._run(uow, work)

    def _load_for_edit(self, transaction_id: str) -> tuple[InstrumentTransaction, CurrencyEvent | None]:
        existing = self.store.get_instrument_transaction(transaction_id)
        if existing.is_deleted:
            raise ValidationError(f"Transaction {transaction_id} is deleted")
        old_event = self.store.get_currency_event(existing.funding_link) if existing.funding_link else None
        return existing, old_event

    def _ensure_unchanged(self, existing: InstrumentTransaction):
        """Fail if the record changed between reading it and taking its locks."""
        if self.store.get_instrument_transaction(existing.id) != existing:
            raise EventStoreError(f"Transaction {existing.id} was modified concurrently")

    def update(self, transaction_id: str, trade: InstrumentTransaction, funding: FundingChoice = NO_FUNDING) -> CoordinatorOutcome:
        """
        Replace a recorded trade with ``trade`` and re-link its funding.

        The original funding event is soft-deleted and a new one recorded.
        The balance check replays the ledger without the original event, so
        funds the original debit held are available again (and proceeds the
        original credit added are not).
        """
        try:
            existing, old_event = self._load_for_edit(transaction_id)
        except (ValidationError, EventStoreError) as e:
            return CoordinatorOutcome(status=OutcomeStatus.REJECTED_INVALID, error=e)

        ledger_ids = {lid for lid in (funding.ledger_id, old_event.ledger_id if old_event else None) if lid is not None}
        instrument_keys = {existing.instrument_key, trade.instrument_key}
        uow = self.store.unit_of_work(ledger_ids, instrument_keys)
        new_trade = replace(trade, id=transaction_id)

        def work(uow: UnitOfWork) -> CoordinatorOutcome:
            self._ensure_unchanged(existing)

            live_old_event = old_event if old_event is not None and not old_event.is_deleted else None
            reversed_id = live_old_event.id if live_old_event is not None else None

            events: list[CurrencyEvent] = []
            if funding.is_funded:
                ledger = self._check_ledger(funding.ledger_id, new_trade.currency)
                events = self._funding_events(new_trade, funding, ledger, reversed_id)

            if live_old_event is not None:
                uow.delete_currency_event(live_old_event.id)

            stored_events = [uow.add_currency_event(e) for e in events]
            linked = [e for e in stored_events if e.linked_instrument_transaction_id == transaction_id]
            funding_link = linked[0].id if linked else None
            top_ups = [e for e in stored_events if e.linked_instrument_transaction_id is None]

            stored = uow.replace_instrument_transaction(replace(new_trade, funding_link=funding_link))

            # Every touched aggregate must still replay cleanly
            positions = {key: self.position(key) for key in instrument_keys}
            summaries = {lid: self.ledger_summary(lid) for lid in ledger_ids}

            return CoordinatorOutcome(
                status=OutcomeStatus.COMMITTED,
                instrument_transaction_id=stored.id,
                currency_event_id=funding_link,
                top_up_event_id=top_ups[0].id if top_ups else None,
                position=positions[stored.instrument_key],
                ledger_summary=summaries.get(funding.ledger_id),
            )

        return self._run(uow, work)

    def delete(self, transaction_id: str) -> CoordinatorOutcome:
        """Soft-delete a trade and its linked ledger event, then recalculate both."""
        try:
            existing, old_event = self._load_for_edit(transaction_id)
        except (ValidationError, EventStoreError) as e:
            return CoordinatorOutcome(status=OutcomeStatus.REJECTED_INVALID, error=e)

        ledger_ids = [old_event.ledger_id] if old_event is not None else []
        uow = self.store.unit_of_work(ledger_ids, [existing.instrument_key])

        def work(uow: UnitOfWork) -> CoordinatorOutcome:
            self._ensure_unchanged(existing)
            uow.delete_instrument_transaction(transaction_id)
            if old_event is not None and not old_event.is_deleted:
                uow.delete_currency_event(old_event.id)

            position = self.position(existing.instrument_key)
            summary = self.ledger_summary(old_event.ledger_id) if old_event is not None else None
            return CoordinatorOutcome(
                status=OutcomeStatus.COMMITTED,
                instrument_transaction_id=transaction_id,
                currency_event_id=old_event.id if old_event is not None else None,
                position=position,
                ledger_summary=summary,
            )

        return self._run(uow, work)

    def record_currency_event(self, event: CurrencyEvent, shortfall_policy: ShortfallPolicy = ShortfallPolicy.REJECT) -> CoordinatorOutcome:
        """
        Record a standalone ledger event (exchange, interest or spend).

        A debit that would overdraw the ledger on its date, or leave a later
        event uncovered, is rejected unless ``shortfall_policy`` is
        ALLOW_NEGATIVE. AUTO_TOP_UP is not meaningful here and is rejected
        as invalid.
        """
        uow = self.store.unit_of_work([event.ledger_id])

        def work(uow: UnitOfWork) -> CoordinatorOutcome:
            ledger = self.store.get_ledger(event.ledger_id)
            if ledger.currency != event.currency:
                raise CurrencyMismatchError(
                    f"Ledger {ledger.ledger_id} holds {ledger.currency.value}, got a {event.currency.value} event"
                )
            if shortfall_policy == ShortfallPolicy.AUTO_TOP_UP:
                raise ValidationError("Automatic top-up only applies to funded trades")

            to_record = event
            if not event.is_inflow:
                shortfall, error = self._shortfall(ledger, event)
                if error is not None:
                    if shortfall_policy == ShortfallPolicy.REJECT:
                        raise _InsufficientFunds(shortfall, error)
                    to_record = self._approve_overdraft(ledger, event, shortfall)

            stored = uow.add_currency_event(to_record)
            return CoordinatorOutcome(
                status=OutcomeStatus.COMMITTED,
                currency_event_id=stored.id,
                ledger_summary=self.ledger_summary(ledger.ledger_id),
            )

        return self._run(uow, work)

    def delete_currency_event(self, event_id: str) -> CoordinatorOutcome:
        """Soft-delete a standalone ledger event and recalculate the ledger.

        Events linked to a live trade are refused; delete the trade instead.
        """
        try:
            event = self.store.get_currency_event(event_id)
        except EventStoreError as e:
            return CoordinatorOutcome(status=OutcomeStatus.REJECTED_INVALID, error=e)

        uow = self.store.unit_of_work([event.ledger_id])

        def work(uow: UnitOfWork) -> CoordinatorOutcome:
            if event.linked_instrument_transaction_id is not None:
                linked = self.store.get_instrument_transaction(event.linked_instrument_transaction_id)
                if not linked.is_deleted:
                    raise ValidationError(
                        f"Currency event {event_id} funds transaction {linked.id}; delete the transaction instead"
                    )
            uow.delete_currency_event(event_id)
            return CoordinatorOutcome(
                status=OutcomeStatus.COMMITTED,
                currency_event_id=event_id,
                ledger_summary=self.ledger_summary(event.ledger_id),
            )

        return self._run(uow, work)
