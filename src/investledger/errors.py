"""Error taxonomy for the recalculation engines and the coordinator.

Validation errors mean the caller supplied data that breaks a precondition.
Consistency errors mean the data is fine on its own but conflicts with the
history it is replayed against. Both subclass ``ValueError`` so callers that
only care about "bad input" can catch that.
"""

from decimal import Decimal


class InvestLedgerError(Exception):
    """Base class for every error raised by investledger."""


class ValidationError(InvestLedgerError, ValueError):
    """Input violates a precondition; rejected before any state change."""


class InvalidRateError(ValidationError):
    """A conversion or exchange rate is missing, zero or negative."""


class InvalidShareCountError(ValidationError):
    """A share count (or split ratio) is not strictly positive."""


class DegenerateInputError(ValidationError):
    """Cash flows cannot have an internal rate of return."""


class CurrencyMismatchError(InvestLedgerError, TypeError):
    """Money values of different currencies were combined without a rate."""


class RecalculationError(InvestLedgerError, ValueError):
    """Replaying a history violated a derived invariant."""


class ConsistencyError(RecalculationError):
    """The request is valid on its own but conflicts with the replayed history."""


class InsufficientSharesError(ConsistencyError):
    """A sell (or negative adjustment) exceeds the shares held at that point."""

    def __init__(self, instrument_key: str, requested: Decimal, available: Decimal, transaction_id: str | None = None):
        self.instrument_key = instrument_key
        self.requested = requested
        self.available = available
        self.transaction_id = transaction_id
        super().__init__(
            f"Insufficient shares for {instrument_key}: requested {requested}, "
            f"available {available} (transaction {transaction_id})"
        )


class InsufficientBalanceError(ConsistencyError):
    """A ledger debit would take the balance below zero."""

    def __init__(self, ledger_id: str | None, requested: Decimal, available: Decimal, event_id: str | None = None):
        self.ledger_id = ledger_id
        self.requested = requested
        self.available = available
        self.event_id = event_id
        super().__init__(
            f"Insufficient balance in ledger {ledger_id}: requested {requested}, "
            f"available {available} (event {event_id})"
        )

    @property
    def shortfall(self) -> Decimal:
        return self.requested - self.available


class NonConvergentError(InvestLedgerError, ArithmeticError):
    """The return solver found no root; the rate is unknown, not zero."""


class EventStoreError(InvestLedgerError):
    """Reading or writing the event log failed."""


class RecordNotFoundError(EventStoreError, KeyError):
    """A transaction, event or ledger id is not present in the store."""


class RolledBackError(InvestLedgerError):
    """A unit of work failed after its first write and was undone."""

    def __init__(self, message: str, cause: BaseException | None = None):
        self.cause = cause
        super().__init__(message)
