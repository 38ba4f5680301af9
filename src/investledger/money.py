from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import TYPE_CHECKING, Union

from .errors import CurrencyMismatchError, InvalidRateError

if TYPE_CHECKING:
    from .currency import Currency

Number = Union[int, Decimal]


def to_decimal(value: Union[int, float, str, Decimal]) -> Decimal:
    """Coerce a user-supplied number into a Decimal without binary float noise."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(str(value))
    return Decimal(value)


class Money():
    """An exact decimal amount tagged with its currency.

    Adding, subtracting or comparing two Money values of different currencies
    raises CurrencyMismatchError; crossing currencies goes through a Rate.
    """

    __slots__ = ("amount", "currency")

    def __init__(self, amount: Union[int, float, str, Decimal], currency: Currency):
        self.amount: Decimal = to_decimal(amount)
        self.currency: Currency = currency

    @classmethod
    def zero(cls, currency: Currency) -> Money:
        return cls(Decimal("0"), currency)

    def _check(self, other: object) -> Money:
        if not isinstance(other, Money):
            raise TypeError(f"Expected Money, got {type(other).__name__}")
        if other.currency != self.currency:
            raise CurrencyMismatchError(
                f"Cannot combine {self.currency.value} and {other.currency.value} without an exchange rate"
            )
        return other

    def __add__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        other = self._check(other)
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, factor: Number) -> Money:
        if isinstance(factor, (Money, float)):
            raise TypeError("Money can only be scaled by an int or Decimal")
        return Money(self.amount * factor, self.currency)

    __rmul__ = __mul__

    def __truediv__(self, other: Union[Money, Number]) -> Union[Money, Decimal]:
        """Divide by a plain number (Money result) or by Money of the same currency (ratio)."""
        if isinstance(other, Money):
            other = self._check(other)
            return self.amount / other.amount
        if isinstance(other, float):
            raise TypeError("Money can only be divided by an int, Decimal or Money")
        return Money(self.amount / other, self.currency)

    def __neg__(self) -> Money:
        return Money(-self.amount, self.currency)

    def __abs__(self) -> Money:
        return Money(abs(self.amount), self.currency)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Money):
            return NotImplemented
        return self.currency == other.currency and self.amount == other.amount

    def __hash__(self) -> int:
        return hash((self.amount, self.currency))

    def __lt__(self, other: Money) -> bool:
        return self.amount < self._check(other).amount

    def __le__(self, other: Money) -> bool:
        return self.amount <= self._check(other).amount

    def __gt__(self, other: Money) -> bool:
        return self.amount > self._check(other).amount

    def __ge__(self, other: Money) -> bool:
        return self.amount >= self._check(other).amount

    def is_zero(self) -> bool:
        return self.amount == 0

    def is_negative(self) -> bool:
        return self.amount < 0

    def quantize(self, decimals: int = 2) -> Money:
        """Round half-up to ``decimals`` places (for display, never for replay)."""
        exp = Decimal(1).scaleb(-decimals)
        return Money(self.amount.quantize(exp, rounding=ROUND_HALF_UP), self.currency)

    def __repr__(self):
        return f"Money({self.amount} {self.currency.value})"


class Rate():
    """How many units of ``to_currency`` one unit of ``from_currency`` buys."""

    __slots__ = ("from_currency", "to_currency", "value")

    def __init__(self, from_currency: Currency, to_currency: Currency, value: Union[int, float, str, Decimal, None]):
        if value is None:
            raise InvalidRateError(f"Missing exchange rate {from_currency.value}->{to_currency.value}")
        value = to_decimal(value)
        if value <= 0:
            raise InvalidRateError(
                f"Exchange rate {from_currency.value}->{to_currency.value} must be positive, got {value}"
            )
        self.from_currency: Currency = from_currency
        self.to_currency: Currency = to_currency
        self.value: Decimal = value

    @classmethod
    def identity(cls, currency: Currency) -> Rate:
        return cls(currency, currency, Decimal("1"))

    def convert(self, money: Money) -> Money:
        """Convert ``money`` (which must be in ``from_currency``) into ``to_currency``."""
        if money.currency != self.from_currency:
            raise CurrencyMismatchError(
                f"Rate {self.from_currency.value}->{self.to_currency.value} cannot convert {money.currency.value}"
            )
        return Money(money.amount * self.value, self.to_currency)

    def inverse(self) -> Rate:
        return Rate(self.to_currency, self.from_currency, Decimal("1") / self.value)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Rate):
            return NotImplemented
        return (self.from_currency, self.to_currency, self.value) == (other.from_currency, other.to_currency, other.value)

    def __hash__(self) -> int:
        return hash((self.from_currency, self.to_currency, self.value))

    def __repr__(self):
        return f"Rate(1 {self.from_currency.value} = {self.value} {self.to_currency.value})"
