from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import date

from .currency import Currency


class PricePoint:
    """A single price observation for an instrument."""

    def __init__(self, symbol: str, price_date: date, price: Decimal, base_currency: Currency):
        """Initialize a PricePoint.

        Args:
            symbol: Instrument key (e.g., "AAPL", "0050").
            price_date: The date the price was observed.
            price: The observed price as a Decimal.
            base_currency: Currency the price is denominated in.
        """
        self.symbol: str = symbol
        self.price_date: date = price_date
        self.price: Decimal = price
        self.base_currency: Currency = base_currency

    def __repr__(self):
        return f"PricePoint(symbol={self.symbol}, date={self.price_date}, price={self.price} {self.base_currency.value})"


class PricingDataManager(ABC):
    """Abstract source of current instrument prices.

    Returning None is a valid answer: it means unrealized metrics for that
    instrument are unavailable, not that something failed.
    """

    @abstractmethod
    def get_price_point(self, symbol: str, price_date: date) -> PricePoint | None:
        raise NotImplementedError("This method should be overridden by subclasses.")


class FixedPricingDataManager(PricingDataManager):
    """Pricing manager that answers from a fixed symbol -> price table."""

    def __init__(self, prices: dict[str, Decimal] | None = None, currency: Currency = Currency.USD):
        """Initialize with fixed prices.

        Args:
            prices: Mapping of instrument key to price. Keys are matched
                case-insensitively.
            currency: Currency every price in the table is quoted in.
        """
        self.prices: dict[str, Decimal] = {k.upper(): v for k, v in (prices or {}).items()}
        self.currency = currency

    def set_price(self, symbol: str, price: Decimal):
        self.prices[symbol.upper()] = price

    def get_price_point(self, symbol: str, price_date: date) -> PricePoint | None:
        price = self.prices.get(symbol.upper())
        if price is None:
            return None
        return PricePoint(
            symbol=symbol,
            price_date=price_date,
            price=price,
            base_currency=self.currency,
        )
