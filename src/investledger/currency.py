from enum import Enum
from abc import ABC, abstractmethod
from decimal import Decimal
from datetime import date

from . import config
from .money import Rate


class Currency(Enum):
    """Currencies a transaction, ledger or report can be denominated in."""

    USD = "USD"
    CAD = "CAD"
    EUR = "EUR"
    TWD = "TWD"
    SGD = "SGD"
    AUD = "AUD"
    JPY = "JPY"
    KRW = "KRW"
    GBP = "GBP"
    BRL = "BRL"
    CNY = "CNY"
    HKD = "HKD"
    MXN = "MXN"
    ZAR = "ZAR"
    CHF = "CHF"
    THB = "THB"


# Currency every cost basis and realized or unrealized figure is reported in
DEFAULT_REPORTING_CURRENCY = Currency(config.REPORTING_CURRENCY)


class ExchangeRateManager(ABC):
    """Abstract source of current exchange rates.

    Rates supplied here are only used for unrealized PnL and for the terminal
    value of a return calculation; recorded transactions carry their own rate.
    """

    @abstractmethod
    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, as_of: date | None = None) -> Rate | None:
        """Get the exchange rate between two currencies.

        Args:
            from_currency: The source currency.
            to_currency: The target currency.
            as_of: The date for the rate lookup. If None, the latest known rate.

        Returns:
            A Rate, or None when the provider has no rate for the pair.
        """
        raise NotImplementedError("This method should be overridden by subclasses.")


class FixedExchangeRateManager(ExchangeRateManager):
    """Exchange rate manager backed by a fixed table of rates.

    Rates do not vary by date. A missing direct pair is derived from its
    inverse, or triangulated through USD when both legs are known.
    """

    def __init__(self, exchange_rates: dict[tuple[Currency, Currency], Decimal] | None = None):
        """Initialize with a table of rates.

        Args:
            exchange_rates: Mapping of (from, to) pairs to the rate.
        """
        self.exchange_rates: dict[tuple[Currency, Currency], Decimal] = dict(exchange_rates or {})

    def set_exchange_rate(self, from_currency: Currency, to_currency: Currency, rate: Decimal):
        """Set or override the exchange rate for a currency pair."""
        self.exchange_rates[(from_currency, to_currency)] = rate

    def _lookup(self, from_currency: Currency, to_currency: Currency) -> Decimal | None:
        if (from_currency, to_currency) in self.exchange_rates:
            return self.exchange_rates[(from_currency, to_currency)]
        if (to_currency, from_currency) in self.exchange_rates:
            return Decimal("1") / self.exchange_rates[(to_currency, from_currency)]
        return None

    def get_exchange_rate(self, from_currency: Currency, to_currency: Currency, as_of: date | None = None) -> Rate | None:
        if from_currency == to_currency:
            return Rate.identity(from_currency)

        direct = self._lookup(from_currency, to_currency)
        if direct is not None:
            return Rate(from_currency, to_currency, direct)

        # If neither currency is USD, try converting via USD
        if from_currency != Currency.USD and to_currency != Currency.USD:
            rate_to_usd = self._lookup(from_currency, Currency.USD)
            rate_from_usd = self._lookup(Currency.USD, to_currency)
            if rate_to_usd is not None and rate_from_usd is not None:
                return Rate(from_currency, to_currency, rate_to_usd * rate_from_usd)

        return None
