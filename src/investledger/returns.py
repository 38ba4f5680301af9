# pyright: reportUnknownMemberType=false, reportUnknownArgumentType=false

"""Return calculations: XIRR, Modified Dietz and time-weighted return.

Cash-flow amounts stay exact (``Money``) until they are fed to the solver;
the solver itself works in floats since its output is a rate, not an amount.
"""

import warnings
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Sequence

import numpy as np
from scipy.optimize import brentq

from . import config
from .currency import Currency, DEFAULT_REPORTING_CURRENCY, ExchangeRateManager
from .errors import DegenerateInputError, NonConvergentError
from .money import Money, Rate
from .portfolio import (
    InstrumentTransaction,
    TransactionType,
    calculate_unrealized_pnl,
    get_positions,
    ordered_transactions,
    recalculate_position,
)
from .pricingdata import PricingDataManager
from .splits import StockSplit

# Below this the NPV derivative is treated as flat and Newton is nudged instead
FLAT_DERIVATIVE = 1e-10

# |NPV| below this at a bracket end means the bound itself is the root
NPV_EPSILON = 1e-7


@dataclass
class CashFlow:
    """A dated signed amount; negative is money put in, positive is money taken out."""

    flow_date: date
    amount: Money

    def __repr__(self):
        return f"CashFlow(date={self.flow_date}, amount={self.amount})"


@dataclass
class XirrResult:
    """Annualized rate found by the solver and how it was found."""

    rate: float
    method: str
    iterations: int

    @property
    def percentage(self) -> float:
        return self.rate * 100


def _prepare(cash_flows: Sequence[CashFlow]) -> tuple[np.ndarray, np.ndarray]:
    """Validate a series and return (amounts, year fractions from the first flow)."""
    if not cash_flows:
        raise DegenerateInputError("XIRR needs at least one cash flow")

    currency = cash_flows[0].amount.currency
    has_negative = False
    has_positive = False
    for i, flow in enumerate(cash_flows):
        if flow.amount.currency != currency:
            raise DegenerateInputError(
                f"Cash flows must share one currency, got {currency.value} and {flow.amount.currency.value}"
            )
        if i > 0 and flow.flow_date <= cash_flows[i - 1].flow_date:
            raise DegenerateInputError(
                f"Cash flow dates must strictly increase: {cash_flows[i - 1].flow_date} then {flow.flow_date}"
            )
        has_negative = has_negative or flow.amount.is_negative()
        has_positive = has_positive or flow.amount.amount > 0

    if not (has_negative and has_positive):
        raise DegenerateInputError("XIRR needs at least one negative and one positive cash flow")

    first = cash_flows[0].flow_date
    amounts = np.array([float(f.amount.amount) for f in cash_flows])
    years = np.array([(f.flow_date - first).days / config.DAYS_PER_YEAR for f in cash_flows])
    return amounts, years


def _npv(amounts: np.ndarray, years: np.ndarray, rate: float) -> float:
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        return float(np.sum(amounts / np.power(1.0 + rate, years)))


def _npv_derivative(amounts: np.ndarray, years: np.ndarray, rate: float) -> float:
    with np.errstate(over="ignore", divide="ignore", invalid="ignore"):
        return float(np.sum(-years * amounts / np.power(1.0 + rate, years + 1.0)))


def _newton(
    amounts: np.ndarray,
    years: np.ndarray,
    initial_guess: float,
    max_iterations: int,
    tolerance: float,
) -> XirrResult | None:
    """Newton-Raphson on the NPV. Returns None if it diverges or leaves r > -1."""
    # A converged step must also be a root of the NPV
    residual_limit = 1e-6 * float(np.sum(np.abs(amounts)))
    rate = initial_guess
    for i in range(max_iterations):
        npv = _npv(amounts, years, rate)
        derivative = _npv_derivative(amounts, years, rate)
        if not (np.isfinite(npv) and np.isfinite(derivative)):
            return None

        if abs(derivative) < FLAT_DERIVATIVE:
            rate += 0.1
            continue

        new_rate = rate - npv / derivative
        if not np.isfinite(new_rate) or new_rate <= -1.0:
            return None

        if abs(new_rate - rate) < tolerance:
            if abs(_npv(amounts, years, new_rate)) > residual_limit:
                return None
            return XirrResult(rate=float(new_rate), method="newton", iterations=i + 1)

        rate = new_rate

    return None


def _brent(amounts: np.ndarray, years: np.ndarray, tolerance: float, max_iterations: int) -> XirrResult:
    """Bracketing fallback; widens the upper bound before giving up."""
    low = config.XIRR_LOWER_BOUND
    high = config.XIRR_UPPER_BOUND

    npv_low = _npv(amounts, years, low)
    npv_high = _npv(amounts, years, high)
    if abs(npv_low) < NPV_EPSILON:
        return XirrResult(rate=low, method="brent", iterations=0)

    # Very short holding periods annualize to large rates
    while np.sign(npv_low) == np.sign(npv_high) and high < config.XIRR_MAX_UPPER_BOUND:
        if abs(npv_high) < NPV_EPSILON:
            return XirrResult(rate=high, method="brent", iterations=0)
        high = min(config.XIRR_MAX_UPPER_BOUND, high * 10)
        npv_high = _npv(amounts, years, high)

    if abs(npv_high) < NPV_EPSILON:
        return XirrResult(rate=high, method="brent", iterations=0)

    if np.sign(npv_low) == np.sign(npv_high):
        raise NonConvergentError(
            f"No sign change in NPV between {low} and {high}; the return cannot be determined"
        )

    try:
        root, info = brentq(
            lambda r: _npv(amounts, years, r),
            low,
            high,
            xtol=tolerance,
            maxiter=max_iterations,
            full_output=True,
        )
    except (ValueError, RuntimeError) as e:
        raise NonConvergentError(f"Bracketing solver failed between {low} and {high}: {e}") from e

    return XirrResult(rate=float(root), method="brent", iterations=info.iterations)


def solve_xirr(
    cash_flows: Iterable[CashFlow],
    terminal: CashFlow | None = None,
    initial_guess: float = config.XIRR_INITIAL_GUESS,
    max_iterations: int = config.XIRR_MAX_ITERATIONS,
    tolerance: float = config.XIRR_TOLERANCE,
) -> XirrResult:
    """
    Solve for the annualized rate r with sum(amount_i / (1+r)^(days_i/365)) == 0.

    Newton-Raphson runs first. If it diverges, fails to settle within
    ``max_iterations`` or steps to r <= -1, Brent's method takes over on a
    bounded bracket (a RuntimeWarning is emitted).

    Args:
        cash_flows: Dated flows in strictly increasing date order.
        terminal: Optional final flow (usually current market value) appended
            to the series.
        initial_guess: Starting rate for Newton-Raphson.
        max_iterations: Iteration cap for each method.
        tolerance: Convergence tolerance on the rate.

    Returns:
        The XirrResult.

    Raises:
        DegenerateInputError: If the series is empty, lacks an outflow or an
            inflow, mixes currencies, or its dates do not strictly increase.
        NonConvergentError: If no root can be bracketed.
    """
    flows = list(cash_flows)
    if terminal is not None:
        flows.append(terminal)
    amounts, years = _prepare(flows)

    result = _newton(amounts, years, initial_guess, max_iterations, tolerance)
    if result is not None:
        return result

    warnings.warn(
        "Newton-Raphson did not converge for XIRR; falling back to Brent's method",
        RuntimeWarning
    )
    return _brent(amounts, years, tolerance, max_iterations)


def build_cash_flows(
    transactions: Iterable[InstrumentTransaction],
    reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
) -> list[CashFlow]:
    """
    Turn trades into a reporting-currency cash-flow series for XIRR.

    Buys are outflows of their full cost (fees included), sells are inflows
    of their net proceeds. Splits and adjustments move no cash and are
    skipped. Flows on the same day are combined into one.
    """
    by_date: dict[date, Money] = {}
    for txn in ordered_transactions(transactions):
        rate = txn.rate_to(reporting_currency)
        if txn.transaction_type == TransactionType.BUY:
            amount = -rate.convert(txn.total_cost_source)
        elif txn.transaction_type == TransactionType.SELL:
            amount = rate.convert(txn.net_proceeds_source)
        else:
            continue

        if txn.transaction_date in by_date:
            by_date[txn.transaction_date] = by_date[txn.transaction_date] + amount
        else:
            by_date[txn.transaction_date] = amount

    return [CashFlow(flow_date=d, amount=a) for d, a in sorted(by_date.items()) if not a.is_zero()]


def _with_terminal(flows: list[CashFlow], terminal: CashFlow) -> tuple[list[CashFlow], CashFlow | None]:
    """Fold the terminal value into a same-day last flow so dates stay strictly increasing."""
    if flows and flows[-1].flow_date == terminal.flow_date:
        merged = CashFlow(terminal.flow_date, flows[-1].amount + terminal.amount)
        return flows[:-1] + [merged], None
    return flows, terminal


def calculate_position_xirr(
    transactions: Iterable[InstrumentTransaction],
    instrument_key: str,
    as_of: date,
    current_price: Money | None,
    current_rate: Rate | None = None,
    splits: Sequence[StockSplit] = (),
    reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
) -> XirrResult | None:
    """
    XIRR of one instrument, using its market value on ``as_of`` as the terminal flow.

    Returns:
        The XirrResult, or None when the current price (or a needed rate) is unavailable.
    """
    key = instrument_key.strip().upper()
    history = [t for t in transactions if t.instrument_key == key and t.transaction_date <= as_of]
    position = recalculate_position(history, key, splits, reporting_currency)

    unrealized = calculate_unrealized_pnl(position, current_price, current_rate)
    if unrealized is None:
        return None

    flows, terminal = _with_terminal(
        build_cash_flows(history, reporting_currency),
        CashFlow(as_of, unrealized.market_value_reporting),
    )
    if terminal is not None and terminal.amount.is_zero():
        terminal = None
    return solve_xirr(flows, terminal)


def calculate_portfolio_xirr(
    transactions: Iterable[InstrumentTransaction],
    as_of: date,
    pricing_manager: PricingDataManager,
    exchange_rate_manager: ExchangeRateManager,
    splits: Sequence[StockSplit] = (),
    reporting_currency: Currency = DEFAULT_REPORTING_CURRENCY,
) -> XirrResult | None:
    """
    XIRR across every instrument, valuing open positions through the providers.

    Returns:
        The XirrResult, or None if any open position cannot be valued.
    """
    history = [t for t in transactions if t.transaction_date <= as_of]
    valuations = get_positions(history, as_of, pricing_manager, exchange_rate_manager, splits, reporting_currency)

    market_value = Money.zero(reporting_currency)
    for valuation in valuations:
        if valuation.unrealized is None:
            return None
        market_value = market_value + valuation.unrealized.market_value_reporting

    flows, terminal = _with_terminal(
        build_cash_flows(history, reporting_currency),
        CashFlow(as_of, market_value),
    )
    if terminal is not None and terminal.amount.is_zero():
        terminal = None
    return solve_xirr(flows, terminal)


def calculate_modified_dietz(
    start_value: Money,
    end_value: Money,
    period_start: date,
    period_end: date,
    cash_flows: Iterable[CashFlow],
) -> Decimal | None:
    """
    Modified Dietz return over a period.

    Each external flow inside the period is weighted by the fraction of the
    period remaining after it. Positive flows are contributions.

    Returns:
        The period return as a fraction, or None when the period is empty or
        the weighted capital is not positive.
    """
    total_days = (period_end - period_start).days
    if total_days <= 0:
        return None

    total_flow = Money.zero(start_value.currency)
    weighted_flow = Money.zero(start_value.currency)
    for flow in cash_flows:
        if flow.flow_date < period_start or flow.flow_date > period_end:
            continue
        days_since_start = (flow.flow_date - period_start).days
        weight = Decimal(total_days - days_since_start) / Decimal(total_days)
        total_flow = total_flow + flow.amount
        weighted_flow = weighted_flow + flow.amount * weight

    numerator = end_value - start_value - total_flow
    denominator = start_value + weighted_flow
    if denominator.amount <= 0:
        return None
    return numerator / denominator


@dataclass
class ValuationSnapshot:
    """Portfolio value just before and just after an external cash flow."""

    snapshot_date: date
    value_before: Money
    value_after: Money


def calculate_time_weighted_return(
    start_value: Money,
    end_value: Money,
    snapshots: Iterable[ValuationSnapshot],
) -> Decimal | None:
    """
    Time-weighted return: chain the sub-period returns between external flows.

    Sub-periods that start from a non-positive value are skipped. Returns
    None when no sub-period could be measured.
    """
    ordered = sorted(enumerate(snapshots), key=lambda pair: (pair[1].snapshot_date, pair[0]))

    factor = Decimal("1")
    current_start = start_value
    has_period = False
    for _, snapshot in ordered:
        if current_start.amount > 0:
            factor *= snapshot.value_before / current_start
            has_period = True
        current_start = snapshot.value_after

    if current_start.amount > 0:
        factor *= end_value / current_start
        has_period = True

    return factor - 1 if has_period else None
