"""Engine settings read from the environment (and an optional .env file)."""

import os
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return float(value)


# Currency every cost basis and realized/unrealized figure is reported in.
REPORTING_CURRENCY: str = os.getenv("INVESTLEDGER_REPORTING_CURRENCY", "TWD").upper()

# Storage precision for recorded values (decimal places).
SHARE_DECIMALS: int = _env_int("INVESTLEDGER_SHARE_DECIMALS", 4)
PRICE_DECIMALS: int = _env_int("INVESTLEDGER_PRICE_DECIMALS", 4)
FEE_DECIMALS: int = _env_int("INVESTLEDGER_FEE_DECIMALS", 2)
RATE_DECIMALS: int = _env_int("INVESTLEDGER_RATE_DECIMALS", 6)

# XIRR solver
XIRR_INITIAL_GUESS: float = _env_float("INVESTLEDGER_XIRR_INITIAL_GUESS", 0.1)
XIRR_MAX_ITERATIONS: int = _env_int("INVESTLEDGER_XIRR_MAX_ITERATIONS", 100)
XIRR_TOLERANCE: float = _env_float("INVESTLEDGER_XIRR_TOLERANCE", 1e-7)
XIRR_LOWER_BOUND: float = _env_float("INVESTLEDGER_XIRR_LOWER_BOUND", -0.9999)
XIRR_UPPER_BOUND: float = _env_float("INVESTLEDGER_XIRR_UPPER_BOUND", 10.0)
XIRR_MAX_UPPER_BOUND: float = _env_float("INVESTLEDGER_XIRR_MAX_UPPER_BOUND", 1_000_000.0)
DAYS_PER_YEAR: int = _env_int("INVESTLEDGER_DAYS_PER_YEAR", 365)

# Seconds a unit of work waits for a ledger or instrument lock (negative waits forever)
LOCK_TIMEOUT_SECONDS: float = _env_float("INVESTLEDGER_LOCK_TIMEOUT_SECONDS", 10.0)


def quantum(decimals: int) -> Decimal:
    """Return the Decimal exponent used to quantize to ``decimals`` places."""
    return Decimal(1).scaleb(-decimals)
