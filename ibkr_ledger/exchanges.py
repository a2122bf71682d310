"""Static exchange and cash-symbol lookup data."""

from collections.abc import Mapping
from types import MappingProxyType

CASH_SYMBOL_PREFIX = "$CASH-"

EXCHANGE_TO_CURRENCY: Mapping[str, str] = MappingProxyType(
    {
        "NYSE": "USD",
        "NASDAQ": "USD",
        "AMEX": "USD",
        "ARCA": "USD",
        "BATS": "USD",
        "IEX": "USD",
        "CBOE": "USD",
        "PINK": "USD",
        "LSE": "GBP",
        "LSEIOB1": "GBP",
        "EBS": "CHF",
        "SBF": "EUR",
        "AEB": "EUR",
        "BVME": "EUR",
        "FWB": "EUR",
        "IBIS": "EUR",
        "SEHK": "HKD",
        "TSE": "JPY",
        "SGX": "SGD",
        "ASX": "AUD",
        "OSE": "NOK",
        "SFB": "SEK",
        "KFB": "DKK",
        "TSX": "CAD",
        "VENTURE": "CAD",
    }
)


def currency_for_exchange(
    exchange: str | None,
    table: Mapping[str, str] = EXCHANGE_TO_CURRENCY,
) -> str | None:
    """Return home currency of a listing exchange, if known."""
    if not (code := (exchange or "").strip()):
        return None
    return table.get(code)


def create_cash_symbol(currency: str) -> str:
    """Return placeholder symbol for cash movements in one currency."""
    return f"{CASH_SYMBOL_PREFIX}{currency}"


def is_cash_symbol(symbol: str | None) -> bool:
    """Return True for cash placeholder symbols."""
    return bool(symbol) and str(symbol).startswith(CASH_SYMBOL_PREFIX)


def currency_from_cash_symbol(symbol: str | None) -> str | None:
    """Return currency encoded in a cash placeholder symbol."""
    if not is_cash_symbol(symbol):
        return None
    return str(symbol)[len(CASH_SYMBOL_PREFIX) :]
