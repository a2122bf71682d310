"""Ordered free-text patterns used to interpret provider descriptions."""

import re
from dataclasses import dataclass

from ibkr_ledger.normalizers import normalize_numeric_value


@dataclass(frozen=True, slots=True)
class DividendInfo:
    """Currency and per-share rate parsed from a dividend description."""

    currency: str
    per_share: float


DIVIDEND_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"Cash Dividend ([A-Z]{3}) ([\d.]+) per Share", re.IGNORECASE),
    re.compile(r"Cash Dividend ([A-Z]{3}) ([\d.]+)(?:\s|\()", re.IGNORECASE),
)
TAX_COUNTRY_PATTERN = re.compile(r"- [A-Z]{2} TAX", re.IGNORECASE)
_SYMBOL_PREFIX = re.compile(r"^([A-Za-z0-9]+)\(")
_DIVIDEND_COMMENT = re.compile(r"CASH DIVIDEND (.+?)(?:\s*-|$)", re.IGNORECASE)
_TRAILING_AMOUNT = re.compile(r"\s([\d.]+)$")
_DEBIT_INTEREST_CURRENCY = re.compile(r"^([A-Z]{3}) Debit Int", re.IGNORECASE)


def parse_dividend_info(
    text: str | None,
    patterns: tuple[re.Pattern[str], ...] = DIVIDEND_PATTERNS,
) -> DividendInfo | None:
    """Return currency and per-share rate from the first matching pattern."""
    if not text:
        return None
    for pattern in patterns:
        if match := pattern.search(text):
            if (per_share := normalize_numeric_value(match.group(2))) is None:
                continue
            return DividendInfo(match.group(1).upper(), per_share)
    return None


def extract_dividend_per_share(text: str | None) -> float | None:
    """Return per-share dividend rate, if the text describes one."""
    info = parse_dividend_info(text)
    return None if info is None else info.per_share


def extract_symbol_from_description(text: str | None) -> str:
    """Return upper-cased ticker preceding the ISIN parenthesis."""
    match = _SYMBOL_PREFIX.match(text or "")
    return match.group(1).upper() if match else ""


def extract_dividend_comment(text: str | None) -> str:
    """Return the rate part of a dividend description, e.g. ``USD 0.05 PER SHARE``."""
    match = _DIVIDEND_COMMENT.search(text or "")
    return match.group(1).strip() if match else (text or "")


def parse_trailing_amount(text: str | None) -> float | None:
    """Return the number that ends a description such as ``... Tax HESAY 6``."""
    match = _TRAILING_AMOUNT.search(text or "")
    return None if match is None else normalize_numeric_value(match.group(1))


def parse_debit_interest_currency(text: str | None) -> str | None:
    """Return currency of a ``USD Debit Interest ...`` description."""
    match = _DEBIT_INTEREST_CURRENCY.match(text or "")
    return match.group(1).upper() if match else None


def is_withholding_tax_description(text: str | None) -> bool:
    """Return True for ``- XX TAX`` suffixed dividend descriptions."""
    return TAX_COUNTRY_PATTERN.search(text or "") is not None
