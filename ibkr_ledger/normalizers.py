"""Coercion of provider-formatted strings into numbers and dates."""

import math
import re
from datetime import date, datetime, timezone

_CURRENCY_SYMBOLS = re.compile(r"[$£€¥₹₦₽¢]")
_IGNORED_CHARACTERS = re.compile(r"[,\s()]")
_FLOAT_PREFIX = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?")
_PLAIN_NUMBER = re.compile(r"^-?\d+\.?\d*$")
_ISO_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")
_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})(?:[;, ].*)?$")
_INVALID_LITERALS = frozenset({"", "-", "N/A", "null", "NULL"})


def normalize_numeric_value(raw: object) -> float | None:
    """Parse provider numeric text, returning None for anything that is not a number.

    Currency symbols, thousands separators, whitespace and parentheses are dropped before
    parsing. Parentheses do not negate the value. Like ``parseFloat``, the longest leading
    numeric prefix is parsed, so ``"12abc"`` yields 12.0 while ``"abc"`` is invalid.
    """
    if isinstance(raw, bool) or raw is None:
        return None
    if isinstance(raw, (int, float)):
        return None if math.isnan(raw) else float(raw)
    text = str(raw).strip()
    if text in _INVALID_LITERALS or text.lower() == "null":
        return None
    cleaned = _IGNORED_CHARACTERS.sub("", _CURRENCY_SYMBOLS.sub("", text))
    if not (match := _FLOAT_PREFIX.match(cleaned)):
        return None
    value = float(match.group(0))
    return None if math.isnan(value) else value


def numeric_or_zero(raw: object) -> float:
    """Parse numeric text, defaulting to 0.0 for invalid input."""
    value = normalize_numeric_value(raw)
    return 0.0 if value is None else value


def is_plain_number(text: str | None) -> bool:
    """Return True for unformatted decimal text such as ``-7.7``."""
    return bool(text) and _PLAIN_NUMBER.match(str(text).strip()) is not None


def canonical_date(value: date | datetime | str | None) -> str:
    """Reduce a date, timestamp or ISO-like string to ``YYYY-MM-DD``.

    Strings without an ISO date prefix are returned unchanged.
    """
    if value is None or value == "":
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    if match := _ISO_DATE_PREFIX.match(text):
        return match.group(1)
    return text


def report_date(value: str | None) -> str:
    """Return ISO date for report date fields, expanding compact ``YYYYMMDD[;HHMMSS]`` values."""
    text = (value or "").strip()
    if match := _COMPACT_DATE.match(text):
        year, month, day = match.groups()
        return f"{year}-{month}-{day}"
    return canonical_date(text.split(" ")[0]) if text else ""


def format_fingerprint_number(value: float | int | None) -> str:
    """Format number with six decimals, mapping missing values to zero."""
    if value is None or (isinstance(value, float) and math.isnan(value)):
        return "0.000000"
    text = f"{float(value):.6f}"
    return "0.000000" if text == "-0.000000" else text


def normalize_text(value: str | None) -> str:
    """Trim and upper-case free text for comparison."""
    return (value or "").strip().upper()
