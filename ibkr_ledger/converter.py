"""Reconstruction of settlement currency and amount for classified rows."""

from bisect import bisect_right
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType

import pandas as pd

from ibkr_ledger.config import (
    Activity,
    AccountPreview,
    ActivityType,
    ClassifiedRow,
    ConversionError,
)
from ibkr_ledger.descriptions import parse_dividend_info, parse_trailing_amount
from ibkr_ledger.exchanges import EXCHANGE_TO_CURRENCY, create_cash_symbol, currency_for_exchange
from ibkr_ledger.fx_splitter import CURRENCY_PAIR_PATTERN
from ibkr_ledger.logging_setup import get_logger
from ibkr_ledger.normalizers import numeric_or_zero, report_date

logger = get_logger(__name__)

RESOLVED_TICKER_FIELD = "_RESOLVED_TICKER"
MAX_PLAUSIBLE_FX_RATE = 1000.0

_CONVERSION_EXCEPTIONS = (ArithmeticError, AttributeError, LookupError, TypeError, ValueError)


@dataclass(frozen=True, slots=True)
class _DatedSeries:
    """Date-sorted values supporting at-or-before lookups."""

    dates: tuple[str, ...]
    values: tuple[float, ...]

    def at_or_before(self, on_date: str) -> float | None:
        """Return latest value dated on or before ``on_date``."""
        index = bisect_right(self.dates, on_date)
        return self.values[index - 1] if index else None


class PositionHistory:
    """Cumulative share positions per symbol, built once and read-only afterwards."""

    def __init__(self, series: Mapping[str, _DatedSeries]) -> None:
        self._series = MappingProxyType(dict(series))

    @classmethod
    def from_rows(cls, rows: Iterable[ClassifiedRow]) -> "PositionHistory":
        """Scan BUY/SELL rows in date order and snapshot running positions."""
        records = [
            {
                "symbol": symbol,
                "date": report_date(row.get("Date") or row.get("TradeDate")),
                "quantity": (1 if row.kind is ActivityType.BUY else -1)
                * numeric_or_zero(row.get("Quantity")),
            }
            for row in rows
            if row.kind.is_trade and (symbol := row.get("Symbol").upper())
        ]
        if not records:
            return cls({})
        df = pd.DataFrame(records).sort_values("date", kind="stable")
        df["position"] = df.groupby("symbol", sort=False)["quantity"].cumsum()
        return cls(
            {
                str(symbol): _DatedSeries(tuple(group["date"]), tuple(group["position"]))
                for symbol, group in df.groupby("symbol", sort=False)
            }
        )

    def position_at(self, symbol: str, on_date: str) -> float:
        """Return position after the last trade on or before ``on_date``, else 0."""
        if (series := self._series.get(symbol.upper())) is None:
            return 0.0
        position = series.at_or_before(on_date)
        return 0.0 if position is None else float(position)


class FxRateLookup:
    """Executed conversion rates keyed by ``BASE/QUOTE``, stored in both directions."""

    def __init__(self, series: Mapping[str, _DatedSeries]) -> None:
        self._series = MappingProxyType(dict(series))

    @classmethod
    def from_rows(cls, rows: Iterable[Mapping[str, str]]) -> "FxRateLookup":
        """Collect plausible rates from executed currency-pair trade rows."""
        records: list[dict[str, object]] = []
        for row in rows:
            symbol = row.get("Symbol") or ""
            if "." not in symbol or row.get("LevelOfDetail") != "EXECUTION":
                continue
            if len(parts := symbol.split(".")) != 2:
                continue
            base, quote = parts
            rate = numeric_or_zero(row.get("TradePrice"))
            if rate <= 0 or rate > MAX_PLAUSIBLE_FX_RATE:
                continue
            if not (raw_date := row.get("TradeDate") or row.get("ReportDate") or row.get("Date")):
                continue
            on_date = report_date(raw_date)
            records.append({"pair": f"{base}/{quote}", "date": on_date, "rate": rate})
            records.append({"pair": f"{quote}/{base}", "date": on_date, "rate": 1 / rate})
        if not records:
            return cls({})
        df = pd.DataFrame(records).sort_values("date", kind="stable")
        return cls(
            {
                str(pair): _DatedSeries(tuple(group["date"]), tuple(group["rate"]))
                for pair, group in df.groupby("pair", sort=False)
            }
        )

    def rate(self, base: str, target: str, on_date: str) -> float | None:
        """Return closest rate on or before ``on_date``, else the earliest future rate."""
        if (series := self._series.get(f"{base}/{target}")) is None or not series.dates:
            return None
        rate = series.at_or_before(on_date)
        return float(series.values[0] if rate is None else rate)


@dataclass(slots=True)
class ConversionResult:
    """Activities built from classified rows with per-row problems."""

    activities: list[Activity] = field(default_factory=list)
    errors: list[ConversionError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    skipped: int = 0


class ActivityConverter:
    """Convert classified rows into activities denominated in their settlement currency."""

    def __init__(self, exchange_currencies: Mapping[str, str] = EXCHANGE_TO_CURRENCY) -> None:
        """Store exchange-to-currency table."""
        self.exchange_currencies = exchange_currencies

    def convert(
        self,
        rows: Sequence[ClassifiedRow],
        account_previews: Sequence[AccountPreview],
        fx_source_rows: Iterable[Mapping[str, str]] | None = None,
    ) -> ConversionResult:
        """Convert rows, dropping those without a usable date or a target sub-ledger.

        ``fx_source_rows`` should be the raw report rows, since classification rewrites the
        currency-pair trades that carry conversion rates.
        """
        fx_rates = FxRateLookup.from_rows(
            fx_source_rows if fx_source_rows is not None else (row.fields for row in rows)
        )
        positions = PositionHistory.from_rows(rows)
        currencies = {preview.currency for preview in account_previews}
        result = ConversionResult()
        for row in rows:
            try:
                activity = self._convert_row(row, positions, fx_rates, result.warnings)
            except _CONVERSION_EXCEPTIONS as error:
                logger.exception("Error converting row: %s", row.fields)
                result.errors.append(ConversionError(str(error), dict(row.fields)))
                continue
            if activity is None:
                result.skipped += 1
                continue
            if activity.currency not in currencies:
                self._warn(
                    result.warnings,
                    f"No account found for currency {activity.currency}, skipping transaction "
                    f"for {row.get('Symbol') or row.get('ActivityDescription')}",
                )
                result.skipped += 1
                continue
            result.activities.append(activity)
        return result

    def transaction_currency(self, row: ClassifiedRow, base_currency: str) -> str:
        """Return the currency a row actually settled in."""
        code = row.get("ActivityCode")
        exchange_currency = currency_for_exchange(
            row.get("ListingExchange"), self.exchange_currencies
        )
        if code in ("TTAX", "OFEE") and exchange_currency:
            return exchange_currency
        if not row.kind.is_trade:
            return base_currency
        if CURRENCY_PAIR_PATTERN.match(row.get("Symbol").strip().upper()):
            return base_currency
        return exchange_currency or base_currency

    def _convert_row(
        self,
        row: ClassifiedRow,
        positions: PositionHistory,
        fx_rates: FxRateLookup,
        warnings: list[str],
    ) -> Activity | None:
        """Build one activity, or return None when the row has no usable date."""
        if not (activity_date := report_date(row.get("Date") or row.get("TradeDate"))):
            activity_date = report_date(row.get("ReportDate"))
        if not activity_date:
            self._warn(warnings, f"Row without date skipped: {row.get('Description')}")
            return None
        base_currency = row.get("CurrencyPrimary") or "USD"
        currency = self.transaction_currency(row, base_currency)
        quantity = numeric_or_zero(row.get("Quantity"))
        unit_price = numeric_or_zero(row.get("TradePrice"))
        literal = abs(numeric_or_zero(row.get("TradeMoney")))
        lookup_date = report_date(
            row.get("Date") or row.get("ReportDate") or row.get("TradeDate")
        )
        symbol = row.get("Symbol").upper()
        fee = abs(numeric_or_zero(row.get("IBCommission")))

        match row.kind:
            case ActivityType.BUY | ActivityType.SELL:
                amount = abs(quantity * unit_price)
                fee += abs(numeric_or_zero(row.get("Taxes")))
            case ActivityType.DIVIDEND | ActivityType.TAX:
                fee = 0.0
                info = parse_dividend_info(row.get("ActivityDescription") or row.get("Description"))
                amount = literal
                if info is not None:
                    currency = info.currency
                    if currency != base_currency:
                        amount = self._foreign_dividend_amount(
                            row.kind,
                            literal,
                            positions.position_at(symbol, lookup_date) * info.per_share,
                            fx_rates.rate(base_currency, currency, lookup_date),
                            f"{base_currency}/{currency} {row.kind.value.lower()}: "
                            f"{symbol} on {lookup_date}",
                            warnings,
                        )
            case _ if row.get("ActivityCode") == "TTAX":
                parsed = parse_trailing_amount(
                    row.get("ActivityDescription") or row.get("Description")
                )
                amount = literal if parsed is None else parsed
            case _ if row.get("ActivityCode") == "OFEE" and currency != base_currency:
                if (rate := fx_rates.rate(base_currency, currency, lookup_date)) and rate > 0:
                    amount = literal * rate
                else:
                    amount = literal
                    self._warn(
                        warnings,
                        f"No FX rate for {base_currency}/{currency} OFEE fee on {lookup_date}, "
                        "amount may be incorrect",
                    )
            case _:
                amount = literal

        if not row.kind.is_trade:
            quantity, unit_price = amount, 1.0
        return Activity(
            date=activity_date,
            symbol=(
                row.get(RESOLVED_TICKER_FIELD)
                or row.get("Symbol")
                or row.get("SecurityID")
                or create_cash_symbol(currency)
            ),
            activity_type=row.kind,
            quantity=quantity,
            unit_price=unit_price,
            amount=amount,
            fee=fee,
            currency=currency,
            comment=row.get("ActivityDescription") or row.get("Description"),
        )

    def _foreign_dividend_amount(
        self,
        kind: ActivityType,
        literal: float,
        gross: float,
        rate: float | None,
        context: str,
        warnings: list[str],
    ) -> float:
        """Recover a foreign-currency dividend or tax from base-currency data.

        ``gross`` is position times per-share rate in the dividend currency. Dividends use it
        directly; taxes scale it by the ratio of the reported tax to the FX-estimated
        base-currency gross dividend.
        """
        has_rate = rate is not None and rate > 0
        if gross > 0 and kind is ActivityType.DIVIDEND:
            return gross
        if gross > 0 and has_rate:
            estimated_base_gross = gross / rate
            return gross * (literal / estimated_base_gross)
        if has_rate:
            return literal * rate
        self._warn(warnings, f"No FX rate or position for {context}, amount may be incorrect")
        return literal

    @staticmethod
    def _warn(warnings: list[str], message: str) -> None:
        """Record and log a degraded-conversion warning."""
        warnings.append(message)
        logger.warning(message)
