"""Rule-based classification and field relocation of raw report rows.

Rows coming from different report sections reuse column names for different data. Each row is
classified first, then interpreted according to its classification, so the decision about
which section a row belongs to happens in exactly one place.
"""

from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from ibkr_ledger import descriptions
from ibkr_ledger.config import (
    ActivityType,
    Classification,
    ClassifiedRow,
    RawRow,
    RowClassification,
)
from ibkr_ledger.exchanges import EXCHANGE_TO_CURRENCY, create_cash_symbol, currency_for_exchange
from ibkr_ledger.logging_setup import get_logger
from ibkr_ledger.normalizers import is_plain_number, normalize_numeric_value

logger = get_logger(__name__)

CLASSIFICATION_KINDS: Mapping[Classification, ActivityType] = MappingProxyType(
    {
        Classification.STOCK_BUY: ActivityType.BUY,
        Classification.STOCK_SELL: ActivityType.SELL,
        Classification.DIVIDEND_PAYMENT: ActivityType.DIVIDEND,
        Classification.DIVIDEND_TAX: ActivityType.TAX,
        Classification.FEE: ActivityType.FEE,
        Classification.DEPOSIT: ActivityType.DEPOSIT,
        Classification.WITHDRAWAL: ActivityType.WITHDRAWAL,
        Classification.FX_DEPOSIT: ActivityType.TRANSFER_IN,
        Classification.FX_WITHDRAWAL: ActivityType.TRANSFER_OUT,
        Classification.TRANSFER_IN: ActivityType.TRANSFER_IN,
        Classification.TRANSFER_OUT: ActivityType.TRANSFER_OUT,
        Classification.INTEREST: ActivityType.INTEREST,
    }
)

# Activity codes that only exist at the base-currency reporting level.
BASE_CURRENCY_ONLY_CODES = frozenset({"DIV", "TTAX", "STAX"})

Rule = Callable[["_RowFacts"], RowClassification | None]


def _imported(classification: Classification) -> RowClassification:
    """Return importable classification."""
    return RowClassification(classification, True)


def _skipped(classification: Classification, reason: str) -> RowClassification:
    """Return skip classification with reason."""
    return RowClassification(classification, False, reason)


@dataclass(frozen=True, slots=True)
class _RowFacts:
    """Trimmed fields consulted by classification rules."""

    row: Mapping[str, str]
    exchange: str
    transaction_type: str
    buy_sell: str
    notes: str
    description: str
    activity_description: str
    direction: str
    principal_adjust_factor: str
    level_of_detail: str
    activity_code: str
    asset_class: str

    @classmethod
    def from_row(cls, row: Mapping[str, str]) -> "_RowFacts":
        """Build facts from one raw row."""

        def get(name: str) -> str:
            return (row.get(name) or "").strip()

        return cls(
            row=row,
            exchange=get("Exchange"),
            transaction_type=get("TransactionType"),
            buy_sell=get("Buy/Sell"),
            notes=get("Notes/Codes"),
            description=get("Description"),
            activity_description=get("ActivityDescription"),
            direction=get("_TRANSFER_DIRECTION"),
            principal_adjust_factor=get("PrincipalAdjustFactor"),
            level_of_detail=get("LevelOfDetail"),
            activity_code=get("ActivityCode"),
            asset_class=get("AssetClass"),
        )

    def number(self, name: str) -> float | None:
        """Return parsed numeric field."""
        return normalize_numeric_value(self.row.get(name))


@dataclass(slots=True)
class PreprocessResult:
    """Importable classified rows plus skip statistics."""

    rows: list[ClassifiedRow] = field(default_factory=list)
    skipped: int = 0
    classifications: Counter[Classification] = field(default_factory=Counter)
    skip_reasons: Counter[str] = field(default_factory=Counter)


class RowClassifier:
    """Ordered rule engine assigning canonical classifications to report rows."""

    def __init__(self, exchange_currencies: Mapping[str, str] = EXCHANGE_TO_CURRENCY) -> None:
        """Store exchange table and build the ordered rule list."""
        self.exchange_currencies = exchange_currencies
        self.rules: tuple[Rule, ...] = (
            self._cash_transfer,
            self._summary_or_empty,
            self._base_currency_duplicate,
            self._currency_conversion,
            self._equity_trade,
            self._dividend_family,
            self._fee_family,
            self._deposit_or_withdrawal,
            self._interest,
            self._transaction_tax,
            self._stale_section_code,
            self._fx_adjustment,
        )

    def classify(self, row: Mapping[str, str]) -> RowClassification:
        """Return classification of the first matching rule."""
        facts = _RowFacts.from_row(row)
        for rule in self.rules:
            if (result := rule(facts)) is not None:
                return result
        return _skipped(Classification.UNKNOWN, "Unknown IBKR transaction type")

    def preprocess(self, rows: Iterable[Mapping[str, str]]) -> PreprocessResult:
        """Classify every row and relocate fields of importable ones."""
        result = PreprocessResult()
        for row in rows:
            classification = self.classify(row)
            result.classifications[classification.classification] += 1
            if not classification.should_import:
                result.skipped += 1
                result.skip_reasons[classification.reason] += 1
                logger.debug("Skipped row: %s", classification.reason)
                continue
            result.rows.extend(self._relocate(dict(row), classification.classification))
        logger.info(
            "Classified %d rows, skipped %d",
            sum(result.classifications.values()),
            result.skipped,
        )
        return result

    def _cash_transfer(self, facts: _RowFacts) -> RowClassification | None:
        """Internal cash transfers carry an explicit direction marker."""
        if not (
            facts.transaction_type == "INTERNAL"
            and facts.direction
            and facts.asset_class == "CASH"
        ):
            return None
        amount = facts.number("TradeMoney")
        if not amount:
            return None
        match facts.direction:
            case "IN":
                return _imported(Classification.TRANSFER_IN)
            case "OUT":
                return _imported(Classification.TRANSFER_OUT)
        return None

    def _summary_or_empty(self, facts: _RowFacts) -> RowClassification | None:
        """Balance summaries and blank rows are not transactions."""
        if facts.level_of_detail == "Currency" and not facts.activity_code:
            return _skipped(Classification.SUMMARY_ROW, "Currency balance summary row skipped")
        if facts.level_of_detail == "SUMMARY":
            return _skipped(Classification.SUMMARY_ROW, "Position summary row skipped")
        if not any(
            (
                facts.level_of_detail,
                facts.activity_code,
                facts.transaction_type,
                facts.exchange,
                facts.notes,
                facts.description,
            )
        ):
            return _skipped(Classification.EMPTY_ROW, "Empty row skipped")
        return None

    def _base_currency_duplicate(self, facts: _RowFacts) -> RowClassification | None:
        """Base-currency equivalents duplicate the per-currency rows."""
        if facts.level_of_detail != "BaseCurrency":
            return None
        if facts.activity_code in BASE_CURRENCY_ONLY_CODES:
            return None
        if facts.activity_code == "OFEE":
            if (amount := facts.number("Amount")) is not None and amount > 0:
                return _skipped(Classification.SECTION_DUPLICATE, "OFEE credit/refund skipped")
            return None
        return _skipped(
            Classification.SECTION_DUPLICATE,
            "BaseCurrency level row skipped (using Currency level instead)",
        )

    def _currency_conversion(self, facts: _RowFacts) -> RowClassification | None:
        """Conversion summaries are skipped, IDEALFX details carry the direction."""
        if facts.activity_code == "FOREX":
            return _skipped(
                Classification.FX_CONVERSION,
                "FX summary row (skipped - using IDEALFX row instead)",
            )
        if "IDEALFX" not in (facts.activity_description, facts.exchange):
            return None
        money = facts.number("TradeMoney")
        price = facts.number("TradePrice")
        if money and price:
            if facts.buy_sell == "SELL" or money < 0:
                return _imported(Classification.FX_DEPOSIT)
            if facts.buy_sell == "BUY" or money > 0:
                return _imported(Classification.FX_WITHDRAWAL)
        return _skipped(
            Classification.FX_CONVERSION,
            "Currency conversion transaction (skipped - no valid amount/price)",
        )

    def _equity_trade(self, facts: _RowFacts) -> RowClassification | None:
        """Exchange trades with an explicit direction."""
        if facts.transaction_type != "ExchTrade":
            return None
        match facts.buy_sell:
            case "BUY":
                return _imported(Classification.STOCK_BUY)
            case "SELL":
                return _imported(Classification.STOCK_SELL)
        return None

    def _dividend_family(self, facts: _RowFacts) -> RowClassification | None:
        """Dividends, their withholding taxes and dividend-related fees."""
        if facts.notes == "Withholding Tax":
            return _imported(Classification.DIVIDEND_TAX)
        if "CASH DIVIDEND" in facts.description.upper() or facts.activity_code == "DIV":
            if facts.notes == "Other Fees" or "- FEE" in facts.description:
                return _imported(Classification.FEE)
            if facts.principal_adjust_factor == "Withholding Tax" or (
                descriptions.is_withholding_tax_description(facts.description)
            ):
                return _imported(Classification.DIVIDEND_TAX)
            return _imported(Classification.DIVIDEND_PAYMENT)
        if facts.activity_code == "FRTAX":
            return _skipped(
                Classification.DIVIDEND_TAX,
                "FRTAX skipped - actual tax recorded in original currency",
            )
        return None

    def _fee_family(self, facts: _RowFacts) -> RowClassification | None:
        """Other fees, VAT and charges."""
        upper = facts.description.upper()
        if (
            facts.notes == "Other Fees"
            or facts.activity_code in ("OFEE", "STAX")
            or "FEE" in upper
            or "CHARGE" in upper
            or "VAT " in upper
        ):
            return _imported(Classification.FEE)
        return None

    def _deposit_or_withdrawal(self, facts: _RowFacts) -> RowClassification | None:
        """Cash deposits and withdrawals signed by amount."""
        marker = "Deposits/Withdrawals"
        if marker not in (facts.notes, facts.principal_adjust_factor):
            return None
        amount = facts.number("TradeMoney")
        if amount is None or amount == 0:
            return None
        return _imported(Classification.DEPOSIT if amount > 0 else Classification.WITHDRAWAL)

    def _interest(self, facts: _RowFacts) -> RowClassification | None:
        """Credit interest is income, debit interest is an expense."""
        upper = facts.description.upper()
        if not (
            "INTEREST" in upper
            or "INT FOR" in upper
            or "interest" in facts.notes.lower()
            or facts.activity_code == "DINT"
        ):
            return None
        if "DEBIT INT" in upper or facts.activity_code == "DINT":
            return _imported(Classification.FEE)
        return _imported(Classification.INTEREST)

    def _transaction_tax(self, facts: _RowFacts) -> RowClassification | None:
        """Market transaction taxes are fees."""
        if facts.activity_code == "TTAX":
            return _imported(Classification.FEE)
        return None

    def _stale_section_code(self, facts: _RowFacts) -> RowClassification | None:
        """Secondary-section copies of deposits, withdrawals and buys."""
        code = facts.activity_code
        if (
            code == "DEP"
            and facts.notes != "Deposits/Withdrawals"
            and facts.transaction_type != "ExchTrade"
        ):
            return _skipped(
                Classification.SECTION_DUPLICATE, "Section 2 deposit duplicate skipped"
            )
        if code == "WITH":
            return _skipped(
                Classification.SECTION_DUPLICATE, "Section 2 withdrawal duplicate skipped"
            )
        if code == "BUY" and facts.transaction_type != "ExchTrade":
            return _skipped(
                Classification.SECTION_DUPLICATE,
                "Section 2 buy duplicate skipped (base currency equivalent)",
            )
        return None

    def _fx_adjustment(self, facts: _RowFacts) -> RowClassification | None:
        """FX translation adjustments are accounting entries only."""
        if facts.activity_code == "ADJ":
            return _skipped(
                Classification.FX_ADJUSTMENT, "FX translation adjustment skipped (accounting only)"
            )
        return None

    def _relocate(self, row: RawRow, classification: Classification) -> list[ClassifiedRow]:
        """Move section-shifted values into canonical fields."""
        if symbol := row.get("Symbol"):
            row["Symbol"] = symbol.upper()
        kind = CLASSIFICATION_KINDS[classification]
        match classification:
            case Classification.DIVIDEND_PAYMENT | Classification.DIVIDEND_TAX:
                _relocate_dividend(row, classification)
            case Classification.DEPOSIT | Classification.WITHDRAWAL:
                _relocate_cash_movement(row)
            case Classification.TRANSFER_IN | Classification.TRANSFER_OUT:
                _relocate_cash_movement(row)
                if (amount := normalize_numeric_value(row.get("TradeMoney"))) is not None:
                    row["TradeMoney"] = str(abs(amount))
            case Classification.FX_DEPOSIT | Classification.FX_WITHDRAWAL:
                return _expand_currency_conversion(row, classification)
            case Classification.FEE | Classification.INTEREST:
                self._relocate_cash_charge(row)
            case Classification.STOCK_BUY | Classification.STOCK_SELL:
                for name in ("Quantity", "TradePrice", "IBCommission"):
                    if (value := normalize_numeric_value(row.get(name) or None)) is not None:
                        row[name] = str(abs(value))
        return [ClassifiedRow(kind, classification, row)]

    def _relocate_cash_charge(self, row: RawRow) -> None:
        """Fees and interest take amount and currency from section-specific columns."""
        if amount := row.get("Amount") or row.get("Debit") or row.get("NetCash"):
            row["TradeMoney"] = amount
        code = (row.get("ActivityCode") or "").strip()
        text = row.get("ActivityDescription") or row.get("Description") or ""
        currency = row.get("CurrencyPrimary") or "USD"
        if code == "DINT" and (parsed := descriptions.parse_debit_interest_currency(text)):
            currency = parsed
        if code == "TTAX" and (
            exchange_currency := currency_for_exchange(
                row.get("ListingExchange"), self.exchange_currencies
            )
        ):
            currency = exchange_currency
        row["Symbol"] = create_cash_symbol(currency)
        row["CurrencyPrimary"] = currency
        row["Quantity"] = "0"
        row["TradePrice"] = "0"


def _relocate_dividend(row: RawRow, classification: Classification) -> None:
    """Dividend rows keep amount, exchange and date in shifted columns."""
    original = dict(row)
    trade_date = (original.get("TradeDate") or "").strip()
    if amount := _dividend_amount(original):
        row["TradeMoney"] = amount
    exchange = (original.get("Exchange") or "").strip()
    listing_exchange = (original.get("ListingExchange") or "").strip()
    if exchange.isdigit() and listing_exchange:
        row["Exchange"] = listing_exchange
    elif exchange or listing_exchange:
        row["Exchange"] = exchange or listing_exchange
    date_time = (original.get("DateTime") or "").strip()
    if date := (date_time if is_plain_number(trade_date) else trade_date or date_time):
        row["TradeDate"] = date
    description = original.get("Description") or ""
    if not original.get("Symbol"):
        if symbol := descriptions.extract_symbol_from_description(description):
            row["Symbol"] = symbol
    row["Quantity"] = "0"
    row["TradePrice"] = "0"
    if classification is Classification.DIVIDEND_PAYMENT:
        row["Description"] = descriptions.extract_dividend_comment(description)
    else:
        row["Description"] = description


def _dividend_amount(row: Mapping[str, str]) -> str | None:
    """Return the first plain-number amount among the dividend amount columns."""
    for name in ("Amount", "TradeMoney", "TradeDate"):
        if is_plain_number(value := (row.get(name) or "").strip()):
            return value
    return (row.get("NetCash") or "").strip() or None


def _relocate_cash_movement(row: RawRow) -> None:
    """Deposits, withdrawals and transfers settle against the cash placeholder."""
    row["Symbol"] = create_cash_symbol(row.get("CurrencyPrimary") or "USD")
    row["Quantity"] = "0"
    row["TradePrice"] = "0"


def _expand_currency_conversion(
    row: RawRow,
    classification: Classification,
) -> list[ClassifiedRow]:
    """Expand one IDEALFX detail row into commission, source and target rows.

    All expanded rows share a description token so the pair can be audited later.
    """
    symbol = row.get("Symbol") or ""
    parts = symbol.split(".")
    source_currency = parts[0] if len(parts) == 2 else "USD"
    target_currency = row.get("CurrencyPrimary") or (parts[1] if len(parts) == 2 else "USD")
    trade_date = row.get("Date") or row.get("TradeDate") or ""
    trade_id = row.get("TradeID") or ""
    selling_source = classification is Classification.FX_DEPOSIT
    expanded: list[ClassifiedRow] = []

    commission = normalize_numeric_value(row.get("IBCommission"))
    if commission:
        commission_currency = row.get("IBCommissionCurrency") or source_currency
        fee_row = {
            **row,
            "CurrencyPrimary": commission_currency,
            "Symbol": create_cash_symbol(commission_currency),
            "TradeMoney": str(abs(commission)),
            "Quantity": "0",
            "TradePrice": "0",
            "IBCommission": "0",
            "Description": f"FX commission: {symbol}:{trade_date}:{trade_id}",
        }
        expanded.append(ClassifiedRow(ActivityType.FEE, classification, fee_row))

    money = normalize_numeric_value(row.get("TradeMoney"))
    price = normalize_numeric_value(row.get("TradePrice"))
    if money is None or not price:
        return expanded
    reference = f"FX:{symbol}:{trade_date}:{trade_id}"
    source_row = {
        **row,
        "CurrencyPrimary": source_currency,
        "Symbol": create_cash_symbol(source_currency),
        "TradeMoney": str(abs(money) / price),
        "Quantity": "0",
        "TradePrice": "0",
        "IBCommission": "0",
        "Description": reference,
    }
    target_row = {
        **row,
        "CurrencyPrimary": target_currency,
        "Symbol": create_cash_symbol(target_currency),
        "TradeMoney": str(abs(money)),
        "Quantity": "0",
        "TradePrice": "0",
        "IBCommission": "0",
        "Description": reference,
    }
    source_kind = ActivityType.TRANSFER_OUT if selling_source else ActivityType.TRANSFER_IN
    target_kind = ActivityType.TRANSFER_IN if selling_source else ActivityType.TRANSFER_OUT
    expanded.append(ClassifiedRow(source_kind, classification, source_row))
    expanded.append(ClassifiedRow(target_kind, classification, target_row))
    return expanded
