"""Core data models shared by all pipeline stages."""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from enum import Enum

import pandas as pd


class ActivityType(str, Enum):
    """Canonical ledger activity types."""

    BUY = "BUY"
    SELL = "SELL"
    DIVIDEND = "DIVIDEND"
    TAX = "TAX"
    FEE = "FEE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    INTEREST = "INTEREST"
    UNKNOWN = "UNKNOWN"

    @property
    def is_trade(self) -> bool:
        """Return True for share-carrying activity types."""
        return self in (ActivityType.BUY, ActivityType.SELL)


class Classification(str, Enum):
    """Outcome of classifying one provider row."""

    STOCK_BUY = "STOCK_BUY"
    STOCK_SELL = "STOCK_SELL"
    DIVIDEND_PAYMENT = "DIVIDEND_PAYMENT"
    DIVIDEND_TAX = "DIVIDEND_TAX"
    FEE = "FEE"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"
    TRANSFER_IN = "TRANSFER_IN"
    TRANSFER_OUT = "TRANSFER_OUT"
    INTEREST = "INTEREST"
    FX_DEPOSIT = "FX_DEPOSIT"
    FX_WITHDRAWAL = "FX_WITHDRAWAL"
    FX_CONVERSION = "FX_CONVERSION"
    FX_ADJUSTMENT = "FX_ADJUSTMENT"
    SUMMARY_ROW = "SUMMARY_ROW"
    EMPTY_ROW = "EMPTY_ROW"
    SECTION_DUPLICATE = "SECTION_DUPLICATE"
    UNKNOWN = "UNKNOWN"


RawRow = dict[str, str]


@dataclass(frozen=True, slots=True)
class RowClassification:
    """Classification tag with import decision and skip reason."""

    classification: Classification
    should_import: bool
    reason: str = ""


@dataclass(slots=True)
class ClassifiedRow:
    """Provider row tagged with its activity kind after field relocation."""

    kind: ActivityType
    classification: Classification
    fields: RawRow

    def get(self, name: str, default: str = "") -> str:
        """Return trimmed field value."""
        return (self.fields.get(name) or default).strip()


@dataclass(frozen=True, slots=True)
class Activity:
    """Normalized ledger activity ready for import."""

    date: str
    symbol: str
    activity_type: ActivityType
    quantity: float
    unit_price: float
    amount: float
    fee: float
    currency: str
    comment: str = ""
    account_id: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return plain mapping with enum values unwrapped."""
        payload = asdict(self)
        payload["activity_type"] = self.activity_type.value
        return payload


@dataclass(frozen=True, slots=True)
class ExistingActivity:
    """Activity as persisted by the host ledger."""

    activity_date: str | date | datetime
    asset_id: str
    activity_type: str
    quantity: float = 0.0
    unit_price: float = 0.0
    amount: float | None = None
    fee: float = 0.0
    currency: str = ""
    comment: str = ""


@dataclass(frozen=True, slots=True)
class Account:
    """Currency sub-ledger in the host ledger."""

    id: str
    name: str
    currency: str
    group: str = ""


@dataclass(frozen=True, slots=True)
class AccountPreview:
    """Target sub-ledger for one currency, reused when ``existing_account`` is set."""

    currency: str
    name: str
    group: str = ""
    existing_account: Account | None = None


@dataclass(frozen=True, slots=True)
class ConversionError:
    """Row that raised while being converted into an activity."""

    message: str
    row: RawRow


@dataclass(frozen=True, slots=True)
class TransactionSummary:
    """Per-category activity counts for one transaction group."""

    trades: int = 0
    dividends: int = 0
    deposits: int = 0
    withdrawals: int = 0
    fees: int = 0
    other: int = 0

    @classmethod
    def from_activities(cls, activities: list[Activity]) -> "TransactionSummary":
        """Count activities per summary category."""
        counts = {name: 0 for name in ("trades", "dividends", "deposits", "withdrawals", "fees")}
        other = 0
        for activity in activities:
            match activity.activity_type:
                case ActivityType.BUY | ActivityType.SELL:
                    counts["trades"] += 1
                case ActivityType.DIVIDEND:
                    counts["dividends"] += 1
                case ActivityType.DEPOSIT | ActivityType.TRANSFER_IN:
                    counts["deposits"] += 1
                case ActivityType.WITHDRAWAL | ActivityType.TRANSFER_OUT:
                    counts["withdrawals"] += 1
                case ActivityType.FEE | ActivityType.TAX:
                    counts["fees"] += 1
                case _:
                    other += 1
        return cls(other=other, **counts)


@dataclass(slots=True)
class TransactionGroup:
    """Activities destined for one currency sub-ledger."""

    currency: str
    account_name: str
    transactions: list[Activity] = field(default_factory=list)
    summary: TransactionSummary = field(default_factory=TransactionSummary)

    def to_dataframe(self) -> pd.DataFrame:
        """Return transactions as a dataframe, one row per activity."""
        columns = [
            "date",
            "symbol",
            "activity_type",
            "quantity",
            "unit_price",
            "amount",
            "fee",
            "currency",
            "comment",
        ]
        if not self.transactions:
            return pd.DataFrame(columns=columns)
        df = pd.DataFrame([activity.to_dict() for activity in self.transactions])
        return df[columns]
