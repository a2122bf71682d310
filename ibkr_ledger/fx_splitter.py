"""Replacement of currency-conversion activities with withdrawal/deposit pairs."""

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from ibkr_ledger.config import Account, AccountPreview, Activity, ActivityType
from ibkr_ledger.exchanges import create_cash_symbol
from ibkr_ledger.logging_setup import get_logger

logger = get_logger(__name__)

CURRENCY_PAIR_PATTERN = re.compile(r"^[A-Z]{3}\.[A-Z]{3}$")
CONVERSION_KEYWORDS = ("forex trade", "idealfx")
_CURRENCY_CODE = re.compile(r"^[A-Z]{3}$")


@dataclass(frozen=True, slots=True)
class FxConversion:
    """Parsed currency conversion: ``source_amount`` of one currency bought ``target_amount``."""

    source_currency: str
    target_currency: str
    source_amount: float
    target_amount: float
    date: str
    comment: str


@dataclass(frozen=True, slots=True)
class SkippedFxConversion:
    """Conversion left out of the output because it could not be split."""

    activity: Activity
    reason: str


@dataclass(slots=True)
class FxSplitResult:
    """Activities with conversions expanded, plus conversions that were skipped."""

    transactions: list[Activity] = field(default_factory=list)
    skipped_conversions: list[SkippedFxConversion] = field(default_factory=list)
    total_fx_conversions: int = 0
    successful_splits: int = 0


def is_fx_conversion(activity: Activity) -> bool:
    """Return True for currency-pair symbols or dotted symbols described as forex trades."""
    symbol = activity.symbol or ""
    if CURRENCY_PAIR_PATTERN.match(symbol):
        return True
    comment = activity.comment.lower()
    return "." in symbol and any(keyword in comment for keyword in CONVERSION_KEYWORDS)


def parse_fx_conversion(activity: Activity) -> FxConversion | None:
    """Return source/target currencies and amounts, or None for an unparseable pair."""
    parts = (activity.symbol or "").split(".")
    if len(parts) != 2 or not all(_CURRENCY_CODE.match(part) for part in parts):
        return None
    source_currency, target_currency = parts
    source_amount = abs(activity.quantity)
    if source_amount and activity.unit_price:
        target_amount = abs(source_amount * activity.unit_price)
    else:
        target_amount = abs(activity.amount)
    return FxConversion(
        source_currency=source_currency,
        target_currency=target_currency,
        source_amount=source_amount,
        target_amount=target_amount,
        date=activity.date,
        comment=activity.comment or f"FX: {source_currency} → {target_currency}",
    )


def _cash_activity(
    kind: ActivityType, currency: str, amount: float, conversion: FxConversion, account: Account
) -> Activity:
    """Build one side of a split conversion."""
    return Activity(
        date=conversion.date,
        symbol=create_cash_symbol(currency),
        activity_type=kind,
        quantity=0.0,
        unit_price=0.0,
        amount=abs(amount),
        fee=0.0,
        currency=currency,
        comment=conversion.comment,
        account_id=account.id,
    )


def split_fx_conversions(
    activities: Iterable[Activity], accounts_by_currency: Mapping[str, Account]
) -> FxSplitResult:
    """Replace each conversion with a source withdrawal followed by a target deposit.

    Both sub-ledgers must exist; otherwise the conversion is dropped with a reason.
    """
    result = FxSplitResult()
    for activity in activities:
        if not is_fx_conversion(activity):
            result.transactions.append(activity)
            continue
        result.total_fx_conversions += 1
        if (conversion := parse_fx_conversion(activity)) is None:
            reason = "Invalid FX transaction format - could not parse currencies or amounts"
        elif (source := accounts_by_currency.get(conversion.source_currency)) is None:
            reason = (
                f"Source account for {conversion.source_currency} not found"
                " - cannot create withdrawal"
            )
        elif (target := accounts_by_currency.get(conversion.target_currency)) is None:
            reason = (
                f"Target account for {conversion.target_currency} not found"
                " - cannot create deposit"
            )
        else:
            result.transactions.append(
                _cash_activity(
                    ActivityType.WITHDRAWAL,
                    conversion.source_currency,
                    conversion.source_amount,
                    conversion,
                    source,
                )
            )
            result.transactions.append(
                _cash_activity(
                    ActivityType.DEPOSIT,
                    conversion.target_currency,
                    conversion.target_amount,
                    conversion,
                    target,
                )
            )
            result.successful_splits += 1
            continue
        logger.warning(
            "Skipping FX conversion %s on %s: %s", activity.symbol, activity.date, reason
        )
        result.skipped_conversions.append(SkippedFxConversion(activity, reason))
    return result


def existing_accounts_by_currency(previews: Iterable[AccountPreview]) -> dict[str, Account]:
    """Map currencies to existing sub-ledgers, ignoring previews not yet created."""
    return {
        preview.currency: preview.existing_account
        for preview in previews
        if preview.existing_account is not None
    }
