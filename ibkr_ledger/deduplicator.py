"""Type-aware activity fingerprints and duplicate filtering against persisted activities."""

from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime

from ibkr_ledger.config import Activity, ExistingActivity
from ibkr_ledger.descriptions import extract_dividend_per_share
from ibkr_ledger.logging_setup import get_logger
from ibkr_ledger.normalizers import canonical_date, format_fingerprint_number, normalize_text

logger = get_logger(__name__)

MAX_DEBUG_LOGS = 5
TRADE_ACTIVITY_TYPES = frozenset({"BUY", "SELL"})
DIVIDEND_ACTIVITY_TYPES = frozenset({"DIVIDEND"})
COMMENT_IN_FINGERPRINT_TYPES = frozenset({"FEE"})

ExistingActivitiesFetcher = Callable[[str], Awaitable[Sequence[ExistingActivity]]]


@dataclass(frozen=True, slots=True)
class FingerprintFields:
    """Fields shared by new and persisted activities for fingerprinting."""

    date: str | date | datetime | None
    symbol: str
    activity_type: str
    quantity: float | None = None
    unit_price: float | None = None
    amount: float | None = None
    fee: float | None = None
    currency: str = ""
    comment: str = ""

    @classmethod
    def from_activity(cls, activity: Activity) -> "FingerprintFields":
        """Read fields of an activity about to be imported."""
        return cls(
            date=activity.date,
            symbol=activity.symbol,
            activity_type=activity.activity_type.value,
            quantity=activity.quantity,
            unit_price=activity.unit_price,
            amount=activity.amount,
            fee=activity.fee,
            currency=activity.currency,
            comment=activity.comment,
        )

    @classmethod
    def from_existing(cls, activity: ExistingActivity) -> "FingerprintFields":
        """Read fields of an activity stored by the host ledger."""
        return cls(
            date=activity.activity_date,
            symbol=activity.asset_id,
            activity_type=activity.activity_type,
            quantity=activity.quantity,
            unit_price=activity.unit_price,
            amount=activity.amount,
            fee=activity.fee,
            currency=activity.currency,
            comment=activity.comment,
        )

    @property
    def date_symbol_key(self) -> str:
        """Return ``date|symbol`` used to group near misses."""
        return f"{canonical_date(self.date)}|{normalize_text(self.symbol)}"


def fingerprint(fields: FingerprintFields) -> str:
    """Return pipe-joined identity of an activity.

    Non-trade activities leave out quantity and unit price because the host ledger stores
    them as zero. Dividends use the per-share rate from the comment when present, since the
    amount depends on how the position was reconstructed.
    """
    activity_type = normalize_text(fields.activity_type)
    parts = [canonical_date(fields.date), normalize_text(fields.symbol), activity_type]
    if activity_type in TRADE_ACTIVITY_TYPES:
        parts.append(format_fingerprint_number(fields.quantity))
        parts.append(format_fingerprint_number(fields.unit_price))
    elif activity_type in DIVIDEND_ACTIVITY_TYPES:
        per_share = extract_dividend_per_share(fields.comment)
        parts.append(format_fingerprint_number(fields.amount if per_share is None else per_share))
    else:
        parts.append(format_fingerprint_number(fields.amount))
        if activity_type in COMMENT_IN_FINGERPRINT_TYPES:
            parts.append(normalize_text(fields.comment))
    parts.append(format_fingerprint_number(fields.fee))
    parts.append(normalize_text(fields.currency))
    return "|".join(parts)


def create_activity_fingerprint(activity: Activity) -> str:
    """Return fingerprint of an activity about to be imported."""
    return fingerprint(FingerprintFields.from_activity(activity))


def create_existing_activity_fingerprint(activity: ExistingActivity) -> str:
    """Return fingerprint of a persisted activity."""
    return fingerprint(FingerprintFields.from_existing(activity))


def _log_near_miss(new: FingerprintFields, existing: FingerprintFields) -> None:
    """Log field-by-field comparison of activities sharing date and symbol."""
    logger.debug(
        "Activity not matched despite same date and symbol %s:\n  new:      %s\n  existing: %s",
        new.date_symbol_key,
        fingerprint(new),
        fingerprint(existing),
    )


def filter_duplicate_activities(
    new_activities: Iterable[Activity], existing_activities: Iterable[ExistingActivity]
) -> tuple[list[Activity], list[Activity]]:
    """Split new activities into unique ones and duplicates.

    An activity is a duplicate when it matches a persisted activity or one accepted earlier
    in the same batch. The first occurrence wins.
    """
    existing_fingerprints: set[str] = set()
    existing_by_date_symbol: dict[str, FingerprintFields] = {}
    for activity in existing_activities:
        fields = FingerprintFields.from_existing(activity)
        existing_fingerprints.add(fingerprint(fields))
        existing_by_date_symbol.setdefault(fields.date_symbol_key, fields)

    unique: list[Activity] = []
    duplicates: list[Activity] = []
    seen: set[str] = set()
    near_misses = 0
    for activity in new_activities:
        fields = FingerprintFields.from_activity(activity)
        key = fingerprint(fields)
        if key in existing_fingerprints or key in seen:
            duplicates.append(activity)
            continue
        if near_misses < MAX_DEBUG_LOGS and (
            match := existing_by_date_symbol.get(fields.date_symbol_key)
        ):
            _log_near_miss(fields, match)
            near_misses += 1
        unique.append(activity)
        seen.add(key)
    logger.debug(
        "Deduplicated %d new against %d existing: %d unique, %d duplicates",
        len(unique) + len(duplicates),
        len(existing_fingerprints),
        len(unique),
        len(duplicates),
    )
    return unique, duplicates


async def deduplicate_activities(
    new_activities: Sequence[Activity],
    account_id: str,
    get_existing_activities: ExistingActivitiesFetcher,
) -> tuple[list[Activity], int]:
    """Fetch persisted activities of one sub-ledger and drop duplicates from the batch."""
    if not new_activities:
        return [], 0
    existing = await get_existing_activities(account_id)
    unique, duplicates = filter_duplicate_activities(new_activities, existing)
    if duplicates:
        logger.info(
            "Skipping %d duplicate activities for account %s", len(duplicates), account_id
        )
    return unique, len(duplicates)
