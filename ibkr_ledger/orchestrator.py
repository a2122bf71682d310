"""Pipeline stages wired together against host-ledger collaborators."""

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from typing import Protocol

from ibkr_ledger.classifier import RowClassifier
from ibkr_ledger.config import (
    Account,
    AccountPreview,
    Activity,
    ClassifiedRow,
    ConversionError,
    ExistingActivity,
    RawRow,
    TransactionGroup,
    TransactionSummary,
)
from ibkr_ledger.converter import ActivityConverter
from ibkr_ledger.deduplicator import filter_duplicate_activities
from ibkr_ledger.exchanges import EXCHANGE_TO_CURRENCY
from ibkr_ledger.fx_splitter import (
    SkippedFxConversion,
    existing_accounts_by_currency,
    split_fx_conversions,
)
from ibkr_ledger.logging_setup import get_logger
from ibkr_ledger.sections import summarize_rows

logger = get_logger(__name__)

CURRENCY_SUMMARY_LEVEL = "Currency"
COLLABORATOR_EXCEPTIONS = (OSError, RuntimeError, ValueError, LookupError)


class AccountsApi(Protocol):
    """Directory of host-ledger sub-ledgers."""

    async def get_all(self) -> list[Account]: ...


class ActivitiesApi(Protocol):
    """Host-ledger activity reads and imports."""

    async def get_all(self, account_id: str) -> list[ExistingActivity]: ...

    async def import_activities(self, activities: list[Activity]) -> list[Activity]: ...


class TickerResolver(Protocol):
    """Best-effort mapping of provider symbols to market tickers."""

    async def resolve(self, rows: list[ClassifiedRow]) -> list[ClassifiedRow]: ...


@dataclass(slots=True)
class ProcessResult:
    """Activities ready for deduplication plus everything left out on the way."""

    activities: list[Activity] = field(default_factory=list)
    conversion_errors: list[ConversionError] = field(default_factory=list)
    skipped_count: int = 0
    skipped_fx_conversions: list[SkippedFxConversion] = field(default_factory=list)
    preprocess_skipped: int = 0
    skip_reasons: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FetchExistingResult:
    """Persisted activities across sub-ledgers and the sub-ledgers that failed to load."""

    activities: list[ExistingActivity] = field(default_factory=list)
    failed_accounts: list[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """Return True when every sub-ledger loaded."""
        return not self.failed_accounts


def detect_currencies(rows: Iterable[Mapping[str, str]]) -> list[str]:
    """Return sorted currencies listed by the per-currency summary rows."""
    currencies = {
        currency
        for row in rows
        if row.get("LevelOfDetail") == CURRENCY_SUMMARY_LEVEL
        and (currency := (row.get("CurrencyPrimary") or "").strip())
        and currency != CURRENCY_SUMMARY_LEVEL
    }
    return sorted(currencies)


def generate_account_names(group: str, currencies: Iterable[str]) -> list[AccountPreview]:
    """Return one sub-ledger preview per currency named ``{group} - {currency}``."""
    return [
        AccountPreview(currency=currency, name=f"{group} - {currency}", group=group)
        for currency in currencies
    ]


def match_previews(
    previews: Iterable[AccountPreview], accounts: Iterable[Account]
) -> list[AccountPreview]:
    """Attach existing sub-ledgers to previews by name and currency."""
    by_key = {(account.name, account.currency): account for account in accounts}
    return [
        replace(preview, existing_account=by_key.get((preview.name, preview.currency)))
        for preview in previews
    ]


async def refresh_and_update_account_previews(
    accounts_api: AccountsApi | None,
    previews: Sequence[AccountPreview],
    current_accounts: Sequence[Account],
) -> tuple[list[Account], list[AccountPreview]]:
    """Reload sub-ledgers and rebind previews, keeping the cached list if the reload fails."""
    accounts = list(current_accounts)
    if accounts_api is not None:
        try:
            accounts = list(await accounts_api.get_all())
        except COLLABORATOR_EXCEPTIONS as error:
            logger.warning("Failed to refresh accounts, using cached list: %s", error)
    return accounts, match_previews(previews, accounts)


async def process_and_resolve_data(
    rows: Sequence[RawRow],
    previews: Sequence[AccountPreview],
    resolver: TickerResolver | None = None,
    *,
    exchange_currencies: Mapping[str, str] = EXCHANGE_TO_CURRENCY,
) -> ProcessResult:
    """Classify, resolve tickers, convert and split currency conversions."""
    preprocessed = RowClassifier(exchange_currencies).preprocess(rows)
    classified = preprocessed.rows
    if resolver is not None:
        classified = await resolver.resolve(classified)
    converted = ActivityConverter(exchange_currencies).convert(
        classified, previews, fx_source_rows=rows
    )
    split = split_fx_conversions(converted.activities, existing_accounts_by_currency(previews))
    if split.skipped_conversions:
        logger.warning("Skipped %d FX conversion(s)", len(split.skipped_conversions))
    return ProcessResult(
        activities=split.transactions,
        conversion_errors=converted.errors,
        skipped_count=converted.skipped,
        skipped_fx_conversions=split.skipped_conversions,
        preprocess_skipped=preprocessed.skipped,
        skip_reasons=dict(preprocessed.skip_reasons),
        warnings=converted.warnings,
    )


async def fetch_existing_activities_for_dedup(
    activities_api: ActivitiesApi | None, previews: Sequence[AccountPreview]
) -> FetchExistingResult:
    """Collect persisted activities of every existing sub-ledger, tolerating failures."""
    result = FetchExistingResult()
    if activities_api is None:
        return result
    for preview in previews:
        if (account := preview.existing_account) is None:
            continue
        try:
            result.activities.extend(await activities_api.get_all(account.id))
        except COLLABORATOR_EXCEPTIONS as error:
            name = account.name or preview.currency
            result.failed_accounts.append(name)
            logger.warning("Failed to fetch existing activities for %s: %s", name, error)
    return result


def deduplicate(
    activities: Sequence[Activity], existing: Sequence[ExistingActivity]
) -> list[Activity]:
    """Drop activities already persisted or repeated within the batch."""
    unique, duplicates = filter_duplicate_activities(activities, existing)
    if duplicates:
        by_type: dict[str, int] = {}
        for activity in duplicates:
            key = f"{activity.currency}-{activity.activity_type.value}"
            by_type[key] = by_type.get(key, 0) + 1
        logger.info("Removed %d duplicate activities: %s", len(duplicates), by_type)
    return unique


def group_activities_by_currency(activities: Iterable[Activity]) -> dict[str, list[Activity]]:
    """Bucket activities by currency, dropping those without one."""
    grouped: dict[str, list[Activity]] = {}
    for activity in activities:
        if not activity.currency:
            logger.warning(
                "Skipping activity without currency: %s on %s",
                activity.symbol or "unknown",
                activity.date or "unknown date",
            )
            continue
        grouped.setdefault(activity.currency, []).append(activity)
    return grouped


def create_transaction_groups(
    previews: Sequence[AccountPreview], grouped: Mapping[str, list[Activity]]
) -> list[TransactionGroup]:
    """Build one transaction group per preview, in preview order."""
    groups = []
    for preview in previews:
        transactions = grouped.get(preview.currency, [])
        if (account := preview.existing_account) is not None:
            transactions = [replace(activity, account_id=account.id) for activity in transactions]
        groups.append(
            TransactionGroup(
                currency=preview.currency,
                account_name=preview.name,
                transactions=transactions,
                summary=TransactionSummary.from_activities(transactions),
            )
        )
    return groups


@dataclass(slots=True)
class ImportPlan:
    """Transaction groups ready for import and how they were derived."""

    groups: list[TransactionGroup]
    processed: ProcessResult
    existing: FetchExistingResult
    duplicates_skipped: int
    row_counts: dict[str, int] = field(default_factory=dict)


async def prepare_import(
    rows: Sequence[RawRow],
    previews: Sequence[AccountPreview],
    *,
    resolver: TickerResolver | None = None,
    activities_api: ActivitiesApi | None = None,
    accounts_api: AccountsApi | None = None,
    exchange_currencies: Mapping[str, str] = EXCHANGE_TO_CURRENCY,
) -> ImportPlan:
    """Run the whole pipeline from parsed report rows to per-currency transaction groups."""
    if accounts_api is not None:
        cached = [p.existing_account for p in previews if p.existing_account is not None]
        _, previews = await refresh_and_update_account_previews(accounts_api, previews, cached)
    processed = await process_and_resolve_data(
        rows, previews, resolver, exchange_currencies=exchange_currencies
    )
    existing = await fetch_existing_activities_for_dedup(activities_api, previews)
    if not existing.complete:
        logger.warning(
            "Duplicate check incomplete, failed accounts: %s", ", ".join(existing.failed_accounts)
        )
    unique = deduplicate(processed.activities, existing.activities)
    groups = create_transaction_groups(previews, group_activities_by_currency(unique))
    return ImportPlan(
        groups=groups,
        processed=processed,
        existing=existing,
        duplicates_skipped=len(processed.activities) - len(unique),
        row_counts=summarize_rows(rows),
    )
