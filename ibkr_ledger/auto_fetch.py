"""Unattended fetch-and-import of saved Flex queries."""

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType

from ibkr_ledger.config import Account, AccountPreview, Activity, RawRow
from ibkr_ledger.deduplicator import deduplicate_activities
from ibkr_ledger.errors import CsvFormatError, FlexQueryError, SectionSplitError
from ibkr_ledger.flex_query import FlexQueryClient
from ibkr_ledger.logging_setup import get_logger
from ibkr_ledger.orchestrator import (
    COLLABORATOR_EXCEPTIONS,
    ActivitiesApi,
    TickerResolver,
    detect_currencies,
    process_and_resolve_data,
)
from ibkr_ledger.registry import FlexConfigStorage, FlexQueryConfig
from ibkr_ledger.sections import parse_flex_csv

logger = get_logger(__name__)

FETCH_COOLDOWN = timedelta(hours=6)
STATUS_SUCCESS = "success"
STATUS_ERROR = "error"

_TOKEN_PAGE = "IBKR Account Management → Reports → Flex Queries"
IBKR_ERROR_GUIDANCE: Mapping[str, str] = MappingProxyType(
    {
        "Token has expired": (
            f"Token has expired. Generate a new token in {_TOKEN_PAGE} → Configure Flex Token."
        ),
        "Token is invalid": f"Token is invalid. Check your Flex Query token in {_TOKEN_PAGE}.",
        "IP address restriction violated": (
            f"IP address not allowed. Update IP restrictions in {_TOKEN_PAGE}"
            " → Configure Flex Token."
        ),
        "IP address not allowed": (
            f"IP address not allowed. Update IP restrictions in {_TOKEN_PAGE}"
            " → Configure Flex Token."
        ),
        "Query is invalid": f"Query ID is invalid. Verify the Flex Query ID in {_TOKEN_PAGE}.",
        "Token missing permissions": (
            "Token lacks required permissions. Regenerate the token with proper permissions"
            " in IBKR Account Management."
        ),
    }
)

_PROCESS_EXCEPTIONS = (FlexQueryError, SectionSplitError, CsvFormatError) + COLLABORATOR_EXCEPTIONS

AccountsForGroup = Callable[[str, list[str]], Awaitable[dict[str, Account]]]


@dataclass(frozen=True, slots=True)
class CooldownStatus:
    """Whether a config was fetched too recently, and for how much longer."""

    in_cooldown: bool
    hours_remaining: float | None = None


@dataclass(slots=True)
class ImportTotals:
    """Counts accumulated while importing into several sub-ledgers."""

    imported: int = 0
    skipped: int = 0
    failed: int = 0
    failed_accounts: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ConfigProcessResult:
    """Outcome of fetching and importing one saved query."""

    success: bool
    imported: int = 0
    skipped: int = 0
    failed: int = 0
    failed_accounts: list[str] = field(default_factory=list)
    error: str | None = None


def _utc_now() -> datetime:
    """Return current aware UTC time."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime | None:
    """Parse ISO timestamp, treating naive values as UTC."""
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def is_config_in_cooldown(
    last_fetch_time: str | None, now: datetime | None = None
) -> CooldownStatus:
    """Check whether a config was fetched within the cooldown window.

    Future timestamps count as a full cooldown. Unparseable ones allow fetching.
    """
    if not last_fetch_time:
        return CooldownStatus(False)
    if (last_fetch := _parse_timestamp(last_fetch_time)) is None:
        logger.warning("Invalid timestamp %r, allowing fetch", last_fetch_time)
        return CooldownStatus(False)
    now = now or _utc_now()
    if last_fetch > now:
        logger.warning("Future timestamp %s, treating as in cooldown", last_fetch_time)
        return CooldownStatus(True, FETCH_COOLDOWN / timedelta(hours=1))
    if (elapsed := now - last_fetch) < FETCH_COOLDOWN:
        return CooldownStatus(True, round((FETCH_COOLDOWN - elapsed) / timedelta(hours=1), 1))
    return CooldownStatus(False)


def format_import_result_message(imported: int, skipped: int, failed: int = 0) -> str:
    """Return one-line summary of an import run."""
    parts = [f"{imported} transactions imported"]
    if skipped > 0:
        parts.append(f"{skipped} duplicates skipped")
    if failed > 0:
        parts.append(f"{failed} failed")
    return ", ".join(parts)


def enrich_error_message(
    message: str, guidance: Mapping[str, str] = IBKR_ERROR_GUIDANCE
) -> str:
    """Replace known provider errors with actionable guidance."""
    if message in guidance:
        return guidance[message]
    for key, text in guidance.items():
        if key in message:
            return text
    return message


async def fetch_and_parse_flex_query(
    client: FlexQueryClient, query_id: str, config_name: str
) -> list[RawRow]:
    """Download a statement off the event loop and parse it into raw rows."""
    csv_text = await asyncio.to_thread(client.fetch, query_id)
    parsed = parse_flex_csv(csv_text)
    if parsed.errors:
        logger.warning("[%s] Parse warnings: %s", config_name, ", ".join(parsed.errors))
    return parsed.rows


async def import_activities_to_accounts(
    activities: Sequence[Activity],
    currencies: Sequence[str],
    accounts_by_currency: Mapping[str, Account],
    activities_api: ActivitiesApi,
    config_name: str,
) -> ImportTotals:
    """Dedupe and import each currency's activities into its sub-ledger."""
    totals = ImportTotals()
    for currency in currencies:
        if (account := accounts_by_currency.get(currency)) is None:
            continue
        batch = [
            replace(activity, account_id=account.id)
            for activity in activities
            if activity.currency == currency
        ]
        if not batch:
            continue
        try:
            to_import, duplicates = await deduplicate_activities(
                batch, account.id, activities_api.get_all
            )
            totals.skipped += duplicates
            if to_import:
                await activities_api.import_activities(to_import)
                totals.imported += len(to_import)
                logger.debug("[%s] Imported %d to %s", config_name, len(to_import), account.name)
        except COLLABORATOR_EXCEPTIONS as error:
            totals.failed += len(batch)
            totals.failed_accounts.append(account.name)
            logger.warning(
                "[%s] Import error for %s (%d activities): %s",
                config_name,
                account.name,
                len(batch),
                error,
            )
    return totals


async def process_flex_query_config(
    config: FlexQueryConfig,
    *,
    client: FlexQueryClient,
    storage: FlexConfigStorage,
    activities_api: ActivitiesApi,
    accounts_for_group: AccountsForGroup,
    resolver: TickerResolver | None = None,
) -> ConfigProcessResult:
    """Fetch one saved query, import its activities and record the outcome."""
    try:
        rows = await fetch_and_parse_flex_query(client, config.query_id, config.name)
        if not rows:
            logger.info("[%s] No transactions found", config.name)
            await _save_status(storage, config, STATUS_SUCCESS)
            return ConfigProcessResult(success=True)
        currencies = detect_currencies(rows)
        accounts = await accounts_for_group(config.account_group, currencies)
        previews = [
            AccountPreview(
                currency=currency,
                name=f"{config.account_group} - {currency}",
                group=config.account_group,
                existing_account=accounts.get(currency),
            )
            for currency in currencies
        ]
        processed = await process_and_resolve_data(rows, previews, resolver)
        if processed.conversion_errors:
            logger.warning(
                "[%s] %d conversion error(s): %s",
                config.name,
                len(processed.conversion_errors),
                "; ".join(error.message for error in processed.conversion_errors[:5]),
            )
        totals = await import_activities_to_accounts(
            processed.activities, currencies, accounts, activities_api, config.name
        )
    except _PROCESS_EXCEPTIONS as error:
        message = enrich_error_message(str(error) or "Unknown error")
        logger.error("[%s] Error - %s", config.name, error)
        await _save_status(storage, config, STATUS_ERROR, message)
        return ConfigProcessResult(success=False, error=message)

    await _save_status(storage, config, STATUS_SUCCESS)
    logger.info(
        "[%s] Complete - %s",
        config.name,
        format_import_result_message(totals.imported, totals.skipped, totals.failed),
    )
    if totals.failed_accounts:
        logger.warning("[%s] Failed accounts: %s", config.name, ", ".join(totals.failed_accounts))
    return ConfigProcessResult(
        success=True,
        imported=totals.imported,
        skipped=totals.skipped,
        failed=totals.failed,
        failed_accounts=totals.failed_accounts,
    )


async def run_auto_fetch(
    storage: FlexConfigStorage,
    *,
    activities_api: ActivitiesApi,
    accounts_for_group: AccountsForGroup,
    resolver: TickerResolver | None = None,
    client_factory: Callable[[str], FlexQueryClient] = FlexQueryClient,
) -> dict[str, ConfigProcessResult]:
    """Process every auto-fetch config outside its cooldown window."""
    if not (token := await storage.load_token()):
        logger.info("No Flex token stored, skipping auto-fetch")
        return {}
    client = client_factory(token)
    results: dict[str, ConfigProcessResult] = {}
    for config in await storage.load_configs():
        if not config.auto_fetch_enabled:
            continue
        if (cooldown := is_config_in_cooldown(config.last_fetch_time)).in_cooldown:
            logger.info(
                "[%s] In cooldown for %.1f more hours", config.name, cooldown.hours_remaining
            )
            continue
        # Claim the config so an overlapping run sees it in cooldown.
        await _save_status(storage, config, STATUS_SUCCESS)
        results[config.id] = await process_flex_query_config(
            config,
            client=client,
            storage=storage,
            activities_api=activities_api,
            accounts_for_group=accounts_for_group,
            resolver=resolver,
        )
    return results


async def _save_status(
    storage: FlexConfigStorage, config: FlexQueryConfig, status: str, error: str | None = None
) -> None:
    """Persist fetch status, logging instead of failing when storage is unavailable."""
    try:
        await storage.update_status(config.id, _utc_now().isoformat(), status, error)
    except (OSError, ValueError) as save_error:
        logger.warning("[%s] Failed to save %s status: %s", config.name, status, save_error)
