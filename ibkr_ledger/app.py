"""Interactive console application for previewing IBKR activity imports."""

import asyncio
import logging
import sys
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path
from typing import cast

from ibkr_ledger import ui
from ibkr_ledger.auto_fetch import fetch_and_parse_flex_query
from ibkr_ledger.config import Account, RawRow
from ibkr_ledger.flex_query import FlexQueryClient
from ibkr_ledger.logging_setup import configure_logging, get_logger
from ibkr_ledger.orchestrator import (
    ImportPlan,
    detect_currencies,
    generate_account_names,
    prepare_import,
)
from ibkr_ledger.registry import FileSecretStore, FlexConfigStorage, FlexQueryConfig
from ibkr_ledger.sections import parse_flex_csv

logger = get_logger(__name__)

_IMPORT_PREPARE_EXCEPTIONS = (
    ArithmeticError,
    AssertionError,
    AttributeError,
    BufferError,
    EOFError,
    ImportError,
    LookupError,
    MemoryError,
    NameError,
    OSError,
    ReferenceError,
    RuntimeError,
    SyntaxError,
    SystemError,
    TypeError,
    UnicodeError,
    ValueError,
)


def preview_currencies(rows: Iterable[RawRow]) -> list[str]:
    """Return summary-row currencies, falling back to every stated base currency."""
    rows = list(rows)
    if currencies := detect_currencies(rows):
        return currencies
    return sorted({currency for row in rows if (currency := row.get("CurrencyPrimary", ""))})


class App:
    """Stateful interactive console app for Flex settings and import previews."""

    def __init__(self, storage: FlexConfigStorage | None = None) -> None:
        """Initialize storage and in-session import preview."""
        self.storage = storage or FlexConfigStorage(FileSecretStore())
        self.plan: ImportPlan | None = None

    def run(self) -> None:
        """Run interactive command loop."""
        while True:
            ui.clear_terminal_viewport()
            main_menu_action = ui.prompt_for_main_menu_action(
                bool(self._configs()), bool(self._token()), self.plan is not None
            )
            getattr(self, main_menu_action)()

    def register(self) -> None:
        """CLI command: save one Flex query."""
        fields = ui.prompt_for_flex_query_fields()
        if fields is None:
            return
        auto_fetch = ui.prompt_for_auto_fetch()
        if auto_fetch == "__back__":
            return
        asyncio.run(self.storage.add_config(**fields, auto_fetch_enabled=bool(auto_fetch)))

    def token(self) -> None:
        """CLI command: store Flex Web Service token."""
        token = ui.prompt_for_token()
        if token == "__back__":
            return
        asyncio.run(self.storage.save_token(token))

    def forget_token(self) -> None:
        """CLI command: remove stored Flex Web Service token."""
        if ui.prompt_for_token_removal() is not True:
            return
        asyncio.run(self.storage.delete_token())

    def ls(self) -> None:
        """CLI command: list saved Flex queries."""
        ui.print_flex_query_configs(self._configs())
        ui.wait_for_back_navigation()

    def rm(self) -> None:
        """CLI command: remove one or more saved Flex queries."""
        config_ids = ui.prompt_for_config_ids_to_remove(self._configs())
        if config_ids == "__back__" or not config_ids:
            return
        for config_id in config_ids:
            asyncio.run(self.storage.delete_config(config_id))

    def check(self) -> None:
        """CLI command: validate stored token against one saved Flex query."""
        config = ui.prompt_for_config(self._configs())
        if config == "__back__":
            return
        config = cast(FlexQueryConfig, config)
        client = FlexQueryClient(cast(str, self._token()))
        ok, message = client.test_connection(config.query_id)
        logger.info("Connection check for %s: %s", config.name, message)
        ui.print_connection_result(ok, message)
        ui.wait_for_back_navigation()

    def preview(self) -> None:
        """CLI command: run the import pipeline over local CSV reports."""
        paths = ui.prompt_for_csv_paths()
        if not paths:
            return
        group = ui.prompt_for_account_group()
        if group == "__back__":
            return

        @ui.with_prepare_animation
        def _prepare() -> ImportPlan:
            return self._prepare_plan(self._read_reports(paths), group)

        self._run_prepare(_prepare)

    def fetch(self) -> None:
        """CLI command: download a saved Flex query and preview its import."""
        config = ui.prompt_for_config(self._configs())
        if config == "__back__":
            return
        config = cast(FlexQueryConfig, config)
        client = FlexQueryClient(cast(str, self._token()))

        @ui.with_prepare_animation
        def _prepare() -> ImportPlan:
            rows = asyncio.run(fetch_and_parse_flex_query(client, config.query_id, config.name))
            return self._prepare_plan(rows, config.account_group)

        self._run_prepare(_prepare)

    def show(self) -> None:
        """CLI command: display last prepared in-session import preview."""
        ui.print_import_plan(cast(ImportPlan, self.plan))
        ui.wait_for_back_navigation()

    def exit_app(self) -> None:
        """Exit interactive run loop."""
        self.plan = None
        sys.exit(0)

    def _configs(self) -> list[FlexQueryConfig]:
        """Return saved Flex queries."""
        return asyncio.run(self.storage.load_configs())

    def _token(self) -> str | None:
        """Return stored Flex token."""
        return asyncio.run(self.storage.load_token())

    @staticmethod
    def _read_reports(paths: Iterable[Path]) -> list[RawRow]:
        """Parse every report file into one list of raw rows."""
        rows: list[RawRow] = []
        for path in paths:
            parsed = parse_flex_csv(path.read_text(encoding="utf-8-sig"), source=path.name)
            for error in parsed.errors:
                logger.warning("%s: %s", path.name, error)
            rows.extend(parsed.rows)
        return rows

    @staticmethod
    def _prepare_plan(rows: list[RawRow], group: str) -> ImportPlan:
        """Run the pipeline without a host ledger, treating every sub-ledger as existing."""
        previews = [
            replace(
                preview,
                existing_account=Account(
                    id="", name=preview.name, currency=preview.currency, group=group
                ),
            )
            for preview in generate_account_names(group, preview_currencies(rows))
        ]
        return asyncio.run(prepare_import(rows, previews))

    def _run_prepare(self, prepare: Callable[[], ImportPlan]) -> None:
        """Prepare plan, then show it or the error that stopped it."""
        try:
            self.plan = prepare()
        except _IMPORT_PREPARE_EXCEPTIONS as error:
            self.plan = None
            self._show_error(error)
            return
        logger.info(
            "Prepared %d activities, %d duplicates skipped",
            sum(len(group.transactions) for group in self.plan.groups),
            self.plan.duplicates_skipped,
        )
        self.show()

    def _show_error(self, error: Exception) -> None:
        """Display framed error and wait for dismissal."""
        ui.print_import_error(error)
        ui.wait_for_back_navigation()


def main() -> None:
    """CLI entrypoint with clean Ctrl-C exit code."""
    configure_logging(default_level=logging.WARNING)
    app = App()
    try:
        app.run()
    except KeyboardInterrupt:
        app.exit_app()


if __name__ == "__main__":
    main()
