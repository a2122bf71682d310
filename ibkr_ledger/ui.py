"""UI helpers for questionary prompts and terminal interaction."""

import contextlib
import functools
import os
import sys
import termios
import threading
import time
import traceback
from io import UnsupportedOperation
from pathlib import Path
from typing import Any, Callable, Generator, Literal, ParamSpec, TypeVar, cast

import questionary
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.key_binding.key_bindings import merge_key_bindings
from prompt_toolkit.key_binding.key_processor import KeyPressEvent
from prompt_toolkit.shortcuts import clear as prompt_toolkit_clear
from questionary.prompts.path import GreatUXPathCompleter
from questionary.question import Question
from tabulate import tabulate

from ibkr_ledger.exchanges import currency_from_cash_symbol, is_cash_symbol
from ibkr_ledger.orchestrator import ImportPlan
from ibkr_ledger.registry import FlexQueryConfig
from ibkr_ledger.validators import (
    validate_account_group,
    validate_csv_path,
    validate_name,
    validate_query_id,
    validate_token,
)

ParamsT = ParamSpec("ParamsT")
ResultT = TypeVar("ResultT")
MainMenuAction = Literal[
    "register",
    "token",
    "forget_token",
    "ls",
    "rm",
    "check",
    "preview",
    "fetch",
    "show",
    "exit_app",
]
BackAction = Literal["__back__"]


@contextlib.contextmanager
def _disable_tty_input_echo() -> Generator[None, None, None]:
    """Disable terminal input echo to avoid loader line corruption."""
    try:
        fd = sys.stdin.fileno()
    except (AttributeError, OSError, UnsupportedOperation):
        yield
        return
    if not os.isatty(fd):
        yield
        return
    old = termios.tcgetattr(fd)
    new = termios.tcgetattr(fd)
    new[3] &= ~(termios.ECHO | termios.ICANON)
    termios.tcsetattr(fd, termios.TCSANOW, new)
    termios.tcflush(fd, termios.TCIFLUSH)
    try:
        yield
    finally:
        termios.tcsetattr(fd, termios.TCSANOW, old)
        termios.tcflush(fd, termios.TCIFLUSH)


def _ask(
    question: Question,
    disable_escape_back: bool = False,
    block_typed_input: bool = False,
) -> Any:
    """Run a Questionary prompt with built-in ESC back handling."""
    if not disable_escape_back:
        escape_bindings = KeyBindings()

        @escape_bindings.add("escape", eager=True)
        def _(_event: KeyPressEvent) -> None:
            """Exit prompt immediately and return a back sentinel."""
            _event.app.exit(result="__back__")

        question.application.key_bindings = merge_key_bindings(
            [escape_bindings, question.application.key_bindings]
        )
    if block_typed_input:
        readonly_bindings = KeyBindings()

        def _ignore_keypress(_event: KeyPressEvent) -> None:
            """Ignore blocked key presses for read-only back prompts."""
            return

        readonly_bindings.add("enter", eager=True)(_ignore_keypress)
        for codepoint in range(32, 127):
            readonly_bindings.add(chr(codepoint), eager=True)(_ignore_keypress)
        question.application.key_bindings = merge_key_bindings(
            [readonly_bindings, question.application.key_bindings]
        )
    question.application.ttimeoutlen = 0
    question.application.timeoutlen = 0
    return question.unsafe_ask()


def clear_terminal_viewport() -> None:
    """Clear terminal viewport and scrollback, then reset cursor to top-left."""
    prompt_toolkit_clear()
    sys.stdout.write("\x1b[3J\x1b[2J\x1b[H")
    sys.stdout.flush()


def prompt_for_main_menu_action(
    has_configs: bool, has_token: bool, has_plan: bool
) -> MainMenuAction:
    """Prompt for one main-menu action and return selected command key."""
    disabled_configs = None if has_configs else "No saved Flex queries"
    disabled_token = None if has_token else "No Flex token set"
    disabled_fetch = disabled_configs or disabled_token
    disabled_show = None if has_plan else "No import preview in this session"
    question = questionary.select(
        "IBKR Ledger Import",
        choices=[
            questionary.Choice("Register Flex query", "register"),
            questionary.Choice("Set Flex token", "token"),
            questionary.Choice("Remove Flex token", "forget_token", disabled=disabled_token),
            questionary.Choice("List Flex queries", "ls", disabled=disabled_configs),
            questionary.Choice("Remove Flex queries", "rm", disabled=disabled_configs),
            questionary.Choice("Test Flex connection", "check", disabled=disabled_fetch),
            questionary.Choice("Preview CSV reports", "preview"),
            questionary.Choice("Fetch Flex query", "fetch", disabled=disabled_fetch),
            questionary.Choice("Show import preview", "show", disabled=disabled_show),
            questionary.Choice("Exit", "exit_app"),
        ],
        erase_when_done=True,
    )
    return cast(MainMenuAction, _ask(question, disable_escape_back=True))


def prompt_for_flex_query_fields() -> dict[str, str] | None:
    """Collect name, query id and account group for a new Flex query."""
    payload: dict[str, str] = {}
    validators = {
        "name": validate_name,
        "query_id": validate_query_id,
        "account_group": validate_account_group,
    }
    for attr_name, validate in validators.items():
        label = attr_name.replace("_", " ").title().replace("Id", "ID")
        question = questionary.text(
            f"{label} [esc to back]:", validate=validate, erase_when_done=True
        )
        answer = _ask(question)
        if answer == "__back__":
            return None
        payload[attr_name] = str(answer).strip()
    return payload


def prompt_for_auto_fetch() -> bool | BackAction:
    """Ask whether a Flex query should be fetched automatically."""
    question = questionary.confirm("Enable auto-fetch?", default=False, erase_when_done=True)
    return cast(bool | BackAction, _ask(question))


def prompt_for_token() -> str | BackAction:
    """Prompt for Flex Web Service token."""
    question = questionary.password(
        "Flex token [esc to back]:", validate=validate_token, erase_when_done=True
    )
    answer = _ask(question)
    return cast(BackAction, answer) if answer == "__back__" else str(answer).strip()


def prompt_for_token_removal() -> bool | BackAction:
    """Ask for confirmation before the stored Flex token is forgotten."""
    question = questionary.confirm("Remove stored Flex token?", default=False, erase_when_done=True)
    return cast(bool | BackAction, _ask(question))


def _config_label(config: FlexQueryConfig) -> str:
    """Return one-line description of a saved Flex query."""
    return f"#{config.id} {config.name} (Query ID: {config.query_id})"


def prompt_for_config_ids_to_remove(configs: list[FlexQueryConfig]) -> list[str] | BackAction:
    """Prompt for saved Flex query IDs to remove and return selected IDs."""
    question = questionary.checkbox(
        "Select Flex queries to remove [esc to back]:",
        choices=[
            questionary.Choice(_config_label(config), config.id)
            for config in configs
        ],
        erase_when_done=True,
    )
    return cast(list[str] | BackAction, _ask(question))


def prompt_for_config(configs: list[FlexQueryConfig]) -> FlexQueryConfig | BackAction:
    """Prompt for one saved Flex query."""
    question = questionary.select(
        "Select Flex query [esc to back]:",
        choices=[
            questionary.Choice(_config_label(config), config)
            for config in configs
        ],
        erase_when_done=True,
    )
    return cast(FlexQueryConfig | BackAction, _ask(question))


def prompt_for_csv_paths() -> list[Path] | None:
    """Collect report file paths until an empty answer, or None when backing out."""

    def _file_filter(raw: str) -> bool:
        path = Path(raw).expanduser().resolve()
        return path.is_dir() or validate_csv_path(str(path)) is True

    paths: list[Path] = []
    while True:
        label = "CSV report" if not paths else "Another CSV report (empty to finish)"
        question = questionary.text(
            f"{label} [esc to back]:",
            validate=lambda raw: (bool(paths) and not raw.strip()) or validate_csv_path(raw),
            completer=GreatUXPathCompleter(file_filter=_file_filter, expanduser=True),
            erase_when_done=True,
        )
        answer = _ask(question)
        if answer == "__back__":
            return None
        if not (text := str(answer).strip()):
            return paths
        paths.append(Path(text).expanduser().resolve())


def prompt_for_account_group(default: str = "IBKR") -> str | BackAction:
    """Prompt for sub-ledger group name."""
    question = questionary.text(
        "Account group [esc to back]:",
        default=default,
        validate=validate_account_group,
        erase_when_done=True,
    )
    answer = _ask(question)
    return cast(BackAction, answer) if answer == "__back__" else str(answer).strip()


def with_prepare_animation(
    method: Callable[ParamsT, ResultT],
) -> Callable[ParamsT, ResultT]:
    """Decorator that runs method body with prepare animation and tty guard."""

    @functools.wraps(method)
    def _wrapped(*args: ParamsT.args, **kwargs: ParamsT.kwargs) -> ResultT:
        stop_event = threading.Event()

        def _run_prepare_animation() -> None:
            """Render a bouncing-star loader with cycling dot suffix."""
            spinner = "|/-\\"
            bar_width = 18
            index = 0
            while not stop_event.is_set():
                bounce = index % (2 * bar_width - 2)
                position = bounce if bounce < bar_width else (2 * bar_width - 2 - bounce)
                track = ["-"] * bar_width
                track[position] = "*"
                dot_suffix = ("." * (index % 3 + 1)).ljust(3)
                sys.stdout.write(
                    f"\rPreparing import preview{dot_suffix} "
                    f"{spinner[index % len(spinner)]} [{''.join(track)}]"
                )
                sys.stdout.flush()
                index += 1
                time.sleep(0.12)
            sys.stdout.write("\r\x1b[2K")
            sys.stdout.flush()

        loader_thread = threading.Thread(target=_run_prepare_animation, daemon=True)
        with _disable_tty_input_echo():
            loader_thread.start()
            try:
                return method(*args, **kwargs)
            finally:
                stop_event.set()
                loader_thread.join()

    return _wrapped


def wait_for_back_navigation() -> None:
    """Display read-only back prompt and wait until user dismisses it."""
    question = questionary.text("[esc to back]", erase_when_done=True)
    _ask(question, block_typed_input=True)


def print_flex_query_configs(configs: list[FlexQueryConfig]) -> None:
    """Render and print one table with saved Flex queries."""
    table = tabulate(
        [
            [
                config.id,
                config.name,
                config.query_id,
                config.account_group,
                "yes" if config.auto_fetch_enabled else "no",
                config.last_fetch_time or "-",
                config.last_fetch_error or config.last_fetch_status or "-",
            ]
            for config in configs
        ],
        headers=["ID", "Name", "Query ID", "Group", "Auto", "Last Fetch", "Status"],
        tablefmt="simple_outline",
        disable_numparse=True,
    )
    print(table, flush=True)


def format_import_plan(plan: ImportPlan) -> str:
    """Render summary, skip and transaction tables for an import preview."""
    summary = tabulate(
        [
            [
                group.account_name,
                group.currency,
                group.summary.trades,
                group.summary.dividends,
                group.summary.deposits,
                group.summary.withdrawals,
                group.summary.fees,
                group.summary.other,
            ]
            for group in plan.groups
        ],
        headers=[
            "Account",
            "Currency",
            "Trades",
            "Dividends",
            "Deposits",
            "Withdrawals",
            "Fees",
            "Other",
        ],
        tablefmt="simple_outline",
        disable_numparse=True,
    )
    processed = plan.processed
    skipped = tabulate(
        [
            ["Skipped rows", processed.preprocess_skipped],
            ["Rows without account or date", processed.skipped_count],
            ["Conversion errors", len(processed.conversion_errors)],
            ["Skipped FX conversions", len(processed.skipped_fx_conversions)],
            ["Duplicates", plan.duplicates_skipped],
        ],
        tablefmt="simple_outline",
        disable_numparse=True,
    )
    sections = [summary, skipped]
    if plan.row_counts:
        sections.append(
            tabulate(
                [[key.title(), count] for key, count in plan.row_counts.items() if count],
                headers=["Report rows", "Count"],
                tablefmt="simple_outline",
                disable_numparse=True,
            )
        )
    sections.extend(processed.warnings)
    sections.extend(
        f"{skipped_fx.activity.symbol} on {skipped_fx.activity.date}: {skipped_fx.reason}"
        for skipped_fx in processed.skipped_fx_conversions
    )
    for group in plan.groups:
        if not group.transactions:
            continue
        df = group.to_dataframe()
        for column in ("quantity", "unit_price", "amount", "fee"):
            df[column] = df[column].map(lambda x: f"{x:,.4f}".rstrip("0").rstrip("."))
        df["symbol"] = df["symbol"].map(
            lambda s: f"{currency_from_cash_symbol(s)} cash" if is_cash_symbol(s) else s
        )
        table = tabulate(
            df,
            headers="keys",
            tablefmt="simple_outline",
            showindex=False,
            disable_numparse=True,
        )
        sections.append(f"{group.account_name}\n{table}")
    return "\n".join(sections)


def print_import_plan(plan: ImportPlan) -> None:
    """Print rendered import preview."""
    print(format_import_plan(plan), flush=True)


def print_connection_result(ok: bool, message: str) -> None:
    """Print Flex connection check outcome in green or red."""
    color = "32" if ok else "31"
    print(f"\x1b[{color}m{message}\x1b[0m", flush=True)


def print_import_error(error: Exception) -> None:
    """Render and print framed red traceback for import-preparation errors."""
    traceback_text = "".join(
        traceback.format_exception(type(error), error, error.__traceback__)
    ).rstrip("\n")
    error_lines = traceback_text.splitlines()
    width = max(len(line) for line in error_lines)
    framed_error = "\n".join(
        [
            f"┌{'─' * (width + 2)}┐",
            *[f"│ {line.ljust(width)} │" for line in error_lines],
            f"└{'─' * (width + 2)}┘",
        ]
    )
    print(f"\x1b[31m{framed_error}\x1b[0m", flush=True)
