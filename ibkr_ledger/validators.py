"""Input validators shared by prompts and stored Flex settings."""

import re
from collections.abc import Callable
from pathlib import Path

PromptValidator = Callable[[str], bool | str]

TOKEN_MIN_LENGTH = 16
TOKEN_MAX_LENGTH = 128
QUERY_ID_MAX_LENGTH = 20
_ALPHANUMERIC = re.compile(r"^[A-Za-z0-9]+$")


def validate_query_id(query_id: int | str) -> bool | str:
    """Validate numeric Flex query identifier."""
    if not (text := str(query_id).strip()):
        return "Query ID is required"
    if not text.isdigit():
        return "Query ID should be numeric"
    if len(text) > QUERY_ID_MAX_LENGTH:
        return "Query ID appears too long"
    return True


def validate_token(token: str) -> bool | str:
    """Validate alphanumeric Flex Web Service token."""
    if not (text := (token or "").strip()):
        return "Token is required"
    if len(text) < TOKEN_MIN_LENGTH:
        return f"Token appears too short (minimum {TOKEN_MIN_LENGTH} characters)"
    if len(text) > TOKEN_MAX_LENGTH:
        return f"Token appears too long (maximum {TOKEN_MAX_LENGTH} characters)"
    if not _ALPHANUMERIC.match(text):
        return "Token should contain only alphanumeric characters"
    return True


def validate_name(raw: str) -> bool | str:
    """Validate non-empty display name."""
    if not raw.strip():
        return "Name is required."
    return True


def validate_account_group(raw: str) -> bool | str:
    """Validate sub-ledger group name used as account-name prefix."""
    if not (text := raw.strip()):
        return "Account group is required."
    if " - " in text:
        return "Account group must not contain ' - '."
    return True


def validate_csv_path(raw: str) -> bool | str:
    """Validate path to an existing CSV report file."""
    if not (text := raw.strip()):
        return "Path is required."
    path = Path(text).expanduser()
    if not path.is_file():
        return "File does not exist."
    if path.suffix.lower() != ".csv":
        return "File must have .csv extension."
    return True
