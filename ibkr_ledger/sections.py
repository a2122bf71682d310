"""Splitting, merging and parsing of Flex Query CSV reports."""

import io
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

import pandas as pd

from ibkr_ledger.config import RawRow
from ibkr_ledger.errors import CsvFormatError, NoSectionsFoundError, NoTradesSectionError
from ibkr_ledger.logging_setup import get_logger

logger = get_logger(__name__)

HEADER_SIGNATURE = "ClientAccountID"
MIN_HEADER_COLUMNS = 3
_HEADER_LINE = re.compile(rf'^"?{HEADER_SIGNATURE}"?(?:,|$)')
_BOM = "\ufeff"


class SectionKind(str, Enum):
    """Report section shapes distinguished by their header columns."""

    TRADES = "trades"
    DIVIDENDS = "dividends"
    TRANSFERS = "transfers"
    UNKNOWN = "unknown"


# Evaluated in order, first match wins: (kind, required columns, forbidden columns).
SECTION_RULES: tuple[tuple[SectionKind, frozenset[str], frozenset[str]], ...] = (
    (SectionKind.TRADES, frozenset({"TransactionType", "Exchange", "Buy/Sell"}), frozenset()),
    (SectionKind.DIVIDENDS, frozenset({"Date/Time", "Amount"}), frozenset({"TransactionType"})),
    (
        SectionKind.TRANSFERS,
        frozenset({"Direction", "TransferCompany", "CashTransfer"}),
        frozenset(),
    ),
)

HEADER_RENAMES: Mapping[SectionKind, Mapping[str, str]] = MappingProxyType(
    {
        SectionKind.DIVIDENDS: MappingProxyType(
            {
                "Date/Time": "TradeDate",
                "Amount": "TradeMoney",
                "Type": "Notes/Codes",
                "Code": "TransactionType",
            }
        ),
        SectionKind.TRANSFERS: MappingProxyType(
            {
                "Date": "TradeDate",
                "Type": "TransactionType",
                "Direction": "_TRANSFER_DIRECTION",
                "CashTransfer": "TradeMoney",
                "TransferCompany": "Exchange",
            }
        ),
    }
)


@dataclass(frozen=True, slots=True)
class ReportSection:
    """One header-delimited block of a multi-section report."""

    header_line: str
    lines: tuple[str, ...]
    line_start: int

    @property
    def headers(self) -> list[str]:
        """Return trimmed header names."""
        return _read_header(self.header_line)

    @property
    def kind(self) -> SectionKind:
        """Return section shape detected from header columns."""
        return detect_section_kind(self.headers)


@dataclass(slots=True)
class ParsedReport:
    """Rows and non-fatal problems found while parsing a report."""

    rows: list[RawRow] = field(default_factory=list)
    headers: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def row_count(self) -> int:
        """Return number of parsed data rows."""
        return len(self.rows)


def _strip_bom(text: str) -> str:
    """Drop leading byte-order marker."""
    return text[1:] if text.startswith(_BOM) else text


def _is_header_line(line: str) -> bool:
    """Return True when the line starts a new report section."""
    return _HEADER_LINE.match(line) is not None


def _read_header(line: str) -> list[str]:
    """Tokenize one header line."""
    df = pd.read_csv(io.StringIO(line), header=None, dtype=str, keep_default_na=False)
    return [str(name).strip() for name in df.iloc[0]]


def _read_block(headers: list[str], lines: Iterable[str]) -> pd.DataFrame:
    """Read body lines under given headers, truncating or padding ragged rows."""
    body = "\n".join(lines)
    width = len(headers)
    if not body.strip():
        return pd.DataFrame(columns=range(width), dtype=str)
    try:
        df = pd.read_csv(
            io.StringIO(body),
            header=None,
            names=range(width),
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
            on_bad_lines=lambda bad_line: bad_line[:width],
        )
    except pd.errors.ParserError as error:
        raise CsvFormatError(f"Malformed CSV body: {error}") from error
    return df.fillna("").apply(lambda column: column.astype(str).str.strip())


def detect_section_kind(headers: Iterable[str]) -> SectionKind:
    """Classify section shape by its header set."""
    names = {header.strip().strip('"') for header in headers}
    for kind, required, forbidden in SECTION_RULES:
        if required <= names and not forbidden & names:
            return kind
    return SectionKind.UNKNOWN


def normalize_headers(headers: list[str], kind: SectionKind) -> list[str]:
    """Rename section-specific columns to their trade-section equivalents."""
    renames = HEADER_RENAMES.get(kind, {})
    return [renames.get(header, header) for header in headers]


def split_sections(text: str) -> list[ReportSection]:
    """Split report text into header-delimited sections."""
    sections: list[ReportSection] = []
    header_line: str | None = None
    lines: list[str] = []
    line_start = 0
    for index, line in enumerate(_strip_bom(text).splitlines()):
        if _is_header_line(line):
            if header_line is not None:
                sections.append(ReportSection(header_line, tuple(lines), line_start))
            header_line, lines, line_start = line, [], index + 1
        elif header_line is not None and line.strip():
            lines.append(line)
    if header_line is not None:
        sections.append(ReportSection(header_line, tuple(lines), line_start))
    return sections


def is_multi_section(text: str) -> bool:
    """Return True when the section header signature occurs at least twice."""
    return sum(1 for line in _strip_bom(text).splitlines() if _is_header_line(line)) > 1


def merge_sections(text: str) -> pd.DataFrame:
    """Merge every section into one table anchored on the trades section.

    Columns are the trades headers followed by new columns in order of first appearance.
    Values missing in a section are empty strings.
    """
    if not (sections := split_sections(text)):
        raise NoSectionsFoundError()
    anchor = next((s for s in sections if s.kind is SectionKind.TRADES), None)
    if anchor is None:
        raise NoTradesSectionError()
    final_headers = list(dict.fromkeys(anchor.headers))
    frames: list[pd.DataFrame] = []
    for section in sections:
        headers = section.headers
        kind = detect_section_kind(headers)
        normalized = normalize_headers(headers, kind)
        final_headers.extend(name for name in normalized if name not in final_headers)
        df = _read_block(headers, section.lines)
        df.columns = normalized
        frames.append(df.loc[:, ~df.columns.duplicated(keep="last")])
        logger.debug(
            "Section at line %d: %s with %d rows", section.line_start, kind.value, len(df)
        )
    merged = pd.concat(frames, ignore_index=True, sort=False)
    return merged.reindex(columns=final_headers).fillna("")


def extract_merged_section(text: str) -> str:
    """Return merged multi-section report as single-header CSV text."""
    return merge_sections(text).to_csv(index=False, lineterminator="\n")


def _validate_headers(headers: list[str]) -> None:
    """Require a minimum number of non-empty header columns."""
    if len(headers) < MIN_HEADER_COLUMNS or any(not header for header in headers):
        raise CsvFormatError(
            f"Invalid CSV headers. Expected at least {MIN_HEADER_COLUMNS} non-empty columns."
        )


def _read_single_section(text: str) -> pd.DataFrame:
    """Read a report with one header row."""
    lines = [line for line in _strip_bom(text).splitlines() if line.strip()]
    if not lines:
        return pd.DataFrame()
    headers = _read_header(lines[0])
    _validate_headers(headers)
    df = _read_block(headers, lines[1:])
    df.columns = headers
    return df


def parse_flex_csv(text: str, source: str = "FLEX_API") -> ParsedReport:
    """Parse report text into raw rows, merging sections when present."""
    df = merge_sections(text) if is_multi_section(text) else _read_single_section(text)
    report = ParsedReport()
    if df.columns.empty:
        report.errors.append("The CSV content appears to be empty.")
        return report
    report.headers = [str(column) for column in df.columns]
    _validate_headers(report.headers)
    df = df.loc[:, ~df.columns.duplicated(keep="last")]
    for line_number, record in enumerate(df.to_dict(orient="records"), start=2):
        row: RawRow = {"lineNumber": str(line_number), "_SOURCE": source}
        row.update({str(key): str(value).strip() for key, value in record.items()})
        report.rows.append(row)
    if not report.rows:
        report.errors.append("No data rows found in CSV.")
    return report


def summarize_rows(rows: Iterable[RawRow]) -> dict[str, int]:
    """Return rough per-category row counts for a parsed report preview."""
    summary = dict.fromkeys(
        ("trades", "dividends", "fees", "deposits", "withdrawals", "forex", "other"), 0
    )
    for row in rows:
        transaction_type = row.get("TransactionType", "")
        asset_class = row.get("AssetClass", "")
        exchange = row.get("Exchange", "")
        notes = row.get("Notes/Codes", "").lower()
        if transaction_type == "ExchTrade" and asset_class != "CASH" and exchange != "IDEALFX":
            key = "trades"
        elif "div" in notes or "withholding" in notes or "tax" in notes:
            key = "dividends"
        elif "fee" in notes or "commission" in notes:
            key = "fees"
        elif "deposit" in notes:
            key = "deposits"
        elif "withdrawal" in notes:
            key = "withdrawals"
        elif asset_class == "CASH" or exchange == "IDEALFX":
            key = "forex"
        else:
            key = "other"
        summary[key] += 1
    return summary
