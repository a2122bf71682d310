"""Tests for report section splitting, merging and parsing."""

from unittest import TestCase

from ibkr_ledger.errors import (
    CsvFormatError,
    NoSectionsFoundError,
    NoTradesSectionError,
    SectionSplitError,
)
from ibkr_ledger.sections import (
    SectionKind,
    detect_section_kind,
    extract_merged_section,
    is_multi_section,
    merge_sections,
    normalize_headers,
    parse_flex_csv,
    split_sections,
    summarize_rows,
)

TRADES_SECTION = (
    "ClientAccountID,TransactionType,Exchange,Buy/Sell,Symbol,TradeDate,Quantity\n"
    "U1,ExchTrade,NASDAQ,BUY,AAPL,20240102,10\n"
    "U1,ExchTrade,NASDAQ,SELL,AAPL,20240105,5\n"
)
DIVIDENDS_SECTION = (
    '"ClientAccountID","Date/Time","Amount","Symbol","Description"\n'
    '"U1","20240110","2.5","AAPL","AAPL(US0378331005) Cash Dividend USD 0.25 per Share"\n'
)
TRANSFERS_SECTION = (
    "ClientAccountID,Date,Type,Direction,TransferCompany,CashTransfer,CurrencyPrimary\n"
    "U1,20240111,INTERNAL,IN,U2,100,USD\n"
)


class TestSectionDetection(TestCase):
    """Test section kind detection and header renames."""

    def test_detects_each_kind(self) -> None:
        """Test header sets map to section kinds."""
        self.assertIs(
            detect_section_kind(["ClientAccountID", "TransactionType", "Exchange", "Buy/Sell"]),
            SectionKind.TRADES,
        )
        self.assertIs(
            detect_section_kind(["ClientAccountID", '"Date/Time"', "Amount"]),
            SectionKind.DIVIDENDS,
        )
        self.assertIs(
            detect_section_kind(["Direction", "TransferCompany", "CashTransfer"]),
            SectionKind.TRANSFERS,
        )
        self.assertIs(detect_section_kind(["ClientAccountID", "Foo"]), SectionKind.UNKNOWN)

    def test_dividends_rule_rejects_transaction_type(self) -> None:
        """Test forbidden column prevents a dividends match."""
        self.assertIs(
            detect_section_kind(["Date/Time", "Amount", "TransactionType"]), SectionKind.UNKNOWN
        )

    def test_normalize_headers_renames_dividend_columns(self) -> None:
        """Test dividend columns take their trade-section names."""
        self.assertEqual(
            normalize_headers(
                ["Date/Time", "Amount", "Type", "Code", "Symbol"], SectionKind.DIVIDENDS
            ),
            ["TradeDate", "TradeMoney", "Notes/Codes", "TransactionType", "Symbol"],
        )
        self.assertEqual(normalize_headers(["Date"], SectionKind.TRADES), ["Date"])


class TestSplitSections(TestCase):
    """Test header-delimited splitting."""

    def test_splits_on_signature_lines_and_drops_blank_lines(self) -> None:
        """Test each header starts a section with its body lines."""
        text = "\ufeff" + TRADES_SECTION + "\n" + DIVIDENDS_SECTION
        sections = split_sections(text)
        self.assertEqual(len(sections), 2)
        self.assertEqual(len(sections[0].lines), 2)
        self.assertEqual(sections[0].line_start, 1)
        self.assertEqual(len(sections[1].lines), 1)
        self.assertIs(sections[1].kind, SectionKind.DIVIDENDS)

    def test_lines_before_first_header_are_ignored(self) -> None:
        """Test preamble text is not attached to any section."""
        sections = split_sections("preamble\n" + TRADES_SECTION)
        self.assertEqual(len(sections), 1)
        self.assertEqual(sections[0].headers[0], "ClientAccountID")

    def test_is_multi_section(self) -> None:
        """Test multi-section detection counts signature lines."""
        self.assertFalse(is_multi_section(TRADES_SECTION))
        self.assertTrue(is_multi_section(TRADES_SECTION + DIVIDENDS_SECTION))


class TestMergeSections(TestCase):
    """Test merging sections into one table."""

    def test_merges_trades_and_dividends_into_column_superset(self) -> None:
        """Test two trades rows and one dividend row merge into three rows."""
        merged = merge_sections(TRADES_SECTION + DIVIDENDS_SECTION)
        self.assertEqual(len(merged), 3)
        self.assertEqual(
            list(merged.columns),
            [
                "ClientAccountID",
                "TransactionType",
                "Exchange",
                "Buy/Sell",
                "Symbol",
                "TradeDate",
                "Quantity",
                "TradeMoney",
                "Description",
            ],
        )
        dividend = merged.iloc[2]
        self.assertEqual(dividend["TradeDate"], "20240110")
        self.assertEqual(dividend["TradeMoney"], "2.5")
        self.assertEqual(dividend["TransactionType"], "")
        self.assertEqual(merged.iloc[0]["TradeMoney"], "")

    def test_transfer_section_columns_are_renamed(self) -> None:
        """Test transfer rows map direction and amount columns."""
        merged = merge_sections(TRADES_SECTION + TRANSFERS_SECTION)
        transfer = merged.iloc[2]
        self.assertEqual(transfer["TransactionType"], "INTERNAL")
        self.assertEqual(transfer["_TRANSFER_DIRECTION"], "IN")
        self.assertEqual(transfer["TradeMoney"], "100")
        self.assertEqual(transfer["Exchange"], "U2")
        self.assertEqual(transfer["TradeDate"], "20240111")

    def test_ragged_rows_are_padded(self) -> None:
        """Test short rows get empty values."""
        text = TRADES_SECTION + "U1,ExchTrade,NASDAQ\n" + DIVIDENDS_SECTION
        merged = merge_sections(text)
        self.assertEqual(len(merged), 4)
        self.assertEqual(merged.iloc[2]["Symbol"], "")

    def test_missing_sections_raise(self) -> None:
        """Test missing header or trades section raises split errors."""
        with self.assertRaises(NoSectionsFoundError):
            merge_sections("just,some,text\n")
        with self.assertRaises(NoTradesSectionError) as context:
            merge_sections(DIVIDENDS_SECTION + DIVIDENDS_SECTION)
        self.assertIsInstance(context.exception, SectionSplitError)
        self.assertEqual(str(context.exception), "No trades section found in IBKR CSV")

    def test_extract_merged_section_returns_single_header_csv(self) -> None:
        """Test merged table is serialized with one header line."""
        text = extract_merged_section(TRADES_SECTION + DIVIDENDS_SECTION)
        lines = text.strip().split("\n")
        self.assertEqual(len(lines), 4)
        self.assertTrue(lines[0].startswith("ClientAccountID,TransactionType"))


class TestParseFlexCsv(TestCase):
    """Test parsing report text into raw rows."""

    def test_single_section_rows_carry_line_number_and_source(self) -> None:
        """Test rows are annotated with line number and source."""
        report = parse_flex_csv(TRADES_SECTION, source="report.csv")
        self.assertEqual(report.row_count, 2)
        self.assertEqual(report.errors, [])
        self.assertEqual(report.rows[0]["lineNumber"], "2")
        self.assertEqual(report.rows[1]["lineNumber"], "3")
        self.assertEqual(report.rows[0]["_SOURCE"], "report.csv")
        self.assertEqual(report.rows[0]["Symbol"], "AAPL")

    def test_multi_section_text_is_merged(self) -> None:
        """Test multi-section text parses into merged rows."""
        report = parse_flex_csv(TRADES_SECTION + DIVIDENDS_SECTION)
        self.assertEqual(report.row_count, 3)
        self.assertEqual(report.rows[2]["_SOURCE"], "FLEX_API")
        self.assertIn("TradeMoney", report.headers)

    def test_empty_and_header_only_inputs_report_errors(self) -> None:
        """Test empty inputs produce non-fatal errors."""
        self.assertEqual(parse_flex_csv("").errors, ["The CSV content appears to be empty."])
        header_only = parse_flex_csv(TRADES_SECTION.split("\n")[0])
        self.assertEqual(header_only.errors, ["No data rows found in CSV."])

    def test_too_few_headers_raise(self) -> None:
        """Test narrow headers are rejected."""
        with self.assertRaises(CsvFormatError):
            parse_flex_csv("a,b\n1,2\n")

    def test_summarize_rows(self) -> None:
        """Test preview counts per category."""
        rows = [
            {"TransactionType": "ExchTrade", "AssetClass": "STK", "Exchange": "NASDAQ"},
            {"TransactionType": "ExchTrade", "AssetClass": "CASH", "Exchange": "IDEALFX"},
            {"Notes/Codes": "Withholding Tax"},
            {"Notes/Codes": "Other Fees"},
            {"Notes/Codes": "Deposit"},
            {},
        ]
        summary = summarize_rows(rows)
        self.assertEqual(summary["trades"], 1)
        self.assertEqual(summary["forex"], 1)
        self.assertEqual(summary["dividends"], 1)
        self.assertEqual(summary["fees"], 1)
        self.assertEqual(summary["deposits"], 1)
        self.assertEqual(summary["other"], 1)
