"""Tests for shared pipeline data models."""

from unittest import TestCase

import pandas as pd
from pandas.testing import assert_frame_equal

from ibkr_ledger.config import (
    Activity,
    ActivityType,
    ClassifiedRow,
    Classification,
    TransactionGroup,
    TransactionSummary,
)


def _activity(activity_type: ActivityType, symbol: str = "AAPL") -> Activity:
    """Build activity of given type with fixed values."""
    return Activity("2024-01-02", symbol, activity_type, 10, 150, 1500, 1, "USD", "note", "acc")


class TestActivityType(TestCase):
    """Test activity type helpers."""

    def test_is_trade(self) -> None:
        """Test only buys and sells carry shares."""
        self.assertTrue(ActivityType.BUY.is_trade)
        self.assertTrue(ActivityType.SELL.is_trade)
        self.assertFalse(ActivityType.DIVIDEND.is_trade)
        self.assertFalse(ActivityType.DEPOSIT.is_trade)


class TestClassifiedRow(TestCase):
    """Test field access on classified rows."""

    def test_get_returns_default_for_missing_field(self) -> None:
        """Test missing and present fields."""
        row = ClassifiedRow(
            ActivityType.BUY, Classification.STOCK_BUY, {"Symbol": "AAPL"}
        )
        self.assertEqual(row.get("Symbol"), "AAPL")
        self.assertEqual(row.get("Quantity"), "")
        self.assertEqual(row.get("Quantity", "0"), "0")


class TestActivity(TestCase):
    """Test activity serialization."""

    def test_to_dict_unwraps_enum(self) -> None:
        """Test activity type is exported as its plain value."""
        payload = _activity(ActivityType.SELL).to_dict()
        self.assertEqual(payload["activity_type"], "SELL")
        self.assertEqual(payload["account_id"], "acc")
        self.assertEqual(payload["comment"], "note")


class TestTransactionSummary(TestCase):
    """Test per-category counting."""

    def test_from_activities(self) -> None:
        """Test every activity type lands in its category."""
        activities = [
            _activity(activity_type)
            for activity_type in ActivityType
        ]
        self.assertEqual(
            TransactionSummary.from_activities(activities),
            TransactionSummary(
                trades=2, dividends=1, deposits=2, withdrawals=2, fees=2, other=2
            ),
        )

    def test_empty(self) -> None:
        """Test empty input yields zero counts."""
        self.assertEqual(TransactionSummary.from_activities([]), TransactionSummary())


class TestTransactionGroup(TestCase):
    """Test dataframe export of a transaction group."""

    def test_to_dataframe_orders_columns(self) -> None:
        """Test dataframe has one row per activity and fixed column order."""
        group = TransactionGroup(
            "USD",
            "IBKR - USD",
            [_activity(ActivityType.BUY), _activity(ActivityType.DIVIDEND, "MSFT")],
        )
        df = group.to_dataframe()
        self.assertEqual(
            list(df.columns),
            [
                "date",
                "symbol",
                "activity_type",
                "quantity",
                "unit_price",
                "amount",
                "fee",
                "currency",
                "comment",
            ],
        )
        self.assertEqual(df["symbol"].tolist(), ["AAPL", "MSFT"])
        self.assertEqual(df["activity_type"].tolist(), ["BUY", "DIVIDEND"])

    def test_empty_group_has_columns(self) -> None:
        """Test empty group exports an empty frame with the same columns."""
        df = TransactionGroup("EUR", "IBKR - EUR").to_dataframe()
        expected = TransactionGroup("USD", "IBKR - USD", [_activity(ActivityType.BUY)])
        assert_frame_equal(df, pd.DataFrame(columns=list(expected.to_dataframe().columns)))
