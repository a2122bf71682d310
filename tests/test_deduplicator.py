"""Tests for activity fingerprints and duplicate filtering."""

import asyncio
from datetime import datetime, timezone
from unittest import IsolatedAsyncioTestCase, TestCase
from unittest.mock import AsyncMock

from ibkr_ledger.config import Activity, ActivityType, ExistingActivity
from ibkr_ledger.deduplicator import (
    create_activity_fingerprint,
    create_existing_activity_fingerprint,
    deduplicate_activities,
    filter_duplicate_activities,
)


def _activity(**overrides: object) -> Activity:
    """Build trade activity."""
    values: dict[str, object] = {
        "date": "2024-01-02",
        "symbol": "AAPL",
        "activity_type": ActivityType.BUY,
        "quantity": 10.0,
        "unit_price": 150.0,
        "amount": 1500.0,
        "fee": 1.0,
        "currency": "USD",
        "comment": "APPLE INC",
    }
    values.update(overrides)
    return Activity(**values)  # type: ignore[arg-type]


def _persisted(activity: Activity) -> ExistingActivity:
    """Return host-ledger representation with its storage quirks."""
    trade = activity.activity_type.is_trade
    return ExistingActivity(
        activity_date=datetime.fromisoformat(activity.date).replace(hour=12, tzinfo=timezone.utc),
        asset_id=activity.symbol.lower(),
        activity_type=activity.activity_type.value,
        quantity=activity.quantity if trade else 0.0,
        unit_price=activity.unit_price if trade else 0.0,
        amount=activity.amount,
        fee=activity.fee,
        currency=activity.currency,
        comment=activity.comment,
    )


BATCH = [
    _activity(),
    _activity(date="2024-01-03", activity_type=ActivityType.SELL, quantity=5.0),
    _activity(
        symbol="$CASH-USD",
        activity_type=ActivityType.DEPOSIT,
        quantity=1000.0,
        unit_price=1.0,
        amount=1000.0,
        fee=0.0,
        comment="",
    ),
    _activity(
        activity_type=ActivityType.DIVIDEND,
        quantity=30.0,
        unit_price=1.0,
        amount=30.0,
        fee=0.0,
        comment="AAPL(US0378331005) Cash Dividend USD 0.25 per Share",
    ),
    _activity(
        symbol="$CASH-USD",
        activity_type=ActivityType.FEE,
        quantity=2.0,
        unit_price=1.0,
        amount=2.0,
        fee=0.0,
        comment="Market data",
    ),
]


class TestFingerprint(TestCase):
    """Test type-aware fingerprints."""

    def test_trade_fingerprint_fields(self) -> None:
        """Test trade fingerprint includes quantity and price."""
        self.assertEqual(
            create_activity_fingerprint(_activity()),
            "2024-01-02|AAPL|BUY|10.000000|150.000000|1.000000|USD",
        )

    def test_persisted_representation_matches(self) -> None:
        """Test new and persisted activities share fingerprints despite storage quirks."""
        for activity in BATCH:
            with self.subTest(activity_type=activity.activity_type):
                self.assertEqual(
                    create_activity_fingerprint(activity),
                    create_existing_activity_fingerprint(_persisted(activity)),
                )

    def test_dividend_uses_per_share_rate(self) -> None:
        """Test dividend fingerprint ignores reconstructed amount when rate is known."""
        dividend = BATCH[3]
        reconstructed_differently = _activity(
            activity_type=ActivityType.DIVIDEND,
            quantity=31.0,
            unit_price=1.0,
            amount=31.0,
            fee=0.0,
            comment=dividend.comment,
        )
        self.assertEqual(
            create_activity_fingerprint(dividend),
            create_activity_fingerprint(reconstructed_differently),
        )

    def test_fee_comment_distinguishes_same_amount_fees(self) -> None:
        """Test fee fingerprints include the comment."""
        fee = BATCH[4]
        other_fee = _activity(
            symbol="$CASH-USD",
            activity_type=ActivityType.FEE,
            amount=2.0,
            fee=0.0,
            comment="Snapshot fee",
        )
        self.assertNotEqual(
            create_activity_fingerprint(fee), create_activity_fingerprint(other_fee)
        )

    def test_persisted_amount_none_is_zero(self) -> None:
        """Test missing persisted amount formats as zero."""
        existing = ExistingActivity("2024-01-02", "$CASH-USD", "DEPOSIT", amount=None)
        self.assertEqual(
            create_existing_activity_fingerprint(existing),
            "2024-01-02|$CASH-USD|DEPOSIT|0.000000|0.000000|",
        )


class TestFilterDuplicateActivities(TestCase):
    """Test duplicate filtering."""

    def test_reimport_of_same_batch_is_fully_deduplicated(self) -> None:
        """Test second import of a batch yields no unique activities."""
        existing = [_persisted(activity) for activity in BATCH]
        unique, duplicates = filter_duplicate_activities(BATCH, existing)
        self.assertEqual(unique, [])
        self.assertEqual(duplicates, BATCH)

    def test_identical_rows_in_one_batch(self) -> None:
        """Test first of two identical activities wins."""
        first, second = _activity(), _activity()
        unique, duplicates = filter_duplicate_activities([first, second], [])
        self.assertEqual(len(unique), 1)
        self.assertIs(unique[0], first)
        self.assertEqual(len(duplicates), 1)

    def test_currency_isolation(self) -> None:
        """Test activities differing only by currency are both kept."""
        unique, duplicates = filter_duplicate_activities(
            [_activity(), _activity(currency="EUR")], [_persisted(_activity(currency="GBP"))]
        )
        self.assertEqual(len(unique), 2)
        self.assertEqual(duplicates, [])

    def test_near_miss_is_logged(self) -> None:
        """Test same date and symbol without full match logs a comparison."""
        existing = [_persisted(_activity(quantity=11.0))]
        with self.assertLogs("ibkr_ledger.deduplicator", level="DEBUG") as logs:
            unique, _ = filter_duplicate_activities([_activity()], existing)
        self.assertEqual(len(unique), 1)
        self.assertTrue(any("not matched" in line for line in logs.output))


class TestDeduplicateActivities(IsolatedAsyncioTestCase):
    """Test per-sub-ledger deduplication with fetched activities."""

    async def test_fetches_existing_for_account(self) -> None:
        """Test persisted activities of one sub-ledger are fetched and filtered."""
        fetch = AsyncMock(return_value=[_persisted(BATCH[0])])
        unique, duplicate_count = await deduplicate_activities(BATCH, "acc-usd", fetch)
        fetch.assert_awaited_once_with("acc-usd")
        self.assertEqual(unique, BATCH[1:])
        self.assertEqual(duplicate_count, 1)

    async def test_empty_batch_skips_fetch(self) -> None:
        """Test empty batch does not call the host ledger."""
        fetch = AsyncMock()
        self.assertEqual(await deduplicate_activities([], "acc-usd", fetch), ([], 0))
        fetch.assert_not_awaited()

    async def test_fetch_errors_propagate(self) -> None:
        """Test host-ledger failures are left to the caller."""
        fetch = AsyncMock(side_effect=asyncio.TimeoutError())
        with self.assertRaises(asyncio.TimeoutError):
            await deduplicate_activities(BATCH, "acc-usd", fetch)
