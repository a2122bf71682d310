"""Tests for exchange currency lookup and cash placeholder symbols."""

from types import MappingProxyType
from unittest import TestCase

from ibkr_ledger.exchanges import (
    EXCHANGE_TO_CURRENCY,
    create_cash_symbol,
    currency_for_exchange,
    currency_from_cash_symbol,
    is_cash_symbol,
)


class TestCurrencyForExchange(TestCase):
    """Test exchange to currency lookup."""

    def test_known_and_unknown_exchanges(self) -> None:
        """Test lookup trims codes and returns None for unknown ones."""
        self.assertEqual(currency_for_exchange(" LSE "), "GBP")
        self.assertEqual(currency_for_exchange("NASDAQ"), "USD")
        self.assertIsNone(currency_for_exchange("MOON"))
        self.assertIsNone(currency_for_exchange(""))
        self.assertIsNone(currency_for_exchange(None))

    def test_injected_table(self) -> None:
        """Test custom table replaces the default one."""
        table = MappingProxyType({"XETRA": "EUR"})
        self.assertEqual(currency_for_exchange("XETRA", table), "EUR")
        self.assertIsNone(currency_for_exchange("LSE", table))

    def test_default_table_is_read_only(self) -> None:
        """Test default table cannot be mutated."""
        with self.assertRaises(TypeError):
            EXCHANGE_TO_CURRENCY["MOON"] = "USD"  # type: ignore[index]


class TestCashSymbols(TestCase):
    """Test cash placeholder symbols."""

    def test_create_and_read_back(self) -> None:
        """Test placeholder symbols carry their currency."""
        symbol = create_cash_symbol("EUR")
        self.assertEqual(symbol, "$CASH-EUR")
        self.assertTrue(is_cash_symbol(symbol))
        self.assertEqual(currency_from_cash_symbol(symbol), "EUR")

    def test_non_cash_symbols(self) -> None:
        """Test ticker symbols and blanks are not cash placeholders."""
        self.assertFalse(is_cash_symbol("AAPL"))
        self.assertFalse(is_cash_symbol(None))
        self.assertFalse(is_cash_symbol(""))
        self.assertIsNone(currency_from_cash_symbol("AAPL"))
