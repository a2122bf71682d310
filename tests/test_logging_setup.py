"""Tests for package logging configuration."""

# pylint: disable=protected-access

import io
import logging
import os
from unittest import TestCase
from unittest.mock import patch

from ibkr_ledger import logging_setup


class TestParseLevel(TestCase):
    """Test level resolution order."""

    def test_explicit_levels(self) -> None:
        """Test ints, names and numeric strings are accepted."""
        self.assertEqual(logging_setup._parse_level(logging.DEBUG), logging.DEBUG)
        self.assertEqual(logging_setup._parse_level(" warning "), logging.WARNING)
        self.assertEqual(logging_setup._parse_level("15"), 15)

    def test_environment_and_default(self) -> None:
        """Test unknown names fall back to the environment, then the default."""
        with patch.dict(os.environ, {logging_setup._LEVEL_ENV_VAR_NAME: "ERROR"}):
            self.assertEqual(logging_setup._parse_level(None), logging.ERROR)
            self.assertEqual(logging_setup._parse_level("nonsense"), logging.ERROR)
        self.assertEqual(logging_setup._parse_level(None, logging.WARNING), logging.WARNING)


class TestConfigureLogging(TestCase):
    """Test one-time handler installation."""

    def setUp(self) -> None:
        self.logger = logging.getLogger(logging_setup._PKG_LOGGER_NAME)
        self.saved = (list(self.logger.handlers), self.logger.level, self.logger.propagate)
        self.logger.handlers = []
        configured = patch.object(logging_setup, "_CONFIGURED", False)
        configured.start()
        self.addCleanup(configured.stop)

    def tearDown(self) -> None:
        handlers, level, propagate = self.saved
        self.logger.handlers = handlers
        self.logger.setLevel(level)
        self.logger.propagate = propagate

    def test_configure_installs_single_stream_handler(self) -> None:
        """Test repeated calls keep one handler and records reach the stream."""
        stream = io.StringIO()
        logging_setup.configure_logging("INFO", fmt="%(levelname)s %(message)s", stream=stream)
        logging_setup.configure_logging("DEBUG", stream=io.StringIO())
        self.assertEqual(len(self.logger.handlers), 1)
        self.assertEqual(self.logger.level, logging.INFO)
        self.assertFalse(self.logger.propagate)
        logging_setup.get_logger("ibkr_ledger.sections").info("parsed %d rows", 3)
        self.assertEqual(stream.getvalue(), "INFO parsed 3 rows\n")

    def test_configure_replaces_null_handler(self) -> None:
        """Test NullHandler added before configuration is removed."""
        logging_setup.get_logger("ibkr_ledger.classifier")
        self.assertIsInstance(self.logger.handlers[0], logging.NullHandler)
        logging_setup.configure_logging(default_level=logging.WARNING, stream=io.StringIO())
        (handler,) = self.logger.handlers
        self.assertIsInstance(handler, logging.StreamHandler)
        self.assertEqual(handler.level, logging.WARNING)

    def test_get_logger_adds_null_handler_once(self) -> None:
        """Test unconfigured package gets exactly one NullHandler."""
        logger = logging_setup.get_logger("ibkr_ledger.registry")
        logging_setup.get_logger("ibkr_ledger.registry")
        self.assertEqual(logger.name, "ibkr_ledger.registry")
        self.assertEqual(len(self.logger.handlers), 1)
