import unittest
import logging
from logging.handlers import RotatingFileHandler

from callbridge.config.logging_config import LOG_FORMAT, configure_logging

class TestLoggingConfig(unittest.TestCase):
    def test_configure_logging(self):
        # Test that the function returns a logger
        logger = configure_logging("INFO")
        self.assertIsInstance(logger, logging.Logger)

        # Test that the logger has the correct name
        self.assertEqual(logger.name, "callbridge")

        # Test that the logger has the correct level
        self.assertEqual(logger.level, logging.INFO)
        self.assertFalse(logger.propagate)

        # Console handler first, with the shared format
        self.assertGreaterEqual(len(logger.handlers), 1)
        handler = logger.handlers[0]
        self.assertIsInstance(handler, logging.StreamHandler)
        self.assertNotIsInstance(handler, RotatingFileHandler)
        self.assertEqual(handler.formatter._fmt, LOG_FORMAT)
        self.assertEqual(LOG_FORMAT, "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    def test_reconfiguring_replaces_handlers(self):
        first = configure_logging("INFO")
        count = len(first.handlers)

        second = configure_logging("DEBUG")

        self.assertIs(first, second)
        self.assertEqual(len(second.handlers), count)
        self.assertEqual(second.level, logging.DEBUG)

    def test_unknown_level_falls_back_to_info(self):
        logger = configure_logging("CHATTY")
        self.assertEqual(logger.level, logging.INFO)

    def test_third_party_loggers_are_quiet(self):
        configure_logging("DEBUG")
        self.assertEqual(logging.getLogger("websockets").level, logging.WARNING)

if __name__ == "__main__":
    unittest.main()
