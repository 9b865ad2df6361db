import logging
import os
import unittest
from unittest import mock

from market.errors import (
    InsufficientStockError,
    InvalidStatusForCancelError,
    NotFoundError,
    ValidationError,
)
from utils.config import Settings
from utils.logger import get_logger


class SettingsTestCase(unittest.TestCase):
    def test_defaults(self):
        with mock.patch.dict(os.environ, {}, clear=True):
            settings = Settings.from_env()
        self.assertEqual(settings, Settings())
        self.assertEqual(settings.allowed_origins, ("http://localhost:3000",))
        self.assertEqual(settings.port, 5000)

    def test_environment_overrides(self):
        env = {
            "RAMIKART_DB_PATH": "/tmp/market.sqlite",
            "RAMIKART_PUSH_TIMEOUT": "0.25",
            "RAMIKART_ACK_TIMEOUT": "",
            "RAMIKART_ALLOWED_ORIGINS": "https://a.example, https://b.example,",
            "PORT": "8080",
        }
        with mock.patch.dict(os.environ, env, clear=True):
            settings = Settings.from_env()
        self.assertEqual(settings.db_path, "/tmp/market.sqlite")
        self.assertEqual(settings.push_timeout, 0.25)
        self.assertEqual(settings.ack_timeout, 5.0)
        self.assertEqual(settings.allowed_origins, ("https://a.example", "https://b.example"))
        self.assertEqual(settings.port, 8080)

    def test_bad_numbers_are_reported(self):
        with mock.patch.dict(os.environ, {"PORT": "http"}, clear=True):
            with self.assertRaises(ValueError):
                Settings.from_env()


class ErrorsTestCase(unittest.TestCase):
    def test_reasons_and_categories(self):
        err = InsufficientStockError("p1", 3)
        self.assertEqual(err.category, "conflict")
        self.assertEqual(err.to_dict()["reason"], "insufficient_stock")
        self.assertEqual(err.to_dict()["productId"], "p1")

        self.assertEqual(InvalidStatusForCancelError("shipped").to_dict()["status"], "shipped")
        self.assertEqual(ValidationError("bad").reason, "invalid_request")
        self.assertEqual(NotFoundError("gone", "order_not_found").reason, "order_not_found")


class LoggerTestCase(unittest.TestCase):
    def test_one_handler_per_logger(self):
        with mock.patch.dict(os.environ, {"RAMIKART_LOG_LEVEL": "warning"}, clear=True):
            logger = get_logger("ramikart.test")
            again = get_logger("ramikart.test")
        self.assertIs(logger, again)
        self.assertEqual(len(logger.handlers), 1)
        self.assertEqual(logger.level, logging.WARNING)
        self.assertFalse(logger.propagate)
