"""
Test suite for configuration and structured logging
"""

import json
import logging

from core_lending.config import LendingConfig, reload_config
from core_lending.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestLendingConfig:

    def test_defaults(self):
        cfg = LendingConfig()
        assert cfg.default_interest_rate == "10"
        assert cfg.upi_max_amount == "100000"
        assert cfg.notification_webhook_url == ""
        assert cfg.log_format == "json"

    def test_keyword_overrides(self):
        cfg = LendingConfig(database_url="memory://", api_port=9000)
        assert cfg.database_url == "memory://"
        assert cfg.api_port == 9000

    def test_reconciler_ids(self):
        assert LendingConfig().reconciler_id_set() == set()
        cfg = LendingConfig(reconciler_ids=" recon-1, ,recon-2 ")
        assert cfg.reconciler_id_set() == {"recon-1", "recon-2"}

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("LENDIT_DEFAULT_INTEREST_RATE", "14")
        monkeypatch.setenv("LENDIT_UPI_MAX_AMOUNT", "50000")
        cfg = reload_config()
        assert cfg.default_interest_rate == "14"
        assert cfg.upi_max_amount == "50000"
        monkeypatch.delenv("LENDIT_DEFAULT_INTEREST_RATE")
        monkeypatch.delenv("LENDIT_UPI_MAX_AMOUNT")
        reload_config()


class TestJSONFormatter:

    def test_structured_fields(self):
        logger = logging.getLogger("lendit.test.json")
        record = logger.makeRecord(logger.name, logging.INFO, __file__, 1, "Loan claimed", (), None)
        record.user_id = "lender-1"
        record.action = "claim"
        record.resource = "agreement:A1"
        record.extra = {"status": "claimed"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Loan claimed"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "lender-1"
        assert entry["resource"] == "agreement:A1"
        assert entry["extra"] == {"status": "claimed"}

    def test_missing_fields_are_omitted(self):
        record = logging.getLogger("x").makeRecord("x", logging.WARNING, __file__, 1, "plain", (), None)
        entry = json.loads(JSONFormatter().format(record))
        assert "user_id" not in entry
        assert "extra" not in entry


class TestLogAction:

    def test_log_action_attaches_context(self):
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = get_logger("lendit.test.actions")
        logger.setLevel(logging.INFO)
        logger.addHandler(Capture())

        log_action(logger, "info", "Payment recorded", user_id="borrower-1",
                   action="process_payment", resource="transaction:T1", extra={"method": "upi"})
        log_action(logger, "debug", "skipped")

        assert len(records) == 1
        assert records[0].user_id == "borrower-1"
        assert records[0].extra == {"method": "upi"}

    def test_setup_logging_text_format(self, tmp_path):
        log_file = tmp_path / "lendit.log"
        logger = setup_logging("DEBUG", logger_name="lendit.test.setup",
                               log_format="text", log_file=str(log_file))
        logger.debug("hello")
        for handler in logger.handlers:
            handler.flush()
            handler.close()

        assert "hello" in log_file.read_text()
        assert logger.level == logging.DEBUG
        assert not logger.propagate
