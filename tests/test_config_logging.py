"""
Tests for configuration loading and structured logging
"""

import io
import json
import logging
from decimal import Decimal
from datetime import datetime, timezone

from committee_ledger.config import LedgerConfig, get_config, reload_config
from committee_ledger.currency import Money, Currency
from committee_ledger.logging_config import JSONFormatter, setup_logging, log_action
from committee_ledger.storage import InMemoryStorage
from committee_ledger.committees import CommitteeManager


class TestLedgerConfig:
    """Test LedgerConfig defaults and environment overrides"""

    def test_defaults(self):
        """Test the business rule defaults"""
        config = LedgerConfig(_env_file=None)

        assert config.ledger_currency == Currency.INR
        assert config.closure_tolerance_amount == Decimal("1")
        assert config.penalty_rate == Decimal("0.01")
        assert config.loan_interest_rate == Decimal("1")
        assert config.default_batch_duration_months == 36
        assert config.first_loan_number == 1001
        assert config.first_external_member_number == 501

    def test_maturity_ratio(self):
        """Test that a full batch of 1000 a month matures at 50,000"""
        config = LedgerConfig(_env_file=None)
        contributed = Money(Decimal("36000"), Currency.INR)

        assert contributed * config.maturity_ratio == Money(Decimal("50000"), Currency.INR)

    def test_environment_override(self, monkeypatch):
        """Test that LEDGER_ variables override defaults"""
        monkeypatch.setenv("LEDGER_COMMITTEE_PENALTY_RATE", "0.02")
        monkeypatch.setenv("LEDGER_DEFAULT_BATCH_DURATION_MONTHS", "24")
        monkeypatch.setenv("LEDGER_CURRENCY", "usd")

        config = LedgerConfig(_env_file=None)

        assert config.penalty_rate == Decimal("0.02")
        assert config.default_batch_duration_months == 24
        assert config.ledger_currency == Currency.USD

    def test_reload_feeds_new_managers(self, monkeypatch):
        """Test that managers built after a reload use the new penalty rate"""
        monkeypatch.setenv("LEDGER_COMMITTEE_PENALTY_RATE", "0.02")
        try:
            reload_config()
            assert get_config().penalty_rate == Decimal("0.02")

            manager = CommitteeManager(InMemoryStorage())
            manager.create_batch(2024)
            manager.enroll("M-1", 2024, Money(Decimal("1000"), Currency.INR))

            due = manager.member_due("M-1", 2024, 1)
            assert due.current_month_interest == Money(Decimal("20"), Currency.INR)
        finally:
            monkeypatch.delenv("LEDGER_COMMITTEE_PENALTY_RATE")
            reload_config()

        assert get_config().penalty_rate == Decimal("0.01")


class TestStructuredLogging:
    """Test JSON logging and log_action"""

    def capture(self, level="DEBUG", format_type="json"):
        logger = setup_logging(level=level, logger_name="committee_ledger.test", format_type=format_type)
        stream = io.StringIO()
        logger.handlers[0].setStream(stream)
        return logger, stream

    def test_log_action_fields(self):
        """Test that action, resource and extra land in the JSON entry"""
        logger, stream = self.capture()

        log_action(logger, "info", "Loan issued: L-1001", action="issue_loan",
                   resource="loan:L-1001", extra={"principal": "INR 10,000.00"})

        entry = json.loads(stream.getvalue().strip())
        assert entry["level"] == "INFO"
        assert entry["logger"] == "committee_ledger.test"
        assert entry["message"] == "Loan issued: L-1001"
        assert entry["action"] == "issue_loan"
        assert entry["resource"] == "loan:L-1001"
        assert entry["extra"] == {"principal": "INR 10,000.00"}
        assert "timestamp" in entry

    def test_missing_fields_dropped(self):
        """Test that absent structured fields are omitted rather than null"""
        logger, stream = self.capture()

        logger.info("plain message")

        entry = json.loads(stream.getvalue().strip())
        assert "action" not in entry
        assert "extra" not in entry

    def test_level_filtering(self):
        """Test that actions below the configured level are not emitted"""
        logger, stream = self.capture(level="WARNING")

        log_action(logger, "info", "Payment recorded", action="record_payment")
        log_action(logger, "warning", "Missing batch", action="member_dossier")

        lines = stream.getvalue().strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["level"] == "WARNING"

    def test_exception_included(self):
        """Test that exception details are formatted into the entry"""
        logger, stream = self.capture()

        try:
            raise ValueError("Loan L-9 not found")
        except ValueError:
            logger.exception("Lookup failed")

        entry = json.loads(stream.getvalue().strip())
        assert "Loan L-9 not found" in entry["exception"]

    def test_text_format(self):
        """Test the plain-text formatter"""
        logger, stream = self.capture(format_type="text")

        logger.info("Batch created: 2024")

        assert "| INFO     | committee_ledger.test | Batch created: 2024" in stream.getvalue()

    def test_log_file(self, tmp_path):
        """Test logging to a file"""
        log_file = tmp_path / "ledger.log"
        logger = setup_logging(logger_name="committee_ledger.file_test", log_file=str(log_file))

        logger.warning("written to file")
        for handler in logger.handlers:
            handler.flush()
            handler.close()

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "written to file"

    def test_formatter_serializes_unknown_types(self):
        """Test that non-JSON values in extra are stringified"""
        record = logging.LogRecord("committee_ledger", logging.INFO, __file__, 1, "msg", (), None)
        record.extra = {"as_of": datetime(2024, 1, 1, tzinfo=timezone.utc), "amount": Decimal("10.50")}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["extra"] == {"as_of": "2024-01-01 00:00:00+00:00", "amount": "10.50"}
