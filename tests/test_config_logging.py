"""
Tests for configuration loading and structured logging
"""

import json
import logging
from decimal import Decimal

from union_ledger.config import UnionLedgerConfig, reload_config, get_config
from union_ledger.logging_config import JSONFormatter, setup_logging, get_logger, log_action
from union_ledger.storage import InMemoryStorage
from union_ledger.system import LedgerSystem
from union_ledger.currency import Currency


class TestConfig:
    """Environment-driven settings"""

    def test_defaults(self):
        config = UnionLedgerConfig()
        assert config.default_currency == "GMD"
        assert config.annual_interest_rate == Decimal("0.01")
        assert config.loan_max_term_months == 180
        assert config.loan_grace_period_days == 30

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("UNION_LEDGER_LOAN_ANNUAL_INTEREST_RATE", "0.05")
        monkeypatch.setenv("UNION_LEDGER_DEFAULT_CURRENCY", "USD")
        monkeypatch.setenv("UNION_LEDGER_GUARD_TIMEOUT_SECONDS", "1.5")
        config = UnionLedgerConfig()
        assert config.annual_interest_rate == Decimal("0.05")
        assert config.default_currency == "USD"
        assert config.guard_timeout_seconds == 1.5

    def test_reload_picks_up_environment(self, monkeypatch):
        monkeypatch.setenv("UNION_LEDGER_API_PORT", "9100")
        assert reload_config().api_port == 9100
        assert get_config().api_port == 9100
        monkeypatch.delenv("UNION_LEDGER_API_PORT")
        reload_config()

    def test_system_is_wired_from_config(self):
        config = UnionLedgerConfig(
            database_url="memory://",
            default_currency="USD",
            loan_annual_interest_rate="0.02",
            loan_max_term_months=24,
        )
        system = LedgerSystem(config=config, storage=InMemoryStorage())
        assert system.ledger.default_currency == Currency.USD
        assert system.loan_manager.annual_interest_rate == Decimal("0.02")
        assert system.loan_manager.max_term_months == 24
        system.close()


class TestLogging:
    """JSON structured logging"""

    def _capture(self, logger):
        records = []

        class Collector(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Collector()
        logger.addHandler(handler)
        return records, handler

    def test_log_action_attaches_structured_fields(self):
        logger = get_logger("union_ledger.test")
        logger.setLevel(logging.INFO)
        records, handler = self._capture(logger)
        try:
            log_action(
                logger, "info", "Credited GMD 10.00",
                actor_id="teller-1", action="deposit", resource="account:a1",
                extra={"transaction_id": "t1"}
            )
        finally:
            logger.removeHandler(handler)

        assert len(records) == 1
        entry = json.loads(JSONFormatter().format(records[0]))
        assert entry["message"] == "Credited GMD 10.00"
        assert entry["actor_id"] == "teller-1"
        assert entry["action"] == "deposit"
        assert entry["resource"] == "account:a1"
        assert entry["extra"] == {"transaction_id": "t1"}
        assert entry["level"] == "INFO"

    def test_disabled_level_is_skipped(self):
        logger = get_logger("union_ledger.test.quiet")
        logger.setLevel(logging.WARNING)
        records, handler = self._capture(logger)
        try:
            log_action(logger, "info", "ignored")
        finally:
            logger.removeHandler(handler)
        assert records == []

    def test_formatter_omits_missing_fields(self):
        record = logging.LogRecord("union_ledger", logging.WARNING, __file__, 1, "plain", (), None)
        entry = json.loads(JSONFormatter().format(record))
        assert "actor_id" not in entry
        assert entry["logger"] == "union_ledger"

    def test_setup_logging_to_file(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging(level="DEBUG", log_file=str(log_file), logger_name="union_ledger.filetest")
        logger.debug("written")
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "written"
        assert entry["level"] == "DEBUG"
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_text_format(self):
        logger = setup_logging(log_format="text", logger_name="union_ledger.texttest")
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert len(logger.handlers) == 1
        logger.removeHandler(logger.handlers[0])
