"""
Tests for environment configuration and structured logging
"""

import json
import logging

from p2p_lending.config import LendingConfig, reload_config
from p2p_lending.logging_config import JSONFormatter, setup_logging, log_action


class TestLendingConfig:

    def test_defaults(self):
        config = LendingConfig(_env_file=None)
        assert config.database_url == "memory://"
        assert config.api_port == 8090
        assert config.initial_fee_rate == "0.01"
        assert config.window_count == 4
        assert config.credit_bureau_url == ""
        assert config.simulated_clock

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("P2P_DATABASE_URL", "sqlite:///lending.db")
        monkeypatch.setenv("P2P_PENALTY_FEE_RATE", "0.02")
        monkeypatch.setenv("P2P_CREDIT_REPORTING_ENABLED", "false")

        config = reload_config()
        assert config.database_url == "sqlite:///lending.db"
        assert config.penalty_fee_rate == "0.02"
        assert not config.credit_reporting_enabled

        monkeypatch.delenv("P2P_DATABASE_URL")
        monkeypatch.delenv("P2P_PENALTY_FEE_RATE")
        monkeypatch.delenv("P2P_CREDIT_REPORTING_ENABLED")
        reload_config()


class TestStructuredLogging:

    def _record(self, logger_name="p2p_lending.test", **attrs):
        record = logging.LogRecord(logger_name, logging.INFO, __file__, 1, "Payment applied", (), None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        record = self._record(user_id="u1", action="make_payment", resource="loan:L1",
                              extra={"outstanding": "790.00"})
        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["message"] == "Payment applied"
        assert entry["action"] == "make_payment"
        assert entry["resource"] == "loan:L1"
        assert entry["extra"] == {"outstanding": "790.00"}
        assert "correlation_id" not in entry

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", logger_name="p2p_lending.setup_test")
        setup_logging("WARNING", logger_name="p2p_lending.setup_test", log_format="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert not logger.propagate

    def test_log_action(self, caplog):
        logger = logging.getLogger("p2p_lending.action_test")
        with caplog.at_level(logging.INFO, logger="p2p_lending.action_test"):
            log_action(logger, "info", "Escrow funded", user_id="lender-1",
                       action="fund_escrow", resource="loan:L1")

        record = caplog.records[0]
        assert record.getMessage() == "Escrow funded"
        assert record.user_id == "lender-1"
        assert record.action == "fund_escrow"

    def test_log_action_respects_level(self, caplog):
        logger = logging.getLogger("p2p_lending.quiet_test")
        with caplog.at_level(logging.WARNING, logger="p2p_lending.quiet_test"):
            log_action(logger, "info", "Not shown")
        assert caplog.records == []
