"""
Tests for configuration, logging and ledger wiring
"""

import json
import logging
import pytest
from decimal import Decimal
from datetime import date

from treasury_ledger.config import LedgerConfig
from treasury_ledger.bootstrap import build_ledger, create_storage
from treasury_ledger.storage import InMemoryStorage, SQLiteStorage
from treasury_ledger.logging_config import JSONFormatter, LedgerTextFormatter, setup_logging, log_action
from treasury_ledger.categories import FundCategory
from treasury_ledger.currency import Currency
from treasury_ledger.errors import ValidationError, InvalidStateError
from treasury_ledger.funds import AccountKind


class TestConfig:
    """Test environment-driven settings"""

    def test_defaults(self):
        config = LedgerConfig()
        assert config.storage_backend == "memory"
        assert config.day_count_basis == 365
        assert config.block_delete_with_movements is True
        assert config.max_movement_amount is None

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("TREASURY_STORAGE_BACKEND", "sqlite")
        monkeypatch.setenv("TREASURY_MAX_MOVEMENT_AMOUNT", "1000000")
        monkeypatch.setenv("TREASURY_BLOCK_DELETE_WITH_MOVEMENTS", "false")

        config = LedgerConfig()
        assert config.storage_backend == "sqlite"
        assert config.max_movement_amount == "1000000"
        assert config.block_delete_with_movements is False


class TestBuildLedger:
    """Test wiring of storage and services"""

    def test_memory_backend(self):
        ledger = build_ledger(LedgerConfig(storage_backend="memory"))
        assert isinstance(ledger.storage, InMemoryStorage)
        assert ledger.petty_cash.funds is ledger.funds
        assert ledger.deposits.funds is ledger.funds

    def test_sqlite_backend(self, tmp_path):
        config = LedgerConfig(storage_backend="sqlite", database_path=str(tmp_path / "ledger.db"))
        ledger = build_ledger(config)
        assert isinstance(ledger.storage, SQLiteStorage)

        account = ledger.funds.create_account("Banco", AccountKind.BANK, "ARS", opening_balance=Decimal('100'))
        ledger.close()

        reopened = build_ledger(config)
        assert reopened.funds.require_account(account.id).current_balance == Decimal('100')
        assert reopened.audit_trail.verify_integrity()['valid'] is True
        reopened.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown storage backend"):
            create_storage(LedgerConfig(storage_backend="postgres"))

    def test_max_movement_amount(self):
        ledger = build_ledger(LedgerConfig(max_movement_amount="1000"))
        account = ledger.funds.create_account("Banco", AccountKind.BANK, "ARS", opening_balance=Decimal('5000'))

        with pytest.raises(ValidationError, match="maximum"):
            ledger.funds.post_movement(Decimal('1500'), "ARS", "2024-01-01", FundCategory.SUPPLIERS,
                                       source_account_id=account.id)

    def test_delete_guard_can_be_disabled(self):
        ledger = build_ledger(LedgerConfig(block_delete_with_movements=False))
        account = ledger.funds.create_account("Banco", AccountKind.BANK, "ARS", opening_balance=Decimal('5000'))
        ledger.funds.post_movement(Decimal('10'), "ARS", "2024-01-01", FundCategory.SUPPLIERS,
                                   source_account_id=account.id)

        ledger.funds.delete_account(account.id)
        assert ledger.funds.get_account(account.id) is None

        guarded = build_ledger(LedgerConfig())
        other = guarded.funds.create_account("Banco", AccountKind.BANK, "ARS")
        guarded.funds.post_movement(Decimal('10'), "ARS", "2024-01-01", FundCategory.OTHER_INCOME,
                                    destination_account_id=other.id)
        with pytest.raises(InvalidStateError):
            guarded.funds.delete_account(other.id)

    def test_audit_can_be_disabled(self):
        ledger = build_ledger(LedgerConfig(enable_audit_logging=False))
        ledger.funds.create_account("Banco", AccountKind.BANK, "ARS")
        assert ledger.audit_trail.count_events() == 0

    def test_injected_clock(self):
        ledger = build_ledger(LedgerConfig(), today=lambda: date(2030, 1, 1))
        assert ledger.deposits.today() == date(2030, 1, 1)


class TestLogging:
    """Test structured log output"""

    def test_json_formatter_includes_action_fields(self):
        logger = logging.getLogger("treasury.test")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "posted", (), None)
        record.user_id = "admin"
        record.action = "post_movement"

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "posted"
        assert entry["user_id"] == "admin"
        assert entry["action"] == "post_movement"
        assert "resource" not in entry

    def test_log_action_reaches_handler(self, caplog):
        logger = logging.getLogger("treasury.test_actions")
        with caplog.at_level(logging.INFO, logger="treasury.test_actions"):
            log_action(logger, "info", "Movement posted", user_id="u1", resource="m1")

        assert caplog.records[-1].resource == "m1"
        assert caplog.records[-1].user_id == "u1"

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", logger_name="treasury.setup_test", fmt="text")
        logger = setup_logging("WARNING", logger_name="treasury.setup_test")

        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING

    def test_log_action_carries_ledger_fields(self, caplog):
        logger = logging.getLogger("treasury.test_ledger_fields")
        with caplog.at_level(logging.INFO, logger="treasury.test_ledger_fields"):
            log_action(logger, "info", "Posted inflow", action="post_movement", resource="m1",
                       module="funds", entity_type="fund_movement", amount=Decimal('250.50'),
                       currency=Currency.ARS)
        record = caplog.records[-1]

        entry = json.loads(JSONFormatter().format(record))
        assert entry["ledger_module"] == "funds"
        assert entry["entity_type"] == "fund_movement"
        assert entry["amount"] == "250.50"
        assert entry["currency"] == "ARS"
        assert entry["logger"] == "treasury.test_ledger_fields"

        line = LedgerTextFormatter().format(record)
        assert line.endswith("Posted inflow (funds/fund_movement:m1)")

    def test_services_log_postings(self, caplog):
        ledger = build_ledger(LedgerConfig())
        account = ledger.funds.create_account("Banco", AccountKind.BANK, "ARS")

        with caplog.at_level(logging.INFO, logger="treasury.funds"):
            movement = ledger.funds.post_movement(Decimal('10'), "ARS", "2024-01-01", FundCategory.OTHER_INCOME,
                                                  destination_account_id=account.id)

        posted = [r for r in caplog.records if getattr(r, 'action', None) == "post_movement"]
        assert posted[-1].resource == movement.id
        assert posted[-1].ledger_module == "funds"
        assert posted[-1].currency == "ARS"
