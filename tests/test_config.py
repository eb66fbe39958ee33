"""
Test suite for configuration and system wiring

Tests environment-driven settings and building a complete ledger from them.
"""

import json
import logging
import pytest
import tempfile
from decimal import Decimal
from pathlib import Path

from bank_ledger import config as config_module
from bank_ledger.access import Actor
from bank_ledger.config import LedgerConfig, reload_config
from bank_ledger.errors import Forbidden
from bank_ledger.logging_config import JSONFormatter, log_action
from bank_ledger.models import AccountPatch
from bank_ledger.storage import InMemoryLedgerStorage, SQLiteLedgerStorage
from bank_ledger.system import build_ledger


class TestLedgerConfig:
    """Test settings defaults and environment overrides"""

    def test_defaults(self):
        config = LedgerConfig(_env_file=None)

        assert config.database_url == "memory://"
        assert config.lock_timeout_seconds == 5.0
        assert config.max_conflict_retries == 3
        assert config.amount_scale == 2
        assert config.allow_owner_balance_edits is True
        assert config.enable_audit_logging is True
        assert config.log_format == "json"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LEDGER_DATABASE_URL", "sqlite:///ledger.db")
        monkeypatch.setenv("LEDGER_LOCK_TIMEOUT_SECONDS", "0.5")
        monkeypatch.setenv("LEDGER_ALLOW_OWNER_BALANCE_EDITS", "false")

        config = LedgerConfig(_env_file=None)

        assert config.database_url == "sqlite:///ledger.db"
        assert config.lock_timeout_seconds == 0.5
        assert config.allow_owner_balance_edits is False

    def test_reload_config(self, monkeypatch):
        original = config_module.config
        monkeypatch.setenv("LEDGER_MAX_CONFLICT_RETRIES", "7")
        try:
            reloaded = reload_config()
            assert reloaded.max_conflict_retries == 7
            assert config_module.get_config() is reloaded
        finally:
            config_module.config = original


class TestBuildLedger:
    """Test wiring a ledger from configuration"""

    def test_in_memory_system(self):
        system = build_ledger(LedgerConfig(_env_file=None, log_format="text"))
        try:
            assert isinstance(system.storage, InMemoryLedgerStorage)
            assert system.audit_trail is not None

            account = system.registry.create_account("alice", 100)
            system.engine.deposit(Actor.customer("alice"), account.id, "25.00")

            assert system.registry.get_account(Actor.admin("ops"), account.id).balance == Decimal("125.00")
            assert system.audit_trail.verify_integrity()["total_events"] == 2
        finally:
            system.close()

    def test_audit_can_be_disabled(self):
        system = build_ledger(LedgerConfig(_env_file=None, enable_audit_logging=False))
        try:
            assert system.audit_trail is None
            account = system.registry.create_account("alice", 1)
            system.engine.withdraw(Actor.customer("alice"), account.id, 1)
            assert system.storage.list_audit_events() == []
        finally:
            system.close()

    def test_settings_reach_components(self):
        config = LedgerConfig(
            _env_file=None,
            max_conflict_retries=9,
            lock_timeout_seconds=0.25,
            allow_owner_balance_edits=False
        )
        system = build_ledger(config)
        try:
            assert system.storage.max_retries == 9
            assert system.storage.lock_timeout == 0.25

            account = system.registry.create_account("alice", 1)
            with pytest.raises(Forbidden):
                system.registry.update_account(Actor.customer("alice"), account.id, AccountPatch(balance=5))
        finally:
            system.close()

    def test_sqlite_system(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            url = f"sqlite:///{Path(temp_dir) / 'ledger.db'}"
            system = build_ledger(LedgerConfig(_env_file=None, database_url=url))
            try:
                assert isinstance(system.storage, SQLiteLedgerStorage)
                account = system.registry.create_account("alice", 10)
                received = system.engine.transfer(
                    Actor.customer("alice"), account.id,
                    system.registry.create_account("bob").id, "2.50"
                )
                assert received.amount == Decimal("2.50")
            finally:
                system.close()

    def test_explicit_storage_is_used(self):
        storage = InMemoryLedgerStorage()
        system = build_ledger(LedgerConfig(_env_file=None), storage=storage)
        assert system.storage is storage


class TestStructuredLogging:
    """Test the JSON log format"""

    def test_json_formatter(self):
        logger = logging.getLogger("bank_ledger.tests.formatter")
        record = logger.makeRecord(logger.name, logging.WARNING, __name__, 0, "withdraw rejected", (), None)
        record.user_id = "alice"
        record.action = "withdraw"
        record.extra = {"kind": "InsufficientFunds"}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "WARNING"
        assert entry["logger"] == "bank_ledger.tests.formatter"
        assert entry["message"] == "withdraw rejected"
        assert entry["user_id"] == "alice"
        assert entry["extra"] == {"kind": "InsufficientFunds"}
        assert "resource" not in entry

    def test_log_action_respects_level(self):
        logger = logging.getLogger("bank_ledger.tests.level")
        records = []

        class Collect(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Collect()
        logger.addHandler(handler)
        logger.setLevel(logging.WARNING)
        try:
            log_action(logger, "info", "hidden", action="deposit")
            log_action(logger, "warning", "shown", action="deposit", extra={"kind": "NotFound"})
        finally:
            logger.removeHandler(handler)

        assert [r.getMessage() for r in records] == ["shown"]
        assert records[0].extra == {"kind": "NotFound"}
