"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and integrity
verification of the record kept for every committed state change.
"""

import pytest
import tempfile
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from bank_ledger.audit import AuditEvent, AuditEventType, AuditTrail
from bank_ledger.storage import InMemoryLedgerStorage, SQLiteLedgerStorage


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        fields = dict(
            id="AUDIT001",
            created_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            event_type=AuditEventType.DEPOSIT_POSTED,
            entity_type="transaction",
            entity_id="1",
            previous_hash="prev_hash",
            current_hash="",
            metadata={"amount": Decimal("100.00")},
            user_id="alice"
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_serialization(self):
        """Test that metadata is converted to JSON-friendly values"""
        now = datetime.now(timezone.utc)
        event = self.make_event(metadata={
            "decimal_amount": Decimal("1234.56"),
            "datetime_value": now,
            "enum_value": AuditEventType.ACCOUNT_CREATED,
            "nested": {"inner": [Decimal("1.10"), Decimal("2.20")]}
        })

        assert event.metadata["decimal_amount"] == "1234.56"
        assert event.metadata["datetime_value"] == now.isoformat()
        assert event.metadata["enum_value"] == "account_created"
        assert event.metadata["nested"]["inner"] == ["1.10", "2.20"]

    def test_hash_calculation(self):
        event = self.make_event()

        expected_hash = event.calculate_hash()
        assert len(expected_hash) == 64  # SHA-256 hex digest
        assert expected_hash == event.calculate_hash()

    def test_hash_verification(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()
        assert event.verify_hash()

        event.current_hash = "tampered_hash"
        assert not event.verify_hash()

    def test_hash_covers_content(self):
        first = self.make_event()
        second = self.make_event()
        assert first.calculate_hash() == second.calculate_hash()

        second.entity_id = "2"
        assert first.calculate_hash() != second.calculate_hash()

        third = self.make_event(metadata={"amount": Decimal("100.01")})
        assert first.calculate_hash() != third.calculate_hash()

    def test_dict_round_trip(self):
        event = self.make_event()
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())

        assert restored == event
        assert restored.verify_hash()


class TestAuditTrail:
    """Test AuditTrail functionality"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryLedgerStorage()
        self.audit_trail = AuditTrail(self.storage)

    def test_log_first_event(self):
        event = self.audit_trail.log_event(
            event_type=AuditEventType.ACCOUNT_CREATED,
            entity_type="account",
            entity_id="ACC001",
            metadata={"initial_balance": Decimal("0.00")},
            user_id="alice"
        )

        assert event.previous_hash == ""
        assert event.verify_hash()
        assert self.audit_trail.get_latest_hash() == event.current_hash

    def test_events_are_chained(self):
        first = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")
        second = self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "transaction", "1")
        third = self.audit_trail.log_event(AuditEventType.WITHDRAWAL_POSTED, "transaction", "2")

        assert second.previous_hash == first.current_hash
        assert third.previous_hash == second.current_hash
        assert [e.id for e in self.audit_trail.get_all_events()] == [first.id, second.id, third.id]

    def test_events_for_entity(self):
        self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC002")
        self.audit_trail.log_event(AuditEventType.ACCOUNT_DELETED, "account", "ACC001")

        events = self.audit_trail.get_events_for_entity("account", "ACC001")
        assert [e.event_type for e in events] == [
            AuditEventType.ACCOUNT_CREATED, AuditEventType.ACCOUNT_DELETED
        ]
        assert self.audit_trail.get_events_for_entity("transaction", "ACC001") == []

    def test_verify_intact_chain(self):
        for i in range(5):
            self.audit_trail.log_event(
                AuditEventType.DEPOSIT_POSTED, "transaction", str(i),
                metadata={"amount": Decimal("10.00")}
            )

        result = self.audit_trail.verify_integrity()
        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_detects_tampered_metadata(self):
        self.audit_trail.log_event(
            AuditEventType.DEPOSIT_POSTED, "transaction", "1",
            metadata={"amount": Decimal("10.00")}
        )
        self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "transaction", "2")

        # Rewrite history behind the trail's back
        self.storage._audit_events[0]["metadata"]["amount"] = "10000.00"

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert [e["position"] for e in result["hash_errors"]] == [0]

    def test_detects_removed_event(self):
        for i in range(3):
            self.audit_trail.log_event(AuditEventType.DEPOSIT_POSTED, "transaction", str(i))

        del self.storage._audit_events[1]

        result = self.audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"] == []
        assert [b["position"] for b in result["chain_breaks"]] == [1]

    def test_new_trail_continues_existing_chain(self):
        last = self.audit_trail.log_event(AuditEventType.ACCOUNT_CREATED, "account", "ACC001")

        reopened = AuditTrail(self.storage)
        next_event = reopened.log_event(AuditEventType.ACCOUNT_DELETED, "account", "ACC001")

        assert next_event.previous_hash == last.current_hash
        assert reopened.verify_integrity()["valid"]


class TestSQLiteAuditTrail:
    """Test the audit chain survives a SQLite reopen"""

    def setup_method(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.db_path = Path(self.temp_dir.name) / "audit.db"

    def teardown_method(self):
        self.temp_dir.cleanup()

    def test_chain_persists(self):
        storage = SQLiteLedgerStorage(self.db_path)
        trail = AuditTrail(storage)
        first = trail.log_event(
            AuditEventType.TRANSFER_POSTED, "transfer", "T-1",
            metadata={"amount": Decimal("5.00")}
        )
        storage.close()

        storage = SQLiteLedgerStorage(self.db_path)
        try:
            trail = AuditTrail(storage)
            assert trail.get_latest_hash() == first.current_hash

            trail.log_event(AuditEventType.TRANSFER_POSTED, "transfer", "T-2")
            result = trail.verify_integrity()
            assert result["valid"]
            assert result["total_events"] == 2
        finally:
            storage.close()
