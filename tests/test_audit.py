"""
Test suite for audit module

Tests the hash-chained audit trail, tamper detection and per-entity event
lookup.
"""

import pytest
from datetime import datetime, timezone
from decimal import Decimal

from loan_servicing.audit import AuditTrail, AuditEvent, AuditEventType
from loan_servicing.models import LoanStatus
from loan_servicing.storage import InMemoryStorage, SQLiteStorage


@pytest.fixture(params=["memory", "sqlite"])
def storage(request):
    backend = InMemoryStorage() if request.param == "memory" else SQLiteStorage(":memory:")
    yield backend
    backend.close()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


class TestAuditEvent:
    """Test AuditEvent functionality"""

    def make_event(self, **overrides):
        now = datetime.now(timezone.utc)
        fields = dict(
            id="AUDIT001",
            created_at=now,
            updated_at=now,
            sequence=1,
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id="LOAN001",
            previous_hash="",
            current_hash="",
            metadata={"amount": Decimal("100"), "status": LoanStatus.PENDING},
        )
        fields.update(overrides)
        return AuditEvent(**fields)

    def test_metadata_is_json_friendly(self):
        """Decimals and enums are stored by value"""
        event = self.make_event()

        assert event.metadata == {"amount": "100", "status": "PENDING"}

    def test_hash_is_deterministic(self):
        event = self.make_event()
        assert event.calculate_hash() == event.calculate_hash()
        assert len(event.calculate_hash()) == 64

    def test_hash_covers_fields(self):
        """Changing any hashed field changes the hash"""
        event = self.make_event()
        original = event.calculate_hash()

        assert self.make_event(entity_id="LOAN002").calculate_hash() != original
        assert self.make_event(previous_hash="abc").calculate_hash() != original
        assert self.make_event(user_id="admin").calculate_hash() != original

    def test_serialization_round_trip(self):
        event = self.make_event(user_id="admin")
        event.current_hash = event.calculate_hash()

        restored = AuditEvent.from_dict(event.to_dict())

        assert restored.event_type == AuditEventType.LOAN_CREATED
        assert restored.verify_hash()


class TestAuditTrail:
    """Test chained logging and integrity checks"""

    def test_chain_links(self, audit_trail):
        first = audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1", {"amount": "100"})
        second = audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1", user_id="admin")

        assert first.sequence == 1
        assert first.previous_hash == ""
        assert second.sequence == 2
        assert second.previous_hash == first.current_hash
        assert second.user_id == "admin"

    def test_verify_integrity(self, audit_trail):
        for i in range(5):
            audit_trail.log_event(AuditEventType.REPAYMENT_SETTLED, "repayment", f"R{i}")

        result = audit_trail.verify_integrity()

        assert result["valid"]
        assert result["total_events"] == 5
        assert result["hash_errors"] == []
        assert result["chain_breaks"] == []

    def test_empty_trail_is_valid(self, audit_trail):
        assert audit_trail.verify_integrity() == {
            "valid": True, "total_events": 0, "hash_errors": [], "chain_breaks": []
        }

    def test_tampered_metadata_detected(self, audit_trail, storage):
        """Editing a stored event breaks its hash"""
        audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1", {"amount": "100"})
        event = audit_trail.log_event(AuditEventType.REPAYMENT_SETTLED, "repayment", "R1", {"amount": "33"})

        data = storage.load("audit_events", event.id)
        data["metadata"]["amount"] = "3300"
        storage.save("audit_events", event.id, data)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["hash_errors"] == [{"event_id": event.id, "position": 1}]

    def test_deleted_event_breaks_chain(self, audit_trail, storage):
        events = [
            audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", f"L{i}") for i in range(3)
        ]
        storage.delete("audit_events", events[1].id)

        result = audit_trail.verify_integrity()
        assert not result["valid"]
        assert result["chain_breaks"] == [{"event_id": events[2].id, "position": 1}]

    def test_get_events_per_entity(self, audit_trail):
        audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")
        audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L2")
        audit_trail.log_event(AuditEventType.LOAN_REJECTED, "loan", "L1")

        events = audit_trail.get_events("L1")

        assert [e.event_type for e in events] == [
            AuditEventType.LOAN_CREATED, AuditEventType.LOAN_REJECTED
        ]
        assert audit_trail.get_events("unknown") == []

    def test_rolled_back_event_leaves_chain_intact(self, audit_trail, storage):
        """An event written inside a failed transaction disappears with it"""
        audit_trail.log_event(AuditEventType.LOAN_CREATED, "loan", "L1")

        with pytest.raises(RuntimeError):
            with storage.atomic():
                audit_trail.log_event(AuditEventType.LOAN_APPROVED, "loan", "L1")
                raise RuntimeError("write failed")

        event = audit_trail.log_event(AuditEventType.LOAN_REJECTED, "loan", "L1")

        assert event.sequence == 2
        assert audit_trail.verify_integrity()["valid"]
