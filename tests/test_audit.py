"""Tests for the hash-chained audit trail."""

from datetime import datetime, timezone
from decimal import Decimal

from liquidity_engine.core.audit import AuditTrail
from liquidity_engine.models.audit_log import AuditLog
from liquidity_engine.utils.hashing import create_event_hash, verify_audit_chain

from conftest import POOL_ID


def _record(trail: AuditTrail, entity_id: str = "POS_1", dry_run: bool = False):
    return trail.record(
        pool_id=POOL_ID,
        event_type="purge_orphan",
        entity_type="position",
        entity_id=entity_id,
        action="purge_orphan",
        reason="orphan",
        amount=Decimal("400"),
        before_state={"status": "active", "allocated_amount": Decimal("400")},
        after_state={"status": "discarded", "allocated_amount": Decimal("400")},
        dry_run=dry_run,
    )


class TestEventHash:
    def test_deterministic(self) -> None:
        ts = datetime(2024, 1, 2, 15, 30, tzinfo=timezone.utc)
        first = create_event_hash(ts, "purge_orphan", "POS_1", {"amount": Decimal("1.5")})
        second = create_event_hash(ts, "purge_orphan", "POS_1", {"amount": "1.5"})
        assert first == second
        assert len(first) == 64

    def test_previous_hash_changes_result(self) -> None:
        ts = datetime(2024, 1, 2, tzinfo=timezone.utc)
        assert create_event_hash(ts, "x", "POS_1", {}) != create_event_hash(ts, "x", "POS_1", {}, "abc")


class TestAuditTrail:
    def test_entries_are_chained(self) -> None:
        trail = AuditTrail()
        first = _record(trail)
        second = _record(trail, entity_id="POS_2")

        assert first.previous_hash is None
        assert second.previous_hash == first.event_hash
        assert trail.verify()
        assert [e.entity_id for e in trail.for_pool(POOL_ID)] == ["POS_1", "POS_2"]

    def test_tampering_is_detected(self) -> None:
        trail = AuditTrail()
        _record(trail)
        _record(trail, entity_id="POS_2")

        trail.entries[0].after_state["status"] = "active"

        assert not trail.verify()

    def test_reordering_is_detected(self) -> None:
        trail = AuditTrail()
        _record(trail)
        _record(trail, entity_id="POS_2")
        assert not verify_audit_chain(list(reversed(trail.entries)))

    def test_persists_applied_entries(self, session_factory) -> None:
        trail = AuditTrail(session_factory=session_factory)
        entry = _record(trail)
        _record(trail, entity_id="POS_2", dry_run=True)

        db = session_factory()
        try:
            rows = db.query(AuditLog).all()
        finally:
            db.close()

        assert len(rows) == 1
        assert rows[0].event_hash == entry.event_hash
        assert rows[0].after_state == {"status": "discarded", "allocated_amount": "400"}
        assert len(trail.entries) == 2
