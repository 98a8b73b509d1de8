"""
Audit trail tests: event shape, timelines and the post-commit outbox.
"""
import logging
from datetime import datetime, timedelta

import pytest

from procurement_backend.audit_service import AuditService
from procurement_backend.core.entities import EntityKind
from procurement_backend.tests.helpers import ADMIN, FINANCE, LOGISTICS, run


class TestEventShape:
    def test_only_carried_references_are_populated(self, db):
        audit = AuditService(db)
        receipt = {"_id": "r-1", "order_id": "o-1", "estado": "pending"}

        event = audit.build_event(EntityKind.PENDING_RECEIPT, receipt, "state_transition", "moved", "u-1")

        assert event["receipt_id"] == "r-1"
        assert event["order_id"] == "o-1"
        assert event["project_id"] is None
        assert event["account_id"] is None
        assert event["entity_kind"] == "pending_receipt"
        assert event["metadata"] == {}

    def test_transactional_write_requires_session(self, db):
        audit = AuditService(db)
        event = audit.build_event(EntityKind.PROJECT, {"_id": "p-1"}, "note", "n", "u-1")
        with pytest.raises(ValueError):
            run(audit.record(event, None))


class TestTimeline:
    def test_events_in_chronological_order(self, db):
        audit = AuditService(db)
        start = datetime(2026, 3, 1, 9, 0, 0)
        for offset, kind in ((2, "third"), (0, "first"), (1, "second")):
            db.audit_events.seed({
                "list_id": "l-1", "kind": kind,
                "occurred_at": start + timedelta(minutes=offset),
            })

        events = run(audit.timeline(EntityKind.EQUIPMENT_LIST, "l-1"))

        assert [e["kind"] for e in events] == ["first", "second", "third"]
        assert all("audit_id" in e and "_id" not in e for e in events)

    def test_order_timeline_collects_downstream_events(self, engine, procurement_chain):
        run(engine.mutator.transition(
            "pending_receipt", procurement_chain.receipt_id, "delivered_to_project", LOGISTICS
        ))
        run(engine.payments.record_payment("payable", procurement_chain.payable_id, 200, FINANCE))
        run(engine.mutator.transition(
            "purchase_order", procurement_chain.order_id, "confirmed", ADMIN
        ))

        events = run(engine.audit.timeline(EntityKind.PURCHASE_ORDER, procurement_chain.order_id))

        assert [e["entity_kind"] for e in events] == ["pending_receipt", "payable", "purchase_order"]

    def test_limit(self, db):
        audit = AuditService(db)
        for i in range(5):
            db.audit_events.seed({"order_id": "o-1", "kind": f"e{i}", "occurred_at": datetime(2026, 1, 1, 0, i)})
        assert len(run(audit.timeline(EntityKind.PURCHASE_ORDER, "o-1", limit=2))) == 2


class TestOutbox:
    def test_flush_writes_queued_events(self, db):
        audit = AuditService(db)
        outbox = audit.outbox()
        outbox.dispatch_after_commit(audit.build_event(EntityKind.PROJECT, {"_id": "p-1"}, "note", "n", "u-1"))
        assert len(outbox) == 1

        assert run(outbox.flush()) == 1
        assert len(outbox) == 0
        assert db.audit_events.all()[0]["project_id"] == "p-1"

    def test_failures_are_logged_only(self, db, caplog):
        audit = AuditService(db)
        outbox = audit.outbox()
        outbox.dispatch_after_commit(audit.build_event(EntityKind.PROJECT, {"_id": "p-1"}, "note", "n", "u-1"))
        db.audit_events.fail_next("insert_one", RuntimeError("unavailable"))

        with caplog.at_level(logging.ERROR):
            written = run(outbox.flush())

        assert written == 0
        assert "[AUDIT] Failed to write post-commit event" in caplog.text

    def test_clear_drops_pending_events(self, db):
        audit = AuditService(db)
        outbox = audit.outbox()
        outbox.dispatch_after_commit(audit.build_event(EntityKind.PROJECT, {"_id": "p-1"}, "note", "n", "u-1"))
        outbox.clear()
        assert run(outbox.flush()) == 0
        assert db.audit_events.all() == []
