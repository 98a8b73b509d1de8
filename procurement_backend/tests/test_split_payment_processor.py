"""
Split payment tests: withholding splits, balance ladder and rejections.
"""
import pytest

from procurement_backend.core.errors import ConflictError, InvalidRequestError
from procurement_backend.core.split_payment_processor import SplitPaymentProcessor
from procurement_backend.tests.helpers import FINANCE, run


def _payable(db, total=1000.0, estado="pending"):
    return db.payables.seed({
        "estado": estado, "currency": "PEN", "order_id": "order-1",
        "total": total, "paid": 0.0, "pending": total,
    })


class TestSplits:
    def test_ten_percent_withholding_produces_two_payments(self, engine):
        payable_id = _payable(engine.db)

        result = run(engine.payments.record_payment(
            "payable", payable_id, 1000, FINANCE, withholding_pct=10, withholding_code="037"
        ))

        amounts = [(p["amount"], p["is_withholding"]) for p in result["payments"]]
        assert amounts == [(100.0, True), (900.0, False)]
        assert result["payments"][0]["withholding_code"] == "037"
        assert result["payments"][1]["withholding_code"] is None

        account = engine.db.payables.get(payable_id)
        assert account["paid"] == 1000.0
        assert account["pending"] == 0.0
        assert account["estado"] == "paid"
        assert account["settled_at"] is not None

    def test_without_withholding_one_payment(self, engine):
        payable_id = _payable(engine.db)
        result = run(engine.payments.record_payment("payable", payable_id, 400, FINANCE))

        assert len(result["payments"]) == 1
        assert result["account"]["estado"] == "partial"
        assert result["account"]["pending"] == 600.0

    def test_partial_payments_accumulate_to_paid(self, engine):
        payable_id = _payable(engine.db, total=300.0)
        run(engine.payments.record_payment("payable", payable_id, 100.10, FINANCE))
        run(engine.payments.record_payment("payable", payable_id, 99.95, FINANCE))
        result = run(engine.payments.record_payment("payable", payable_id, 99.95, FINANCE))

        assert result["account"]["paid"] == 300.0
        assert result["account"]["estado"] == "paid"
        assert len(engine.db.payments.all()) == 3

    def test_order_paid_in_full(self, engine):
        order_id = engine.db.purchase_orders.seed({
            "estado": "approved", "currency": "PEN", "total": 500.0, "paid": 0.0, "pending": 500.0,
        })

        result = run(engine.payments.record_payment("purchase_order", order_id, 500, FINANCE))

        order = engine.db.purchase_orders.get(order_id)
        assert order["payment_status"] == "paid"
        assert order["estado"] == "approved"
        assert order["pending"] == 0.0
        assert result["payments"][0]["account_kind"] == "purchase_order"

    def test_build_split_rounding(self):
        parts = SplitPaymentProcessor.build_split("333.33", 12)
        assert [str(p["amount"]) for p in parts] == ["40.00", "293.33"]


class TestRejections:
    def test_voided_account_conflicts(self, engine):
        payable_id = _payable(engine.db, estado="voided")
        with pytest.raises(ConflictError):
            run(engine.payments.record_payment("payable", payable_id, 10, FINANCE))
        assert engine.db.payments.all() == []

    def test_overpayment_rejected(self, engine):
        payable_id = _payable(engine.db, total=100.0)
        with pytest.raises(InvalidRequestError):
            run(engine.payments.record_payment("payable", payable_id, 100.01, FINANCE))
        assert engine.db.payments.all() == []
        assert engine.db.payables.get(payable_id)["estado"] == "pending"

    @pytest.mark.parametrize("gross,pct", [(0, None), (-5, None), (100, 100), (100, -1)])
    def test_invalid_amounts(self, engine, gross, pct):
        payable_id = _payable(engine.db)
        with pytest.raises(InvalidRequestError):
            run(engine.payments.record_payment("payable", payable_id, gross, FINANCE, withholding_pct=pct))

    def test_withholding_rounding_to_zero_writes_nothing(self, engine):
        payable_id = _payable(engine.db)
        with pytest.raises(InvalidRequestError):
            run(engine.payments.record_payment("payable", payable_id, 100, FINANCE, withholding_pct=0.001))
        assert engine.db.payments.all() == []

    def test_non_account_kind(self, engine):
        list_id = engine.db.equipment_lists.seed({"estado": "approved"})
        with pytest.raises(InvalidRequestError):
            run(engine.payments.record_payment("equipment_list", list_id, 10, FINANCE))

    def test_draft_order_cannot_be_paid(self, engine):
        order_id = engine.db.purchase_orders.seed({"estado": "draft", "total": 50.0})
        with pytest.raises(InvalidRequestError):
            run(engine.payments.record_payment("purchase_order", order_id, 10, FINANCE))


class TestPaymentAudit:
    def test_one_event_per_recording(self, engine):
        payable_id = _payable(engine.db)
        result = run(engine.payments.record_payment("payable", payable_id, 1000, FINANCE, withholding_pct=10))

        events = engine.db.audit_events.all()
        assert len(events) == 1
        event = events[0]
        assert event["kind"] == "payment_recorded"
        assert event["account_id"] == payable_id
        assert event["order_id"] == "order-1"
        assert event["metadata"]["from"] == "pending"
        assert event["metadata"]["to"] == "paid"
        assert event["metadata"]["payment_ids"] == [str(p["_id"]) for p in result["payments"]]

    def test_audit_failure_rolls_back_payments(self, engine):
        payable_id = _payable(engine.db)
        engine.db.audit_events.fail_next("insert_one", RuntimeError("audit down"))

        with pytest.raises(RuntimeError):
            run(engine.payments.record_payment("payable", payable_id, 500, FINANCE))

        assert engine.db.payments.all() == []
        assert engine.db.payables.get(payable_id)["paid"] == 0.0


class TestSinglePayment:
    def test_full_gross_without_withholding(self, engine):
        payable_id = _payable(engine.db)
        result = run(engine.payments.record_payment("payable", payable_id, 1000, FINANCE))

        assert [p["amount"] for p in result["payments"]] == [1000.0]
        assert result["payments"][0]["is_withholding"] is False
        assert result["account"]["estado"] == "paid"
