"""
HTTP adapter tests through FastAPI's TestClient.
"""
import pytest
from fastapi.testclient import TestClient

from procurement_backend.auth import create_access_token
from procurement_backend.server import create_app
from procurement_backend.tests.fake_motor import FakeMotorClient

BASE = "/api/v1"


def _headers(role="admin", user_id="user-1"):
    token = create_access_token({"user_id": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app():
    return create_app(client=FakeMotorClient())


@pytest.fixture
def api(app):
    return TestClient(app)


@pytest.fixture
def db(app):
    return app.state.db


class TestHealthAndAuth:
    def test_health(self, api):
        response = api.get(f"{BASE}/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_token_rejected(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "draft"})
        response = api.get(f"{BASE}/equipment_list/{list_id}/delete-check")
        assert response.status_code in (401, 403)

    def test_garbage_token_rejected(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "draft"})
        response = api.get(
            f"{BASE}/equipment_list/{list_id}/delete-check",
            headers={"Authorization": "Bearer not-a-jwt"}
        )
        assert response.status_code == 401


class TestLifecycleEndpoints:
    def test_rollback_check_reports_blockers(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "approved"})
        request_id = db.purchase_requests.seed({"list_id": list_id, "estado": "sent"})

        response = api.get(
            f"{BASE}/equipment_list/{list_id}/rollback-check",
            params={"target": "validated"},
            headers=_headers()
        )

        assert response.status_code == 200
        data = response.json()
        assert data["allowed"] is False
        assert data["blockers"][0]["id"] == request_id

    def test_blocked_rollback_is_409(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "approved"})
        request_id = db.purchase_requests.seed({"list_id": list_id, "estado": "sent"})

        response = api.post(
            f"{BASE}/equipment_list/{list_id}/rollback",
            json={"target": "validated", "reason": "rework"},
            headers=_headers()
        )

        assert response.status_code == 409
        assert response.json()["detail"]["blockers"][0]["id"] == request_id

    def test_rollback_returns_entity(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "approved", "approved_at": "2026-01-04"})

        response = api.post(
            f"{BASE}/equipment_list/{list_id}/rollback",
            json={"target": "draft"},
            headers=_headers(role="logistics")
        )

        assert response.status_code == 200
        body = response.json()
        assert body["_id"] == list_id
        assert body["estado"] == "draft"
        assert body["approved_at"] is None

    def test_transition_forbidden_for_role(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "validated"})
        response = api.post(
            f"{BASE}/equipment_list/{list_id}/transition",
            json={"target": "approved"},
            headers=_headers(role="logistics")
        )
        assert response.status_code == 403

    def test_unknown_kind_is_400(self, api):
        response = api.post(
            f"{BASE}/invoice/{'0' * 24}/transition",
            json={"target": "sent"},
            headers=_headers()
        )
        assert response.status_code == 400

    def test_delete_missing_entity_is_404(self, api):
        response = api.delete(f"{BASE}/equipment_list/{'0' * 24}", headers=_headers())
        assert response.status_code == 404

    def test_delete_draft(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "draft"})
        response = api.delete(f"{BASE}/equipment_list/{list_id}", headers=_headers())
        assert response.status_code == 200
        assert response.json()["deleted"] is True

    def test_recalculate(self, api, db):
        order_id = db.purchase_orders.seed({"estado": "draft", "currency": "PEN"})
        db.purchase_order_items.seed({"order_id": order_id, "cost": 12.5})

        response = api.post(f"{BASE}/purchase_order/{order_id}/recalculate", json={}, headers=_headers())

        assert response.status_code == 200
        assert response.json()["updated"][0]["totals"]["subtotal"] == 12.5

    def test_timeline(self, api, db):
        list_id = db.equipment_lists.seed({"estado": "approved"})
        api.post(f"{BASE}/equipment_list/{list_id}/rollback", json={"target": "draft"}, headers=_headers())

        response = api.get(f"{BASE}/equipment_list/{list_id}/timeline", headers=_headers())

        assert response.status_code == 200
        events = response.json()
        assert len(events) == 1
        assert events[0]["kind"] == "state_rollback"


class TestPaymentEndpoint:
    def test_split_payment(self, api, db):
        payable_id = db.payables.seed({"estado": "pending", "total": 1000.0, "paid": 0.0, "pending": 1000.0})

        response = api.post(
            f"{BASE}/accounts/payable/{payable_id}/payments",
            json={"gross_amount": 1000, "withholding_pct": 10},
            headers=_headers(role="finance")
        )

        assert response.status_code == 200
        body = response.json()
        assert [p["amount"] for p in body["payments"]] == [100.0, 900.0]
        assert body["account"]["estado"] == "paid"

    def test_payment_role_required(self, api, db):
        payable_id = db.payables.seed({"estado": "pending", "total": 1000.0})
        response = api.post(
            f"{BASE}/accounts/payable/{payable_id}/payments",
            json={"gross_amount": 10},
            headers=_headers(role="logistics")
        )
        assert response.status_code == 403

    def test_voided_account_is_409(self, api, db):
        payable_id = db.payables.seed({"estado": "voided", "total": 1000.0})
        response = api.post(
            f"{BASE}/accounts/payable/{payable_id}/payments",
            json={"gross_amount": 10},
            headers=_headers()
        )
        assert response.status_code == 409
