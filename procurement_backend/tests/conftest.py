from types import SimpleNamespace

import pytest

from procurement_backend.audit_service import AuditService
from procurement_backend.core.dependency_resolver import DependencyResolver
from procurement_backend.core.lifecycle_mutator import LifecycleMutator
from procurement_backend.core.recalculation_engine import RecalculationEngine
from procurement_backend.core.split_payment_processor import SplitPaymentProcessor
from procurement_backend.tests.fake_motor import FakeMotorClient


@pytest.fixture
def client():
    return FakeMotorClient()


@pytest.fixture
def db(client):
    return client["procurement_test"]


@pytest.fixture
def engine(client, db):
    audit = AuditService(db)
    resolver = DependencyResolver(db)
    recalc = RecalculationEngine(client, db, audit, default_exchange_rate=None)
    return SimpleNamespace(
        client=client,
        db=db,
        audit=audit,
        resolver=resolver,
        recalc=recalc,
        mutator=LifecycleMutator(client, db, resolver, recalc, audit),
        payments=SplitPaymentProcessor(client, db, audit),
    )


@pytest.fixture
def procurement_chain(db):
    """
    A project whose approved list feeds a sent request, an approved order,
    a warehouse receipt and an open payable.
    """
    project_id = db.projects.seed({"name": "Planta Norte", "currency": "PEN"})
    list_id = db.equipment_lists.seed({
        "project_id": project_id, "estado": "approved", "currency": "PEN",
        "reviewed_at": "2026-01-02", "reviewer_id": "user-logistics",
        "validated_at": "2026-01-03", "validator_id": "user-logistics",
        "approved_at": "2026-01-04", "approver_id": "user-admin",
    })
    request_id = db.purchase_requests.seed({
        "project_id": project_id, "list_id": list_id, "estado": "sent", "currency": "PEN",
    })
    order_id = db.purchase_orders.seed({
        "project_id": project_id, "request_id": request_id, "estado": "sent",
        "currency": "PEN", "subtotal": 500.0, "total": 500.0, "paid": 0.0, "pending": 500.0,
    })
    receipt_id = db.pending_receipts.seed({
        "project_id": project_id, "order_id": order_id, "estado": "in_warehouse",
    })
    payable_id = db.payables.seed({
        "project_id": project_id, "order_id": order_id, "receipt_id": receipt_id,
        "estado": "pending", "currency": "PEN", "total": 500.0, "paid": 0.0, "pending": 500.0,
    })
    return SimpleNamespace(
        project_id=project_id,
        list_id=list_id,
        request_id=request_id,
        order_id=order_id,
        receipt_id=receipt_id,
        payable_id=payable_id,
    )
