"""
Entity kinds and their storage layout.

Every per-kind table in the engine (state graphs, dependency edges, reset
rules, rollups, audit references) is keyed by the closed EntityKind enum.
"""

from enum import Enum
from typing import Any, Dict, Optional, Tuple
from types import MappingProxyType

from bson import ObjectId

from procurement_backend.core.errors import InvalidRequestError, NotFoundError


class EntityKind(str, Enum):
    PROJECT = "project"
    EQUIPMENT_LIST = "equipment_list"
    PURCHASE_REQUEST = "purchase_request"
    PURCHASE_ORDER = "purchase_order"
    PENDING_RECEIPT = "pending_receipt"
    PAYABLE = "payable"
    VALUATION = "valuation"
    RECEIVABLE = "receivable"
    PAYMENT = "payment"


STATE_FIELD = "estado"

COLLECTIONS = MappingProxyType({
    EntityKind.PROJECT: "projects",
    EntityKind.EQUIPMENT_LIST: "equipment_lists",
    EntityKind.PURCHASE_REQUEST: "purchase_requests",
    EntityKind.PURCHASE_ORDER: "purchase_orders",
    EntityKind.PENDING_RECEIPT: "pending_receipts",
    EntityKind.PAYABLE: "payables",
    EntityKind.VALUATION: "valuations",
    EntityKind.RECEIVABLE: "receivables",
    EntityKind.PAYMENT: "payments",
})

# Owned line items: (collection, foreign key to the owner)
LINE_ITEMS = MappingProxyType({
    EntityKind.EQUIPMENT_LIST: ("equipment_list_items", "list_id"),
    EntityKind.PURCHASE_REQUEST: ("purchase_request_items", "request_id"),
    EntityKind.PURCHASE_ORDER: ("purchase_order_items", "order_id"),
    EntityKind.VALUATION: ("valuation_items", "valuation_id"),
})

# Accounts accept payments; the value is the field holding the payment state.
ACCOUNT_STATE_FIELDS = MappingProxyType({
    EntityKind.PAYABLE: "estado",
    EntityKind.RECEIVABLE: "estado",
    EntityKind.PURCHASE_ORDER: "payment_status",
})

# Sparse audit foreign keys: audit column -> document field ("_id" = the entity itself)
AUDIT_REFERENCES = MappingProxyType({
    EntityKind.PROJECT: {"project_id": "_id"},
    EntityKind.EQUIPMENT_LIST: {"list_id": "_id", "project_id": "project_id"},
    EntityKind.PURCHASE_REQUEST: {"request_id": "_id", "list_id": "list_id", "project_id": "project_id"},
    EntityKind.PURCHASE_ORDER: {"order_id": "_id", "request_id": "request_id", "project_id": "project_id"},
    EntityKind.PENDING_RECEIPT: {"receipt_id": "_id", "order_id": "order_id", "project_id": "project_id"},
    EntityKind.PAYABLE: {
        "account_id": "_id", "receipt_id": "receipt_id",
        "order_id": "order_id", "project_id": "project_id"
    },
    EntityKind.VALUATION: {"valuation_id": "_id", "project_id": "project_id"},
    EntityKind.RECEIVABLE: {"account_id": "_id", "valuation_id": "valuation_id", "project_id": "project_id"},
})

AUDIT_FOREIGN_KEYS: Tuple[str, ...] = (
    "project_id", "list_id", "request_id", "order_id",
    "receipt_id", "account_id", "valuation_id",
)


def parse_kind(value: Any) -> EntityKind:
    """Resolve a kind tag, rejecting anything outside the closed set."""
    if isinstance(value, EntityKind):
        return value
    try:
        return EntityKind(value)
    except ValueError:
        raise InvalidRequestError(
            f"Unknown entity kind: {value}",
            {"allowed": [k.value for k in EntityKind]}
        )


def parse_object_id(kind: EntityKind, entity_id: Any) -> ObjectId:
    """Convert an id to ObjectId; malformed ids cannot exist, so they are NotFound."""
    if isinstance(entity_id, ObjectId):
        return entity_id
    if not ObjectId.is_valid(entity_id):
        raise NotFoundError(kind.value, str(entity_id))
    return ObjectId(entity_id)


def collection_for(db, kind: EntityKind):
    return db[COLLECTIONS[kind]]


def audit_references(kind: EntityKind, doc: Dict[str, Any]) -> Dict[str, Optional[str]]:
    """Populate the sparse audit foreign keys available on a document."""
    refs = {}
    for column, field in AUDIT_REFERENCES.get(kind, {}).items():
        value = doc.get(field)
        if value is not None:
            refs[column] = str(value)
    return refs


def timeline_key(kind: EntityKind) -> str:
    """Audit column that identifies events about an entity of this kind."""
    for column, field in AUDIT_REFERENCES.get(kind, {}).items():
        if field == "_id":
            return column
    raise InvalidRequestError(f"No audit timeline for entity kind: {kind.value}")
