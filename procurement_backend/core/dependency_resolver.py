"""
DEPENDENCY RESOLVER & DELETION GUARD

Read-only checks answering "can this entity be rolled back / deleted?".

Walks a static depends-on map:
- PurchaseRequest depends on EquipmentList (list_id), requires list >= approved
- PurchaseOrder depends on PurchaseRequest (request_id), requires request >= sent
- PendingReceipt depends on PurchaseOrder (order_id), requires order >= sent
- Payable depends on PendingReceipt (receipt_id), requires receipt >= in_warehouse
- Receivable depends on Valuation (valuation_id), requires valuation >= invoiced
- Payment depends on its account (account_id)

Blocking propagates: every blocker's own live dependents are reported with
their depth and the record they hang from.

Answers are snapshots. The lifecycle mutator re-runs them inside its
commit transaction.
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Optional, Dict, Any, List, NamedTuple, Tuple
from types import MappingProxyType
import logging

from procurement_backend.core.entities import (
    COLLECTIONS,
    EntityKind,
    STATE_FIELD,
    collection_for,
    parse_object_id,
)
from procurement_backend.core.errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
)
from procurement_backend.core.state_registry import (
    DEAD_STATES,
    machine_for,
    is_dead_state,
)

logger = logging.getLogger(__name__)


# =============================================================================
# STATIC DEPENDENCY MAP
# =============================================================================

class DependencyEdge(NamedTuple):
    dependent: EntityKind
    parent: EntityKind
    foreign_key: str
    # Parent state implied by the dependent's existence; None = every state
    requires_state: Optional[str]
    scope: Tuple[Tuple[str, Any], ...] = ()


class SoftReference(NamedTuple):
    """A non-hierarchical pointer at an entity (e.g. a chosen costing source)."""
    collection: str
    field: str
    policy: str  # "nullify" | "block"


DEPENDENCY_EDGES: Tuple[DependencyEdge, ...] = (
    DependencyEdge(EntityKind.PURCHASE_REQUEST, EntityKind.EQUIPMENT_LIST, "list_id", "approved"),
    DependencyEdge(EntityKind.PURCHASE_ORDER, EntityKind.PURCHASE_REQUEST, "request_id", "sent"),
    DependencyEdge(EntityKind.PENDING_RECEIPT, EntityKind.PURCHASE_ORDER, "order_id", "sent"),
    DependencyEdge(EntityKind.PAYABLE, EntityKind.PENDING_RECEIPT, "receipt_id", "in_warehouse"),
    DependencyEdge(EntityKind.RECEIVABLE, EntityKind.VALUATION, "valuation_id", "invoiced"),
    DependencyEdge(
        EntityKind.PAYMENT, EntityKind.PURCHASE_ORDER, "account_id", "approved",
        scope=(("account_kind", EntityKind.PURCHASE_ORDER.value),)
    ),
    DependencyEdge(
        EntityKind.PAYMENT, EntityKind.PAYABLE, "account_id", None,
        scope=(("account_kind", EntityKind.PAYABLE.value),)
    ),
    DependencyEdge(
        EntityKind.PAYMENT, EntityKind.RECEIVABLE, "account_id", None,
        scope=(("account_kind", EntityKind.RECEIVABLE.value),)
    ),
)

SOFT_REFERENCES = MappingProxyType({
    EntityKind.PURCHASE_REQUEST: (SoftReference("equipment_list_items", "request_id", "nullify"),),
    EntityKind.PURCHASE_ORDER: (SoftReference("equipment_list_items", "selected_order_id", "nullify"),),
    EntityKind.PENDING_RECEIPT: (SoftReference("purchase_order_items", "last_receipt_id", "nullify"),),
})


def edges_into(kind: EntityKind, edges=DEPENDENCY_EDGES) -> List[DependencyEdge]:
    return [edge for edge in edges if edge.parent == kind]


# =============================================================================
# RESULT SHAPES
# =============================================================================

def _blocker(edge: DependencyEdge, doc: Dict[str, Any], depth: int, via: Optional[str], reason: str) -> Dict[str, Any]:
    return {
        "kind": edge.dependent.value,
        "id": str(doc["_id"]),
        "estado": doc.get(STATE_FIELD),
        "depth": depth,
        "via": via,
        "reason": reason,
    }


def _summarize(action: str, kind: EntityKind, entity_id: str, blockers: List[Dict[str, Any]]) -> str:
    if not blockers:
        return f"{kind.value} {entity_id} can be {action}"
    direct = [b for b in blockers if b["depth"] == 1]
    listed = ", ".join(f"{b['kind']} {b['id']}" for b in direct) or ", ".join(
        f"{b['kind']} {b['id']}" for b in blockers
    )
    return (
        f"{kind.value} {entity_id} cannot be {action}: "
        f"{len(blockers)} dependent record(s) block it. Resolve first: {listed}"
    )


# =============================================================================
# RESOLVER
# =============================================================================

class DependencyResolver:
    """
    Side-effect-free dependency checks over the static map.

    Provides:
    - can_rollback: dry-run gate for backward transitions
    - can_delete / plan_delete: deletion guard with soft-reference handling
    - ensure_no_live_dependents: guard for cancel/void transitions
    """

    MAX_DEPTH = 8

    def __init__(
        self,
        db: AsyncIOMotorDatabase,
        edges: Tuple[DependencyEdge, ...] = DEPENDENCY_EDGES,
        soft_references=SOFT_REFERENCES
    ):
        self.db = db
        self.edges = edges
        self.soft_references = soft_references

    async def _load(self, kind: EntityKind, entity_id, session=None) -> Dict[str, Any]:
        oid = parse_object_id(kind, entity_id)
        doc = await collection_for(self.db, kind).find_one({"_id": oid}, session=session)
        if not doc:
            raise NotFoundError(kind.value, str(entity_id))
        return doc

    async def _dependents(
        self,
        edge: DependencyEdge,
        parent_id: str,
        live_only: bool,
        session=None
    ) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {edge.foreign_key: parent_id}
        query.update(dict(edge.scope))
        if live_only:
            query[STATE_FIELD] = {"$nin": sorted(DEAD_STATES)}
        cursor = collection_for(self.db, edge.dependent).find(query, session=session).sort("_id", 1)
        return await cursor.to_list(length=None)

    async def _downstream(
        self,
        kind: EntityKind,
        doc: Dict[str, Any],
        depth: int,
        seen: set,
        session=None
    ) -> List[Dict[str, Any]]:
        """Live dependents hanging under a blocker, reported transitively."""
        if depth > self.MAX_DEPTH:
            return []
        via = f"{kind.value}:{doc['_id']}"
        found = []
        for edge in edges_into(kind, self.edges):
            for child in await self._dependents(edge, str(doc["_id"]), live_only=True, session=session):
                key = (edge.dependent, str(child["_id"]))
                if key in seen:
                    continue
                seen.add(key)
                found.append(_blocker(edge, child, depth, via, f"depends on {via}"))
                found.extend(await self._downstream(edge.dependent, child, depth + 1, seen, session))
        return found

    # =========================================================================
    # ROLLBACK
    # =========================================================================

    async def rollback_blockers(
        self,
        kind: EntityKind,
        doc: Dict[str, Any],
        target: str,
        session=None
    ) -> List[Dict[str, Any]]:
        """Blockers for landing doc on target; assumes the move is a legal rollback."""
        machine = machine_for(kind)
        order = machine.order
        target_index = order.index(target)
        entity_ref = f"{kind.value}:{doc['_id']}"

        blockers: List[Dict[str, Any]] = []
        seen = set()
        for edge in edges_into(kind, self.edges):
            if edge.requires_state is not None and order.index(edge.requires_state) <= target_index:
                continue
            required = edge.requires_state or "its current state"
            for dependent in await self._dependents(edge, str(doc["_id"]), live_only=True, session=session):
                key = (edge.dependent, str(dependent["_id"]))
                if key in seen:
                    continue
                seen.add(key)
                blockers.append(_blocker(
                    edge, dependent, 1, entity_ref,
                    f"{edge.dependent.value} requires {kind.value} at least '{required}'"
                ))
                blockers.extend(await self._downstream(edge.dependent, dependent, 2, seen, session))
        return blockers

    async def can_rollback(
        self,
        kind: EntityKind,
        entity_id,
        target: str,
        session=None
    ) -> Dict[str, Any]:
        """
        Check whether kind/id may roll back to target.

        Returns {allowed, blockers, message}. Raises InvalidRequestError when
        target is not a legal backward move for the current state.
        """
        doc = await self._load(kind, entity_id, session)
        machine = machine_for(kind)
        current = doc.get(STATE_FIELD)
        if not machine.is_valid_rollback(current, target):
            raise InvalidRequestError(
                f"'{target}' is not a valid rollback target for {kind.value} in state '{current}'",
                {"current": current, "target": target, "allowed": machine.rollback_targets(current)}
            )

        blockers = await self.rollback_blockers(kind, doc, target, session)
        entity_id = str(doc["_id"])
        result = {
            "allowed": not blockers,
            "blockers": blockers,
            "message": _summarize(f"rolled back to '{target}'", kind, entity_id, blockers),
        }
        logger.info(
            f"[DEPENDENCY] Rollback check {kind.value}:{entity_id} '{current}' -> '{target}': "
            f"allowed={result['allowed']} blockers={len(blockers)}"
        )
        return result

    # =========================================================================
    # CANCEL / VOID GUARD
    # =========================================================================

    async def ensure_no_live_dependents(self, kind: EntityKind, doc: Dict[str, Any], session=None) -> None:
        """Raise ConflictError if any live record depends on doc."""
        blockers = await self._downstream(kind, doc, 1, set(), session)
        if blockers:
            raise ConflictError(
                _summarize("cancelled", kind, str(doc["_id"]), blockers),
                blockers
            )

    # =========================================================================
    # DELETION GUARD
    # =========================================================================

    async def plan_delete(self, kind: EntityKind, doc: Dict[str, Any], session=None) -> Dict[str, Any]:
        """
        Work out what a hard delete of doc would touch.

        Returns blockers plus the detach operations (dependents whose foreign
        key gets nulled and soft references to clear) for an allowed delete.
        """
        machine = machine_for(kind)
        entity_id = str(doc["_id"])
        entity_ref = f"{kind.value}:{entity_id}"
        still_draft = doc.get(STATE_FIELD) == machine.initial_state

        blockers: List[Dict[str, Any]] = []
        detach: List[Dict[str, Any]] = []

        for edge in edges_into(kind, self.edges):
            for dependent in await self._dependents(edge, entity_id, live_only=False, session=session):
                if still_draft and is_dead_state(dependent.get(STATE_FIELD)):
                    detach.append({
                        "collection": COLLECTIONS[edge.dependent],
                        "field": edge.foreign_key,
                        "id": dependent["_id"],
                    })
                    continue
                blockers.append(_blocker(
                    edge, dependent, 1, entity_ref,
                    f"{edge.dependent.value} references {entity_ref}"
                ))

        for ref in self.soft_references.get(kind, ()):
            referencing = await self.db[ref.collection].find(
                {ref.field: entity_id}, session=session
            ).to_list(length=None)
            for item in referencing:
                if ref.policy == "block":
                    blockers.append({
                        "kind": ref.collection,
                        "id": str(item["_id"]),
                        "estado": item.get(STATE_FIELD),
                        "depth": 1,
                        "via": entity_ref,
                        "reason": f"{ref.collection}.{ref.field} selects {entity_ref}",
                    })
                else:
                    detach.append({"collection": ref.collection, "field": ref.field, "id": item["_id"]})

        return {
            "allowed": not blockers,
            "blockers": blockers,
            "detach": detach,
            "message": _summarize("deleted", kind, entity_id, blockers),
        }

    async def can_delete(self, kind: EntityKind, entity_id, session=None) -> Dict[str, Any]:
        """Check whether kind/id may be hard-deleted. Returns {allowed, blockers, message}."""
        doc = await self._load(kind, entity_id, session)
        plan = await self.plan_delete(kind, doc, session)
        logger.info(
            f"[DEPENDENCY] Delete check {kind.value}:{doc['_id']}: "
            f"allowed={plan['allowed']} blockers={len(plan['blockers'])}"
        )
        return {
            "allowed": plan["allowed"],
            "blockers": plan["blockers"],
            "message": plan["message"],
        }
