"""
STATE REGISTRY

Declares the state machine of every lifecycle entity kind and exposes
pure lookups over them.

Entities:
- EquipmentList: draft → under_review → ready_for_quote → validated → approved (rejected re-enters)
- PurchaseRequest: draft → sent → attended → partial → delivered (cancelled)
- PurchaseOrder: draft → approved → sent → confirmed → partial → completed (cancelled)
- PendingReceipt: pending → in_warehouse → delivered_to_project (rejected re-enters)
- Payable / Receivable: pending → partial → paid (overdue re-enters, voided)
- Valuation: draft → sent → corrected → client_approved → invoiced → paid (observed re-enters, voided)

The registry is built once at import time and frozen.
"""

from typing import Dict, Any, Tuple, Set, List
from types import MappingProxyType
import logging

from procurement_backend.core.entities import EntityKind, LINE_ITEMS
from procurement_backend.core.errors import InvalidRequestError
from procurement_backend.core.financial_precision import to_decimal, ZERO
from procurement_backend.core.invariant_validator import account_state_for
from procurement_backend.core.state_machine import (
    StateMachine,
    StateMachineRegistry,
)

logger = logging.getLogger(__name__)

# States whose records no longer count as live dependents or rollup children
DEAD_STATES = frozenset({"cancelled", "rejected", "voided"})


# =============================================================================
# GUARDS
# =============================================================================

def requires_line_items(kind: EntityKind):
    """Guard: the entity owns at least one line item."""
    collection_name, fk = LINE_ITEMS[kind]

    async def guard(entity: Dict, context: Dict) -> Tuple[bool, str]:
        db = context["db"]
        count = await db[collection_name].count_documents(
            {fk: str(entity["_id"])},
            session=context.get("session")
        )
        if count == 0:
            return (False, f"{kind.value} has no line items")
        return (True, "")

    return guard


async def guard_order_approvable(entity: Dict, context: Dict) -> Tuple[bool, str]:
    """Guard: an order needs lines and a positive total before approval."""
    allowed, reason = await requires_line_items(EntityKind.PURCHASE_ORDER)(entity, context)
    if not allowed:
        return (allowed, reason)
    if to_decimal(entity.get("total")) <= ZERO:
        return (False, "Valid total is required to approve")
    return (True, "")


def requires_no_live_dependents(kind: EntityKind):
    """
    Guard for cancel/void: live downstream records veto the move.

    Raises ConflictError (through the resolver) so callers get the blockers.
    """
    async def guard(entity: Dict, context: Dict) -> Tuple[bool, str]:
        resolver = context["resolver"]
        await resolver.ensure_no_live_dependents(kind, entity, session=context.get("session"))
        return (True, "")

    return guard


# =============================================================================
# MACHINE DEFINITIONS
# =============================================================================

def create_equipment_list_machine() -> StateMachine:
    machine = StateMachine(
        EntityKind.EQUIPMENT_LIST.value,
        order=["draft", "under_review", "ready_for_quote", "validated", "approved"],
        branch_states=["rejected"]
    )
    has_items = requires_line_items(EntityKind.EQUIPMENT_LIST)

    machine.register("draft", "under_review", guard=has_items, description="Submit for technical review")
    machine.register("draft", "ready_for_quote", guard=has_items, description="Send straight to quoting")
    machine.register("under_review", "ready_for_quote", roles="logistics")
    machine.register("ready_for_quote", "validated", roles="logistics")
    machine.register("validated", "approved", roles="approvers")
    for state in ("under_review", "ready_for_quote", "validated"):
        machine.register(state, "rejected", roles="approvers")
    machine.register("rejected", "draft", description="Reopen rejected list")
    machine.register("rejected", "under_review", guard=has_items, description="Resubmit rejected list")

    machine.milestone("under_review", "reviewed_at", "reviewer_id")
    machine.milestone("ready_for_quote", "quote_requested_at")
    machine.milestone("validated", "validated_at", "validator_id")
    machine.milestone("approved", "approved_at", "approver_id")
    return machine


def create_purchase_request_machine() -> StateMachine:
    machine = StateMachine(
        EntityKind.PURCHASE_REQUEST.value,
        order=["draft", "sent", "attended", "partial", "delivered"],
        terminal_states=["cancelled"]
    )
    machine.register(
        "draft", "sent",
        guard=requires_line_items(EntityKind.PURCHASE_REQUEST),
        description="Send request to logistics"
    )
    machine.register_chain(roles="logistics")
    machine.register("sent", "partial", roles="logistics")
    machine.register("sent", "delivered", roles="logistics")
    machine.register("attended", "delivered", roles="logistics")

    no_live_orders = requires_no_live_dependents(EntityKind.PURCHASE_REQUEST)
    for state in ("draft", "sent", "attended"):
        machine.register(state, "cancelled", guard=no_live_orders)

    machine.milestone("sent", "sent_at", "sender_id")
    machine.milestone("attended", "attended_at", "attended_by")
    machine.milestone("partial", "partially_delivered_at")
    machine.milestone("delivered", "delivered_at")
    return machine


def create_purchase_order_machine() -> StateMachine:
    machine = StateMachine(
        EntityKind.PURCHASE_ORDER.value,
        order=["draft", "approved", "sent", "confirmed", "partial", "completed"],
        terminal_states=["cancelled"]
    )
    machine.register("draft", "approved", guard=guard_order_approvable, roles="approvers")
    machine.register("approved", "sent", roles="logistics", description="Send order to supplier")
    machine.register("sent", "confirmed", roles="logistics", description="Supplier confirmed")
    machine.register("confirmed", "partial", roles="logistics")
    machine.register("confirmed", "completed", roles="logistics")
    machine.register("partial", "completed", roles="logistics")

    no_live_receipts = requires_no_live_dependents(EntityKind.PURCHASE_ORDER)
    for state in ("draft", "approved", "sent", "confirmed"):
        machine.register(state, "cancelled", guard=no_live_receipts, roles="approvers")

    machine.milestone("approved", "approved_at", "approver_id")
    machine.milestone("sent", "sent_at", "sender_id")
    machine.milestone("confirmed", "confirmed_at")
    machine.milestone("partial", "partially_received_at")
    machine.milestone("completed", "completed_at")
    return machine


def create_pending_receipt_machine() -> StateMachine:
    machine = StateMachine(
        EntityKind.PENDING_RECEIPT.value,
        order=["pending", "in_warehouse", "delivered_to_project"],
        branch_states=["rejected"]
    )
    machine.register("pending", "in_warehouse", roles="logistics", description="Confirm warehouse receipt")
    machine.register("in_warehouse", "delivered_to_project", roles="logistics")
    machine.register("pending", "rejected", roles="logistics")
    machine.register(
        "in_warehouse", "rejected",
        guard=requires_no_live_dependents(EntityKind.PENDING_RECEIPT),
        roles="logistics"
    )
    machine.register("rejected", "pending", roles="logistics", description="Revert rejection")

    machine.milestone("in_warehouse", "received_at", "receiver_id")
    machine.milestone("delivered_to_project", "delivered_at", "deliverer_id")
    return machine


def create_account_machine(kind: EntityKind) -> StateMachine:
    """Payables and receivables share the same balance-driven lifecycle."""
    machine = StateMachine(
        kind.value,
        order=["pending", "partial", "paid"],
        branch_states=["overdue"],
        terminal_states=["voided"],
        system_states=["partial", "paid"]
    )
    machine.register("pending", "partial", description="Payment recorded")
    machine.register("pending", "paid", description="Payment recorded")
    machine.register("partial", "paid", description="Payment recorded")
    machine.register("pending", "overdue", description="Due date passed")
    machine.register("partial", "overdue", description="Due date passed")
    machine.register("overdue", "pending", description="Due date extended")
    machine.register("overdue", "partial", description="Due date extended after partial payment")

    no_payments = requires_no_live_dependents(kind)
    for state in ("pending", "overdue"):
        machine.register(state, "voided", guard=no_payments, roles="approvers")

    machine.milestone("partial", "first_payment_at")
    machine.milestone("paid", "settled_at")
    return machine


def create_valuation_machine() -> StateMachine:
    machine = StateMachine(
        EntityKind.VALUATION.value,
        order=["draft", "sent", "corrected", "client_approved", "invoiced", "paid"],
        branch_states=["observed"],
        terminal_states=["voided"]
    )
    machine.register(
        "draft", "sent",
        guard=requires_line_items(EntityKind.VALUATION),
        description="Send valuation to client"
    )
    machine.register("sent", "observed", description="Client observations received")
    machine.register("observed", "corrected", description="Observations addressed")
    machine.register("sent", "client_approved", roles="approvers")
    machine.register("corrected", "client_approved", roles="approvers")
    machine.register("client_approved", "invoiced", roles="approvers")
    machine.register("invoiced", "paid", roles="approvers")

    no_live_receivables = requires_no_live_dependents(EntityKind.VALUATION)
    for state in ("draft", "sent", "observed", "corrected", "client_approved"):
        machine.register(state, "voided", guard=no_live_receivables, roles="approvers")

    machine.milestone("sent", "sent_at", "sender_id")
    machine.milestone("corrected", "corrected_at")
    machine.milestone("client_approved", "client_approved_at", "approver_id")
    machine.milestone("invoiced", "invoiced_at", "invoicer_id")
    machine.milestone("paid", "paid_at")
    return machine


def build_state_registry() -> StateMachineRegistry:
    """Wire every lifecycle machine; exhaustive over the lifecycle kinds."""
    registry = StateMachineRegistry()
    factories = {
        EntityKind.EQUIPMENT_LIST: create_equipment_list_machine,
        EntityKind.PURCHASE_REQUEST: create_purchase_request_machine,
        EntityKind.PURCHASE_ORDER: create_purchase_order_machine,
        EntityKind.PENDING_RECEIPT: create_pending_receipt_machine,
        EntityKind.PAYABLE: lambda: create_account_machine(EntityKind.PAYABLE),
        EntityKind.VALUATION: create_valuation_machine,
        EntityKind.RECEIVABLE: lambda: create_account_machine(EntityKind.RECEIVABLE),
    }
    missing = set(LIFECYCLE_KINDS) - set(factories)
    if missing:
        raise RuntimeError(f"No state machine declared for: {sorted(k.value for k in missing)}")

    for kind, factory in factories.items():
        registry.register(kind.value, factory())
    logger.info(f"[REGISTRY] State machines ready: {registry.list()}")
    return registry


LIFECYCLE_KINDS = (
    EntityKind.EQUIPMENT_LIST,
    EntityKind.PURCHASE_REQUEST,
    EntityKind.PURCHASE_ORDER,
    EntityKind.PENDING_RECEIPT,
    EntityKind.PAYABLE,
    EntityKind.VALUATION,
    EntityKind.RECEIVABLE,
)

state_registry = build_state_registry()

MACHINES = MappingProxyType({kind: state_registry.get(kind.value) for kind in LIFECYCLE_KINDS})


# =============================================================================
# LOOKUPS
# =============================================================================

def machine_for(kind: EntityKind) -> StateMachine:
    machine = MACHINES.get(kind)
    if machine is None:
        raise InvalidRequestError(f"Entity kind has no lifecycle: {kind.value}")
    return machine


def is_valid_rollback(kind: EntityKind, current: str, target: str) -> bool:
    return machine_for(kind).is_valid_rollback(current, target)


def field_resets_for(kind: EntityKind, target: str) -> Set[str]:
    return machine_for(kind).field_resets_for(target)


def allowed_transitions(kind: EntityKind, state: str) -> List[str]:
    return machine_for(kind).get_allowed_transitions(state)


def initial_state(kind: EntityKind) -> str:
    return machine_for(kind).initial_state


def is_dead_state(state: Any) -> bool:
    return state in DEAD_STATES


def can_transition(kind: EntityKind, current: str, target: str) -> bool:
    return machine_for(kind).can_transition(current, target)


def is_terminal(kind: EntityKind, state: str) -> bool:
    return machine_for(kind).is_terminal(state)


def reentry_target(kind: EntityKind, entity: Dict[str, Any], current: str, target: str) -> str:
    """
    State actually entered when an account leaves `overdue`.

    The balance decides: an account that already received payments goes
    back to `partial`, never to `pending`.
    """
    if kind in (EntityKind.PAYABLE, EntityKind.RECEIVABLE) and current == "overdue" and target == "pending":
        return account_state_for(to_decimal(entity.get("paid")), to_decimal(entity.get("total")))
    return target
