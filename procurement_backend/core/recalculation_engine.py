"""
RECALCULATION ENGINE

Bottom-up rollup of monetary aggregates.

LOCKED RULES:
- A parent's subtotal fields are the exact sum of its live children's fields
- Each child amount is converted to the parent's currency before summing
- Percentage deductions are recomputed from the fresh sum, never adjusted
- Rounding happens once, at the storage boundary
- Re-running with no intervening change writes identical values

Propagation uses an explicit dirty list walking the static parent chain one
level at a time (line items -> owner -> project).
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from decimal import Decimal
from typing import Optional, Dict, Any, List, NamedTuple, Tuple
from types import MappingProxyType
import logging

from bson import ObjectId

from procurement_backend import settings
from procurement_backend.core.entities import (
    EntityKind,
    STATE_FIELD,
    collection_for,
    parse_object_id,
)
from procurement_backend.core.errors import InvalidRequestError, NotFoundError
from procurement_backend.core.financial_precision import (
    to_decimal,
    to_float,
    convert_currency,
    calculate_order_totals,
    calculate_valuation_values,
    CurrencyConversionError,
    FinancialPrecisionError,
    ZERO,
)
from procurement_backend.core.invariant_validator import (
    FinancialInvariantValidator,
    account_state_for,
)
from procurement_backend.core.state_registry import DEAD_STATES

logger = logging.getLogger(__name__)


# =============================================================================
# STATIC ROLLUP TABLES
# =============================================================================

class Rollup(NamedTuple):
    child_collection: str
    link_field: str
    # (child field, parent field) pairs
    fields: Tuple[Tuple[str, str], ...]


ROLLUPS = MappingProxyType({
    EntityKind.EQUIPMENT_LIST: (
        Rollup("equipment_list_items", "list_id", (
            ("cost_internal", "subtotal_internal"),
            ("cost_client", "subtotal_client"),
            ("cost_real", "subtotal_real"),
        )),
    ),
    EntityKind.PURCHASE_REQUEST: (
        Rollup("purchase_request_items", "request_id", (
            ("cost_internal", "subtotal_internal"),
            ("cost_real", "subtotal_real"),
        )),
    ),
    EntityKind.PURCHASE_ORDER: (
        Rollup("purchase_order_items", "order_id", (("cost", "subtotal"),)),
    ),
    EntityKind.VALUATION: (
        Rollup("valuation_items", "valuation_id", (("amount", "gross_amount"),)),
    ),
    EntityKind.PROJECT: (
        Rollup("equipment_lists", "project_id", (
            ("subtotal_internal", "lists_total_internal"),
            ("subtotal_client", "lists_total_client"),
            ("subtotal_real", "lists_total_real"),
        )),
        Rollup("purchase_orders", "project_id", (("total", "orders_total"),)),
        Rollup("valuations", "project_id", (("net_amount", "valuations_total"),)),
    ),
})

# child kind -> (parent kind, link field)
PARENT_CHAIN = MappingProxyType({
    EntityKind.EQUIPMENT_LIST: (EntityKind.PROJECT, "project_id"),
    EntityKind.PURCHASE_ORDER: (EntityKind.PROJECT, "project_id"),
    EntityKind.VALUATION: (EntityKind.PROJECT, "project_id"),
})


class RecalculationEngine:
    """
    Recalculation engine with:
    - Decimal precision (2 places at the boundary)
    - PEN/USD conversion per child
    - Order tax/discount and valuation deductions
    - Account invariant enforcement for orders
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        audit,
        default_exchange_rate=None
    ):
        self.client = client
        self.db = db
        self.audit = audit
        self.default_exchange_rate = (
            default_exchange_rate if default_exchange_rate is not None
            else settings.DEFAULT_EXCHANGE_RATE
        )
        self.invariant_validator = FinancialInvariantValidator()

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    async def recalculate(
        self,
        kind: EntityKind,
        entity_id,
        exchange_rate=None,
        session=None,
        actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Recalculate kind/id and every ancestor above it.

        Runs inside the caller's session when given, so the rollup commits
        with the mutation that triggered it; otherwise opens its own
        transaction.
        """
        if kind not in ROLLUPS:
            raise InvalidRequestError(f"{kind.value} has no monetary rollup")
        oid = parse_object_id(kind, entity_id)

        if session is not None:
            return await self._propagate(kind, oid, exchange_rate, session, actor_id)

        async with await self.client.start_session() as own_session:
            async with own_session.start_transaction():
                return await self._propagate(kind, oid, exchange_rate, own_session, actor_id)

    async def recalculate_ancestors(
        self,
        kind: EntityKind,
        doc: Dict[str, Any],
        session,
        exchange_rate=None
    ) -> Optional[Dict[str, Any]]:
        """Recalculate the chain above doc (after its state or existence changed)."""
        link = PARENT_CHAIN.get(kind)
        if not link:
            return None
        parent_kind, link_field = link
        parent_id = doc.get(link_field)
        if not parent_id or not ObjectId.is_valid(parent_id):
            return None
        return await self._propagate(parent_kind, ObjectId(parent_id), exchange_rate, session)

    # =========================================================================
    # PROPAGATION
    # =========================================================================

    async def _propagate(
        self,
        kind: EntityKind,
        oid: ObjectId,
        exchange_rate,
        session,
        actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        dirty: List[Tuple[EntityKind, ObjectId]] = [(kind, oid)]
        updated: List[Dict[str, Any]] = []

        while dirty:
            current_kind, current_id = dirty.pop(0)
            collection = collection_for(self.db, current_kind)
            doc = await collection.find_one({"_id": current_id}, session=session)

            if not doc:
                if not updated:
                    raise NotFoundError(current_kind.value, str(current_id))
                logger.warning(f"[RECALC] Missing ancestor {current_kind.value}:{current_id}, stopping")
                break

            totals = await self._compute(current_kind, doc, exchange_rate, session)

            await collection.update_one(
                {"_id": current_id},
                {"$set": totals},
                session=session
            )
            if current_kind == EntityKind.PURCHASE_ORDER:
                await self._record_payment_status_change(doc, totals, session, actor_id)
            updated.append({
                "kind": current_kind.value,
                "id": str(current_id),
                "totals": totals
            })
            logger.info(f"[RECALC] {current_kind.value}:{current_id} -> {totals}")

            link = PARENT_CHAIN.get(current_kind)
            if link:
                parent_kind, link_field = link
                parent_id = doc.get(link_field)
                if parent_id and ObjectId.is_valid(parent_id):
                    dirty.append((parent_kind, ObjectId(parent_id)))

        return {"updated": updated}

    async def _record_payment_status_change(
        self,
        doc: Dict[str, Any],
        totals: Dict[str, Any],
        session,
        actor_id: Optional[str]
    ) -> None:
        """Audit an order whose balance moved it to another payment status."""
        # An order never recalculated before is implicitly pending
        previous = doc.get("payment_status") or "pending"
        new_status = totals["payment_status"]
        if previous == new_status:
            return

        event = self.audit.build_event(
            EntityKind.PURCHASE_ORDER,
            {**doc, **totals},
            "payment_status_changed",
            f"purchase_order payment status '{previous}' -> '{new_status}' after recalculation",
            actor_id,
            metadata={
                "from": previous,
                "to": new_status,
                "paid": totals["paid"],
                "total": totals["total"]
            }
        )
        await self.audit.record(event, session)
        logger.info(f"[RECALC] purchase_order:{doc['_id']} payment status '{previous}' -> '{new_status}'")

    async def _compute(
        self,
        kind: EntityKind,
        doc: Dict[str, Any],
        exchange_rate,
        session
    ) -> Dict[str, Any]:
        sums = await self._sum_children(kind, doc, exchange_rate, session)

        try:
            if kind == EntityKind.PURCHASE_ORDER:
                values = calculate_order_totals(
                    subtotal=sums["subtotal"],
                    discount_pct=doc.get("discount_pct", 0),
                    tax_pct=doc.get("tax_pct", 0),
                    paid=doc.get("paid", 0)
                )
                values["paid"] = to_float(doc.get("paid", 0))
                self.invariant_validator.validate_account(
                    kind.value, {"_id": doc["_id"], **values}
                )
                values["payment_status"] = account_state_for(
                    to_decimal(values["paid"]), to_decimal(values["total"])
                )
                return values

            if kind == EntityKind.VALUATION:
                advance_balance = await self._advance_balance(doc, session)
                return calculate_valuation_values(
                    gross_amount=sums["gross_amount"],
                    discount_pct=doc.get("discount_pct", 0),
                    advance_pct=doc.get("advance_pct", 0),
                    advance_balance=advance_balance,
                    tax_pct=doc.get("tax_pct", 0),
                    retention_pct=doc.get("retention_pct", 0)
                )
        except FinancialPrecisionError as e:
            raise InvalidRequestError(f"{kind.value} {doc['_id']}: {e}")

        return {field: to_float(value) for field, value in sums.items()}

    async def _sum_children(
        self,
        kind: EntityKind,
        doc: Dict[str, Any],
        exchange_rate,
        session
    ) -> Dict[str, Decimal]:
        parent_currency = doc.get("currency") or settings.BASE_CURRENCY
        sums: Dict[str, Decimal] = {}

        for rollup in ROLLUPS[kind]:
            for _, parent_field in rollup.fields:
                sums.setdefault(parent_field, ZERO)

            cursor = self.db[rollup.child_collection].find(
                {
                    rollup.link_field: str(doc["_id"]),
                    STATE_FIELD: {"$nin": sorted(DEAD_STATES)}
                },
                session=session
            ).sort("_id", 1)

            async for child in cursor:
                child_currency = child.get("currency") or parent_currency
                rate = child.get("exchange_rate") or exchange_rate or self.default_exchange_rate
                for child_field, parent_field in rollup.fields:
                    try:
                        amount = convert_currency(
                            child.get(child_field, 0), child_currency, parent_currency, rate
                        )
                    except CurrencyConversionError as e:
                        raise InvalidRequestError(
                            f"Cannot roll {rollup.child_collection}:{child['_id']} into "
                            f"{kind.value}:{doc['_id']}: {e}",
                            {"child_currency": child_currency, "parent_currency": parent_currency}
                        )
                    sums[parent_field] += amount

        return sums

    async def _advance_balance(self, valuation: Dict[str, Any], session) -> Decimal:
        """
        Unamortized project advance available to this valuation.

        Excludes this valuation's own previous amortization so repeated runs
        converge on the same value.
        """
        project_id = valuation.get("project_id")
        if not project_id or not ObjectId.is_valid(project_id):
            return ZERO

        project = await self.db.projects.find_one({"_id": ObjectId(project_id)}, session=session)
        if not project:
            return ZERO

        advance_total = to_decimal(project.get("advance_amount", 0))
        if advance_total <= ZERO:
            return ZERO

        amortized = ZERO
        cursor = self.db.valuations.find(
            {
                "project_id": project_id,
                "_id": {"$ne": valuation["_id"]},
                STATE_FIELD: {"$nin": sorted(DEAD_STATES)}
            },
            session=session
        )
        async for other in cursor:
            amortized += to_decimal(other.get("advance_amount", 0))

        return max(ZERO, advance_total - amortized)
