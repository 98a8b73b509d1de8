"""
LIFECYCLE MUTATOR

The only writer of an entity's `estado`.

Every mutation runs in ONE transaction:
1. Load the entity
2. Validate the move against the state registry (nothing written yet)
3. Check the actor's role group
4. Forward: run business guards. Backward: consult the dependency resolver
5. Persist estado with milestone stamps (forward) or field resets (backward)
6. Recalculate the rollup chain when the entity's liveness changed
7. Record exactly one audit event

Any failure aborts the whole transaction.
"""

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, Set
import logging

from procurement_backend.audit_service import AuditService
from procurement_backend.core.dependency_resolver import DependencyResolver
from procurement_backend.core.entities import (
    EntityKind,
    LINE_ITEMS,
    STATE_FIELD,
    collection_for,
    parse_kind,
    parse_object_id,
)
from procurement_backend.core.errors import (
    ConflictError,
    InvalidRequestError,
    LifecycleError,
    NotFoundError,
)
from procurement_backend.core.recalculation_engine import RecalculationEngine
from procurement_backend.core.state_machine import StateMachine
from procurement_backend.core.state_registry import machine_for, is_dead_state, reentry_target
from procurement_backend.permissions import PermissionChecker

logger = logging.getLogger(__name__)


class LifecycleMutator:
    """
    Transactional state changes, rollbacks and deletes.

    Check operations (check_rollback, check_delete) are snapshots; the
    mutating operations re-validate inside their own transaction.
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        resolver: DependencyResolver,
        recalc: RecalculationEngine,
        audit: AuditService,
        permissions: Optional[PermissionChecker] = None
    ):
        self.client = client
        self.db = db
        self.resolver = resolver
        self.recalc = recalc
        self.audit = audit
        self.permissions = permissions or PermissionChecker()

    async def _load(self, kind: EntityKind, oid, session) -> Dict[str, Any]:
        doc = await collection_for(self.db, kind).find_one({"_id": oid}, session=session)
        if not doc:
            raise NotFoundError(kind.value, str(oid))
        return doc

    # =========================================================================
    # READ-ONLY CHECKS
    # =========================================================================

    async def check_rollback(self, kind, entity_id, target: str) -> Dict[str, Any]:
        return await self.resolver.can_rollback(parse_kind(kind), entity_id, target)

    async def check_delete(self, kind, entity_id) -> Dict[str, Any]:
        kind = parse_kind(kind)
        machine_for(kind)
        return await self.resolver.can_delete(kind, entity_id)

    # =========================================================================
    # STATE CHANGES
    # =========================================================================

    async def transition(
        self,
        kind,
        entity_id,
        target: str,
        actor: Dict[str, Any],
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """Move an entity forward along a registered transition."""
        kind = parse_kind(kind)
        machine = machine_for(kind)
        oid = parse_object_id(kind, entity_id)

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                try:
                    doc = await self._load(kind, oid, session)
                    current = doc.get(STATE_FIELD)

                    if machine.is_system_state(target):
                        raise InvalidRequestError(
                            f"'{target}' is set by payment recording and cannot be requested "
                            f"for {kind.value}",
                            {"current": current, "target": target}
                        )
                    requested = target
                    target = reentry_target(kind, doc, current, requested)
                    transition = machine.validate_transition(current, target)

                    if transition.roles:
                        self.permissions.check_role(
                            actor, transition.roles, f"move {kind.value} to '{target}'"
                        )

                    context = {
                        "db": self.db,
                        "session": session,
                        "resolver": self.resolver,
                        "actor": actor
                    }
                    await machine.check_guard(doc, current, target, context)

                    return await self._apply(
                        kind, machine, doc, current, target, actor, reason,
                        event_kind="state_transition",
                        resets=set(),
                        session=session,
                        requested=requested
                    )

                except LifecycleError:
                    raise
                except Exception as e:
                    logger.error(f"[TRANSACTION ERROR] Transition {kind.value}:{entity_id} -> {target}: {str(e)}")
                    raise

    async def rollback(
        self,
        kind,
        entity_id,
        target: str,
        actor: Dict[str, Any],
        reason: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Move an entity backward in its canonical order.

        Live dependents that need a later parent state raise ConflictError
        carrying the blockers. Milestones of every state after the target
        are cleared.
        """
        kind = parse_kind(kind)
        machine = machine_for(kind)
        oid = parse_object_id(kind, entity_id)

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                try:
                    doc = await self._load(kind, oid, session)
                    current = doc.get(STATE_FIELD)

                    if not machine.is_valid_rollback(current, target):
                        raise InvalidRequestError(
                            f"'{target}' is not a valid rollback target for {kind.value} "
                            f"in state '{current}'",
                            {"current": current, "target": target,
                             "allowed": machine.rollback_targets(current)}
                        )

                    self.permissions.check_role(actor, "rollback", f"roll back {kind.value}")

                    blockers = await self.resolver.rollback_blockers(kind, doc, target, session)
                    if blockers:
                        raise ConflictError(
                            f"{kind.value} {entity_id} cannot be rolled back to '{target}': "
                            f"{len(blockers)} dependent record(s) block it",
                            blockers
                        )

                    return await self._apply(
                        kind, machine, doc, current, target, actor, reason,
                        event_kind="state_rollback",
                        resets=machine.field_resets_for(target),
                        session=session
                    )

                except LifecycleError:
                    raise
                except Exception as e:
                    logger.error(f"[TRANSACTION ERROR] Rollback {kind.value}:{entity_id} -> {target}: {str(e)}")
                    raise

    async def _apply(
        self,
        kind: EntityKind,
        machine: StateMachine,
        doc: Dict[str, Any],
        current: str,
        target: str,
        actor: Dict[str, Any],
        reason: Optional[str],
        event_kind: str,
        resets: Set[str],
        session,
        requested: Optional[str] = None
    ) -> Dict[str, Any]:
        now = datetime.utcnow()
        update = {STATE_FIELD: target, "updated_at": now}
        # A balance-driven re-entry keeps the milestones already stamped
        if event_kind == "state_transition" and requested in (None, target):
            update.update(machine.stamps_for(target, actor.get("user_id"), now))
        for field in sorted(resets):
            update[field] = None

        # Guarded on the state read above so a concurrent writer loses
        result = await collection_for(self.db, kind).update_one(
            {"_id": doc["_id"], STATE_FIELD: current},
            {"$set": update},
            session=session
        )
        if result.matched_count == 0:
            raise ConflictError(f"{kind.value} {doc['_id']} changed state concurrently")
        doc.update(update)

        if is_dead_state(current) != is_dead_state(target):
            await self.recalc.recalculate_ancestors(kind, doc, session)

        event = self.audit.build_event(
            kind,
            doc,
            event_kind,
            f"{kind.value} '{current}' -> '{target}'",
            actor.get("user_id"),
            metadata={
                "from": current,
                "to": target,
                "reason": reason,
                "actor_role": actor.get("role"),
                "field_resets": sorted(resets)
            }
        )
        if requested and requested != target:
            event["metadata"]["requested"] = requested
        await self.audit.record(event, session)

        logger.info(
            f"[LIFECYCLE] {kind.value}:{doc['_id']} '{current}' -> '{target}' "
            f"by user:{actor.get('user_id')} ({event_kind})"
        )
        return doc

    # =========================================================================
    # DELETION
    # =========================================================================

    async def delete(self, kind, entity_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        """
        Hard-delete an entity with its line items.

        Dependents in dead states are detached from an entity still in its
        initial state; any other dependent raises ConflictError. The deletion
        audit event is written after commit.
        """
        kind = parse_kind(kind)
        machine_for(kind)
        oid = parse_object_id(kind, entity_id)
        self.permissions.check_role(actor, "delete", f"delete {kind.value}")

        outbox = self.audit.outbox()

        async with await self.client.start_session() as session:
            async with session.start_transaction():
                try:
                    doc = await self._load(kind, oid, session)
                    plan = await self.resolver.plan_delete(kind, doc, session)
                    if not plan["allowed"]:
                        raise ConflictError(plan["message"], plan["blockers"])

                    for op in plan["detach"]:
                        await self.db[op["collection"]].update_one(
                            {"_id": op["id"]},
                            {"$set": {op["field"]: None}},
                            session=session
                        )

                    items_deleted = 0
                    if kind in LINE_ITEMS:
                        items_collection, fk = LINE_ITEMS[kind]
                        result = await self.db[items_collection].delete_many(
                            {fk: str(oid)}, session=session
                        )
                        items_deleted = result.deleted_count

                    await collection_for(self.db, kind).delete_one({"_id": oid}, session=session)
                    await self.recalc.recalculate_ancestors(kind, doc, session)

                    outbox.dispatch_after_commit(self.audit.build_event(
                        kind,
                        doc,
                        "entity_deleted",
                        f"{kind.value} deleted in state '{doc.get(STATE_FIELD)}'",
                        actor.get("user_id"),
                        metadata={
                            "estado": doc.get(STATE_FIELD),
                            "detached": len(plan["detach"]),
                            "items_deleted": items_deleted
                        }
                    ))

                except LifecycleError:
                    outbox.clear()
                    raise
                except Exception as e:
                    outbox.clear()
                    logger.error(f"[TRANSACTION ERROR] Delete {kind.value}:{entity_id}: {str(e)}")
                    raise

        await outbox.flush()
        logger.info(f"[LIFECYCLE] Deleted {kind.value}:{oid} by user:{actor.get('user_id')}")
        return {
            "deleted": True,
            "kind": kind.value,
            "id": str(oid),
            "detached": len(plan["detach"]),
            "items_deleted": items_deleted
        }
