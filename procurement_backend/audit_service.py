from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from procurement_backend.core.entities import (
    AUDIT_FOREIGN_KEYS,
    EntityKind,
    audit_references,
    timeline_key,
)

logger = logging.getLogger(__name__)


class AuditOutbox:
    """
    Audit events dispatched AFTER a successful commit only.

    Used for supplementary records (e.g. a deletion log) whose failure must
    never undo the primary operation.
    """

    def __init__(self, service: "AuditService"):
        self.service = service
        self._pending: List[Dict[str, Any]] = []

    def dispatch_after_commit(self, event: Dict[str, Any]):
        """Queue an event to be written after commit"""
        self._pending.append(event)

    async def flush(self) -> int:
        """Write all pending events (call AFTER commit). Returns how many landed."""
        events = self._pending.copy()
        self._pending.clear()

        written = 0
        for event in events:
            try:
                await self.service.collection.insert_one(event)
                written += 1
                logger.info(
                    f"[AUDIT] Post-commit event: {event['kind']} on "
                    f"{event.get('entity_kind')}:{event.get('entity_id')}"
                )
            except Exception as e:
                # Best-effort: the documented action already committed
                logger.error(f"[AUDIT] Failed to write post-commit event {event['kind']}: {str(e)}")
        return written

    def clear(self):
        """Drop pending events (call on rollback)"""
        self._pending.clear()

    def __len__(self):
        return len(self._pending)


class AuditService:
    """Service for immutable audit logging (INSERT ONLY)"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_events

    async def create_indexes(self):
        """One index per sparse foreign key, ordered for timeline reads"""
        for column in AUDIT_FOREIGN_KEYS:
            await self.collection.create_index(
                [(column, 1), ("occurred_at", 1)],
                sparse=True
            )
        logger.info("[AUDIT] Indexes ensured")

    def build_event(
        self,
        kind: EntityKind,
        entity_doc: Dict[str, Any],
        event_kind: str,
        description: str,
        actor_id: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        extra_refs: Optional[Dict[str, str]] = None
    ) -> Dict[str, Any]:
        """
        Shape an audit event for an entity.

        Only the foreign keys the entity actually carries are populated.
        """
        event = {column: None for column in AUDIT_FOREIGN_KEYS}
        event.update(audit_references(kind, entity_doc))
        if extra_refs:
            event.update({k: v for k, v in extra_refs.items() if v is not None})

        event.update({
            "entity_kind": kind.value,
            "entity_id": str(entity_doc["_id"]),
            "kind": event_kind,
            "description": description,
            "actor_id": actor_id,
            "metadata": metadata or {},
            "occurred_at": datetime.utcnow()
        })
        return event

    async def record(self, event: Dict[str, Any], session) -> str:
        """
        Write an audit event inside the caller's transaction.

        Failures propagate: the business change cannot commit without its
        audit record.
        """
        if session is None:
            raise ValueError("Transactional audit writes require a session")
        result = await self.collection.insert_one(event, session=session)
        logger.info(
            f"[AUDIT] {event['kind']} on {event['entity_kind']}:{event['entity_id']} "
            f"by user:{event.get('actor_id')}"
        )
        return str(result.inserted_id)

    def outbox(self) -> AuditOutbox:
        """Per-operation outbox for best-effort, post-commit events"""
        return AuditOutbox(self)

    async def timeline(
        self,
        kind: EntityKind,
        entity_id: str,
        limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """
        Chronological history of an entity (READ ONLY).

        Follows the sparse foreign key for the kind, so an order's timeline
        also holds the events of its receipts and payables.
        """
        query = {timeline_key(kind): str(entity_id)}

        cursor = self.collection.find(query).sort([("occurred_at", 1), ("_id", 1)])
        if limit:
            cursor = cursor.limit(limit)
        events = await cursor.to_list(length=limit)

        for event in events:
            event["audit_id"] = str(event.pop("_id"))

        return events
