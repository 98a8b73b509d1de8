"""
LIFECYCLE API ROUTES

Thin HTTP adapter over the lifecycle engine call contracts:
- Rollback check / rollback
- Forward transition
- Delete check / delete
- Payment recording
- Recalculation
- Audit timeline

Domain errors are mapped to HTTP status codes here and nowhere else.
"""

from fastapi import APIRouter, HTTPException, Depends, Request, Query
from bson import ObjectId
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

from procurement_backend.auth import get_current_user
from procurement_backend.core.entities import parse_kind
from procurement_backend.core.errors import LifecycleError, NotFoundError
from procurement_backend.models import (
    Actor,
    TransitionRequest,
    RollbackRequest,
    PaymentCreate,
    RecalculateRequest,
    DependencyCheckResponse,
)

logger = logging.getLogger(__name__)

# Router
lifecycle_router = APIRouter(prefix="/api/v1", tags=["Lifecycle Engine"])


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    """Serialize MongoDB document for JSON response (handles ObjectId, datetime)"""
    if doc is None:
        return None
    result = {}
    for key, value in doc.items():
        if isinstance(value, ObjectId):
            result[key] = str(value)
        elif isinstance(value, datetime):
            result[key] = value.isoformat()
        elif isinstance(value, dict):
            result[key] = serialize_doc(value)
        elif isinstance(value, list):
            result[key] = [
                serialize_doc(item) if isinstance(item, dict)
                else str(item) if isinstance(item, ObjectId)
                else item.isoformat() if isinstance(item, datetime)
                else item
                for item in value
            ]
        else:
            result[key] = value
    return result


def to_http_exception(error: LifecycleError) -> HTTPException:
    detail = {"message": error.message}
    detail.update(error.details)
    if hasattr(error, "violation_type"):
        detail["violation_type"] = error.violation_type
    return HTTPException(status_code=error.status_hint, detail=serialize_doc(detail))


def get_services(request: Request):
    """Engine services wired onto the application at startup"""
    return request.app.state


# =============================================================================
# ROLLBACK
# =============================================================================

@lifecycle_router.get("/{kind}/{entity_id}/rollback-check", response_model=DependencyCheckResponse)
async def check_rollback(
    kind: str,
    entity_id: str,
    target: str = Query(...),
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
):
    """Dry run: may the entity roll back to target? Never writes."""
    try:
        return await services.mutator.check_rollback(kind, entity_id, target)
    except LifecycleError as e:
        raise to_http_exception(e)


@lifecycle_router.post("/{kind}/{entity_id}/rollback")
async def rollback(
    kind: str,
    entity_id: str,
    body: RollbackRequest,
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
):
    try:
        doc = await services.mutator.rollback(
            kind, entity_id, body.target, current_user.as_dict(), body.reason
        )
    except LifecycleError as e:
        raise to_http_exception(e)
    return serialize_doc(doc)


# =============================================================================
# FORWARD TRANSITIONS
# =============================================================================

@lifecycle_router.post("/{kind}/{entity_id}/transition")
async def transition(
    kind: str,
    entity_id: str,
    body: TransitionRequest,
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
):
    try:
        doc = await services.mutator.transition(
            kind, entity_id, body.target, current_user.as_dict(), body.reason
        )
    except LifecycleError as e:
        raise to_http_exception(e)
    return serialize_doc(doc)


# =============================================================================
# DELETION
# =============================================================================

@lifecycle_router.get("/{kind}/{entity_id}/delete-check", response_model=DependencyCheckResponse)
async def check_delete(
    kind: str,
    entity_id: str,
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
):
    try:
        return await services.mutator.check_delete(kind, entity_id)
    except LifecycleError as e:
        raise to_http_exception(e)


@lifecycle_router.delete("/{kind}/{entity_id}")
async def delete_entity(
    kind: str,
    entity_id: str,
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
):
    """
    Hard delete, refused with 409 and the blockers while dependents exist.
    """
    try:
        return await services.mutator.delete(kind, entity_id, current_user.as_dict())
    except LifecycleError as e:
        raise to_http_exception(e)


# =============================================================================
# PAYMENTS
# =============================================================================

@lifecycle_router.post("/accounts/{kind}/{account_id}/payments")
async def record_payment(
    kind: str,
    account_id: str,
    body: PaymentCreate,
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
):
    """
    Record a payment, split into withholding and net parts when a
    withholding percentage is given.
    """
    actor = current_user.as_dict()
    try:
        services.permissions.check_role(actor, "payments", f"record payments on {kind}")
        result = await services.payments.record_payment(
            kind,
            account_id,
            body.gross_amount,
            actor,
            withholding_pct=body.withholding_pct,
            method=body.method,
            paid_at=body.paid_at,
            reference=body.reference,
            withholding_code=body.withholding_code
        )
    except LifecycleError as e:
        raise to_http_exception(e)

    return {
        "payments": [serialize_doc(p) for p in result["payments"]],
        "account": serialize_doc(result["account"])
    }


# =============================================================================
# RECALCULATION
# =============================================================================

@lifecycle_router.post("/{kind}/{entity_id}/recalculate")
async def recalculate(
    kind: str,
    entity_id: str,
    body: Optional[RecalculateRequest] = None,
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
):
    exchange_rate = body.exchange_rate if body else None
    try:
        return await services.recalc.recalculate(
            parse_kind(kind), entity_id,
            exchange_rate=exchange_rate,
            actor_id=current_user.user_id
        )
    except LifecycleError as e:
        raise to_http_exception(e)


# =============================================================================
# AUDIT TIMELINE
# =============================================================================

@lifecycle_router.get("/{kind}/{entity_id}/timeline")
async def get_timeline(
    kind: str,
    entity_id: str,
    limit: Optional[int] = Query(default=None, ge=1),
    current_user: Actor = Depends(get_current_user),
    services=Depends(get_services)
) -> List[Dict[str, Any]]:
    try:
        if not ObjectId.is_valid(entity_id):
            raise NotFoundError(kind, entity_id)
        events = await services.audit.timeline(parse_kind(kind), entity_id, limit=limit)
    except LifecycleError as e:
        raise to_http_exception(e)
    return [serialize_doc(event) for event in events]


# =============================================================================
# HEALTH CHECK
# =============================================================================

@lifecycle_router.get("/health")
async def health_check():
    return {
        "status": "healthy",
        "features": [
            "state_registry",
            "dependency_resolver",
            "deletion_guard",
            "lifecycle_mutator",
            "audit_trail",
            "recalculation_engine",
            "split_payment_processor"
        ]
    }
