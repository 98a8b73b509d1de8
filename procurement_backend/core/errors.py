"""
Exception taxonomy for the lifecycle engine.

Core services raise these; only the HTTP adapter turns them into
HTTPException responses.
"""

from typing import Any, Dict, List, Optional


class LifecycleError(Exception):
    """Base exception for lifecycle engine errors."""
    status_hint = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class InvalidRequestError(LifecycleError):
    """Illegal transition or malformed request, rejected before any write."""
    status_hint = 400


class InvalidTransitionError(InvalidRequestError):
    """Raised when a state change is not declared for the entity kind."""

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed or []

        allowed_str = f" Allowed transitions from '{from_state}': {self.allowed}" if self.allowed else ""
        message = f"Invalid transition for {entity}: '{from_state}' -> '{to_state}'.{allowed_str}"
        super().__init__(message, {
            "entity": entity,
            "from_state": from_state,
            "to_state": to_state,
            "allowed": self.allowed
        })


class GuardConditionError(InvalidRequestError):
    """Raised when a business guard prevents a forward transition."""

    def __init__(self, entity: str, from_state: str, to_state: str, reason: str):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        message = f"Guard blocked {entity}: '{from_state}' -> '{to_state}': {reason}"
        super().__init__(message, {"reason": reason})


class ConflictError(LifecycleError):
    """Raised when downstream records veto a rollback, cancel or delete."""
    status_hint = 409

    def __init__(self, message: str, blockers: Optional[List[Dict[str, Any]]] = None):
        self.blockers = blockers or []
        super().__init__(message, {"blockers": self.blockers})


class NotFoundError(LifecycleError):
    """Raised when the target entity does not exist."""
    status_hint = 404

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ForbiddenError(LifecycleError):
    """Raised when the actor's role may not perform the operation."""
    status_hint = 403

    def __init__(self, role: Optional[str], action: str, allowed_roles: List[str]):
        self.role = role
        self.action = action
        self.allowed_roles = list(allowed_roles)
        super().__init__(
            f"Role '{role}' is not allowed to {action}. Allowed roles: {self.allowed_roles}",
            {"role": role, "allowed_roles": self.allowed_roles}
        )


class InvariantViolationError(LifecycleError):
    """Raised when a financial invariant would be violated on commit."""
    status_hint = 400

    def __init__(self, violation_type: str, message: str, details: dict = None):
        self.violation_type = violation_type
        super().__init__(message, details)
