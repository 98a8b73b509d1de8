from typing import Dict, Any, List, Optional
import logging

from procurement_backend import settings
from procurement_backend.core.errors import ForbiddenError

logger = logging.getLogger(__name__)


class PermissionChecker:
    """
    Role-group enforcement for lifecycle operations.

    RULES:
    1. The actor must carry a role
    2. Each operation names a role group (approvers, logistics, rollback, ...)
    3. Groups are configured through settings.ROLE_GROUPS
    """

    def __init__(self, role_groups: Optional[Dict[str, List[str]]] = None):
        self.role_groups = role_groups if role_groups is not None else settings.ROLE_GROUPS

    def allowed_roles(self, group: str) -> List[str]:
        if group not in self.role_groups:
            raise ValueError(f"Unknown role group: {group}")
        return self.role_groups[group]

    def check_role(self, actor: Dict[str, Any], group: str, action: str) -> bool:
        """Raise ForbiddenError unless the actor's role belongs to group"""
        allowed = self.allowed_roles(group)
        role = (actor.get("role") or "").lower()

        if role not in allowed:
            logger.warning(
                f"[PERMISSION] Denied user:{actor.get('user_id')} role:{role or None} "
                f"action:{action} (group {group})"
            )
            raise ForbiddenError(role or None, action, allowed)

        return True
