"""
GENERIC STATE MACHINE UTILITY

A reusable state machine for managing entity state transitions with:
- Canonical (linear) state order used to decide legal rollbacks
- Forward transition registration with guards and role groups
- Milestone stamps set on entry and cleared on rollback
- Terminal and re-enterable branch states
- Invalid transition rejection

Usage:
    # Define state machine
    po_machine = StateMachine("purchase_order", order=["draft", "approved", "sent"])
    po_machine.register("draft", "approved", guard=has_lines, roles="approvers")
    po_machine.milestone("approved", "approved_at", "approver_id")

    # Validate (the lifecycle mutator persists the change)
    po_machine.validate_transition("draft", "approved")
    po_machine.is_valid_rollback("sent", "draft")        # True
    po_machine.field_resets_for("approved")              # {"sent_at", ...}
"""

from typing import Dict, Any, Optional, Callable, Awaitable, List, Set, Tuple, FrozenSet
from datetime import datetime
import logging

from procurement_backend.core.errors import (
    LifecycleError,
    InvalidTransitionError,
    GuardConditionError,
)

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class StateMachineError(LifecycleError):
    """Raised when a machine is misconfigured or looked up incorrectly."""
    status_hint = 500


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Guard signature: async def guard(entity_doc, context) -> Tuple[bool, str]
GuardCondition = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Tuple[bool, str]]]


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of a forward state transition."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        roles: Optional[str] = None,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.guard = guard
        self.roles = roles
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


class Milestone:
    """Fields stamped when an entity enters a state."""

    def __init__(self, at_field: str, by_field: Optional[str] = None):
        self.at_field = at_field
        self.by_field = by_field

    @property
    def fields(self) -> Tuple[str, ...]:
        return tuple(f for f in (self.at_field, self.by_field) if f)


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    State machine for one entity kind.

    Features:
    - Canonical order for rollback legality
    - Register forward transitions with guards and role groups
    - Terminal states never transition out
    - Branch states (e.g. rejected) sit outside the canonical order and
      re-enter it only through registered forward transitions
    - Freeze after wiring so the graph is read-only at runtime

    Example:
        machine = StateMachine("purchase_order", order=["draft", "approved"])
        machine.register("draft", "approved", guard=can_approve)
        machine.freeze()
    """

    def __init__(
        self,
        entity_name: str,
        order: List[str],
        terminal_states: Optional[List[str]] = None,
        branch_states: Optional[List[str]] = None,
        system_states: Optional[List[str]] = None
    ):
        """
        Initialize state machine.

        Args:
            entity_name: Name of the entity (for logging/errors)
            order: Canonical forward order of states; order[0] is the initial state
            terminal_states: States with no way out (cancelled, voided)
            branch_states: Non-terminal states outside the canonical order
            system_states: States only the engine may set (never manual targets)
        """
        if len(set(order)) != len(order):
            raise StateMachineError(f"Duplicate states in canonical order for {entity_name}")

        self.entity_name = entity_name
        self._order: Tuple[str, ...] = tuple(order)
        self._terminal: FrozenSet[str] = frozenset(terminal_states or [])
        self._branch: FrozenSet[str] = frozenset(branch_states or [])
        self._system: FrozenSet[str] = frozenset(system_states or [])

        overlap = (self._terminal | self._branch) & set(self._order)
        if overlap:
            raise StateMachineError(
                f"States {sorted(overlap)} of {entity_name} cannot be both canonical and branch/terminal"
            )

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._milestones: Dict[str, Milestone] = {}
        self._frozen = False

        logger.debug(f"[STATE_MACHINE] Initialized for entity: {entity_name}")

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def _ensure_mutable(self):
        if self._frozen:
            raise StateMachineError(f"State machine {self.entity_name} is frozen")

    def _ensure_known(self, state: str):
        if state not in self.states:
            raise StateMachineError(f"Unknown state '{state}' for {self.entity_name}")

    def register(
        self,
        from_state: str,
        to_state: str,
        guard: Optional[GuardCondition] = None,
        roles: Optional[str] = None,
        description: str = ""
    ) -> "StateMachine":
        """
        Register a forward state transition.

        Args:
            from_state: Source state
            to_state: Target state
            guard: Optional async function to validate transition
            roles: Optional role group allowed to perform it
            description: Human-readable description

        Returns:
            self (for chaining)
        """
        self._ensure_mutable()
        self._ensure_known(from_state)
        self._ensure_known(to_state)

        if from_state in self._terminal:
            raise StateMachineError(
                f"Terminal state '{from_state}' of {self.entity_name} cannot have transitions"
            )
        if self._is_backward(from_state, to_state):
            raise StateMachineError(
                f"'{from_state}' -> '{to_state}' goes backward in {self.entity_name}; "
                f"backward moves are rollbacks"
            )

        key = (from_state, to_state)
        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{from_state}' -> '{to_state}'"
            )

        self._transitions[key] = Transition(
            from_state=from_state,
            to_state=to_state,
            guard=guard,
            roles=roles,
            description=description
        )

        logger.debug(
            f"[STATE_MACHINE] Registered {self.entity_name}: "
            f"'{from_state}' -> '{to_state}'"
        )

        return self

    def register_chain(self, roles: Optional[str] = None) -> "StateMachine":
        """Register every consecutive step of the canonical order."""
        for src, dst in zip(self._order, self._order[1:]):
            if (src, dst) not in self._transitions:
                self.register(src, dst, roles=roles)
        return self

    def milestone(self, state: str, at_field: str, by_field: Optional[str] = None) -> "StateMachine":
        """Declare the fields stamped when entering a canonical state."""
        self._ensure_mutable()
        if state not in self._order:
            raise StateMachineError(f"Milestones are only tracked for canonical states ({state})")
        self._milestones[state] = Milestone(at_field, by_field)
        return self

    def freeze(self) -> "StateMachine":
        self._frozen = True
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    @property
    def states(self) -> Set[str]:
        return set(self._order) | self._terminal | self._branch

    @property
    def order(self) -> Tuple[str, ...]:
        return self._order

    @property
    def initial_state(self) -> str:
        return self._order[0]

    def is_terminal(self, state: str) -> bool:
        return state in self._terminal

    def is_system_state(self, state: str) -> bool:
        return state in self._system

    def _is_backward(self, from_state: str, to_state: str) -> bool:
        if from_state not in self._order or to_state not in self._order:
            return False
        return self._order.index(to_state) < self._order.index(from_state)

    def get_allowed_transitions(self, from_state: str) -> List[str]:
        """Get list of valid forward target states from a given state."""
        allowed = []
        for (src, dst) in self._transitions.keys():
            if src == from_state:
                allowed.append(dst)
        return allowed

    def can_transition(self, from_state: str, to_state: str) -> bool:
        """Check if forward transition is registered (does not check guards)."""
        return (from_state, to_state) in self._transitions

    def validate_transition(self, from_state: str, to_state: str) -> Transition:
        """
        Validate that a forward transition is registered.
        Raises InvalidTransitionError if not valid.
        """
        transition = self._transitions.get((from_state, to_state))
        if transition is None:
            raise InvalidTransitionError(
                entity=self.entity_name,
                from_state=from_state,
                to_state=to_state,
                allowed=self.get_allowed_transitions(from_state)
            )
        return transition

    def is_valid_rollback(self, current: str, target: str) -> bool:
        """
        True iff target strictly precedes current in the canonical order.

        Terminal and branch states are never rollback sources or targets.
        """
        return self._is_backward(current, target)

    def rollback_targets(self, current: str) -> List[str]:
        """Canonical states strictly behind current."""
        if current not in self._order:
            return []
        return list(self._order[:self._order.index(current)])

    def field_resets_for(self, target: str) -> Set[str]:
        """
        Fields to clear when landing on target by rollback: the milestones of
        every canonical state after it.
        """
        if target not in self._order:
            raise StateMachineError(
                f"'{target}' is not a rollback target for {self.entity_name}"
            )
        resets: Set[str] = set()
        for state in self._order[self._order.index(target) + 1:]:
            milestone = self._milestones.get(state)
            if milestone:
                resets.update(milestone.fields)
        return resets

    def stamps_for(self, target: str, user_id: Optional[str], now: datetime) -> Dict[str, Any]:
        """Milestone values written when entering target."""
        milestone = self._milestones.get(target)
        if not milestone:
            return {}
        stamps = {milestone.at_field: now}
        if milestone.by_field:
            stamps[milestone.by_field] = user_id
        return stamps

    async def check_guard(
        self,
        entity_doc: Dict[str, Any],
        from_state: str,
        to_state: str,
        context: Dict[str, Any]
    ) -> None:
        """
        Check guard condition for transition.
        Raises GuardConditionError if guard rejects.
        """
        transition = self._transitions.get((from_state, to_state))

        if transition and transition.guard:
            allowed, reason = await transition.guard(entity_doc, context)
            if not allowed:
                raise GuardConditionError(
                    entity=self.entity_name,
                    from_state=from_state,
                    to_state=to_state,
                    reason=reason
                )

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def get_transitions(self) -> List[Dict[str, Any]]:
        """Get all registered transitions."""
        return [
            {
                "from": t.from_state,
                "to": t.to_state,
                "description": t.description,
                "has_guard": t.guard is not None,
                "roles": t.roles
            }
            for t in self._transitions.values()
        ]

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self.states)}, "
            f"transitions={len(self._transitions)})"
        )


# =============================================================================
# REGISTRY
# =============================================================================

class StateMachineRegistry:
    """
    Registry for managing the state machine of every entity kind.

    Usage:
        registry = StateMachineRegistry()
        registry.register("purchase_order", po_machine)

        machine = registry.get("purchase_order")
    """

    def __init__(self):
        self._machines: Dict[str, StateMachine] = {}

    def register(self, name: str, machine: StateMachine) -> None:
        """Register a state machine."""
        if name in self._machines:
            raise StateMachineError(f"State machine already registered: {name}")
        self._machines[name] = machine.freeze()
        logger.debug(f"[REGISTRY] Registered state machine: {name}")

    def get(self, name: str) -> StateMachine:
        """Get a state machine by name."""
        if name not in self._machines:
            raise StateMachineError(f"State machine not found: {name}")
        return self._machines[name]

    def list(self) -> List[str]:
        """List all registered state machines."""
        return list(self._machines.keys())
