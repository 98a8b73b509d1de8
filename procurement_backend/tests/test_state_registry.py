"""
State registry tests: declared graphs, rollback legality and field resets.
"""
import pytest

from procurement_backend.core.entities import EntityKind
from procurement_backend.core.errors import InvalidRequestError, InvalidTransitionError
from procurement_backend.core.state_machine import StateMachine, StateMachineError
from procurement_backend.core.state_registry import (
    LIFECYCLE_KINDS,
    MACHINES,
    allowed_transitions,
    can_transition,
    field_resets_for,
    initial_state,
    is_terminal,
    is_valid_rollback,
    machine_for,
)


class TestDeclaredGraphs:
    """Every lifecycle kind has a frozen, forward-only graph"""

    def test_every_lifecycle_kind_has_a_machine(self):
        assert set(MACHINES) == set(LIFECYCLE_KINDS)

    @pytest.mark.parametrize("kind", LIFECYCLE_KINDS)
    def test_forward_transitions_never_go_backward(self, kind):
        machine = machine_for(kind)
        order = machine.order
        for t in machine.get_transitions():
            if t["from"] in order and t["to"] in order:
                assert order.index(t["to"]) > order.index(t["from"]), f"{kind.value}: {t}"

    @pytest.mark.parametrize("kind", LIFECYCLE_KINDS)
    def test_terminal_states_have_no_exits(self, kind):
        machine = machine_for(kind)
        for state in machine.states:
            if machine.is_terminal(state):
                assert machine.get_allowed_transitions(state) == []

    def test_initial_states(self):
        assert initial_state(EntityKind.EQUIPMENT_LIST) == "draft"
        assert initial_state(EntityKind.PENDING_RECEIPT) == "pending"
        assert initial_state(EntityKind.PAYABLE) == "pending"

    def test_registry_lookups(self):
        assert can_transition(EntityKind.PURCHASE_ORDER, "draft", "approved")
        assert not can_transition(EntityKind.PURCHASE_ORDER, "draft", "sent")
        assert is_terminal(EntityKind.PAYABLE, "voided")
        assert not is_terminal(EntityKind.PAYABLE, "overdue")

    def test_kind_without_lifecycle_is_rejected(self):
        with pytest.raises(InvalidRequestError):
            machine_for(EntityKind.PROJECT)

    def test_rejected_lists_can_reenter(self):
        assert set(allowed_transitions(EntityKind.EQUIPMENT_LIST, "rejected")) == {"draft", "under_review"}

    def test_payment_states_are_system_only(self):
        machine = machine_for(EntityKind.PAYABLE)
        assert machine.is_system_state("paid")
        assert machine.is_system_state("partial")
        assert not machine.is_system_state("overdue")

    def test_machines_are_frozen(self):
        with pytest.raises(StateMachineError):
            machine_for(EntityKind.PURCHASE_ORDER).register("draft", "cancelled")


class TestRollbackLegality:
    """Rollback targets must strictly precede the current state"""

    def test_backward_move_is_valid(self):
        assert is_valid_rollback(EntityKind.PURCHASE_ORDER, "sent", "draft")
        assert is_valid_rollback(EntityKind.EQUIPMENT_LIST, "approved", "validated")

    def test_forward_or_same_state_is_not_a_rollback(self):
        assert not is_valid_rollback(EntityKind.PURCHASE_ORDER, "draft", "sent")
        assert not is_valid_rollback(EntityKind.PURCHASE_ORDER, "sent", "sent")

    def test_terminal_and_branch_states_never_roll_back(self):
        assert not is_valid_rollback(EntityKind.PURCHASE_ORDER, "cancelled", "draft")
        assert not is_valid_rollback(EntityKind.EQUIPMENT_LIST, "rejected", "draft")
        assert not is_valid_rollback(EntityKind.EQUIPMENT_LIST, "approved", "rejected")

    def test_rollback_targets_listed_in_order(self):
        machine = machine_for(EntityKind.PURCHASE_ORDER)
        assert machine.rollback_targets("confirmed") == ["draft", "approved", "sent"]


class TestFieldResets:
    """Landing on a state clears the milestones of every later state"""

    def test_order_back_to_approved(self):
        assert field_resets_for(EntityKind.PURCHASE_ORDER, "approved") == {
            "sent_at", "sender_id", "confirmed_at", "partially_received_at", "completed_at"
        }

    def test_list_back_to_validated_keeps_validation(self):
        resets = field_resets_for(EntityKind.EQUIPMENT_LIST, "validated")
        assert resets == {"approved_at", "approver_id"}

    def test_stamps_include_actor(self):
        machine = machine_for(EntityKind.PURCHASE_ORDER)
        stamps = machine.stamps_for("approved", "user-1", "now")
        assert stamps == {"approved_at": "now", "approver_id": "user-1"}


class TestStateMachineDefinition:
    """Misconfigured machines fail at wiring time"""

    def test_backward_registration_rejected(self):
        machine = StateMachine("widget", order=["a", "b", "c"])
        with pytest.raises(StateMachineError):
            machine.register("c", "a")

    def test_terminal_state_cannot_have_exits(self):
        machine = StateMachine("widget", order=["a", "b"], terminal_states=["dead"])
        with pytest.raises(StateMachineError):
            machine.register("dead", "a")

    def test_unknown_state_rejected(self):
        machine = StateMachine("widget", order=["a", "b"])
        with pytest.raises(StateMachineError):
            machine.register("a", "z")

    def test_unregistered_transition_lists_allowed_targets(self):
        machine = StateMachine("widget", order=["a", "b", "c"])
        machine.register("a", "b")
        with pytest.raises(InvalidTransitionError) as exc:
            machine.validate_transition("a", "c")
        assert exc.value.allowed == ["b"]
