"""
Test Escrow State Machine
Transition tables, actor checks and terminal states
"""

import pytest

from models import PurchaseStatus, TaskStatus
from utils.escrow_state_machine import (
    Actor,
    PurchaseStateValidator,
    PurchaseTransition,
    TaskStateValidator,
    TaskTransition,
)
from utils.exceptions import InvalidStateError


class TestPurchaseTransitions:
    """Purchase lifecycle table"""

    def test_happy_path_edges(self):
        assert PurchaseStateValidator.is_valid_transition(PurchaseTransition.SELLER_ACCEPT, "pending")
        assert PurchaseStateValidator.is_valid_transition(PurchaseTransition.SELLER_DELIVER, "accepted")
        assert PurchaseStateValidator.is_valid_transition(PurchaseTransition.BUYER_CONFIRM, "delivered")

    def test_cancel_only_while_pending(self):
        assert PurchaseStateValidator.is_valid_transition(PurchaseTransition.BUYER_CANCEL, "pending")
        assert not PurchaseStateValidator.is_valid_transition(PurchaseTransition.BUYER_CANCEL, "accepted")

    def test_terminal_states(self):
        for status in (
            PurchaseStatus.CONFIRMED,
            PurchaseStatus.CANCELLED,
            PurchaseStatus.REFUNDED,
        ):
            assert PurchaseStateValidator.is_terminal_state(status.value)
        assert not PurchaseStateValidator.is_terminal_state(PurchaseStatus.DISPUTED.value)

    def test_wrong_actor_rejected(self):
        with pytest.raises(InvalidStateError) as exc_info:
            PurchaseStateValidator.validate(PurchaseTransition.SELLER_DELIVER, "accepted", Actor.BUYER)
        assert "Only the seller" in exc_info.value.message

    def test_outsider_rejected(self):
        with pytest.raises(InvalidStateError):
            PurchaseStateValidator.validate(PurchaseTransition.BUYER_CONFIRM, "delivered", None)

    def test_wrong_source_rejected(self):
        with pytest.raises(InvalidStateError) as exc_info:
            PurchaseStateValidator.validate(PurchaseTransition.BUYER_CONFIRM, "accepted", Actor.BUYER)
        assert exc_info.value.details["currentStatus"] == "accepted"

    def test_valid_transitions_from_delivered(self):
        assert PurchaseStateValidator.get_valid_transitions("delivered") == {
            PurchaseTransition.BUYER_CONFIRM,
            PurchaseTransition.BUYER_DISPUTE,
        }


class TestTaskTransitions:
    """Task lifecycle table"""

    def test_creator_cannot_accept_own_task(self):
        with pytest.raises(InvalidStateError) as exc_info:
            TaskStateValidator.validate(TaskTransition.ACCEPT, "open", Actor.CREATOR)
        assert "your own task" in exc_info.value.message

    def test_cancel_and_reject_return_to_open(self):
        for transition in (TaskTransition.CANCEL, TaskTransition.REJECT):
            rule = TaskStateValidator.rule_for(transition)
            assert rule.target == TaskStatus.OPEN.value
            assert rule.sources == {TaskStatus.IN_PROGRESS.value, TaskStatus.SUBMITTED.value}

    def test_delete_only_when_open(self):
        TaskStateValidator.validate(TaskTransition.DELETE, "open", Actor.CREATOR)
        with pytest.raises(InvalidStateError):
            TaskStateValidator.validate(TaskTransition.DELETE, "in_progress", Actor.CREATOR)

    def test_take_down_is_admin_only(self):
        TaskStateValidator.validate(TaskTransition.TAKE_DOWN, "submitted", Actor.ADMIN)
        with pytest.raises(InvalidStateError):
            TaskStateValidator.validate(TaskTransition.TAKE_DOWN, "open", Actor.CREATOR)

    def test_terminal_states(self):
        for status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED, TaskStatus.REJECTED):
            assert TaskStateValidator.is_terminal_state(status.value)
        assert not TaskStateValidator.is_terminal_state(TaskStatus.OPEN.value)
