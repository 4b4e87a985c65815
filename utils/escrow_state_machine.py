"""
Escrow State Machine with Atomic Status Transitions
Purchase and task lifecycles: which edge may be taken, by whom, from where
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Sequence, Set

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import PurchaseStatus, TaskStatus
from utils.exceptions import InvalidStateError

logger = logging.getLogger(__name__)


class Actor(Enum):
    """Who is taking a transition, relative to the entity"""

    BUYER = "buyer"
    SELLER = "seller"
    CREATOR = "creator"
    ACCEPTOR = "acceptor"
    COUNTERPART = "counterpart"  # anyone except the creator
    ADMIN = "admin"


@dataclass(frozen=True)
class TransitionRule:
    sources: FrozenSet[str]
    target: str
    actor: Actor


class PurchaseTransition(Enum):
    """Valid purchase state transitions"""

    SELLER_ACCEPT = "seller_accept"  # PENDING -> ACCEPTED
    SELLER_DELIVER = "seller_deliver"  # ACCEPTED -> DELIVERED
    BUYER_CONFIRM = "buyer_confirm"  # DELIVERED -> CONFIRMED (settles to seller)
    BUYER_CANCEL = "buyer_cancel"  # PENDING -> CANCELLED (refunds buyer)
    BUYER_DISPUTE = "buyer_dispute"  # ACCEPTED/DELIVERED -> DISPUTED
    RELEASE_ESCROW = "release_escrow"  # DISPUTED -> CONFIRMED (admin)
    REFUND_ESCROW = "refund_escrow"  # DISPUTED -> REFUNDED (admin)


class TaskTransition(Enum):
    """Valid task state transitions"""

    ACCEPT = "accept"  # OPEN -> IN_PROGRESS
    SUBMIT = "submit"  # IN_PROGRESS -> SUBMITTED
    CONFIRM = "confirm"  # SUBMITTED -> COMPLETED (settles to acceptor)
    CANCEL = "cancel"  # IN_PROGRESS/SUBMITTED -> OPEN (acceptor walks away)
    REJECT = "reject"  # IN_PROGRESS/SUBMITTED -> OPEN (creator sends back)
    DELETE = "delete"  # OPEN -> CANCELLED (refunds creator)
    TAKE_DOWN = "take_down"  # any live state -> REJECTED (admin, refunds creator)


def _rule(sources: Set[str], target: str, actor: Actor) -> TransitionRule:
    return TransitionRule(frozenset(sources), target, actor)


class _StateValidator:
    """Shared lookups over a TRANSITIONS table"""

    TRANSITIONS: Dict[Enum, TransitionRule] = {}
    ENTITY = "entity"

    @classmethod
    def rule_for(cls, transition) -> TransitionRule:
        return cls.TRANSITIONS[transition]

    @classmethod
    def is_valid_transition(cls, transition, current_status: str) -> bool:
        """Check if the transition may be taken from current_status"""
        return current_status in cls.TRANSITIONS[transition].sources

    @classmethod
    def get_valid_transitions(cls, current_status: str) -> Set[Enum]:
        """All transitions whose source set contains current_status"""
        return {t for t, rule in cls.TRANSITIONS.items() if current_status in rule.sources}

    @classmethod
    def is_terminal_state(cls, status: str) -> bool:
        """Check if status is terminal (no further transitions)"""
        return not cls.get_valid_transitions(status)

    @classmethod
    def validate(cls, transition, current_status: str, actor: Optional[Actor]) -> TransitionRule:
        """Raise InvalidStateError unless actor may take transition from current_status"""
        rule = cls.TRANSITIONS[transition]
        verb = transition.value.replace("_", " ")
        if actor != rule.actor:
            if rule.actor == Actor.COUNTERPART:
                message = f"You cannot {verb} your own {cls.ENTITY}"
            else:
                message = f"Only the {rule.actor.value} can {verb} this {cls.ENTITY}"
            raise InvalidStateError(
                message,
                {"transition": transition.value, "requiredActor": rule.actor.value},
            )
        if current_status not in rule.sources:
            raise InvalidStateError(
                f"Cannot {verb} a {cls.ENTITY} in status '{current_status}'",
                {
                    "transition": transition.value,
                    "currentStatus": current_status,
                    "expected": sorted(rule.sources),
                },
            )
        return rule


class PurchaseStateValidator(_StateValidator):
    """Validates purchase state transitions"""

    ENTITY = "purchase"
    TRANSITIONS: Dict[PurchaseTransition, TransitionRule] = {
        PurchaseTransition.SELLER_ACCEPT: _rule(
            {PurchaseStatus.PENDING.value}, PurchaseStatus.ACCEPTED.value, Actor.SELLER
        ),
        PurchaseTransition.SELLER_DELIVER: _rule(
            {PurchaseStatus.ACCEPTED.value}, PurchaseStatus.DELIVERED.value, Actor.SELLER
        ),
        PurchaseTransition.BUYER_CONFIRM: _rule(
            {PurchaseStatus.DELIVERED.value}, PurchaseStatus.CONFIRMED.value, Actor.BUYER
        ),
        # Once the seller has accepted, the buyer can only dispute
        PurchaseTransition.BUYER_CANCEL: _rule(
            {PurchaseStatus.PENDING.value}, PurchaseStatus.CANCELLED.value, Actor.BUYER
        ),
        PurchaseTransition.BUYER_DISPUTE: _rule(
            {PurchaseStatus.ACCEPTED.value, PurchaseStatus.DELIVERED.value},
            PurchaseStatus.DISPUTED.value,
            Actor.BUYER,
        ),
        PurchaseTransition.RELEASE_ESCROW: _rule(
            {PurchaseStatus.DISPUTED.value}, PurchaseStatus.CONFIRMED.value, Actor.ADMIN
        ),
        PurchaseTransition.REFUND_ESCROW: _rule(
            {PurchaseStatus.DISPUTED.value}, PurchaseStatus.REFUNDED.value, Actor.ADMIN
        ),
    }

    @staticmethod
    def actor_for(purchase, user_hash: str) -> Optional[Actor]:
        if user_hash == purchase.seller_user_hash:
            return Actor.SELLER
        if user_hash == purchase.buyer_user_hash:
            return Actor.BUYER
        return None


_LIVE_TASK_STATES = {
    TaskStatus.OPEN.value,
    TaskStatus.IN_PROGRESS.value,
    TaskStatus.SUBMITTED.value,
}


class TaskStateValidator(_StateValidator):
    """Validates task state transitions"""

    ENTITY = "task"
    TRANSITIONS: Dict[TaskTransition, TransitionRule] = {
        TaskTransition.ACCEPT: _rule(
            {TaskStatus.OPEN.value}, TaskStatus.IN_PROGRESS.value, Actor.COUNTERPART
        ),
        TaskTransition.SUBMIT: _rule(
            {TaskStatus.IN_PROGRESS.value}, TaskStatus.SUBMITTED.value, Actor.ACCEPTOR
        ),
        TaskTransition.CONFIRM: _rule(
            {TaskStatus.SUBMITTED.value}, TaskStatus.COMPLETED.value, Actor.CREATOR
        ),
        TaskTransition.CANCEL: _rule(
            {TaskStatus.IN_PROGRESS.value, TaskStatus.SUBMITTED.value},
            TaskStatus.OPEN.value,
            Actor.ACCEPTOR,
        ),
        TaskTransition.REJECT: _rule(
            {TaskStatus.IN_PROGRESS.value, TaskStatus.SUBMITTED.value},
            TaskStatus.OPEN.value,
            Actor.CREATOR,
        ),
        TaskTransition.DELETE: _rule(
            {TaskStatus.OPEN.value}, TaskStatus.CANCELLED.value, Actor.CREATOR
        ),
        TaskTransition.TAKE_DOWN: _rule(
            _LIVE_TASK_STATES, TaskStatus.REJECTED.value, Actor.ADMIN
        ),
    }

    @staticmethod
    def actor_for(task, user_hash: str) -> Actor:
        if user_hash == task.creator_user_hash:
            return Actor.CREATOR
        if task.acceptor_user_hash and user_hash == task.acceptor_user_hash:
            return Actor.ACCEPTOR
        return Actor.COUNTERPART


def apply_status_transition(
    session: Session,
    model,
    key_column,
    key: str,
    rule: TransitionRule,
    guards: Sequence[Any] = (),
    **fields,
) -> None:
    """Compare-and-swap the status column from one of rule.sources to rule.target.

    A concurrent writer that moved the row first makes the UPDATE match zero
    rows, which is reported as InvalidStateError instead of being overwritten.
    Extra guards pin any other column the caller acted on, such as the party
    about to be paid.
    """
    stmt = (
        update(model)
        .where(key_column == key, model.status.in_(rule.sources), *guards)
        .values(status=rule.target, **fields)
        .execution_options(synchronize_session=False)
    )
    result = session.execute(stmt)
    if result.rowcount == 0:
        logger.warning(f"⚠️ STATE_CAS_MISS: {model.__tablename__} {key} -> {rule.target}")
        raise InvalidStateError(
            f"{model.__name__} {key} changed concurrently; transition to '{rule.target}' not applied"
        )

    # Refresh any copy already loaded in this session
    for obj in list(session.identity_map.values()):
        if isinstance(obj, model) and getattr(obj, key_column.key) == key:
            session.expire(obj)
    logger.info(f"🔄 {model.__tablename__} {key} -> {rule.target}")
