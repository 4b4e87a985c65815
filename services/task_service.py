"""
Task Service - bounty lifecycle with the reward held from the creator

    open -> in_progress -> submitted -> completed
    in_progress/submitted -> open   (acceptor cancel, creator reject)
    open -> cancelled               (creator delete, reward refunded)

The reward leaves the creator's balance at creation and is only paid to the
acceptor when the creator confirms. Holding and releasing the reward does not
write ledger entries; settlement writes exactly one task_reward entry.
"""

import logging
from typing import Any, Dict, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from config import Config
from models import Task, TaskStatus, TransactionType
from services.ledger import Ledger
from utils.escrow_state_machine import (
    Actor,
    TaskStateValidator,
    TaskTransition,
    apply_status_transition,
)
from utils.exceptions import NotFoundError, ValidationError
from utils.helpers import (
    build_page,
    generate_task_id,
    normalize_pagination,
    now_seconds,
    require_choice,
    require_positive_int,
    require_text,
)
from utils.json_serialization import task_to_dict

logger = logging.getLogger(__name__)

TASK_ACTIONS = {
    "submit": TaskTransition.SUBMIT,
    "confirm": TaskTransition.CONFIRM,
    "complete": TaskTransition.CONFIRM,
    "cancel": TaskTransition.CANCEL,
    "reject": TaskTransition.REJECT,
    "delete": TaskTransition.DELETE,
}


class TaskService:
    """Task bounties"""

    def __init__(self, db: Session):
        self.db = db
        self.ledger = Ledger(db)

    def create_task(
        self,
        creator_user_hash: str,
        title: Any,
        description: Any,
        reward_amount: Any,
        contact_info: Any = None,
    ) -> Task:
        title = require_text(title, "title", Config.MAX_TITLE_LENGTH)
        description = require_text(
            description, "description", Config.MAX_DESCRIPTION_LENGTH, required=False
        )
        contact_info = require_text(
            contact_info, "contactInfo", Config.MAX_CONTACT_INFO_LENGTH, required=False
        )
        reward_amount = require_positive_int(reward_amount, "rewardAmount")

        now = now_seconds()
        self.ledger.debit(creator_user_hash, reward_amount, now)

        task = Task(
            task_id=generate_task_id(),
            creator_user_hash=creator_user_hash,
            title=title,
            description=description,
            contact_info=contact_info,
            reward_amount=reward_amount,
            status=TaskStatus.OPEN.value,
            created_at=now,
            updated_at=now,
        )
        self.db.add(task)
        self.db.flush()
        logger.info(f"✅ TASK_CREATED {task.task_id} reward={reward_amount} (held)")
        return task

    def get_task(self, task_id: Any) -> Task:
        if not isinstance(task_id, str) or not task_id:
            raise ValidationError("taskId is required")
        task = self.db.execute(select(Task).where(Task.task_id == task_id)).scalar_one_or_none()
        if task is None:
            raise NotFoundError("Task not found", {"taskId": task_id})
        return task

    def accept_task(self, user_hash: str, task_id: Any) -> Task:
        task = self.get_task(task_id)
        self.ledger.get_wallet(user_hash)
        actor = TaskStateValidator.actor_for(task, user_hash)
        rule = TaskStateValidator.validate(TaskTransition.ACCEPT, task.status, actor)
        now = now_seconds()
        apply_status_transition(
            self.db, Task, Task.task_id, task.task_id, rule,
            acceptor_user_hash=user_hash, accepted_at=now, updated_at=now,
        )
        return self.get_task(task.task_id)

    def handle_task_action(self, user_hash: str, task_id: Any, action: Any) -> Task:
        """submit / confirm / cancel / reject / delete by name"""
        transition = TASK_ACTIONS.get(action)
        if transition is None:
            raise ValidationError(f"action must be one of: {', '.join(TASK_ACTIONS)}")
        task = self.get_task(task_id)
        actor = TaskStateValidator.actor_for(task, user_hash)
        return self.transition_task(task, transition, actor)

    def transition_task(self, task: Task, transition: TaskTransition, actor: Actor) -> Task:
        rule = TaskStateValidator.validate(transition, task.status, actor)
        task_id = task.task_id
        creator = task.creator_user_hash
        acceptor = task.acceptor_user_hash
        reward = task.reward_amount
        now = now_seconds()
        fields: Dict[str, Any] = {"updated_at": now}

        if transition == TaskTransition.SUBMIT:
            fields["submitted_at"] = now
        elif transition in (TaskTransition.CANCEL, TaskTransition.REJECT):
            fields.update(acceptor_user_hash=None, accepted_at=None, submitted_at=None)
        elif transition == TaskTransition.CONFIRM:
            fields["completed_at"] = now

        # The party that acted or gets paid must still be the recorded acceptor
        guards = []
        if acceptor is not None and transition != TaskTransition.ACCEPT:
            guards.append(Task.acceptor_user_hash == acceptor)
        apply_status_transition(self.db, Task, Task.task_id, task_id, rule, guards, **fields)

        if transition == TaskTransition.CONFIRM:
            self.ledger.credit(acceptor, reward, now)
            tx = self.ledger.record_transaction(
                TransactionType.TASK_REWARD,
                reward,
                f"Task reward: {task.title}",
                from_user_hash=creator,
                to_user_hash=acceptor,
                metadata={"taskId": task_id},
                now=now,
            )
            task = self.get_task(task_id)
            task.tx_id = tx.tx_id
            self.db.flush()
            logger.info(f"✅ TASK_SETTLED {task_id}: {reward} -> {acceptor[:12]}... tx={tx.tx_id}")
        elif transition in (TaskTransition.DELETE, TaskTransition.TAKE_DOWN):
            self.ledger.credit(creator, reward, now)
            logger.info(f"↩️ TASK_REWARD_RELEASED {task_id}: {reward} back to creator")

        return self.get_task(task_id)

    def list_tasks(
        self,
        viewer_user_hash: Optional[str] = None,
        status: Any = TaskStatus.OPEN.value,
        page: Any = None,
        limit: Any = None,
        creator_user_hash: Optional[str] = None,
        acceptor_user_hash: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Public listing; contact info only reaches the creator or a post-acceptance acceptor

        creator_user_hash and acceptor_user_hash narrow the listing to one party's tasks.
        """
        page, limit = normalize_pagination(page, limit)
        conditions = []
        if status and status != "all":
            require_choice(status, "status", [s.value for s in TaskStatus])
            conditions.append(Task.status == status)
        if creator_user_hash:
            conditions.append(Task.creator_user_hash == creator_user_hash)
        if acceptor_user_hash:
            conditions.append(Task.acceptor_user_hash == acceptor_user_hash)

        total = self.db.execute(
            select(func.count()).select_from(Task).where(*conditions)
        ).scalar_one()
        rows = self.db.execute(
            select(Task)
            .where(*conditions)
            .order_by(Task.created_at.desc(), Task.id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
        ).scalars().all()

        return build_page([task_to_dict(t, viewer_user_hash) for t in rows], total, page, limit)
