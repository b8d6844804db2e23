"""
Classification and handoff router.

Composes the task store and the liveness tracker into the operations agents
actually call: classify a task, start working on it, and hand it on.
"""
import logging
from typing import Any, Optional

import aiosqlite

from teamroom.coordination import liveness, tasks
from teamroom.coordination.classification import classification_to_dict, parse_classification
from teamroom.db import crud
from teamroom.db.models import Chatroom, NewFeature, Task
from teamroom.errors import (
    ClassificationRequired,
    CoordinationError,
    IllegalTransition,
    InvalidClassification,
    PolicyViolation,
    WrongActor,
)
from teamroom.roles import (
    BUILDER_ROLE,
    DEFAULT_ROLE_HIERARCHY,
    REVIEWER_ROLE,
    USER_ROLE,
    is_user,
    role_in,
    same_role,
    sort_roles_by_priority,
)

logger = logging.getLogger(__name__)


def _known_roles(chatroom: Chatroom) -> list[str]:
    if chatroom.has_team:
        return list(chatroom.team_roles)
    return sort_roles_by_priority(r for r in DEFAULT_ROLE_HIERARCHY if not is_user(r))


def review_gate_applies(task: Task, from_role: str) -> bool:
    """A builder's new_feature must pass the reviewer before reaching the user.

    The gate holds regardless of team composition; a team without a reviewer
    has to route the work back through another role or add one.
    """
    if not isinstance(task.classification, NewFeature):
        return False
    return same_role(from_role, BUILDER_ROLE)


async def classify(
    db: aiosqlite.Connection,
    task_id: str,
    role: str,
    kind: str,
    metadata: Optional[dict[str, Any]] = None,
) -> Task:
    task = await tasks.task_require(db, task_id)
    if task.is_terminal:
        raise IllegalTransition(
            f"Cannot classify task in terminal status {task.status}",
            task_id=task_id, current_status=task.status,
        )
    if task.assigned_to and not same_role(role, task.assigned_to):
        raise WrongActor(
            f"Role '{role}' does not own task {task_id} (assigned to '{task.assigned_to}')",
            task_id=task_id, role=role, assigned_to=task.assigned_to,
        )
    if task.classification is not None:
        raise InvalidClassification(
            f"Task {task_id} is already classified as {task.classification.kind}",
            task_id=task_id, classification=task.classification.kind,
        )
    parsed = parse_classification(kind, metadata)
    task = await tasks.set_classification(db, task, parsed)
    logger.info(f"Task {task_id} classified as {parsed.kind} by {role}")
    return task


async def start_task(
    db: aiosqlite.Connection,
    task_id: str,
    role: str,
    kind: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
    now: Optional[int] = None,
) -> Task:
    """Pick up a task: classify if needed, mark the role working, advance to in_progress."""
    task = await tasks.task_require(db, task_id)
    if task.classification is None:
        if kind is None:
            raise ClassificationRequired(
                f"Task {task_id} must be classified before work starts", task_id=task_id,
            )
        task = await classify(db, task_id, role, kind, metadata)

    await liveness.mark_working(db, task.chatroom_id, role, now)
    try:
        task = await tasks.advance(db, task_id, role, role, summary="started")
    except CoordinationError:
        await liveness.mark_ready(db, task.chatroom_id, role)
        raise
    await crud.chatroom_touch(db, task.chatroom_id)
    return task


async def handoff(
    db: aiosqlite.Connection,
    task_id: str,
    from_role: str,
    to_role: str,
    summary: Optional[str] = None,
    now: Optional[int] = None,
) -> Task:
    """Pass a task to the next role (or back to the user) and free the sender."""
    task = await tasks.task_require(db, task_id)
    if task.classification is None:
        raise ClassificationRequired(
            f"Task {task_id} must be classified before it can be handed off", task_id=task_id,
        )
    chatroom = await crud.chatroom_require(db, task.chatroom_id)

    if same_role(from_role, to_role):
        raise PolicyViolation(f"Role '{from_role}' cannot hand off to itself", task_id=task_id, role=from_role)
    if not is_user(to_role) and not role_in(to_role, _known_roles(chatroom)):
        raise PolicyViolation(
            f"Role '{to_role}' is not part of this team",
            task_id=task_id, to_role=to_role, team_roles=chatroom.team_roles,
        )
    if is_user(to_role) and review_gate_applies(task, from_role):
        raise PolicyViolation(
            "new_feature work from the builder must be handed to the reviewer before the user",
            task_id=task_id, from_role=from_role, to_role=to_role, required_role=REVIEWER_ROLE,
        )

    task = await tasks.advance(db, task_id, from_role, to_role, summary=summary)

    sender = await liveness.participant_get(db, task.chatroom_id, from_role)
    if sender is not None and sender.agent_status == "working":
        await liveness.mark_ready(db, task.chatroom_id, from_role)
    await crud.chatroom_touch(db, task.chatroom_id)
    logger.info(f"Handoff: task {task_id} {from_role} -> {to_role} (status={task.status})")
    return task


async def cancel_task(db: aiosqlite.Connection, task_id: str, by_role: Optional[str] = None) -> Task:
    """Cancel a task and free its assignee if they were working on it."""
    task = await tasks.task_require(db, task_id)
    was_in_progress = task.status == "in_progress"
    task = await tasks.cancel(db, task_id, by_role=by_role)
    if was_in_progress and task.assigned_to and not is_user(task.assigned_to):
        assignee = await liveness.participant_get(db, task.chatroom_id, task.assigned_to)
        if assignee is not None and assignee.agent_status == "working":
            await liveness.mark_ready(db, task.chatroom_id, task.assigned_to)
    await crud.chatroom_touch(db, task.chatroom_id)
    return task


async def allowed_handoff_roles(db: aiosqlite.Connection, task_id: str, role: str) -> dict:
    """Where ``role`` may send this task next, and why the user may be off-limits."""
    task = await tasks.task_require(db, task_id)
    chatroom = await crud.chatroom_require(db, task.chatroom_id)
    targets = sort_roles_by_priority(r for r in _known_roles(chatroom) if not same_role(r, role))

    restriction: Optional[str] = None
    if task.classification is None:
        restriction = "Task must be classified before it can be handed off"
        targets = []
    elif review_gate_applies(task, role):
        restriction = "new_feature work must be reviewed before it goes back to the user"
    else:
        targets.append(USER_ROLE)

    return {
        "task_id": task.id,
        "current_role": role,
        "available_roles": targets,
        "can_handoff_to_user": USER_ROLE in targets,
        "restriction_reason": restriction,
        "classification": classification_to_dict(task.classification),
    }
