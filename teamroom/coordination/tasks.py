"""
Task store: creation, the task status state machine, and queue queries.

``advance`` is the only mutator for status transitions (``cancel`` and the
orphan recovery used by the liveness tracker go through the same
compare-and-swap write). Every status write is conditional on the version the
caller read, so two concurrent advances of one task cannot both succeed.
"""
import logging
import sqlite3
import uuid
from typing import Any, Optional, Union

import aiosqlite

from teamroom.config import MAX_ACTIVE_TASKS
from teamroom.coordination.classification import (
    classification_columns,
    classification_from_row,
    classification_to_dict,
    parse_classification,
)
from teamroom.coordination.queue import next_position
from teamroom.db import crud
from teamroom.db.crud import _now, _parse_dt
from teamroom.db.database import chatroom_lock
from teamroom.db.models import (
    ACTIVE_TASK_STATUSES,
    Classification,
    FollowUp,
    Task,
    TaskTransition,
)
from teamroom.errors import (
    ClassificationRequired,
    ConcurrentModification,
    IllegalTransition,
    NotFound,
    TaskLimitExceeded,
    WrongActor,
)
from teamroom.roles import USER_ROLE, is_user, role_key, same_role

logger = logging.getLogger(__name__)

# state -> allowed next states
TRANSITIONS: dict[str, frozenset] = {
    "pending": frozenset({"in_progress", "cancelled"}),
    "in_progress": frozenset({"queued", "backlog", "completed", "cancelled"}),
    "queued": frozenset({"in_progress", "backlog", "cancelled"}),
    "backlog": frozenset({"queued", "cancelled"}),
    "completed": frozenset(),
    "cancelled": frozenset(),
}

TASK_LIST_MAX = 100


def can_transition(current: str, target: str) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


def target_status(from_role: str, to_role: str) -> str:
    """Status a plain role-to-role advance lands in.

    Handing to the user completes the task, a role handing to itself picks
    the task up, and handing to another role parks it for that role.
    """
    if is_user(to_role):
        return "completed"
    if same_role(from_role, to_role):
        return "in_progress"
    return "queued"


# ─────────────────────────────────────────────
# Creation
# ─────────────────────────────────────────────

async def create_task(
    db: aiosqlite.Connection,
    chatroom_id: str,
    content: str,
    created_by: str = USER_ROLE,
    classification: Union[str, Classification, None] = None,
    metadata: Optional[dict[str, Any]] = None,
    is_backlog: bool = False,
) -> Task:
    """Insert a task in pending (or backlog) with the next queue position."""
    parsed = parse_classification(classification, metadata) if classification is not None else None
    chatroom = await crud.chatroom_require(db, chatroom_id)

    async with chatroom_lock(chatroom_id):
        async with db.execute(
            "SELECT COUNT(*) AS cnt FROM tasks WHERE chatroom_id = ? AND status IN ('pending', 'in_progress', 'queued', 'backlog')",
            (chatroom_id,),
        ) as cur:
            row = await cur.fetchone()
        if row["cnt"] >= MAX_ACTIVE_TASKS:
            raise TaskLimitExceeded(limit=MAX_ACTIVE_TASKS, active=row["cnt"])

        position = await next_position(db, chatroom_id)
        status = "backlog" if is_backlog else "pending"
        assigned_to = USER_ROLE if is_backlog else chatroom.entry_point
        origin_task_id = await _find_origin_task(db, chatroom_id) if isinstance(parsed, FollowUp) else None
        kind, title, description, tech_specs = classification_columns(parsed)
        tid = str(uuid.uuid4())
        now = _now()
        try:
            await db.execute(
                "INSERT INTO tasks (id, chatroom_id, created_by, content, status, queue_position, assigned_to, "
                "classification, feature_title, feature_description, feature_tech_specs, origin_task_id, "
                "version, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)",
                (tid, chatroom_id, created_by, content, status, position, assigned_to,
                 kind, title, description, tech_specs, origin_task_id, now, now),
            )
            await db.commit()
        except sqlite3.IntegrityError as e:
            # UNIQUE(chatroom_id, queue_position): another writer took this position
            logger.error(f"Queue position {position} collided in chatroom {chatroom_id}: {e}")
            raise ConcurrentModification(
                "Queue position already taken", chatroom_id=chatroom_id, queue_position=position
            ) from e

    await crud.chatroom_touch(db, chatroom_id)
    await crud.emit_event(db, "task.created", chatroom_id, {
        "task_id": tid, "chatroom_id": chatroom_id, "status": status,
        "queue_position": position, "assigned_to": assigned_to, "content": content[:200],
    })
    logger.info(f"Task created: {tid} chatroom={chatroom_id} status={status} position={position}")
    return Task(
        id=tid, chatroom_id=chatroom_id, created_by=created_by, content=content, status=status,
        queue_position=position, assigned_to=assigned_to, classification=parsed,
        origin_task_id=origin_task_id, version=0, created_at=_parse_dt(now), updated_at=_parse_dt(now),
    )


async def _find_origin_task(db: aiosqlite.Connection, chatroom_id: str, exclude_id: Optional[str] = None) -> Optional[str]:
    """Most recent classified, non-follow-up task in the chatroom."""
    async with db.execute(
        "SELECT id FROM tasks WHERE chatroom_id = ? AND classification IS NOT NULL "
        "AND classification != 'follow_up' AND id != ? ORDER BY queue_position DESC LIMIT 1",
        (chatroom_id, exclude_id or ""),
    ) as cur:
        row = await cur.fetchone()
    return row["id"] if row else None


# ─────────────────────────────────────────────
# Status transitions
# ─────────────────────────────────────────────

async def advance(
    db: aiosqlite.Connection,
    task_id: str,
    from_role: str,
    to_role: str,
    summary: Optional[str] = None,
    to_status: Optional[str] = None,
    expected_version: Optional[int] = None,
) -> Task:
    """Move a task from one role to another, transitioning its status.

    Raises:
        IllegalTransition: target status not reachable (always for terminal tasks).
        WrongActor: from_role is not the current assignee.
        ClassificationRequired: the task would start work without a classification.
        ConcurrentModification: the task changed since it was read.
    """
    task = await task_require(db, task_id)
    if expected_version is not None and expected_version != task.version:
        raise ConcurrentModification(
            "Task changed since it was read", task_id=task_id,
            expected_version=expected_version, version=task.version,
        )

    target = to_status or target_status(from_role, to_role)
    if task.is_terminal or not can_transition(task.status, target):
        raise IllegalTransition(
            f"Cannot transition task from {task.status} to {target}",
            task_id=task_id, current_status=task.status, attempted_status=target,
            valid_transitions=sorted(TRANSITIONS.get(task.status, ())),
        )
    if task.assigned_to and not same_role(from_role, task.assigned_to):
        raise WrongActor(
            f"Role '{from_role}' does not own task {task_id} (assigned to '{task.assigned_to}')",
            task_id=task_id, role=from_role, assigned_to=task.assigned_to,
        )
    if target == "in_progress" and task.classification is None:
        raise ClassificationRequired(
            f"Task {task_id} must be classified before work starts", task_id=task_id,
        )

    return await _write_transition(db, task, target, from_role, to_role, summary, assigned_to=to_role)


async def cancel(db: aiosqlite.Connection, task_id: str, by_role: Optional[str] = None) -> Task:
    """Cancel a task from any non-terminal state."""
    task = await task_require(db, task_id)
    if task.is_terminal:
        raise IllegalTransition(
            f"Cannot cancel task in terminal status {task.status}",
            task_id=task_id, current_status=task.status, attempted_status="cancelled",
        )
    return await _write_transition(
        db, task, "cancelled", by_role, None, "cancelled", assigned_to=task.assigned_to,
    )


async def move_to_queue(db: aiosqlite.Connection, task_id: str, by_role: str = USER_ROLE) -> Task:
    """backlog -> queued for the entry-point role. The queue position is kept."""
    task = await task_require(db, task_id)
    chatroom = await crud.chatroom_require(db, task.chatroom_id)
    to_role = chatroom.entry_point or by_role
    return await advance(db, task_id, by_role, to_role, summary="moved to queue", to_status="queued")


async def move_to_backlog(db: aiosqlite.Connection, task_id: str, by_role: str, summary: Optional[str] = None) -> Task:
    """Defer a task; it returns to the user's backlog without losing its position."""
    return await advance(db, task_id, by_role, USER_ROLE, summary=summary or "deferred", to_status="backlog")


async def recover_orphaned_tasks(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    reason: str,
) -> list[str]:
    """Park a role's in_progress tasks back in the queue for the same role.

    Used when the role is found dead or rejoins after a crash, so work is never
    dropped. The tasks keep their queue position and their assignee.
    """
    recovered: list[str] = []
    for task in await task_list(db, chatroom_id, status="in_progress"):
        if not same_role(task.assigned_to, role):
            continue
        try:
            await _write_transition(db, task, "queued", role, role, reason, assigned_to=task.assigned_to)
        except ConcurrentModification:
            logger.warning(f"[State Recovery] task {task.id} changed during recovery; skipping")
            continue
        recovered.append(task.id)
        logger.warning(
            f"[State Recovery] chatroomId={chatroom_id} role={role} taskId={task.id} "
            f"action=requeue reason={reason}"
        )
    return recovered


async def _write_transition(
    db: aiosqlite.Connection,
    task: Task,
    target: str,
    from_role: Optional[str],
    to_role: Optional[str],
    summary: Optional[str],
    assigned_to: Optional[str],
) -> Task:
    """Compare-and-swap the status write against the version that was read."""
    now = _now()
    started_at = now if target == "in_progress" else None
    completed_at = now if target == "completed" else None

    async with chatroom_lock(task.chatroom_id):
        async with db.execute(
            "UPDATE tasks SET status = ?, assigned_to = ?, version = version + 1, updated_at = ?, "
            "started_at = COALESCE(started_at, ?), completed_at = COALESCE(?, completed_at) "
            "WHERE id = ? AND version = ? AND status = ?",
            (target, assigned_to, now, started_at, completed_at, task.id, task.version, task.status),
        ) as cur:
            updated = cur.rowcount
        if updated == 0:
            raise ConcurrentModification(
                "Task was modified concurrently", task_id=task.id, version=task.version,
            )
        await db.execute(
            "INSERT INTO task_transitions (task_id, from_status, to_status, from_role, to_role, summary, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (task.id, task.status, target, from_role, to_role, summary, now),
        )
        await db.commit()

    await crud.emit_event(db, "task.transition", task.chatroom_id, {
        "task_id": task.id, "from_status": task.status, "to_status": target,
        "from_role": from_role, "to_role": to_role, "assigned_to": assigned_to,
    })
    logger.info(
        f"[FSM] Task {task.id} transitioned: {task.status} -> {target} "
        f"({from_role or '-'} -> {to_role or '-'})"
    )
    return await task_require(db, task.id)


# ─────────────────────────────────────────────
# Classification & content
# ─────────────────────────────────────────────

async def set_classification(
    db: aiosqlite.Connection,
    task: Task,
    classification: Classification,
) -> Task:
    """Persist a classification once; only unclassified tasks are written."""
    origin_task_id = (
        await _find_origin_task(db, task.chatroom_id, exclude_id=task.id)
        if isinstance(classification, FollowUp) else None
    )
    kind, title, description, tech_specs = classification_columns(classification)
    async with db.execute(
        "UPDATE tasks SET classification = ?, feature_title = ?, feature_description = ?, "
        "feature_tech_specs = ?, origin_task_id = ?, updated_at = ? "
        "WHERE id = ? AND classification IS NULL",
        (kind, title, description, tech_specs, origin_task_id, _now(), task.id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        raise ConcurrentModification("Task was classified concurrently", task_id=task.id)
    await crud.emit_event(db, "task.classified", task.chatroom_id, {
        "task_id": task.id, "classification": classification_to_dict(classification),
        "origin_task_id": origin_task_id,
    })
    return await task_require(db, task.id)


async def update_task_content(db: aiosqlite.Connection, task_id: str, content: str) -> Task:
    """Edit a task that nobody is working on yet (queued or backlog)."""
    task = await task_require(db, task_id)
    if task.status not in ("queued", "backlog"):
        raise IllegalTransition(
            f"Cannot edit task with status: {task.status}", task_id=task_id, current_status=task.status,
        )
    async with db.execute(
        "UPDATE tasks SET content = ?, updated_at = ? WHERE id = ? AND version = ?",
        (content, _now(), task_id, task.version),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        raise ConcurrentModification("Task was modified concurrently", task_id=task_id)
    return await task_require(db, task_id)


# ─────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────

async def task_get(db: aiosqlite.Connection, task_id: str) -> Optional[Task]:
    async with db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_task(row)


async def task_require(db: aiosqlite.Connection, task_id: str) -> Task:
    task = await task_get(db, task_id)
    if task is None:
        raise NotFound(f"Task {task_id} not found", task_id=task_id)
    return task


async def task_list(
    db: aiosqlite.Connection,
    chatroom_id: str,
    status: Optional[str] = None,
    limit: int = TASK_LIST_MAX,
) -> list[Task]:
    """Tasks ordered by queue position. ``status='active'`` means every non-terminal status."""
    limit = max(1, min(limit, TASK_LIST_MAX))
    if status == "active":
        statuses = sorted(ACTIVE_TASK_STATUSES)
        placeholders = ", ".join("?" for _ in statuses)
        async with db.execute(
            f"SELECT * FROM tasks WHERE chatroom_id = ? AND status IN ({placeholders}) "
            "ORDER BY queue_position ASC LIMIT ?",
            (chatroom_id, *statuses, limit),
        ) as cur:
            rows = await cur.fetchall()
    elif status:
        async with db.execute(
            "SELECT * FROM tasks WHERE chatroom_id = ? AND status = ? ORDER BY queue_position ASC LIMIT ?",
            (chatroom_id, status, limit),
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute(
            "SELECT * FROM tasks WHERE chatroom_id = ? ORDER BY queue_position ASC LIMIT ?",
            (chatroom_id, limit),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_task(r) for r in rows]


async def get_active_task(db: aiosqlite.Connection, chatroom_id: str) -> Optional[Task]:
    """The in_progress task if any, else the oldest pending one."""
    in_progress = await task_list(db, chatroom_id, status="in_progress", limit=1)
    if in_progress:
        return in_progress[0]
    pending = await task_list(db, chatroom_id, status="pending", limit=1)
    return pending[0] if pending else None


async def next_task_for_role(db: aiosqlite.Connection, chatroom_id: str, role: str) -> Optional[Task]:
    """Lowest-position pending/queued task waiting for this role."""
    async with db.execute(
        "SELECT * FROM tasks WHERE chatroom_id = ? AND status IN ('pending', 'queued') ORDER BY queue_position ASC",
        (chatroom_id,),
    ) as cur:
        rows = await cur.fetchall()
    key = role_key(role)
    for row in rows:
        if row["assigned_to"] is None or role_key(row["assigned_to"]) == key:
            return _row_to_task(row)
    return None


async def task_counts(db: aiosqlite.Connection, chatroom_id: str) -> dict[str, int]:
    counts = {s: 0 for s in TRANSITIONS}
    async with db.execute(
        "SELECT status, COUNT(*) AS cnt FROM tasks WHERE chatroom_id = ? GROUP BY status", (chatroom_id,)
    ) as cur:
        for row in await cur.fetchall():
            counts[row["status"]] = row["cnt"]
    return counts


async def task_history(db: aiosqlite.Connection, task_id: str) -> list[TaskTransition]:
    async with db.execute(
        "SELECT * FROM task_transitions WHERE task_id = ? ORDER BY id ASC", (task_id,)
    ) as cur:
        rows = await cur.fetchall()
    return [TaskTransition(
        task_id=r["task_id"], from_status=r["from_status"], to_status=r["to_status"],
        from_role=r["from_role"], to_role=r["to_role"], summary=r["summary"],
        created_at=_parse_dt(r["created_at"]),
    ) for r in rows]


def task_to_dict(task: Task) -> dict:
    return {
        "task_id": task.id,
        "chatroom_id": task.chatroom_id,
        "created_by": task.created_by,
        "content": task.content,
        "status": task.status,
        "queue_position": task.queue_position,
        "assigned_to": task.assigned_to,
        "classification": classification_to_dict(task.classification),
        "origin_task_id": task.origin_task_id,
        "version": task.version,
        "created_at": task.created_at.isoformat(),
        "updated_at": task.updated_at.isoformat(),
        "started_at": task.started_at.isoformat() if task.started_at else None,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
    }


def _row_to_task(row: aiosqlite.Row) -> Task:
    return Task(
        id=row["id"],
        chatroom_id=row["chatroom_id"],
        created_by=row["created_by"],
        content=row["content"],
        status=row["status"],
        queue_position=row["queue_position"],
        assigned_to=row["assigned_to"],
        classification=classification_from_row(
            row["classification"], row["feature_title"], row["feature_description"], row["feature_tech_specs"],
        ),
        origin_task_id=row["origin_task_id"],
        version=row["version"],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
        started_at=_parse_dt(row["started_at"]),
        completed_at=_parse_dt(row["completed_at"]),
    )
