import asyncio

import aiosqlite
import pytest

from teamroom.coordination import tasks
from teamroom.db import crud
from teamroom.db.database import init_schema
from teamroom.db.models import NewFeature, Question
from teamroom.errors import (
    ClassificationRequired,
    ConcurrentModification,
    CoordinationError,
    IllegalTransition,
    InvalidClassification,
    TaskLimitExceeded,
    WrongActor,
)

FEATURE = {"title": "Export", "description": "CSV export of reports", "tech_specs": "stream rows"}


async def _make_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return db


async def _room(db, roles=("planner", "builder", "reviewer")):
    user = await crud.user_create(db, "owner")
    return await crud.chatroom_create(db, user.id, team_roles=list(roles))


@pytest.mark.asyncio
async def test_create_task_defaults():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "build the thing")
        assert task.status == "pending"
        assert task.assigned_to == "planner"
        assert task.classification is None
        assert task.version == 0

        backlog = await tasks.create_task(db, room.id, "later", is_backlog=True)
        assert backlog.status == "backlog"
        assert backlog.assigned_to == "user"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_create_new_feature_requires_metadata():
    db = await _make_db()
    try:
        room = await _room(db)
        with pytest.raises(InvalidClassification) as exc:
            await tasks.create_task(db, room.id, "feature", classification="new_feature",
                                    metadata={"title": "Export"})
        assert set(exc.value.details["missing"]) == {"description", "tech_specs"}
        assert await tasks.task_list(db, room.id) == []

        task = await tasks.create_task(db, room.id, "feature", classification="new_feature", metadata=FEATURE)
        assert task.classification == NewFeature(**FEATURE)
        stored = await tasks.task_require(db, task.id)
        assert stored.classification == NewFeature(**FEATURE)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_pick_up_requires_classification():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "unclassified")
        with pytest.raises(ClassificationRequired):
            await tasks.advance(db, task.id, "planner", "planner")
        assert (await tasks.task_require(db, task.id)).status == "pending"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_wrong_actor_rejected():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        with pytest.raises(WrongActor):
            await tasks.advance(db, task.id, "builder", "builder")
        # role matching is case-insensitive
        started = await tasks.advance(db, task.id, "Planner ", "planner")
        assert started.status == "in_progress"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_pending_cannot_be_handed_straight_to_another_role():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        with pytest.raises(IllegalTransition):
            await tasks.advance(db, task.id, "planner", "builder")
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_full_lifecycle_and_history():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        task = await tasks.advance(db, task.id, "planner", "planner", summary="on it")
        assert task.status == "in_progress" and task.started_at is not None
        task = await tasks.advance(db, task.id, "planner", "builder", summary="please build")
        assert (task.status, task.assigned_to) == ("queued", "builder")
        task = await tasks.advance(db, task.id, "builder", "builder")
        task = await tasks.advance(db, task.id, "builder", "user", summary="done")
        assert task.status == "completed"
        assert task.completed_at is not None
        assert task.version == 4

        history = await tasks.task_history(db, task.id)
        assert [(h.from_status, h.to_status) for h in history] == [
            ("pending", "in_progress"),
            ("in_progress", "queued"),
            ("queued", "in_progress"),
            ("in_progress", "completed"),
        ]
        assert history[1].summary == "please build"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_terminal_tasks_never_move():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        cancelled = await tasks.cancel(db, task.id)
        assert cancelled.status == "cancelled"
        with pytest.raises(IllegalTransition):
            await tasks.advance(db, task.id, "planner", "planner")
        with pytest.raises(IllegalTransition):
            await tasks.cancel(db, task.id)
        with pytest.raises(IllegalTransition):
            await tasks.move_to_queue(db, task.id)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_stale_version_is_a_conflict():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        await tasks.advance(db, task.id, "planner", "planner", expected_version=0)
        with pytest.raises(ConcurrentModification):
            await tasks.advance(db, task.id, "planner", "user", expected_version=0)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_concurrent_advances_do_not_both_succeed():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        results = await asyncio.gather(
            tasks.advance(db, task.id, "planner", "planner"),
            tasks.advance(db, task.id, "planner", "planner"),
            return_exceptions=True,
        )
        successes = [r for r in results if not isinstance(r, BaseException)]
        failures = [r for r in results if isinstance(r, BaseException)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], CoordinationError)

        stored = await tasks.task_require(db, task.id)
        assert stored.version == 1
        assert len(await tasks.task_history(db, task.id)) == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_backlog_round_trip_keeps_position():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        await tasks.create_task(db, room.id, "another")
        await tasks.advance(db, task.id, "planner", "planner")

        deferred = await tasks.move_to_backlog(db, task.id, "planner", summary="not now")
        assert (deferred.status, deferred.assigned_to) == ("backlog", "user")

        requeued = await tasks.move_to_queue(db, task.id)
        assert requeued.status == "queued"
        assert requeued.assigned_to == "planner"
        assert requeued.queue_position == task.queue_position == 1
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_update_content_only_before_work_starts():
    db = await _make_db()
    try:
        room = await _room(db)
        pending = await tasks.create_task(db, room.id, "draft")
        with pytest.raises(IllegalTransition):
            await tasks.update_task_content(db, pending.id, "edited")

        backlog = await tasks.create_task(db, room.id, "draft", is_backlog=True)
        edited = await tasks.update_task_content(db, backlog.id, "edited")
        assert edited.content == "edited"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_queries():
    db = await _make_db()
    try:
        room = await _room(db)
        t1 = await tasks.create_task(db, room.id, "one", classification="question")
        t2 = await tasks.create_task(db, room.id, "two")
        t3 = await tasks.create_task(db, room.id, "three", is_backlog=True)
        await tasks.cancel(db, t2.id)

        active = await tasks.task_list(db, room.id, status="active")
        assert [t.id for t in active] == [t1.id, t3.id]
        assert [t.id for t in await tasks.task_list(db, room.id, status="cancelled")] == [t2.id]

        assert (await tasks.get_active_task(db, room.id)).id == t1.id
        assert (await tasks.next_task_for_role(db, room.id, "PLANNER")).id == t1.id
        assert await tasks.next_task_for_role(db, room.id, "builder") is None

        await tasks.advance(db, t1.id, "planner", "planner")
        assert (await tasks.get_active_task(db, room.id)).status == "in_progress"

        counts = await tasks.task_counts(db, room.id)
        assert counts["in_progress"] == 1
        assert counts["cancelled"] == 1
        assert counts["backlog"] == 1
        assert counts["completed"] == 0
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_recover_orphaned_tasks_requeues_for_same_role():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification=Question())
        await tasks.advance(db, task.id, "planner", "planner")

        recovered = await tasks.recover_orphaned_tasks(db, room.id, "Planner", reason="lease expired")
        assert recovered == [task.id]
        stored = await tasks.task_require(db, task.id)
        assert (stored.status, stored.assigned_to, stored.queue_position) == ("queued", "planner", 1)
        assert await tasks.recover_orphaned_tasks(db, room.id, "planner", reason="again") == []
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_task_limit(monkeypatch):
    db = await _make_db()
    try:
        monkeypatch.setattr(tasks, "MAX_ACTIVE_TASKS", 2)
        room = await _room(db)
        await tasks.create_task(db, room.id, "one")
        await tasks.create_task(db, room.id, "two")
        with pytest.raises(TaskLimitExceeded) as exc:
            await tasks.create_task(db, room.id, "three")
        assert exc.value.limit == 2
    finally:
        await db.close()
