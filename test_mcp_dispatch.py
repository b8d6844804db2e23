import json

import aiosqlite
import pytest

import mcp.types as types

from teamroom.coordination import tasks
from teamroom.db import crud
from teamroom.db.database import init_schema
from teamroom.tools.dispatch import dispatch_tool

FEATURE = {"title": "Export", "description": "CSV export of reports", "tech_specs": "stream rows"}


async def _make_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return db


async def _call(db, name: str, **arguments) -> dict:
    out = await dispatch_tool(db, name, arguments)
    assert len(out) == 1
    assert isinstance(out[0], types.TextContent)
    return json.loads(out[0].text)


async def _setup(db):
    user = await crud.user_create(db, "owner")
    session = await crud.session_create(db, user.id)
    room = await crud.chatroom_create(db, user.id, team_roles=["planner", "builder", "reviewer"])
    return session.id, room.id


async def _new_task(db, room_id: str) -> str:
    task = await tasks.create_task(db, room_id, "add CSV export")
    return task.id


@pytest.mark.asyncio
async def test_tools_require_a_valid_session():
    db = await _make_db()
    try:
        _, room_id = await _setup(db)
        payload = await _call(db, "join", chatroom_id=room_id, role="planner")
        assert payload["error"] == "AUTH_FAILED"

        other = await crud.user_create(db, "intruder")
        other_session = await crud.session_create(db, other.id)
        payload = await _call(db, "join", session_id=other_session.id, chatroom_id=room_id, role="planner")
        assert payload["error"] == "ACCESS_DENIED"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_agent_workflow_over_tools():
    db = await _make_db()
    try:
        session_id, room_id = await _setup(db)
        for role in ("planner", "builder", "reviewer"):
            joined = await _call(db, "join", session_id=session_id, chatroom_id=room_id, role=role)
            assert joined["ok"] is True
            assert joined["participant"]["agent_status"] == "ready"

        ready = await _call(db, "team_readiness", session_id=session_id, chatroom_id=room_id)
        assert ready["is_ready"] is True

        task = await _new_task(db, room_id)
        nxt = await _call(db, "get_next_task", session_id=session_id, chatroom_id=room_id, role="planner")
        assert nxt["task"]["task_id"] == task

        missing = await _call(db, "task_started", session_id=session_id, task_id=task, role="planner")
        assert missing["error"] == "CLASSIFICATION_REQUIRED"

        started = await _call(db, "task_started", session_id=session_id, task_id=task, role="planner",
                              classification="new_feature", **FEATURE)
        assert started["task"]["status"] == "in_progress"
        assert started["task"]["classification"]["title"] == "Export"

        handed = await _call(db, "handoff", session_id=session_id, task_id=task, role="planner",
                             next_role="builder", summary="go")
        assert handed["task"]["status"] == "queued"

        await _call(db, "task_started", session_id=session_id, task_id=task, role="builder")
        allowed = await _call(db, "allowed_handoff_roles", session_id=session_id, task_id=task, role="builder")
        assert allowed["can_handoff_to_user"] is False

        blocked = await _call(db, "handoff", session_id=session_id, task_id=task, role="builder", next_role="user")
        assert blocked["error"] == "POLICY_VIOLATION"

        await _call(db, "handoff", session_id=session_id, task_id=task, role="builder", next_role="reviewer")
        await _call(db, "task_started", session_id=session_id, task_id=task, role="reviewer")
        done = await _call(db, "handoff", session_id=session_id, task_id=task, role="reviewer", next_role="user")
        assert done["task"]["status"] == "completed"

        listed = await _call(db, "task_list", session_id=session_id, chatroom_id=room_id, status="completed")
        assert [t["task_id"] for t in listed] == [task]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_defer_moves_task_to_backlog():
    db = await _make_db()
    try:
        session_id, room_id = await _setup(db)
        await _call(db, "join", session_id=session_id, chatroom_id=room_id, role="planner")
        task = await _new_task(db, room_id)
        await _call(db, "task_started", session_id=session_id, task_id=task, role="planner",
                    classification="question")
        deferred = await _call(db, "defer_task", session_id=session_id, task_id=task, role="planner",
                               reason="blocked on user")
        assert deferred["task"]["status"] == "backlog"

        hb = await _call(db, "heartbeat", session_id=session_id, chatroom_id=room_id, role="planner")
        assert hb["participant"]["agent_status"] == "ready"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_unknown_tool_and_missing_argument():
    db = await _make_db()
    try:
        session_id, _ = await _setup(db)
        assert (await _call(db, "no_such_tool"))["error"] == "UNKNOWN_TOOL"
        payload = await _call(db, "join", session_id=session_id)
        assert payload["error"] == "MISSING_ARGUMENT"
        info = await _call(db, "server_info")
        assert info["name"] == "TeamRoom"
    finally:
        await db.close()
