"""
Unit tests for the agent liveness tracker.
Time is passed explicitly (epoch ms) so lease expiry is deterministic.
"""
import aiosqlite
import pytest

from teamroom.coordination import liveness, tasks
from teamroom.db import crud
from teamroom.db.database import init_schema
from teamroom.errors import InvalidTransition, PolicyViolation

LEASE = 1_000


async def _make_db() -> aiosqlite.Connection:
    db = await aiosqlite.connect(":memory:")
    db.row_factory = aiosqlite.Row
    await init_schema(db)
    return db


async def _room(db, roles=("planner", "builder", "reviewer")):
    user = await crud.user_create(db, "owner")
    return await crud.chatroom_create(db, user.id, team_roles=list(roles))


@pytest.mark.asyncio
async def test_first_heartbeat_registers_ready():
    db = await _make_db()
    try:
        room = await _room(db)
        p = await liveness.heartbeat(db, room.id, "Builder", now=10_000, lease_ms=LEASE)
        assert p.agent_status == "ready"
        assert p.status == "waiting"
        assert p.ready_until == 11_000

        # same record regardless of case or padding
        same = await liveness.participant_get(db, room.id, " builder")
        assert same.id == p.id
        assert len(await liveness.participant_list(db, room.id)) == 1

        history = await liveness.participant_history(db, room.id, "builder")
        assert [(h.from_status, h.to_status) for h in history] == [("offline", "ready")]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_heartbeat_never_shortens_lease():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "builder", now=1_000, lease_ms=LEASE)
        p = await liveness.heartbeat(db, room.id, "builder", now=500, lease_ms=LEASE)
        assert p.ready_until == 2_000
        p = await liveness.heartbeat(db, room.id, "builder", now=1_500, lease_ms=LEASE)
        assert p.ready_until == 2_500
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_mark_working_only_from_ready():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=LEASE)

        working = await liveness.mark_working(db, room.id, "builder", now=100)
        assert working.agent_status == "working"
        assert working.status == "active"

        with pytest.raises(InvalidTransition):
            await liveness.mark_working(db, room.id, "builder", now=200)

        await liveness.mark_offline(db, room.id, "builder")
        with pytest.raises(InvalidTransition):
            await liveness.mark_working(db, room.id, "builder", now=300)

        with pytest.raises(InvalidTransition) as exc_info:
            await liveness.mark_working(db, room.id, "reviewer", now=300)
        assert exc_info.value.details["current_status"] == "offline"
        assert exc_info.value.details["attempted_status"] == "working"

        await liveness.heartbeat(db, room.id, "planner", now=1_000, lease_ms=LEASE)
        await liveness.mark_dead(db, room.id, "planner", now=1_000 + LEASE + 1)
        restarting = await liveness.attempt_revive(db, room.id, "planner", now=2_100, max_attempts=1)
        assert restarting.agent_status == "restarting"
        with pytest.raises(InvalidTransition):
            await liveness.mark_working(db, room.id, "planner", now=2_200)

        failed = await liveness.attempt_revive(db, room.id, "planner", now=2_300, max_attempts=1)
        assert failed.agent_status == "dead_failed_revive"
        with pytest.raises(InvalidTransition):
            await liveness.mark_working(db, room.id, "planner", now=2_400)
        assert (await liveness.participant_get(db, room.id, "planner")).agent_status == "dead_failed_revive"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_lease_renewal_does_not_touch_a_dead_participant():
    db = await _make_db()
    try:
        room = await _room(db)
        stale = await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=LEASE)
        # another writer records the death after our read
        await db.execute("UPDATE participants SET agent_status = 'dead' WHERE id = ?", (stale.id,))
        await db.commit()

        current = await liveness._renew(db, stale, 5_000, None)
        assert current.agent_status == "dead"
        assert current.ready_until == LEASE
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_mark_working_after_lease_lapsed_records_death():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=LEASE)
        with pytest.raises(InvalidTransition):
            await liveness.mark_working(db, room.id, "builder", now=LEASE + 1)
        p = await liveness.participant_get(db, room.id, "builder")
        assert p.agent_status == "dead"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_mark_dead_requires_lapsed_lease_and_recovers_work():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        await liveness.heartbeat(db, room.id, "planner", now=0, lease_ms=LEASE)
        await liveness.mark_working(db, room.id, "planner", now=10)
        await tasks.advance(db, task.id, "planner", "planner")

        with pytest.raises(InvalidTransition):
            await liveness.mark_dead(db, room.id, "planner", now=LEASE)

        dead = await liveness.mark_dead(db, room.id, "planner", now=LEASE + 1)
        assert dead.agent_status == "dead"
        assert dead.is_expired

        stored = await tasks.task_require(db, task.id)
        assert (stored.status, stored.assigned_to, stored.queue_position) == ("queued", "planner", 1)

        with pytest.raises(InvalidTransition):
            await liveness.mark_dead(db, room.id, "planner", now=LEASE + 2)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_heartbeat_after_expiry_goes_through_dead():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=LEASE)
        p = await liveness.heartbeat(db, room.id, "builder", now=5_000, lease_ms=LEASE)
        assert p.agent_status == "ready"
        assert p.ready_until == 6_000
        history = await liveness.participant_history(db, room.id, "builder")
        assert [h.to_status for h in history] == ["ready", "dead", "ready"]
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_revive_attempts_exhaust_into_failed_revive():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=LEASE)
        await liveness.mark_dead(db, room.id, "builder", now=LEASE + 1)

        p = await liveness.attempt_revive(db, room.id, "builder", max_attempts=2)
        assert (p.agent_status, p.restart_attempts) == ("restarting", 1)
        p = await liveness.revive_failed(db, room.id, "builder", max_attempts=2)
        assert p.agent_status == "restarting"
        p = await liveness.attempt_revive(db, room.id, "builder", max_attempts=2)
        assert (p.agent_status, p.restart_attempts) == ("restarting", 2)
        p = await liveness.attempt_revive(db, room.id, "builder", max_attempts=2)
        assert p.agent_status == "dead_failed_revive"

        with pytest.raises(InvalidTransition):
            await liveness.heartbeat(db, room.id, "builder", now=10_000, lease_ms=LEASE)
        with pytest.raises(InvalidTransition):
            await liveness.attempt_revive(db, room.id, "builder", max_attempts=2)

        reset = await liveness.reset_participant(db, room.id, "builder")
        assert (reset.agent_status, reset.restart_attempts) == ("offline", 0)
        back = await liveness.heartbeat(db, room.id, "builder", now=10_000, lease_ms=LEASE)
        assert back.agent_status == "ready"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_restart_success_resets_attempts():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=LEASE)
        await liveness.mark_dead(db, room.id, "builder", now=LEASE + 1)
        await liveness.attempt_revive(db, room.id, "builder")
        p = await liveness.heartbeat(db, room.id, "builder", now=LEASE + 50, lease_ms=LEASE)
        assert (p.agent_status, p.restart_attempts) == ("ready", 0)
        assert p.ready_until == 2 * LEASE + 50
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_revive_from_ready_with_valid_lease_is_rejected():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=LEASE)
        with pytest.raises(InvalidTransition):
            await liveness.attempt_revive(db, room.id, "builder", now=10)
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_join_rejects_roles_outside_team():
    db = await _make_db()
    try:
        room = await _room(db)
        with pytest.raises(PolicyViolation):
            await liveness.join(db, room.id, "designer")
        assert await liveness.participant_list(db, room.id) == []

        p = await liveness.join(db, room.id, "Reviewer")
        assert p.agent_status == "ready"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_rejoin_while_working_requeues_task():
    db = await _make_db()
    try:
        room = await _room(db)
        task = await tasks.create_task(db, room.id, "q", classification="question")
        await liveness.join(db, room.id, "planner", now=0)
        await liveness.mark_working(db, room.id, "planner", now=10)
        await tasks.advance(db, task.id, "planner", "planner")

        p = await liveness.join(db, room.id, "planner", now=20)
        assert p.agent_status == "ready"
        stored = await tasks.task_require(db, task.id)
        assert stored.status == "queued"
        assert stored.assigned_to == "planner"
    finally:
        await db.close()


@pytest.mark.asyncio
async def test_expire_stale_sweep():
    db = await _make_db()
    try:
        room = await _room(db)
        await liveness.heartbeat(db, room.id, "planner", now=0, lease_ms=LEASE)
        await liveness.heartbeat(db, room.id, "builder", now=0, lease_ms=10 * LEASE)
        marked = await liveness.expire_stale(db, room.id, now=LEASE + 1)
        assert marked == ["planner"]
        assert (await liveness.participant_get(db, room.id, "planner")).agent_status == "dead"
        assert (await liveness.participant_get(db, room.id, "builder")).agent_status == "ready"
    finally:
        await db.close()
