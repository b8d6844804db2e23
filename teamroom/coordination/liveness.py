"""
Agent liveness tracker: the per-role participant status FSM and lease renewal.

There is no background timer. A participant's lease (``ready_until``, epoch ms)
is checked whenever somebody reads or acts on it, and a lapsed lease is
recorded as ``dead`` at that moment. Work the dead role held is put back in
the queue for the same role.
"""
import logging
import sqlite3
import uuid
from typing import Optional

import aiosqlite

from teamroom.config import HEARTBEAT_TTL_MS, MAX_RESTART_ATTEMPTS
from teamroom.coordination.tasks import recover_orphaned_tasks
from teamroom.db import crud
from teamroom.db.crud import _now, _parse_dt, now_ms
from teamroom.db.models import Participant, ParticipantTransition, legacy_status
from teamroom.errors import ConcurrentModification, InvalidTransition, NotFound, PolicyViolation
from teamroom.roles import role_in, role_key

logger = logging.getLogger(__name__)

# agent_status -> allowed next agent_status
ALLOWED_TRANSITIONS: dict[str, frozenset] = {
    "offline": frozenset({"ready"}),
    "dead": frozenset({"ready", "restarting", "offline"}),
    "dead_failed_revive": frozenset({"offline"}),
    "ready": frozenset({"working", "dead", "offline"}),
    "working": frozenset({"ready", "dead", "offline"}),
    "restarting": frozenset({"ready", "dead_failed_revive", "offline"}),
}

_LEASED = ("ready", "working")
_KEEP = object()


def _clock(now: Optional[int]) -> int:
    return now if now is not None else now_ms()


# ─────────────────────────────────────────────
# Reads
# ─────────────────────────────────────────────

async def participant_get(db: aiosqlite.Connection, chatroom_id: str, role: str) -> Optional[Participant]:
    async with db.execute(
        "SELECT * FROM participants WHERE chatroom_id = ? AND role_key = ?",
        (chatroom_id, role_key(role)),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_participant(row)


async def participant_require(db: aiosqlite.Connection, chatroom_id: str, role: str) -> Participant:
    participant = await participant_get(db, chatroom_id, role)
    if participant is None:
        raise NotFound(f"No participant '{role}' in chatroom {chatroom_id}", chatroom_id=chatroom_id, role=role)
    return participant


async def participant_list(db: aiosqlite.Connection, chatroom_id: str) -> list[Participant]:
    async with db.execute(
        "SELECT * FROM participants WHERE chatroom_id = ? ORDER BY status_changed_at ASC", (chatroom_id,)
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_participant(r) for r in rows]


async def participant_history(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: Optional[str] = None,
    limit: int = 100,
) -> list[ParticipantTransition]:
    """Audit trail of status changes, oldest first."""
    if role:
        async with db.execute(
            "SELECT * FROM participant_transitions WHERE chatroom_id = ? AND role = ? ORDER BY id ASC LIMIT ?",
            (chatroom_id, role_key(role), limit),
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute(
            "SELECT * FROM participant_transitions WHERE chatroom_id = ? ORDER BY id ASC LIMIT ?",
            (chatroom_id, limit),
        ) as cur:
            rows = await cur.fetchall()
    return [ParticipantTransition(
        chatroom_id=r["chatroom_id"], role=r["role"], from_status=r["from_status"],
        to_status=r["to_status"], reason=r["reason"], created_at=_parse_dt(r["created_at"]),
    ) for r in rows]


# ─────────────────────────────────────────────
# Writes
# ─────────────────────────────────────────────

async def _create_participant(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    connection_id: Optional[str] = None,
) -> Participant:
    pid = str(uuid.uuid4())
    now = _now()
    try:
        await db.execute(
            "INSERT INTO participants (id, chatroom_id, role, role_key, status, agent_status, ready_until, "
            "restart_attempts, connection_id, status_changed_at) VALUES (?, ?, ?, ?, 'waiting', 'offline', NULL, 0, ?, ?)",
            (pid, chatroom_id, role.strip(), role_key(role), connection_id, now),
        )
        await db.commit()
    except sqlite3.IntegrityError:
        # Another request registered the same role first
        existing = await participant_get(db, chatroom_id, role)
        if existing is None:
            raise
        return existing
    logger.info(f"Participant registered: chatroom={chatroom_id} role={role}")
    return Participant(
        id=pid, chatroom_id=chatroom_id, role=role.strip(), agent_status="offline", ready_until=None,
        restart_attempts=0, connection_id=connection_id, status_changed_at=_parse_dt(now),
    )


async def _transition(
    db: aiosqlite.Connection,
    participant: Participant,
    to_status: str,
    reason: str,
    ready_until=_KEEP,
    restart_attempts: Optional[int] = None,
    connection_id: Optional[str] = None,
) -> Participant:
    from_status = participant.agent_status
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
        raise InvalidTransition(
            f"Cannot transition {participant.role} from {from_status} to {to_status}",
            chatroom_id=participant.chatroom_id, role=participant.role,
            current_status=from_status, attempted_status=to_status,
        )
    new_ready_until = participant.ready_until if ready_until is _KEEP else ready_until
    new_attempts = participant.restart_attempts if restart_attempts is None else restart_attempts
    now = _now()

    async with db.execute(
        "UPDATE participants SET agent_status = ?, status = ?, ready_until = ?, restart_attempts = ?, "
        "connection_id = COALESCE(?, connection_id), status_changed_at = ? WHERE id = ? AND agent_status = ?",
        (to_status, legacy_status(to_status), new_ready_until, new_attempts, connection_id, now,
         participant.id, from_status),
    ) as cur:
        updated = cur.rowcount
    if updated == 0:
        raise ConcurrentModification(
            "Participant status changed concurrently",
            chatroom_id=participant.chatroom_id, role=participant.role,
        )
    await db.execute(
        "INSERT INTO participant_transitions (chatroom_id, role, from_status, to_status, reason, created_at) "
        "VALUES (?, ?, ?, ?, ?, ?)",
        (participant.chatroom_id, role_key(participant.role), from_status, to_status, reason, now),
    )
    await db.commit()

    await crud.emit_event(db, "participant.status", participant.chatroom_id, {
        "chatroom_id": participant.chatroom_id, "role": participant.role,
        "from_status": from_status, "to_status": to_status, "reason": reason,
        "ready_until": new_ready_until,
    })
    logger.info(
        f"[FSM] chatroomId={participant.chatroom_id} role={participant.role} "
        f"{from_status} -> {to_status} ({reason})"
    )
    return Participant(
        id=participant.id, chatroom_id=participant.chatroom_id, role=participant.role,
        agent_status=to_status, ready_until=new_ready_until, restart_attempts=new_attempts,
        connection_id=connection_id or participant.connection_id, status_changed_at=_parse_dt(now),
    )


async def _renew(
    db: aiosqlite.Connection,
    participant: Participant,
    horizon: int,
    connection_id: Optional[str],
) -> Participant:
    """Extend the lease of an alive participant without a status change.

    The write only lands while the participant is still ready or working;
    otherwise nothing changes and the current record is returned.
    """
    async with db.execute(
        "UPDATE participants SET ready_until = MAX(COALESCE(ready_until, 0), ?), "
        "connection_id = COALESCE(?, connection_id) "
        "WHERE id = ? AND agent_status IN ('ready', 'working')",
        (horizon, connection_id, participant.id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    current = await participant_require(db, participant.chatroom_id, participant.role)
    if updated == 0:
        logger.info(
            f"[FSM] lease renewal skipped: chatroomId={current.chatroom_id} role={current.role} "
            f"status={current.agent_status}"
        )
    return current


# ─────────────────────────────────────────────
# Operations
# ─────────────────────────────────────────────

async def heartbeat(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    now: Optional[int] = None,
    connection_id: Optional[str] = None,
    lease_ms: Optional[int] = None,
) -> Participant:
    """Renew the role's lease and bring it to ``ready`` if it was not alive.

    The lease horizon never moves backwards. A lease that already lapsed is
    recorded as a death first, so the audit trail shows the gap.
    """
    now = _clock(now)
    lease = lease_ms or HEARTBEAT_TTL_MS
    participant = await participant_get(db, chatroom_id, role)
    if participant is None:
        participant = await _create_participant(db, chatroom_id, role, connection_id)

    if participant.agent_status == "dead_failed_revive":
        raise InvalidTransition(
            f"{participant.role} exhausted its restart attempts; reset it before rejoining",
            chatroom_id=chatroom_id, role=participant.role, current_status=participant.agent_status,
        )
    if participant.agent_status in _LEASED and participant.lease_lapsed(now):
        participant = await mark_dead(db, chatroom_id, role, now, reason="lease expired before heartbeat")

    horizon = max(participant.ready_until or 0, now + lease)
    if participant.agent_status in _LEASED:
        renewed = await _renew(db, participant, horizon, connection_id)
        if renewed.agent_status in _LEASED:
            return renewed
        # Marked dead between the read and the renewal; revive through the FSM.
        participant = renewed
        horizon = max(participant.ready_until or 0, now + lease)

    reason = "restart succeeded" if participant.agent_status == "restarting" else "heartbeat"
    return await _transition(
        db, participant, "ready", reason,
        ready_until=horizon, restart_attempts=0, connection_id=connection_id,
    )


async def join(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    now: Optional[int] = None,
    connection_id: Optional[str] = None,
) -> Participant:
    """Register (or re-register) an agent for a team role."""
    chatroom = await crud.chatroom_require(db, chatroom_id)
    if chatroom.has_team and not role_in(role, chatroom.team_roles):
        raise PolicyViolation(
            f"Role '{role}' is not part of team {chatroom.team_roles}",
            chatroom_id=chatroom_id, role=role, team_roles=chatroom.team_roles,
        )
    now = _clock(now)
    participant = await participant_get(db, chatroom_id, role)
    if participant is not None and participant.agent_status == "working" and not participant.lease_lapsed(now):
        # The agent came back without finishing; its work goes back to the queue.
        await recover_orphaned_tasks(db, chatroom_id, participant.role, reason="agent rejoined while working")
        await _transition(db, participant, "ready", "rejoined")
    return await heartbeat(db, chatroom_id, role, now=now, connection_id=connection_id)


async def mark_working(db: aiosqlite.Connection, chatroom_id: str, role: str, now: Optional[int] = None) -> Participant:
    now = _clock(now)
    participant = await participant_get(db, chatroom_id, role)
    if participant is None:
        # No record means the role never joined, i.e. offline.
        raise InvalidTransition(
            f"{role} has not joined this chatroom; join before starting work",
            chatroom_id=chatroom_id, role=role, current_status="offline", attempted_status="working",
        )
    if participant.agent_status in _LEASED and participant.lease_lapsed(now):
        await mark_dead(db, chatroom_id, role, now)
        raise InvalidTransition(
            f"{participant.role} lease expired; heartbeat before starting work",
            chatroom_id=chatroom_id, role=participant.role, current_status="dead",
            attempted_status="working",
        )
    if participant.agent_status != "ready":
        raise InvalidTransition(
            f"{participant.role} must be ready to start work (is {participant.agent_status})",
            chatroom_id=chatroom_id, role=participant.role,
            current_status=participant.agent_status, attempted_status="working",
        )
    return await _transition(db, participant, "working", "task started")


async def mark_ready(db: aiosqlite.Connection, chatroom_id: str, role: str) -> Participant:
    participant = await participant_require(db, chatroom_id, role)
    return await _transition(db, participant, "ready", "task handed off")


async def mark_dead(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    now: Optional[int] = None,
    reason: str = "lease expired",
) -> Participant:
    """Record an expired lease. Only legal once ``now`` is past ``ready_until``."""
    now = _clock(now)
    participant = await participant_require(db, chatroom_id, role)
    if participant.agent_status not in _LEASED:
        raise InvalidTransition(
            f"{participant.role} is not alive (is {participant.agent_status})",
            chatroom_id=chatroom_id, role=participant.role,
            current_status=participant.agent_status, attempted_status="dead",
        )
    if not participant.lease_lapsed(now):
        raise InvalidTransition(
            f"{participant.role} lease is still valid until {participant.ready_until}",
            chatroom_id=chatroom_id, role=participant.role,
            current_status=participant.agent_status, attempted_status="dead",
        )
    dead = await _transition(db, participant, "dead", reason)
    await recover_orphaned_tasks(db, chatroom_id, participant.role, reason=reason)
    return dead


async def attempt_revive(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    now: Optional[int] = None,
    max_attempts: Optional[int] = None,
) -> Participant:
    """Count one restart attempt.

    ``dead -> restarting`` on the first attempt. Further attempts while still
    ``restarting`` are counted until the limit, after which the role lands in
    ``dead_failed_revive`` and waits for a manual reset.
    """
    now = _clock(now)
    limit = max_attempts or MAX_RESTART_ATTEMPTS
    participant = await participant_require(db, chatroom_id, role)
    if participant.agent_status in _LEASED and participant.lease_lapsed(now):
        participant = await mark_dead(db, chatroom_id, role, now)

    if participant.agent_status == "dead":
        attempts = participant.restart_attempts + 1
        return await _transition(
            db, participant, "restarting", f"revive attempt {attempts}", restart_attempts=attempts,
        )
    if participant.agent_status == "restarting":
        if participant.restart_attempts >= limit:
            return await _transition(
                db, participant, "dead_failed_revive", f"gave up after {participant.restart_attempts} attempts",
            )
        attempts = participant.restart_attempts + 1
        await db.execute(
            "UPDATE participants SET restart_attempts = ? WHERE id = ?", (attempts, participant.id),
        )
        await db.commit()
        logger.info(f"[FSM] chatroomId={chatroom_id} role={participant.role} restarting (revive attempt {attempts})")
        return await participant_require(db, chatroom_id, role)
    raise InvalidTransition(
        f"{participant.role} cannot be revived from {participant.agent_status}",
        chatroom_id=chatroom_id, role=participant.role,
        current_status=participant.agent_status, attempted_status="restarting",
    )


async def revive_failed(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    max_attempts: Optional[int] = None,
) -> Participant:
    limit = max_attempts or MAX_RESTART_ATTEMPTS
    participant = await participant_require(db, chatroom_id, role)
    if participant.agent_status == "restarting" and participant.restart_attempts >= limit:
        return await _transition(
            db, participant, "dead_failed_revive", f"gave up after {participant.restart_attempts} attempts",
        )
    return participant


async def mark_offline(
    db: aiosqlite.Connection,
    chatroom_id: str,
    role: str,
    reason: str = "agent stopped",
) -> Participant:
    participant = await participant_require(db, chatroom_id, role)
    if participant.agent_status == "offline":
        return participant
    if participant.agent_status == "working":
        await recover_orphaned_tasks(db, chatroom_id, participant.role, reason=reason)
    return await _transition(db, participant, "offline", reason, ready_until=None)


async def reset_participant(db: aiosqlite.Connection, chatroom_id: str, role: str) -> Participant:
    """Manual reset, the only way out of ``dead_failed_revive``."""
    participant = await participant_require(db, chatroom_id, role)
    if participant.agent_status == "offline":
        await db.execute("UPDATE participants SET restart_attempts = 0 WHERE id = ?", (participant.id,))
        await db.commit()
        return await participant_require(db, chatroom_id, role)
    if participant.agent_status == "working":
        await recover_orphaned_tasks(db, chatroom_id, participant.role, reason="manual reset")
    return await _transition(db, participant, "offline", "manual reset", ready_until=None, restart_attempts=0)


async def expire_stale(db: aiosqlite.Connection, chatroom_id: str, now: Optional[int] = None) -> list[str]:
    """Record every lapsed lease in the chatroom as dead. Returns the roles marked."""
    now = _clock(now)
    expired: list[str] = []
    for participant in await participant_list(db, chatroom_id):
        if participant.agent_status in _LEASED and participant.lease_lapsed(now):
            try:
                await mark_dead(db, chatroom_id, participant.role, now)
            except (InvalidTransition, ConcurrentModification):
                # A heartbeat won the race; the participant is alive again.
                continue
            expired.append(participant.role)
    return expired


def participant_to_dict(participant: Participant, now: Optional[int] = None) -> dict:
    now = _clock(now)
    return {
        "role": participant.role,
        "status": participant.status,
        "agent_status": participant.agent_status,
        "ready_until": participant.ready_until,
        "is_expired": participant.is_expired or participant.lease_lapsed(now),
        "restart_attempts": participant.restart_attempts,
        "status_changed_at": participant.status_changed_at.isoformat(),
    }


def _row_to_participant(row: aiosqlite.Row) -> Participant:
    return Participant(
        id=row["id"],
        chatroom_id=row["chatroom_id"],
        role=row["role"],
        agent_status=row["agent_status"],
        ready_until=row["ready_until"],
        restart_attempts=row["restart_attempts"],
        connection_id=row["connection_id"],
        status_changed_at=_parse_dt(row["status_changed_at"]),
    )
