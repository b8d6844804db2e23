"""
CRUD operations for TeamRoom: users, sessions, chatrooms, access checks, events.
All functions are async and receive the aiosqlite connection from the caller.
"""
import json
import time
import uuid
import secrets
import logging
from datetime import datetime, timezone, timedelta
from typing import Optional

import aiosqlite

from teamroom.db.database import release_chatroom_lock
from teamroom.db.models import Chatroom, Event, Session, User, CHATROOM_STATUSES
from teamroom.errors import AccessDenied, AuthFailed, NotFound
from teamroom.roles import dedupe_roles, role_in

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(s) if s else None


def now_ms() -> int:
    """Wall-clock epoch milliseconds, the unit of every lease horizon."""
    return int(time.time() * 1000)


# ─────────────────────────────────────────────
# Users & sessions
# ─────────────────────────────────────────────

async def user_create(db: aiosqlite.Connection, name: str) -> User:
    uid = str(uuid.uuid4())
    now = _now()
    await db.execute("INSERT INTO users (id, name, created_at) VALUES (?, ?, ?)", (uid, name, now))
    await db.commit()
    logger.info(f"User created: {uid} '{name}'")
    return User(id=uid, name=name, created_at=_parse_dt(now))


async def user_get(db: aiosqlite.Connection, user_id: str) -> Optional[User]:
    async with db.execute("SELECT * FROM users WHERE id = ?", (user_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return User(id=row["id"], name=row["name"], created_at=_parse_dt(row["created_at"]))


async def session_create(
    db: aiosqlite.Connection,
    user_id: str,
    ttl_seconds: Optional[int] = None,
) -> Session:
    sid = secrets.token_hex(32)
    now = datetime.now(timezone.utc)
    expires = (now + timedelta(seconds=ttl_seconds)) if ttl_seconds else None
    await db.execute(
        "INSERT INTO sessions (id, user_id, is_active, created_at, expires_at) VALUES (?, ?, 1, ?, ?)",
        (sid, user_id, now.isoformat(), expires.isoformat() if expires else None),
    )
    await db.commit()
    return Session(id=sid, user_id=user_id, is_active=True, created_at=now, expires_at=expires)


async def session_revoke(db: aiosqlite.Connection, session_id: str) -> bool:
    async with db.execute(
        "UPDATE sessions SET is_active = 0, revoked_at = ? WHERE id = ?",
        (_now(), session_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    return updated > 0


async def validate_session(db: aiosqlite.Connection, session_id: Optional[str]) -> User:
    """Return the session's user or raise AuthFailed."""
    if not session_id:
        raise AuthFailed("Authentication failed: session id missing")
    async with db.execute("SELECT * FROM sessions WHERE id = ?", (session_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        raise AuthFailed("Authentication failed: session not found")
    if not row["is_active"]:
        raise AuthFailed("Authentication failed: session revoked")
    expires_at = _parse_dt(row["expires_at"])
    if expires_at and datetime.now(timezone.utc) > expires_at:
        raise AuthFailed("Authentication failed: session expired")
    user = await user_get(db, row["user_id"])
    if user is None:
        raise AuthFailed("Authentication failed: user not found")
    return user


async def require_chatroom_access(
    db: aiosqlite.Connection,
    session_id: Optional[str],
    chatroom_id: str,
) -> tuple[User, Chatroom]:
    """Validate the session and check the caller owns the chatroom.

    Every core mutation exposed over HTTP or MCP runs only after this succeeds.
    """
    user = await validate_session(db, session_id)
    chatroom = await chatroom_get(db, chatroom_id)
    if chatroom is None:
        raise AccessDenied("Chatroom not found", chatroom_id=chatroom_id)
    if chatroom.owner_id != user.id:
        raise AccessDenied("Access denied: you do not own this chatroom", chatroom_id=chatroom_id)
    return user, chatroom


# ─────────────────────────────────────────────
# Chatroom CRUD
# ─────────────────────────────────────────────

async def chatroom_create(
    db: aiosqlite.Connection,
    owner_id: str,
    name: Optional[str] = None,
    team_id: Optional[str] = None,
    team_name: Optional[str] = None,
    team_roles: Optional[list[str]] = None,
    team_entry_point: Optional[str] = None,
) -> Chatroom:
    roles = list(team_roles) if team_roles else None
    if roles and len(dedupe_roles(roles)) != len(roles):
        raise ValueError(f"Duplicate roles in team configuration: {roles}")
    if team_entry_point and roles and not role_in(team_entry_point, roles):
        raise ValueError(f"Entry point '{team_entry_point}' is not one of the team roles {roles}")

    cid = str(uuid.uuid4())
    now = _now()
    await db.execute(
        "INSERT INTO chatrooms (id, owner_id, name, status, team_id, team_name, team_roles, team_entry_point, "
        "next_queue_position, created_at, last_activity_at) VALUES (?, ?, ?, 'active', ?, ?, ?, ?, 1, ?, ?)",
        (cid, owner_id, name, team_id, team_name, json.dumps(roles) if roles else None,
         team_entry_point, now, now),
    )
    await db.commit()
    await emit_event(db, "chatroom.new", cid, {"chatroom_id": cid, "team_id": team_id, "team_roles": roles})
    logger.info(f"Chatroom created: {cid} team={team_id} roles={roles}")
    return Chatroom(
        id=cid, owner_id=owner_id, name=name, status="active", team_id=team_id,
        team_name=team_name, team_roles=roles, team_entry_point=team_entry_point,
        next_queue_position=1, created_at=_parse_dt(now), last_activity_at=_parse_dt(now),
    )


async def chatroom_get(db: aiosqlite.Connection, chatroom_id: str) -> Optional[Chatroom]:
    async with db.execute("SELECT * FROM chatrooms WHERE id = ?", (chatroom_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_chatroom(row)


async def chatroom_require(db: aiosqlite.Connection, chatroom_id: str) -> Chatroom:
    chatroom = await chatroom_get(db, chatroom_id)
    if chatroom is None:
        raise NotFound(f"Chatroom {chatroom_id} not found", chatroom_id=chatroom_id)
    return chatroom


async def chatroom_list(
    db: aiosqlite.Connection,
    owner_id: str,
    status: Optional[str] = None,
) -> list[Chatroom]:
    if status:
        async with db.execute(
            "SELECT * FROM chatrooms WHERE owner_id = ? AND status = ? ORDER BY last_activity_at DESC",
            (owner_id, status),
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute(
            "SELECT * FROM chatrooms WHERE owner_id = ? ORDER BY last_activity_at DESC", (owner_id,)
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_chatroom(r) for r in rows]


async def chatroom_set_status(db: aiosqlite.Connection, chatroom_id: str, status: str) -> bool:
    if status not in CHATROOM_STATUSES:
        raise ValueError(f"Invalid status '{status}'. Must be one of {CHATROOM_STATUSES}")
    async with db.execute(
        "UPDATE chatrooms SET status = ?, last_activity_at = ? WHERE id = ?",
        (status, _now(), chatroom_id),
    ) as cur:
        updated = cur.rowcount
    await db.commit()
    if updated == 0:
        return False
    if status == "completed":
        release_chatroom_lock(chatroom_id)
    await emit_event(db, "chatroom.status", chatroom_id, {"chatroom_id": chatroom_id, "status": status})
    return True


async def chatroom_touch(db: aiosqlite.Connection, chatroom_id: str) -> None:
    """Bump last_activity_at; used for recency ordering in the chatroom list."""
    await db.execute("UPDATE chatrooms SET last_activity_at = ? WHERE id = ?", (_now(), chatroom_id))
    await db.commit()


def _row_to_chatroom(row: aiosqlite.Row) -> Chatroom:
    return Chatroom(
        id=row["id"],
        owner_id=row["owner_id"],
        name=row["name"],
        status=row["status"],
        team_id=row["team_id"],
        team_name=row["team_name"],
        team_roles=json.loads(row["team_roles"]) if row["team_roles"] else None,
        team_entry_point=row["team_entry_point"],
        next_queue_position=row["next_queue_position"],
        created_at=_parse_dt(row["created_at"]),
        last_activity_at=_parse_dt(row["last_activity_at"]),
    )


# ─────────────────────────────────────────────
# Event fan-out (for SSE)
# ─────────────────────────────────────────────

async def emit_event(db: aiosqlite.Connection, event_type: str, chatroom_id: Optional[str], payload: dict) -> None:
    await db.execute(
        "INSERT INTO events (event_type, chatroom_id, payload, created_at) VALUES (?, ?, ?, ?)",
        (event_type, chatroom_id, json.dumps(payload), _now()),
    )
    await db.commit()


async def events_since(
    db: aiosqlite.Connection,
    after_id: int = 0,
    limit: int = 50,
    chatroom_id: Optional[str] = None,
) -> list[Event]:
    """Fetch events newer than `after_id` for the SSE pump to deliver."""
    if chatroom_id:
        async with db.execute(
            "SELECT * FROM events WHERE id > ? AND chatroom_id = ? ORDER BY id ASC LIMIT ?",
            (after_id, chatroom_id, limit),
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute(
            "SELECT * FROM events WHERE id > ? ORDER BY id ASC LIMIT ?",
            (after_id, limit),
        ) as cur:
            rows = await cur.fetchall()
    return [Event(
        id=row["id"],
        event_type=row["event_type"],
        chatroom_id=row["chatroom_id"],
        payload=row["payload"],
        created_at=_parse_dt(row["created_at"]),
    ) for row in rows]


async def events_delete_old(db: aiosqlite.Connection, max_age_seconds: int = 600) -> None:
    """Prune delivered events older than max_age_seconds to keep the table small."""
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
    async with db.execute("DELETE FROM events WHERE created_at < ?", (cutoff,)) as cur:
        deleted = cur.rowcount
    await db.commit()
    if deleted > 0:
        logger.debug(f"Pruned {deleted} old events.")
