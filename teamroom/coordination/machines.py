"""
Machine registry: daemons that can start and stop agents, their per-role
agent configs, and the command queue they poll.
"""
import json
import logging
import uuid
from typing import Optional

import aiosqlite

from teamroom.db import crud
from teamroom.db.crud import _now, _parse_dt
from teamroom.db.models import AgentConfig, MachineCommand
from teamroom.errors import AccessDenied, NotFound, PolicyViolation
from teamroom.roles import role_key

logger = logging.getLogger(__name__)

AGENT_HARNESSES = ("opencode", "claude", "cursor")
COMMAND_TYPES = ("start-agent", "stop-agent", "ping", "status")
COMMAND_STATUSES = ("pending", "processing", "completed", "failed")


async def machine_register(
    db: aiosqlite.Connection,
    user_id: str,
    machine_id: str,
    hostname: str,
    os_name: Optional[str] = None,
    available_tools: Optional[list[str]] = None,
) -> dict:
    """Register a machine, or refresh an existing registration owned by the same user."""
    now = _now()
    tools = json.dumps(available_tools or [])
    async with db.execute("SELECT user_id FROM machines WHERE id = ?", (machine_id,)) as cur:
        row = await cur.fetchone()
    if row is not None:
        if row["user_id"] != user_id:
            raise AccessDenied("Machine is registered to a different user", machine_id=machine_id)
        await db.execute(
            "UPDATE machines SET hostname = ?, os = ?, available_tools = ?, last_seen_at = ? WHERE id = ?",
            (hostname, os_name, tools, now, machine_id),
        )
        await db.commit()
        return {"machine_id": machine_id, "is_new": False}

    await db.execute(
        "INSERT INTO machines (id, user_id, hostname, os, available_tools, daemon_connected, last_seen_at) "
        "VALUES (?, ?, ?, ?, ?, 0, ?)",
        (machine_id, user_id, hostname, os_name, tools, now),
    )
    await db.commit()
    logger.info(f"Machine registered: {machine_id} ({hostname})")
    return {"machine_id": machine_id, "is_new": True}


async def _require_machine(db: aiosqlite.Connection, machine_id: str, user_id: Optional[str] = None) -> aiosqlite.Row:
    async with db.execute("SELECT * FROM machines WHERE id = ?", (machine_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        raise NotFound(f"Machine {machine_id} not found", machine_id=machine_id)
    if user_id is not None and row["user_id"] != user_id:
        raise AccessDenied("Not authorized for this machine", machine_id=machine_id)
    return row


async def update_daemon_status(
    db: aiosqlite.Connection,
    machine_id: str,
    connected: bool,
    user_id: Optional[str] = None,
) -> None:
    await _require_machine(db, machine_id, user_id)
    await db.execute(
        "UPDATE machines SET daemon_connected = ?, last_seen_at = ? WHERE id = ?",
        (1 if connected else 0, _now(), machine_id),
    )
    await db.commit()
    logger.info(f"Machine {machine_id} daemon {'connected' if connected else 'disconnected'}")


async def agent_config_upsert(
    db: aiosqlite.Connection,
    machine_id: str,
    chatroom_id: str,
    role: str,
    harness: str,
    working_dir: str,
    model: Optional[str] = None,
    user_id: Optional[str] = None,
) -> None:
    """Remember how to start ``role`` in this chatroom on this machine."""
    if harness not in AGENT_HARNESSES:
        raise PolicyViolation(f"Unknown agent harness '{harness}'. Must be one of {AGENT_HARNESSES}")
    await _require_machine(db, machine_id, user_id)
    await crud.chatroom_require(db, chatroom_id)
    await db.execute(
        """
        INSERT INTO machine_agent_configs (machine_id, chatroom_id, role, role_key, harness, working_dir, model, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(machine_id, chatroom_id, role_key) DO UPDATE SET
            role = excluded.role,
            harness = excluded.harness,
            working_dir = excluded.working_dir,
            model = excluded.model,
            updated_at = excluded.updated_at
        """,
        (machine_id, chatroom_id, role.strip(), role_key(role), harness, working_dir, model, _now()),
    )
    await db.commit()


async def get_agent_configs(db: aiosqlite.Connection, chatroom_id: str) -> list[AgentConfig]:
    """Agent configs for a chatroom, joined with the owning machine's daemon state."""
    async with db.execute(
        """
        SELECT c.*, m.hostname, m.daemon_connected
          FROM machine_agent_configs c
          JOIN machines m ON m.id = c.machine_id
         WHERE c.chatroom_id = ?
         ORDER BY c.updated_at DESC
        """,
        (chatroom_id,),
    ) as cur:
        rows = await cur.fetchall()
    return [AgentConfig(
        machine_id=r["machine_id"],
        hostname=r["hostname"],
        role=r["role"],
        harness=r["harness"],
        working_dir=r["working_dir"],
        model=r["model"],
        daemon_connected=bool(r["daemon_connected"]),
        updated_at=_parse_dt(r["updated_at"]),
    ) for r in rows]


async def send_command(
    db: aiosqlite.Connection,
    machine_id: str,
    command_type: str,
    payload: dict,
    user_id: Optional[str] = None,
) -> str:
    """Queue a command for the machine's daemon and return its id."""
    if command_type not in COMMAND_TYPES:
        raise PolicyViolation(f"Unknown command type '{command_type}'. Must be one of {COMMAND_TYPES}")
    await _require_machine(db, machine_id, user_id)
    cmd_id = str(uuid.uuid4())
    await db.execute(
        "INSERT INTO machine_commands (id, machine_id, type, payload, status, created_at) VALUES (?, ?, ?, ?, 'pending', ?)",
        (cmd_id, machine_id, command_type, json.dumps(payload), _now()),
    )
    await db.commit()
    logger.info(f"Command queued: {command_type} -> machine {machine_id} ({cmd_id})")
    return cmd_id


async def pending_commands(db: aiosqlite.Connection, machine_id: str) -> list[MachineCommand]:
    async with db.execute(
        "SELECT * FROM machine_commands WHERE machine_id = ? AND status = 'pending' ORDER BY created_at ASC, rowid ASC",
        (machine_id,),
    ) as cur:
        rows = await cur.fetchall()
    return [_row_to_command(r) for r in rows]


async def ack_command(
    db: aiosqlite.Connection,
    command_id: str,
    status: str,
    result: Optional[str] = None,
    user_id: Optional[str] = None,
) -> MachineCommand:
    if status not in COMMAND_STATUSES or status == "pending":
        raise PolicyViolation(f"Invalid command status '{status}'")
    async with db.execute("SELECT * FROM machine_commands WHERE id = ?", (command_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        raise NotFound(f"Command {command_id} not found", command_id=command_id)
    await _require_machine(db, row["machine_id"], user_id)
    processed_at = _now() if status != "processing" else None
    await db.execute(
        "UPDATE machine_commands SET status = ?, result = ?, processed_at = COALESCE(?, processed_at) WHERE id = ?",
        (status, result, processed_at, command_id),
    )
    await db.commit()
    async with db.execute("SELECT * FROM machine_commands WHERE id = ?", (command_id,)) as cur:
        row = await cur.fetchone()
    return _row_to_command(row)


class StoreMachineControl:
    """MachineControl backed by the machine_commands table the daemons poll."""

    def __init__(self, db: aiosqlite.Connection, user_id: Optional[str] = None):
        self._db = db
        self._user_id = user_id

    async def send_command(self, machine_id: str, command_type: str, payload: dict) -> str:
        return await send_command(self._db, machine_id, command_type, payload, user_id=self._user_id)


def agent_config_to_dict(config: AgentConfig) -> dict:
    return {
        "machine_id": config.machine_id,
        "hostname": config.hostname,
        "role": config.role,
        "harness": config.harness,
        "working_dir": config.working_dir,
        "model": config.model,
        "daemon_connected": config.daemon_connected,
    }


def command_to_dict(command: MachineCommand) -> dict:
    return {
        "command_id": command.id,
        "machine_id": command.machine_id,
        "type": command.type,
        "payload": command.payload,
        "status": command.status,
        "created_at": command.created_at.isoformat(),
        "processed_at": command.processed_at.isoformat() if command.processed_at else None,
        "result": command.result,
    }


def _row_to_command(row: aiosqlite.Row) -> MachineCommand:
    return MachineCommand(
        id=row["id"],
        machine_id=row["machine_id"],
        type=row["type"],
        payload=json.loads(row["payload"]),
        status=row["status"],
        created_at=_parse_dt(row["created_at"]),
        processed_at=_parse_dt(row["processed_at"]),
        result=row["result"],
    )
