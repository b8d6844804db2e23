"""
TeamRoom main entry point.

Starts a FastAPI HTTP server that:
  1. Mounts the MCP Server (SSE + JSON-RPC) at /mcp for agents
  2. Provides the REST API used by the web UI at /api
  3. Provides an SSE broadcast endpoint at /events for live UI updates
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Optional

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from mcp.server.sse import SseServerTransport
from pydantic import BaseModel

from teamroom import config
from teamroom.config import DB_TIMEOUT, HOST, PORT, TEAMROOM_VERSION
from teamroom.coordination import liveness, machines, readiness, router, tasks
from teamroom.coordination.restart import AutoRestartCoordinator
from teamroom.db import crud
from teamroom.db.database import close_db, get_db
from teamroom.errors import (
    AccessDenied,
    AuthFailed,
    ConcurrentModification,
    CoordinationError,
    NotFound,
    error_payload,
)
from teamroom.mcp_server import init_connection_id, server as mcp_server

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("teamroom")


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = await get_db()
    await crud.events_delete_old(db)
    # One coordinator per app so the per-chatroom cooldown holds across requests.
    app.state.restart_coordinator = AutoRestartCoordinator(machines.StoreMachineControl(db), db=db)
    logger.info(f"TeamRoom running at http://{HOST}:{PORT}")
    yield
    await close_db()


app = FastAPI(
    title="TeamRoom",
    description="Coordination server for multi-agent teams working in shared chatrooms.",
    version=TEAMROOM_VERSION,
    lifespan=lifespan,
)


# ─────────────────────────────────────────────
# Error mapping
# ─────────────────────────────────────────────

def _status_for(exc: CoordinationError) -> int:
    if isinstance(exc, AuthFailed):
        return 401
    if isinstance(exc, AccessDenied):
        return 403
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ConcurrentModification):
        return 409
    return 422


@app.exception_handler(CoordinationError)
async def coordination_error_handler(request: Request, exc: CoordinationError):
    return JSONResponse(status_code=_status_for(exc), content=error_payload(exc, retry_hint="please retry"))


async def _timed(op: Awaitable[Any]) -> Any:
    """Bound a store call by DB_TIMEOUT; a stalled store becomes a 503."""
    try:
        return await asyncio.wait_for(op, timeout=DB_TIMEOUT)
    except asyncio.TimeoutError:
        logger.error(f"Store call exceeded {DB_TIMEOUT}s")
        raise HTTPException(status_code=503, detail="Database timeout, please retry")


async def _task_access(db, session_id: Optional[str], task_id: str):
    task = await tasks.task_require(db, task_id)
    await crud.require_chatroom_access(db, session_id, task.chatroom_id)
    return task


# ─────────────────────────────────────────────
# MCP SSE Transport (mounted at /mcp)
# ─────────────────────────────────────────────

sse_transport = SseServerTransport("/mcp/messages")


class _SseCompletedResponse:
    """
    Returned from mcp_sse_endpoint after connect_sse() exits. The SSE transport
    already sent the full HTTP response, so this must not send anything.
    """
    async def __call__(self, scope, receive, send):
        pass


@app.get("/mcp/sse")
async def mcp_sse_endpoint(request: Request):
    """MCP SSE endpoint consumed by agent harnesses."""
    init_connection_id()
    try:
        async with sse_transport.connect_sse(
            request.scope, request.receive, request._send
        ) as streams:
            await mcp_server.run(
                streams[0], streams[1],
                mcp_server.create_initialization_options(),
            )
    except Exception as exc:
        # Mostly normal disconnects (anyio.ClosedResourceError, CancelledError).
        logger.debug("MCP SSE session ended: %s: %s", type(exc).__name__, exc)
    return _SseCompletedResponse()


app.mount("/mcp/messages/", app=sse_transport.handle_post_message)


# ─────────────────────────────────────────────
# SSE broadcast for the web UI
# ─────────────────────────────────────────────

@app.get("/events")
async def global_sse_stream(request: Request, chatroom_id: Optional[str] = None):
    """
    Polls the `events` table and fans out new rows as SSE messages,
    optionally filtered to one chatroom.
    """
    async def event_generator():
        db = await get_db()
        last_id = 0
        while True:
            if await request.is_disconnected():
                break
            events = await crud.events_since(db, after_id=last_id, chatroom_id=chatroom_id)
            for ev in events:
                last_id = ev.id
                data = json.dumps({"type": ev.event_type, "payload": json.loads(ev.payload)})
                yield f"id: {ev.id}\nevent: {ev.event_type}\ndata: {data}\n\n"
            await asyncio.sleep(0.5)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# Users & sessions
# ─────────────────────────────────────────────

class UserCreate(BaseModel):
    name: str
    session_ttl_seconds: int | None = None


@app.post("/api/users", status_code=201)
async def api_create_user(body: UserCreate):
    db = await get_db()
    user = await _timed(crud.user_create(db, body.name))
    session = await _timed(crud.session_create(db, user.id, ttl_seconds=body.session_ttl_seconds))
    return {"user_id": user.id, "name": user.name, "session_id": session.id,
            "expires_at": session.expires_at.isoformat() if session.expires_at else None}


@app.post("/api/sessions/revoke")
async def api_revoke_session(x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.validate_session(db, x_session_id))
    ok = await _timed(crud.session_revoke(db, x_session_id))
    return {"ok": ok}


# ─────────────────────────────────────────────
# Chatrooms
# ─────────────────────────────────────────────

class ChatroomCreate(BaseModel):
    name: str | None = None
    team_id: str | None = None
    team_name: str | None = None
    team_roles: list[str] | None = None
    team_entry_point: str | None = None


class StatusChange(BaseModel):
    status: str


def _chatroom_to_dict(c) -> dict:
    return {
        "id": c.id, "name": c.name, "status": c.status,
        "team_id": c.team_id, "team_name": c.team_name,
        "team_roles": c.team_roles, "team_entry_point": c.entry_point,
        "created_at": c.created_at.isoformat(),
        "last_activity_at": c.last_activity_at.isoformat() if c.last_activity_at else None,
    }


@app.get("/api/chatrooms")
async def api_chatrooms(status: str | None = None, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    user = await _timed(crud.validate_session(db, x_session_id))
    rooms = await _timed(crud.chatroom_list(db, user.id, status=status))
    return [_chatroom_to_dict(c) for c in rooms]


@app.post("/api/chatrooms", status_code=201)
async def api_create_chatroom(body: ChatroomCreate, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    user = await _timed(crud.validate_session(db, x_session_id))
    try:
        chatroom = await _timed(crud.chatroom_create(
            db, user.id, name=body.name, team_id=body.team_id, team_name=body.team_name,
            team_roles=body.team_roles, team_entry_point=body.team_entry_point,
        ))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _chatroom_to_dict(chatroom)


@app.get("/api/chatrooms/{chatroom_id}")
async def api_chatroom(chatroom_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    _, chatroom = await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    counts = await _timed(tasks.task_counts(db, chatroom_id))
    return {**_chatroom_to_dict(chatroom), "task_counts": counts}


@app.post("/api/chatrooms/{chatroom_id}/status")
async def api_chatroom_status(
    chatroom_id: str, body: StatusChange, request: Request, x_session_id: str | None = Header(default=None),
):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    try:
        await _timed(crud.chatroom_set_status(db, chatroom_id, body.status))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    if body.status == "completed":
        request.app.state.restart_coordinator.forget(chatroom_id)
    return {"ok": True}


# ─────────────────────────────────────────────
# Tasks
# ─────────────────────────────────────────────

class TaskCreate(BaseModel):
    content: str
    is_backlog: bool = False


class TaskContent(BaseModel):
    content: str


@app.get("/api/chatrooms/{chatroom_id}/tasks")
async def api_tasks(chatroom_id: str, status: str | None = None, limit: int = 100,
                    x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    items = await _timed(tasks.task_list(db, chatroom_id, status=status, limit=limit))
    return [tasks.task_to_dict(t) for t in items]


@app.post("/api/chatrooms/{chatroom_id}/tasks", status_code=201)
async def api_create_task(chatroom_id: str, body: TaskCreate, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    task = await _timed(tasks.create_task(db, chatroom_id, body.content, is_backlog=body.is_backlog))
    return tasks.task_to_dict(task)


@app.get("/api/tasks/{task_id}")
async def api_task(task_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    task = await _timed(_task_access(db, x_session_id, task_id))
    return tasks.task_to_dict(task)


@app.get("/api/tasks/{task_id}/history")
async def api_task_history(task_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(_task_access(db, x_session_id, task_id))
    history = await _timed(tasks.task_history(db, task_id))
    return [{"from_status": h.from_status, "to_status": h.to_status, "from_role": h.from_role,
             "to_role": h.to_role, "summary": h.summary, "created_at": h.created_at.isoformat()}
            for h in history]


@app.post("/api/tasks/{task_id}/cancel")
async def api_cancel_task(task_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(_task_access(db, x_session_id, task_id))
    task = await _timed(router.cancel_task(db, task_id, by_role="user"))
    return tasks.task_to_dict(task)


@app.post("/api/tasks/{task_id}/move-to-queue")
async def api_move_to_queue(task_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(_task_access(db, x_session_id, task_id))
    task = await _timed(tasks.move_to_queue(db, task_id))
    return tasks.task_to_dict(task)


@app.patch("/api/tasks/{task_id}")
async def api_update_task(task_id: str, body: TaskContent, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(_task_access(db, x_session_id, task_id))
    task = await _timed(tasks.update_task_content(db, task_id, body.content))
    return tasks.task_to_dict(task)


# ─────────────────────────────────────────────
# Participants & readiness
# ─────────────────────────────────────────────

@app.get("/api/chatrooms/{chatroom_id}/participants")
async def api_participants(chatroom_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    await _timed(liveness.expire_stale(db, chatroom_id))
    participants = await _timed(liveness.participant_list(db, chatroom_id))
    return {
        "participants": [liveness.participant_to_dict(p) for p in participants],
        "all_agents_ready": readiness.are_all_agents_ready(participants),
    }


@app.post("/api/chatrooms/{chatroom_id}/participants/{role}/heartbeat")
async def api_heartbeat(chatroom_id: str, role: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    participant = await _timed(liveness.heartbeat(db, chatroom_id, role))
    return liveness.participant_to_dict(participant)


@app.post("/api/chatrooms/{chatroom_id}/participants/{role}/reset")
async def api_reset_participant(chatroom_id: str, role: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    participant = await _timed(liveness.reset_participant(db, chatroom_id, role))
    return liveness.participant_to_dict(participant)


@app.get("/api/chatrooms/{chatroom_id}/participants/history")
async def api_participant_history(chatroom_id: str, role: str | None = None,
                                  x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    history = await _timed(liveness.participant_history(db, chatroom_id, role=role))
    return [{"role": h.role, "from_status": h.from_status, "to_status": h.to_status,
             "reason": h.reason, "created_at": h.created_at.isoformat()} for h in history]


@app.get("/api/chatrooms/{chatroom_id}/readiness")
async def api_readiness(chatroom_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    result = await _timed(readiness.get_team_readiness(db, chatroom_id))
    return result.to_dict()


@app.post("/api/chatrooms/{chatroom_id}/restart-offline")
async def api_restart_offline(chatroom_id: str, request: Request, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    _, chatroom = await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    team = await _timed(readiness.get_team_readiness(db, chatroom_id))
    configs = await _timed(machines.get_agent_configs(db, chatroom_id))
    result = await request.app.state.restart_coordinator.restart_offline(chatroom, team, configs)
    return {"result": result.to_dict() if result else None}


# ─────────────────────────────────────────────
# Machines
# ─────────────────────────────────────────────

class MachineRegister(BaseModel):
    machine_id: str
    hostname: str
    os: str | None = None
    available_tools: list[str] | None = None


class DaemonStatus(BaseModel):
    connected: bool


class AgentConfigBody(BaseModel):
    chatroom_id: str
    role: str
    harness: str
    working_dir: str
    model: str | None = None


class CommandAck(BaseModel):
    status: str
    result: str | None = None


@app.post("/api/machines")
async def api_register_machine(body: MachineRegister, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    user = await _timed(crud.validate_session(db, x_session_id))
    return await _timed(machines.machine_register(
        db, user.id, body.machine_id, body.hostname, body.os, body.available_tools,
    ))


@app.post("/api/machines/{machine_id}/daemon")
async def api_daemon_status(machine_id: str, body: DaemonStatus, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    user = await _timed(crud.validate_session(db, x_session_id))
    await _timed(machines.update_daemon_status(db, machine_id, body.connected, user_id=user.id))
    return {"ok": True}


@app.put("/api/machines/{machine_id}/configs")
async def api_agent_config(machine_id: str, body: AgentConfigBody, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    user, _ = await _timed(crud.require_chatroom_access(db, x_session_id, body.chatroom_id))
    await _timed(machines.agent_config_upsert(
        db, machine_id, body.chatroom_id, body.role, body.harness, body.working_dir,
        model=body.model, user_id=user.id,
    ))
    return {"ok": True}


@app.get("/api/chatrooms/{chatroom_id}/agent-configs")
async def api_agent_configs(chatroom_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    await _timed(crud.require_chatroom_access(db, x_session_id, chatroom_id))
    configs = await _timed(machines.get_agent_configs(db, chatroom_id))
    return [machines.agent_config_to_dict(c) for c in configs]


@app.get("/api/machines/{machine_id}/commands")
async def api_pending_commands(machine_id: str, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    user = await _timed(crud.validate_session(db, x_session_id))
    await _timed(machines.update_daemon_status(db, machine_id, True, user_id=user.id))
    commands = await _timed(machines.pending_commands(db, machine_id))
    return [machines.command_to_dict(c) for c in commands]


@app.post("/api/commands/{command_id}/ack")
async def api_ack_command(command_id: str, body: CommandAck, x_session_id: str | None = Header(default=None)):
    db = await get_db()
    user = await _timed(crud.validate_session(db, x_session_id))
    command = await _timed(machines.ack_command(db, command_id, body.status, body.result, user_id=user.id))
    return machines.command_to_dict(command)


# ─────────────────────────────────────────────
# System config & health
# ─────────────────────────────────────────────

class ConfigUpdate(BaseModel):
    HOST: str | None = None
    PORT: int | None = None
    HEARTBEAT_INTERVAL_MS: int | None = None
    HEARTBEAT_TTL_MS: int | None = None
    MAX_RESTART_ATTEMPTS: int | None = None
    RESTART_COOLDOWN_SECONDS: float | None = None
    RESTART_SETTLE_SECONDS: float | None = None


@app.get("/api/system/config")
async def api_get_config():
    return config.get_config_dict()


@app.put("/api/system/config")
async def api_update_config(body: ConfigUpdate):
    updates = {k: v for k, v in body.model_dump().items() if v is not None}
    config.save_config_dict(updates)
    return {"ok": True, "message": "Saved. Restart the server to apply."}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "TeamRoom", "version": TEAMROOM_VERSION}


if __name__ == "__main__":
    uvicorn.run("teamroom.main:app", host=HOST, port=PORT, reload=True)
