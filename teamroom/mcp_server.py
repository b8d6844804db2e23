"""
MCP Server for TeamRoom.

Registers the agent-facing tools, a config resource, and the handoff prompt.
Mounted onto the FastAPI app via SSE transport, or run over stdio.
"""
import json
import logging
import uuid
from contextvars import ContextVar
from typing import Any

import mcp.types as types
from mcp.server import Server

from teamroom.config import HEARTBEAT_INTERVAL_MS, HEARTBEAT_TTL_MS, HOST, PORT, TEAMROOM_VERSION
from teamroom.db.database import get_db

logger = logging.getLogger(__name__)

# Per-connection identifier. Each SSE connection runs in its own asyncio Task,
# so the ContextVar keeps concurrent agents apart.
_connection_id: ContextVar[str | None] = ContextVar("connection_id", default=None)

# Session used when a tool call omits session_id (stdio mode, set from --session-id).
_default_session: ContextVar[str | None] = ContextVar("default_session", default=None)


def init_connection_id() -> str:
    connection_id = str(uuid.uuid4())
    _connection_id.set(connection_id)
    return connection_id


def get_connection_id() -> str | None:
    return _connection_id.get()


def set_default_session(session_id: str | None) -> None:
    _default_session.set(session_id)


def get_default_session() -> str | None:
    return _default_session.get()


server = Server("TeamRoom")

_SESSION_PROP = {"type": "string", "description": "Session id issued to your user. Required unless the server was started with --session-id."}
_ROLE_PROP = {"type": "string", "description": "Your team role, e.g. 'planner', 'builder', 'reviewer'."}
_CLASSIFICATION_PROPS = {
    "classification": {"type": "string", "enum": ["question", "new_feature", "follow_up"]},
    "title":          {"type": "string", "description": "new_feature only: short feature title."},
    "description":    {"type": "string", "description": "new_feature only: what the feature does."},
    "tech_specs":     {"type": "string", "description": "new_feature only: technical notes for the builder."},
}


# ═════════════════════════════════════════════
# TOOLS
# ═════════════════════════════════════════════

@server.list_tools()
async def list_tools() -> list[types.Tool]:
    return [
        types.Tool(
            name="server_info",
            description="Server version, endpoint, and the heartbeat interval agents should use.",
            inputSchema={"type": "object", "properties": {}},
        ),
        types.Tool(
            name="join",
            description=(
                "Join a chatroom as a team role. Marks you ready and returns the next task waiting for you. "
                f"Call `heartbeat` at least every {HEARTBEAT_INTERVAL_MS // 1000}s afterwards or you will be marked dead."
            ),
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "chatroom_id": {"type": "string"}, "role": _ROLE_PROP},
                "required": ["chatroom_id", "role"],
            },
        ),
        types.Tool(
            name="heartbeat",
            description="Keep-alive. Extends your lease; a role that misses it is reported as expired.",
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "chatroom_id": {"type": "string"}, "role": _ROLE_PROP},
                "required": ["chatroom_id", "role"],
            },
        ),
        types.Tool(
            name="get_next_task",
            description="Return the lowest-position pending or queued task assigned to your role, if any.",
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "chatroom_id": {"type": "string"}, "role": _ROLE_PROP},
                "required": ["chatroom_id", "role"],
            },
        ),
        types.Tool(
            name="task_list",
            description="List tasks in a chatroom ordered by queue position.",
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": _SESSION_PROP,
                    "chatroom_id": {"type": "string"},
                    "status": {"type": "string",
                               "enum": ["active", "pending", "in_progress", "queued", "backlog", "completed", "cancelled"]},
                    "limit": {"type": "integer", "default": 100},
                },
                "required": ["chatroom_id"],
            },
        ),
        types.Tool(
            name="task_started",
            description=(
                "Start working on a task. Unclassified tasks must be classified here: "
                "'new_feature' also needs title, description and tech_specs."
            ),
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "task_id": {"type": "string"}, "role": _ROLE_PROP,
                               **_CLASSIFICATION_PROPS},
                "required": ["task_id", "role"],
            },
        ),
        types.Tool(
            name="classify",
            description="Classify a task you own without starting it. A task is classified once.",
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "task_id": {"type": "string"}, "role": _ROLE_PROP,
                               **_CLASSIFICATION_PROPS},
                "required": ["task_id", "role", "classification"],
            },
        ),
        types.Tool(
            name="handoff",
            description=(
                "Hand your task to the next role, or to 'user' to complete it. "
                "new_feature work from the builder must go through the reviewer first."
            ),
            inputSchema={
                "type": "object",
                "properties": {
                    "session_id": _SESSION_PROP,
                    "task_id": {"type": "string"},
                    "role": _ROLE_PROP,
                    "next_role": {"type": "string", "description": "Target role, or 'user'."},
                    "summary": {"type": "string", "description": "What you did and what the next role should do."},
                },
                "required": ["task_id", "role", "next_role"],
            },
        ),
        types.Tool(
            name="defer_task",
            description="Move a task to the user's backlog. It keeps its place in the queue history.",
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "task_id": {"type": "string"}, "role": _ROLE_PROP,
                               "reason": {"type": "string"}},
                "required": ["task_id", "role"],
            },
        ),
        types.Tool(
            name="allowed_handoff_roles",
            description="Which roles you may hand this task to, and why 'user' may be unavailable.",
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "task_id": {"type": "string"}, "role": _ROLE_PROP},
                "required": ["task_id", "role"],
            },
        ),
        types.Tool(
            name="team_readiness",
            description="Which team roles are present, missing, or expired in a chatroom.",
            inputSchema={
                "type": "object",
                "properties": {"session_id": _SESSION_PROP, "chatroom_id": {"type": "string"}},
                "required": ["chatroom_id"],
            },
        ),
    ]


@server.call_tool()
async def call_tool(name: str, arguments: dict[str, Any]) -> list[types.Content]:
    from teamroom.tools.dispatch import dispatch_tool

    db = await get_db()
    return await dispatch_tool(db, name, arguments or {})


# ═════════════════════════════════════════════
# RESOURCES
# ═════════════════════════════════════════════

@server.list_resources()
async def list_resources() -> list[types.Resource]:
    return [
        types.Resource(
            uri="teamroom://config",
            name="TeamRoom Configuration",
            description="Server version, endpoint, and heartbeat timing.",
            mimeType="application/json",
        ),
    ]


@server.read_resource()
async def read_resource(uri: types.AnyUrl) -> str:
    uri_str = str(uri)
    if uri_str == "teamroom://config":
        return json.dumps({
            "name": "TeamRoom",
            "version": TEAMROOM_VERSION,
            "endpoint": f"http://{HOST}:{PORT}",
            "heartbeat_interval_ms": HEARTBEAT_INTERVAL_MS,
            "heartbeat_ttl_ms": HEARTBEAT_TTL_MS,
        }, indent=2)
    return f"Unknown resource URI: {uri_str}"


# ═════════════════════════════════════════════
# PROMPTS
# ═════════════════════════════════════════════

@server.list_prompts()
async def list_prompts() -> list[types.Prompt]:
    return [
        types.Prompt(
            name="handoff_summary",
            description="Standard format for the summary attached to a handoff.",
            arguments=[
                types.PromptArgument(name="from_role", description="Role handing off.", required=True),
                types.PromptArgument(name="to_role", description="Role receiving the task.", required=True),
                types.PromptArgument(name="task", description="The task content.", required=True),
            ],
        ),
    ]


@server.get_prompt()
async def get_prompt(name: str, arguments: dict[str, str] | None) -> types.GetPromptResult:
    args = arguments or {}
    if name == "handoff_summary":
        return types.GetPromptResult(
            description="Handoff summary.",
            messages=[types.PromptMessage(
                role="user",
                content=types.TextContent(type="text", text=(
                    f"You are the {args.get('from_role', 'agent')} handing this task to the "
                    f"{args.get('to_role', 'next role')}.\n\n**Task:** {args.get('task', '')}\n\n"
                    "Write a short summary: what was done, what is left, and anything the next role must check."
                )),
            )],
        )
    raise ValueError(f"Unknown prompt: {name}")
