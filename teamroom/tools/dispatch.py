"""
Tool dispatch layer for the TeamRoom MCP server.

Every handler receives the shared DB connection and the raw tool arguments
and returns a single JSON TextContent. Coordination failures come back as a
JSON error payload, never as a protocol-level exception.
"""
import json
import logging
from typing import Any, Optional

import mcp.types as types

from teamroom.config import HEARTBEAT_INTERVAL_MS, HOST, PORT, TEAMROOM_VERSION
from teamroom.coordination import liveness, readiness, router, tasks
from teamroom.db import crud
from teamroom.errors import CoordinationError, error_payload
from teamroom import mcp_server

logger = logging.getLogger(__name__)


def _json(payload: Any) -> list[types.TextContent]:
    return [types.TextContent(type="text", text=json.dumps(payload))]


def _session(arguments: dict[str, Any]) -> Optional[str]:
    return arguments.get("session_id") or mcp_server.get_default_session()


async def _authorize_chatroom(db, arguments: dict[str, Any]) -> str:
    chatroom_id = arguments["chatroom_id"]
    await crud.require_chatroom_access(db, _session(arguments), chatroom_id)
    return chatroom_id


async def _authorize_task(db, arguments: dict[str, Any]):
    task = await tasks.task_require(db, arguments["task_id"])
    await crud.require_chatroom_access(db, _session(arguments), task.chatroom_id)
    return task


def _classification_metadata(arguments: dict[str, Any]) -> dict[str, Any]:
    return {
        "title": arguments.get("title"),
        "description": arguments.get("description"),
        "tech_specs": arguments.get("tech_specs"),
    }


async def handle_server_info(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    return _json({
        "name": "TeamRoom",
        "version": TEAMROOM_VERSION,
        "endpoint": f"http://{HOST}:{PORT}",
        "heartbeat_interval_ms": HEARTBEAT_INTERVAL_MS,
    })


async def handle_join(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    chatroom_id = await _authorize_chatroom(db, arguments)
    participant = await liveness.join(
        db, chatroom_id, arguments["role"], connection_id=mcp_server.get_connection_id(),
    )
    next_task = await tasks.next_task_for_role(db, chatroom_id, participant.role)
    return _json({
        "ok": True,
        "participant": liveness.participant_to_dict(participant),
        "heartbeat_interval_ms": HEARTBEAT_INTERVAL_MS,
        "next_task": tasks.task_to_dict(next_task) if next_task else None,
    })


async def handle_heartbeat(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    chatroom_id = await _authorize_chatroom(db, arguments)
    participant = await liveness.heartbeat(
        db, chatroom_id, arguments["role"], connection_id=mcp_server.get_connection_id(),
    )
    return _json({"ok": True, "participant": liveness.participant_to_dict(participant)})


async def handle_get_next_task(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    chatroom_id = await _authorize_chatroom(db, arguments)
    task = await tasks.next_task_for_role(db, chatroom_id, arguments["role"])
    return _json({"task": tasks.task_to_dict(task) if task else None})


async def handle_task_list(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    chatroom_id = await _authorize_chatroom(db, arguments)
    items = await tasks.task_list(
        db, chatroom_id, status=arguments.get("status"), limit=arguments.get("limit", tasks.TASK_LIST_MAX),
    )
    return _json([tasks.task_to_dict(t) for t in items])


async def handle_task_started(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    task = await _authorize_task(db, arguments)
    task = await router.start_task(
        db, task.id, arguments["role"],
        kind=arguments.get("classification"),
        metadata=_classification_metadata(arguments),
    )
    return _json({"ok": True, "task": tasks.task_to_dict(task)})


async def handle_classify(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    task = await _authorize_task(db, arguments)
    task = await router.classify(
        db, task.id, arguments["role"], arguments["classification"], _classification_metadata(arguments),
    )
    return _json({"ok": True, "task": tasks.task_to_dict(task)})


async def handle_handoff(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    task = await _authorize_task(db, arguments)
    task = await router.handoff(
        db, task.id, arguments["role"], arguments["next_role"], summary=arguments.get("summary"),
    )
    return _json({"ok": True, "task": tasks.task_to_dict(task)})


async def handle_defer_task(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    task = await _authorize_task(db, arguments)
    task = await tasks.move_to_backlog(db, task.id, arguments["role"], summary=arguments.get("reason"))
    sender = await liveness.participant_get(db, task.chatroom_id, arguments["role"])
    if sender is not None and sender.agent_status == "working":
        await liveness.mark_ready(db, task.chatroom_id, arguments["role"])
    return _json({"ok": True, "task": tasks.task_to_dict(task)})


async def handle_allowed_handoff_roles(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    task = await _authorize_task(db, arguments)
    return _json(await router.allowed_handoff_roles(db, task.id, arguments["role"]))


async def handle_team_readiness(db, arguments: dict[str, Any]) -> list[types.TextContent]:
    chatroom_id = await _authorize_chatroom(db, arguments)
    result = await readiness.get_team_readiness(db, chatroom_id)
    return _json(result.to_dict())


TOOLS_DISPATCH = {
    "server_info": handle_server_info,
    "join": handle_join,
    "heartbeat": handle_heartbeat,
    "get_next_task": handle_get_next_task,
    "task_list": handle_task_list,
    "task_started": handle_task_started,
    "classify": handle_classify,
    "handoff": handle_handoff,
    "defer_task": handle_defer_task,
    "allowed_handoff_roles": handle_allowed_handoff_roles,
    "team_readiness": handle_team_readiness,
}


async def dispatch_tool(db, name: str, arguments: dict[str, Any]) -> list[types.Content]:
    handler = TOOLS_DISPATCH.get(name)
    if handler is None:
        return _json({"error": "UNKNOWN_TOOL", "message": f"Unknown tool: {name}"})
    try:
        return await handler(db, arguments)
    except CoordinationError as e:
        logger.info(f"[{name}] {e.code}: {e.message}")
        return _json(error_payload(e, retry_hint="Please retry."))
    except KeyError as e:
        return _json({"error": "MISSING_ARGUMENT", "message": f"Missing required argument: {e.args[0]}"})
