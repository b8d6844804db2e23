"""
HTTP API tests. Run against the FastAPI app in-process with TestClient.
"""
from fastapi.testclient import TestClient

from teamroom.main import app


def _user(client: TestClient, name: str = "owner") -> dict:
    resp = client.post("/api/users", json={"name": name})
    assert resp.status_code == 201
    return {"X-Session-Id": resp.json()["session_id"]}


def _chatroom(client: TestClient, headers: dict, roles=("planner", "builder", "reviewer")) -> str:
    resp = client.post("/api/chatrooms", json={"name": "demo", "team_roles": list(roles)}, headers=headers)
    assert resp.status_code == 201
    return resp.json()["id"]


def test_health():
    with TestClient(app) as client:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"


def test_requests_without_session_are_rejected():
    with TestClient(app) as client:
        resp = client.get("/api/chatrooms")
        assert resp.status_code == 401
        assert resp.json()["error"] == "AUTH_FAILED"

        headers = _user(client)
        room = _chatroom(client, headers)
        assert client.get(f"/api/chatrooms/{room}/tasks").status_code == 401


def test_other_users_cannot_touch_a_chatroom():
    with TestClient(app) as client:
        owner = _user(client, "owner")
        intruder = _user(client, "intruder")
        room = _chatroom(client, owner)

        resp = client.get(f"/api/chatrooms/{room}", headers=intruder)
        assert resp.status_code == 403
        resp = client.post(f"/api/chatrooms/{room}/tasks", json={"content": "x"}, headers=intruder)
        assert resp.status_code == 403

        task = client.post(f"/api/chatrooms/{room}/tasks", json={"content": "x"}, headers=owner).json()
        assert client.post(f"/api/tasks/{task['task_id']}/cancel", headers=intruder).status_code == 403


def test_invalid_team_is_rejected():
    with TestClient(app) as client:
        headers = _user(client)
        resp = client.post(
            "/api/chatrooms", json={"team_roles": ["builder"], "team_entry_point": "planner"}, headers=headers,
        )
        assert resp.status_code == 422


def test_task_lifecycle_over_http():
    with TestClient(app) as client:
        headers = _user(client)
        room = _chatroom(client, headers)

        created = client.post(f"/api/chatrooms/{room}/tasks", json={"content": "first"}, headers=headers)
        assert created.status_code == 201
        first = created.json()
        assert (first["status"], first["queue_position"], first["assigned_to"]) == ("pending", 1, "planner")

        backlog = client.post(
            f"/api/chatrooms/{room}/tasks", json={"content": "later", "is_backlog": True}, headers=headers,
        ).json()
        assert (backlog["status"], backlog["queue_position"]) == ("backlog", 2)

        edited = client.patch(f"/api/tasks/{backlog['task_id']}", json={"content": "later, edited"}, headers=headers)
        assert edited.json()["content"] == "later, edited"

        queued = client.post(f"/api/tasks/{backlog['task_id']}/move-to-queue", headers=headers).json()
        assert (queued["status"], queued["assigned_to"]) == ("queued", "planner")

        listed = client.get(f"/api/chatrooms/{room}/tasks", params={"status": "active"}, headers=headers).json()
        assert [t["task_id"] for t in listed] == [first["task_id"], backlog["task_id"]]

        cancelled = client.post(f"/api/tasks/{first['task_id']}/cancel", headers=headers)
        assert cancelled.json()["status"] == "cancelled"
        again = client.post(f"/api/tasks/{first['task_id']}/cancel", headers=headers)
        assert again.status_code == 422
        assert again.json()["error"] == "ILLEGAL_TRANSITION"

        history = client.get(f"/api/tasks/{first['task_id']}/history", headers=headers).json()
        assert [h["to_status"] for h in history] == ["cancelled"]

        detail = client.get(f"/api/chatrooms/{room}", headers=headers).json()
        assert detail["task_counts"]["cancelled"] == 1
        assert detail["task_counts"]["queued"] == 1


def test_unknown_task_is_404():
    with TestClient(app) as client:
        headers = _user(client)
        resp = client.get("/api/tasks/does-not-exist", headers=headers)
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"


def test_heartbeat_and_readiness():
    with TestClient(app) as client:
        headers = _user(client)
        room = _chatroom(client, headers, roles=("planner", "builder"))

        before = client.get(f"/api/chatrooms/{room}/readiness", headers=headers).json()
        assert before["is_ready"] is False
        assert before["missing_roles"] == ["planner", "builder"]

        for role in ("planner", "builder"):
            hb = client.post(f"/api/chatrooms/{room}/participants/{role}/heartbeat", headers=headers)
            assert hb.json()["agent_status"] == "ready"

        after = client.get(f"/api/chatrooms/{room}/readiness", headers=headers).json()
        assert after["is_ready"] is True
        assert after["present_roles"] == ["planner", "builder"]

        participants = client.get(f"/api/chatrooms/{room}/participants", headers=headers).json()
        assert participants["all_agents_ready"] is True

        reset = client.post(f"/api/chatrooms/{room}/participants/builder/reset", headers=headers).json()
        assert reset["agent_status"] == "offline"
        history = client.get(
            f"/api/chatrooms/{room}/participants/history", params={"role": "builder"}, headers=headers,
        ).json()
        assert [h["to_status"] for h in history][-1] == "offline"


def test_chatroom_without_team_reports_no_team():
    with TestClient(app) as client:
        headers = _user(client)
        room = client.post("/api/chatrooms", json={"name": "legacy"}, headers=headers).json()["id"]
        resp = client.get(f"/api/chatrooms/{room}/readiness", headers=headers)
        assert resp.json() == {"no_team": True}
        restart = client.post(f"/api/chatrooms/{room}/restart-offline", headers=headers)
        assert restart.json() == {"result": None}


def test_machine_command_flow():
    with TestClient(app) as client:
        headers = _user(client)
        room = _chatroom(client, headers, roles=("builder",))

        reg = client.post("/api/machines", json={"machine_id": "m-api", "hostname": "box"}, headers=headers)
        assert reg.json() == {"machine_id": "m-api", "is_new": True}
        client.post("/api/machines/m-api/daemon", json={"connected": True}, headers=headers)
        put = client.put(
            "/api/machines/m-api/configs",
            json={"chatroom_id": room, "role": "builder", "harness": "claude", "working_dir": "/w"},
            headers=headers,
        )
        assert put.json() == {"ok": True}

        configs = client.get(f"/api/chatrooms/{room}/agent-configs", headers=headers).json()
        assert [c["role"] for c in configs] == ["builder"]

        result = client.post(f"/api/chatrooms/{room}/restart-offline", headers=headers).json()["result"]
        assert result["restarted"] == ["builder"]

        commands = client.get("/api/machines/m-api/commands", headers=headers).json()
        assert [c["type"] for c in commands] == ["stop-agent", "start-agent"]
        ack = client.post(
            f"/api/commands/{commands[0]['command_id']}/ack", json={"status": "completed"}, headers=headers,
        )
        assert ack.json()["status"] == "completed"

        other = _user(client, "other")
        stolen = client.post("/api/machines", json={"machine_id": "m-api", "hostname": "box"}, headers=other)
        assert stolen.status_code == 403


def test_system_config_is_readable():
    with TestClient(app) as client:
        cfg = client.get("/api/system/config").json()
        assert cfg["HEARTBEAT_TTL_MS"] > cfg["HEARTBEAT_INTERVAL_MS"]
        assert cfg["RESTART_SETTLE_SECONDS"] == 0
