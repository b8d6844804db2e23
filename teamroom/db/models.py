"""
Data models (dataclasses) for TeamRoom.
These are plain Python objects used across the DB, coordination, MCP, and API layers.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

# ─────────────────────────────────────────────
# Status vocabularies
# ─────────────────────────────────────────────

CHATROOM_STATUSES = ("active", "interrupted", "completed")

TASK_STATUSES = ("pending", "in_progress", "queued", "backlog", "completed", "cancelled")
TERMINAL_TASK_STATUSES = frozenset({"completed", "cancelled"})
ACTIVE_TASK_STATUSES = frozenset({"pending", "in_progress", "queued", "backlog"})

# Agent status FSM.
#   dead states (no heartbeat): offline, dead, dead_failed_revive
#   alive states (heartbeat):   ready, restarting, working
AGENT_STATUSES = ("offline", "dead", "dead_failed_revive", "ready", "restarting", "working")
DEAD_AGENT_STATUSES = frozenset({"offline", "dead", "dead_failed_revive"})
ALIVE_AGENT_STATUSES = frozenset({"ready", "restarting", "working"})

CLASSIFICATION_KINDS = ("question", "new_feature", "follow_up")


def legacy_status(agent_status: str) -> str:
    """Coarse active|waiting view kept for older consumers."""
    return "active" if agent_status == "working" else "waiting"


# ─────────────────────────────────────────────
# Classification (tagged variant)
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class Question:
    kind = "question"


@dataclass(frozen=True)
class FollowUp:
    kind = "follow_up"


@dataclass(frozen=True)
class NewFeature:
    title: str
    description: str
    tech_specs: str
    kind = "new_feature"


Classification = Union[Question, FollowUp, NewFeature]


# ─────────────────────────────────────────────
# Persisted rows
# ─────────────────────────────────────────────

@dataclass
class User:
    id: str
    name: str
    created_at: datetime


@dataclass
class Session:
    id: str
    user_id: str
    is_active: bool
    created_at: datetime
    expires_at: Optional[datetime]


@dataclass
class Chatroom:
    id: str
    owner_id: str
    name: Optional[str]
    status: str                       # active | interrupted | completed
    team_id: Optional[str]
    team_name: Optional[str]
    team_roles: Optional[list[str]]   # None = legacy chatroom without a team
    team_entry_point: Optional[str]
    next_queue_position: Optional[int]
    created_at: datetime
    last_activity_at: Optional[datetime] = None

    @property
    def entry_point(self) -> Optional[str]:
        if self.team_entry_point:
            return self.team_entry_point
        if self.team_roles:
            return self.team_roles[0]
        return None

    @property
    def has_team(self) -> bool:
        return bool(self.team_roles)


@dataclass
class Participant:
    id: str
    chatroom_id: str
    role: str
    agent_status: str                 # see AGENT_STATUSES
    ready_until: Optional[int]        # epoch ms lease horizon
    restart_attempts: int
    connection_id: Optional[str]
    status_changed_at: datetime

    @property
    def status(self) -> str:
        return legacy_status(self.agent_status)

    @property
    def is_expired(self) -> bool:
        """True when the record itself says the agent is not alive."""
        return self.agent_status in DEAD_AGENT_STATUSES

    def lease_lapsed(self, now_ms: int) -> bool:
        return self.ready_until is not None and now_ms > self.ready_until


@dataclass
class Task:
    id: str
    chatroom_id: str
    created_by: str
    content: str
    status: str                       # see TASK_STATUSES
    queue_position: int
    assigned_to: Optional[str]
    classification: Optional[Classification]
    origin_task_id: Optional[str]
    version: int                      # bumped on every status write (CAS token)
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_TASK_STATUSES


@dataclass
class ParticipantTransition:
    chatroom_id: str
    role: str
    from_status: Optional[str]
    to_status: str
    reason: str
    created_at: datetime


@dataclass
class TaskTransition:
    task_id: str
    from_status: str
    to_status: str
    from_role: Optional[str]
    to_role: Optional[str]
    summary: Optional[str]
    created_at: datetime


# ─────────────────────────────────────────────
# Derived views (never stored)
# ─────────────────────────────────────────────

@dataclass
class ParticipantInfo:
    role: str
    status: str                       # legacy active | waiting
    agent_status: str
    ready_until: Optional[int]
    is_expired: bool


@dataclass
class TeamReadiness:
    is_ready: bool
    team_id: Optional[str]
    team_name: Optional[str]
    expected_roles: list[str]
    present_roles: list[str]
    missing_roles: list[str]
    expired_roles: list[str]
    participants: list[ParticipantInfo] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_ready": self.is_ready,
            "team_id": self.team_id,
            "team_name": self.team_name,
            "expected_roles": self.expected_roles,
            "present_roles": self.present_roles,
            "missing_roles": self.missing_roles,
            "expired_roles": self.expired_roles,
            "participants": [
                {"role": p.role, "status": p.status, "agent_status": p.agent_status,
                 "ready_until": p.ready_until, "is_expired": p.is_expired}
                for p in self.participants
            ],
        }


class NoTeam:
    """Readiness result for chatrooms without a configured team.

    Distinct from a TeamReadiness with is_ready=False.
    """

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NO_TEAM"

    def to_dict(self) -> dict:
        return {"no_team": True}


NO_TEAM = NoTeam()


# ─────────────────────────────────────────────
# Machines / auto-restart
# ─────────────────────────────────────────────

@dataclass
class AgentConfig:
    machine_id: str
    hostname: str
    role: str
    harness: str                      # opencode | claude | cursor
    working_dir: str
    model: Optional[str]
    daemon_connected: bool
    updated_at: Optional[datetime] = None


@dataclass
class MachineCommand:
    id: str
    machine_id: str
    type: str                         # start-agent | stop-agent
    payload: dict
    status: str                       # pending | processing | completed | failed
    created_at: datetime
    processed_at: Optional[datetime] = None
    result: Optional[str] = None


@dataclass
class AutoRestartResult:
    restarted: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    # role -> reason for roles that were skipped because something went wrong
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {"restarted": self.restarted, "skipped": self.skipped, "failed": self.failed}


@dataclass
class Event:
    """
    Transient notification row used to fan-out SSE events to subscribers.
    Rows are written by any mutating operation and consumed by the SSE pump.
    """
    id: int
    event_type: str      # task.created | task.transition | participant.status | chatroom.status | ...
    chatroom_id: Optional[str]
    payload: str         # JSON string
    created_at: datetime
