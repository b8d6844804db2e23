"""
Team readiness evaluator.

``evaluate`` is a pure function of the chatroom's team config, its
participant records, and the current time. ``get_team_readiness`` is the
store-backed entry point and is where lapsed leases get recorded.
"""
import logging
from typing import Iterable, Optional, Union

import aiosqlite

from teamroom.coordination import liveness
from teamroom.db import crud
from teamroom.db.crud import now_ms
from teamroom.db.models import NO_TEAM, Chatroom, NoTeam, Participant, ParticipantInfo, TeamReadiness
from teamroom.roles import role_key

logger = logging.getLogger(__name__)


def evaluate(
    chatroom: Chatroom,
    participants: Iterable[Participant],
    now: int,
) -> Union[TeamReadiness, NoTeam]:
    """Partition the expected roles into present, missing and expired.

    A role with a record is present. A present role is also expired when its
    record is in a dead state or its lease lapsed before ``now``. A role with
    no record is missing. Missing and expired never overlap.
    """
    if not chatroom.has_team:
        return NO_TEAM

    by_key = {role_key(p.role): p for p in participants}
    expected = list(chatroom.team_roles)
    present: list[str] = []
    missing: list[str] = []
    expired: list[str] = []
    infos: list[ParticipantInfo] = []

    for role in expected:
        participant = by_key.get(role_key(role))
        if participant is None:
            missing.append(role)
            continue
        present.append(role)
        lapsed = participant.is_expired or participant.lease_lapsed(now)
        if lapsed:
            expired.append(role)
        infos.append(ParticipantInfo(
            role=participant.role,
            status=participant.status,
            agent_status=participant.agent_status,
            ready_until=participant.ready_until,
            is_expired=lapsed,
        ))

    return TeamReadiness(
        is_ready=not missing and not expired,
        team_id=chatroom.team_id,
        team_name=chatroom.team_name,
        expected_roles=expected,
        present_roles=present,
        missing_roles=missing,
        expired_roles=expired,
        participants=infos,
    )


async def get_team_readiness(
    db: aiosqlite.Connection,
    chatroom_id: str,
    now: Optional[int] = None,
) -> Union[TeamReadiness, NoTeam]:
    now = now if now is not None else now_ms()
    chatroom = await crud.chatroom_require(db, chatroom_id)
    if not chatroom.has_team:
        return NO_TEAM
    marked = await liveness.expire_stale(db, chatroom_id, now)
    if marked:
        logger.info(f"Readiness check marked {marked} dead in chatroom {chatroom_id}")
    participants = await liveness.participant_list(db, chatroom_id)
    return evaluate(chatroom, participants, now)


def are_all_agents_ready(participants: Iterable[Participant]) -> bool:
    """True when no participant is in the middle of a task."""
    return not any(p.agent_status == "working" for p in participants)
