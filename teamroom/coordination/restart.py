"""
Auto-restart coordinator.

When the team is not ready, restart every offline role that has a known agent
config on a machine whose daemon is connected: stop the stale process, wait a
moment, start it again. One role failing never stops the others; failures are
recorded in the result, not raised.
"""
import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, Protocol, Union

import aiosqlite

from teamroom.config import MAX_RESTART_ATTEMPTS, RESTART_COOLDOWN_SECONDS, RESTART_SETTLE_SECONDS
from teamroom.coordination import liveness
from teamroom.db.crud import now_ms
from teamroom.db.models import AgentConfig, AutoRestartResult, Chatroom, NoTeam, TeamReadiness
from teamroom.roles import dedupe_roles, role_key

logger = logging.getLogger(__name__)


class MachineControl(Protocol):
    async def send_command(self, machine_id: str, command_type: str, payload: dict) -> str:
        ...


class AutoRestartCoordinator:
    def __init__(
        self,
        machine_control: MachineControl,
        db: Optional[aiosqlite.Connection] = None,
        cooldown_seconds: float = RESTART_COOLDOWN_SECONDS,
        settle_seconds: float = RESTART_SETTLE_SECONDS,
        max_attempts: int = MAX_RESTART_ATTEMPTS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._control = machine_control
        self._db = db
        self._cooldown = cooldown_seconds
        self._settle = settle_seconds
        self._max_attempts = max_attempts
        self._clock = clock
        self._sleep = sleep
        # chatroom_id -> clock() of the last restart batch
        self._last_restart: dict[str, float] = {}

    def forget(self, chatroom_id: str) -> None:
        """Drop the cooldown bookkeeping of a chatroom that will not restart again."""
        self._last_restart.pop(chatroom_id, None)

    def offline_roles(self, readiness: Union[TeamReadiness, NoTeam, None]) -> list[str]:
        if not isinstance(readiness, TeamReadiness):
            return []
        return dedupe_roles([*readiness.expired_roles, *readiness.missing_roles])

    async def restart_offline(
        self,
        chatroom: Chatroom,
        readiness: Union[TeamReadiness, NoTeam, None],
        configs: list[AgentConfig],
    ) -> Optional[AutoRestartResult]:
        """Restart the chatroom's offline roles.

        Returns None when every role is online or a restart batch for this
        chatroom ran less than the cooldown ago.
        """
        roles = self.offline_roles(readiness)
        if not roles:
            return None

        now = self._clock()
        last = self._last_restart.get(chatroom.id)
        if last is not None and now - last < self._cooldown:
            logger.debug(f"Auto-restart for chatroom {chatroom.id} suppressed by cooldown")
            return None
        self._last_restart[chatroom.id] = now

        result = AutoRestartResult()
        for role in roles:
            candidates = [c for c in configs if role_key(c.role) == role]
            config = next((c for c in candidates if c.daemon_connected), None)
            if config is None:
                reason = "daemon not connected" if candidates else "no agent config"
                logger.info(f"Auto-restart skipped role={role} chatroom={chatroom.id}: {reason}")
                result.skipped.append(role)
                continue

            try:
                if not await self._count_attempt(chatroom.id, config.role):
                    result.skipped.append(role)
                    result.failed[role] = "restart attempts exhausted"
                    continue
                await self._control.send_command(
                    config.machine_id, "stop-agent", {"chatroom_id": chatroom.id, "role": config.role},
                )
                await self._sleep(self._settle)
                await self._control.send_command(
                    config.machine_id, "start-agent", {
                        "chatroom_id": chatroom.id,
                        "role": config.role,
                        "model": config.model,
                        "agent_harness": config.harness,
                        "working_dir": config.working_dir,
                    },
                )
            except Exception as e:
                logger.error(f"Failed to restart agent for role '{role}' in chatroom {chatroom.id}: {e}")
                result.skipped.append(role)
                result.failed[role] = str(e)
                continue
            result.restarted.append(role)

        logger.info(
            f"Auto-restart chatroom={chatroom.id} restarted={result.restarted} skipped={result.skipped}"
        )
        return result

    async def _count_attempt(self, chatroom_id: str, role: str) -> bool:
        """Record a revive attempt. False once the role has given up."""
        if self._db is None:
            return True
        participant = await liveness.participant_get(self._db, chatroom_id, role)
        if participant is None or participant.agent_status == "offline":
            return True
        if participant.agent_status == "dead_failed_revive":
            return False
        if participant.agent_status in ("dead", "restarting") or participant.lease_lapsed(now_ms()):
            revived = await liveness.attempt_revive(self._db, chatroom_id, role, max_attempts=self._max_attempts)
            return revived.agent_status != "dead_failed_revive"
        return True
