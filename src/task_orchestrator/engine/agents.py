"""Agent registry: which worker identity holds which task.

Records are created lazily the first time a task is dispatched to an agent id
and are never removed, so ``completed_tasks`` doubles as a per-agent audit
trail.
"""

from __future__ import annotations

import time
from typing import Callable, Optional

from ..utils import _now, _to_base36
from .model import AgentAssignment


def _epoch_ms() -> int:
    return int(time.time() * 1000)


class AgentRegistry:
    def __init__(
        self,
        agents: dict[str, AgentAssignment],
        clock_ms: Callable[[], int] = _epoch_ms,
    ) -> None:
        self.agents = agents
        self._clock_ms = clock_ms

    def get(self, agent_id: str) -> Optional[AgentAssignment]:
        return self.agents.get(agent_id)

    def generate_agent_id(self, agent_track: str) -> str:
        """Return ``agent-<track>-<base36 epoch ms>``, skipping ids held by a busy agent."""
        stamp = self._clock_ms()
        while True:
            candidate = f"agent-{agent_track}-{_to_base36(stamp)}"
            existing = self.agents.get(candidate)
            if existing is None or existing.current_task is None:
                return candidate
            stamp += 1

    def record_dispatch(self, agent_id: str, agent_track: str, task_id: str) -> AgentAssignment:
        agent = self.agents.get(agent_id)
        if agent is None:
            agent = AgentAssignment(agent_id=agent_id, agent_track=agent_track)
            self.agents[agent_id] = agent
        agent.current_task = task_id
        agent.last_activity_at = _now()
        return agent

    def record_completion(self, agent_id: Optional[str], task_id: str) -> bool:
        """Move *task_id* into the agent's completed list; False if the agent is unknown."""
        if not agent_id:
            return False
        agent = self.agents.get(agent_id)
        if agent is None:
            return False
        agent.completed_tasks.append(task_id)
        if agent.current_task == task_id:
            agent.current_task = None
        agent.last_activity_at = _now()
        return True

    def release(self, agent_id: Optional[str], task_id: str) -> bool:
        """Clear the agent's current task if it still points at *task_id*."""
        if not agent_id:
            return False
        agent = self.agents.get(agent_id)
        if agent is None or agent.current_task != task_id:
            return False
        agent.current_task = None
        agent.last_activity_at = _now()
        return True

    def holders_of(self, task_id: str) -> list[str]:
        return [a.agent_id for a in self.agents.values() if a.current_task == task_id]

    def touch(self, agent_id: Optional[str]) -> None:
        if agent_id and agent_id in self.agents:
            self.agents[agent_id].last_activity_at = _now()

    def busy(self) -> list[AgentAssignment]:
        return [a for a in self.agents.values() if a.current_task is not None]
