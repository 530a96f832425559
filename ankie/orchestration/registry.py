# ankie/orchestration/registry.py

import logging
import re
import threading
from typing import Any, Dict, Iterable, List, Optional

from ankie.boot.load_settings import read_yaml, resolve_path
from ankie.orchestration.errors import AgentNotFoundError
from ankie.orchestration.schema import AgentConfig
from ankie.orchestration.transcript import DELEGATION_PREFIX

_log = logging.getLogger(__name__)


def delegation_tool_name(agent_id: str) -> str:
    """`delegate_to_{normalized id}`; e.g. 'astra-email' -> 'delegate_to_astra_email'."""
    return DELEGATION_PREFIX + re.sub(r"[^a-z0-9]+", "_", agent_id.lower())


def delegation_tool_schema(agent: AgentConfig) -> Dict[str, Any]:
    """OpenAI-style function schema the acting agent uses to hand work to `agent`."""
    summary = agent.description or f"Specialist agent {agent.name}."
    return {
        "type": "function",
        "function": {
            "name": delegation_tool_name(agent.id),
            "description": f"Delegate a task to {agent.name}. {summary}",
            "parameters": {
                "type": "object",
                "properties": {
                    "task": {"type": "string", "description": "What the specialist must do, self-contained."},
                    "context": {"type": "string", "description": "Relevant facts from the conversation."},
                },
                "required": ["task"],
            },
        },
    }


class AgentRegistry:
    """
    Owner of every AgentConfig the core can run.

    Static agents come from settings/agents.yaml; tenant agents are registered per user
    at runtime and are only visible to that user. Stored configs are never mutated.
    """

    def __init__(self, agents: Iterable[AgentConfig], supervisor_id: Optional[str] = None) -> None:
        self._static: Dict[str, AgentConfig] = {}
        for agent in agents:
            if agent.id in self._static:
                raise ValueError(f"Duplicate agent id '{agent.id}'.")
            self._static[agent.id] = agent
        self._user: Dict[str, Dict[str, AgentConfig]] = {}
        self._lock = threading.Lock()

        supervisors = [a.id for a in self._static.values() if a.is_supervisor]
        self.supervisor_id = supervisor_id or (supervisors[0] if supervisors else None)
        _log.info("Agent registry loaded %d agents (supervisor=%s).", len(self._static), self.supervisor_id)

    @classmethod
    def from_yaml(cls, path: str, supervisor_id: Optional[str] = None) -> "AgentRegistry":
        data = read_yaml(resolve_path(path))
        agents = [AgentConfig(**raw) for raw in data.get("agents") or []]
        return cls(agents, supervisor_id=supervisor_id)

    # ──────────────────────────────────────────────────────────────────────────
    # Lookup
    # ──────────────────────────────────────────────────────────────────────────
    def get(self, agent_id: str, user_id: Optional[str] = None) -> AgentConfig:
        if user_id is not None:
            agent = self._user.get(user_id, {}).get(agent_id)
            if agent is not None:
                return agent
        agent = self._static.get(agent_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        return agent

    def has(self, agent_id: str, user_id: Optional[str] = None) -> bool:
        try:
            self.get(agent_id, user_id)
            return True
        except AgentNotFoundError:
            return False

    def list_agents(self, user_id: Optional[str] = None) -> List[AgentConfig]:
        """Static agents followed by the tenant agents of `user_id`."""
        agents = list(self._static.values())
        if user_id is not None:
            agents.extend(self._user.get(user_id, {}).values())
        return agents

    def register_user_agent(self, user_id: str, agent: AgentConfig) -> None:
        if agent.id in self._static:
            raise ValueError(f"Agent id '{agent.id}' is reserved by a built-in agent.")
        with self._lock:
            self._user.setdefault(user_id, {})[agent.id] = agent
        _log.info("Registered agent %s for user %s.", agent.id, user_id)

    # ──────────────────────────────────────────────────────────────────────────
    # Delegation
    # ──────────────────────────────────────────────────────────────────────────
    def delegation_targets(self, agent: AgentConfig, user_id: Optional[str] = None) -> List[AgentConfig]:
        """
        Agents `agent` may hand work to.

        - explicit `delegates` list wins when present
        - the supervisor reaches every top-level specialist
        - any agent reaches its own sub-agents
        """
        pool = self.list_agents(user_id)
        if agent.delegates is not None:
            wanted = set(agent.delegates)
            return [a for a in pool if a.id in wanted and a.id != agent.id]

        targets = []
        for candidate in pool:
            if candidate.id == agent.id or candidate.is_supervisor:
                continue
            if candidate.parent_agent_id == agent.id:
                targets.append(candidate)
            elif agent.is_supervisor and candidate.parent_agent_id is None:
                targets.append(candidate)
        return targets

    def resolve_delegation_tool(self, tool_name: str, user_id: Optional[str] = None) -> AgentConfig:
        for agent in self.list_agents(user_id):
            if delegation_tool_name(agent.id) == tool_name:
                return agent
        raise AgentNotFoundError(tool_name[len(DELEGATION_PREFIX):])
