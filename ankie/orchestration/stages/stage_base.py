# ankie/orchestration/stages/stage_base.py

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, NamedTuple, Optional

from langchain_core.runnables import RunnableConfig

from ankie.backends.model_gateway import ModelFactory
from ankie.orchestration.adapters.tool_registry import ToolRegistry
from ankie.orchestration.leases import CancellationRegistry
from ankie.orchestration.registry import AgentRegistry
from ankie.orchestration.schema import AgentConfig
from ankie.orchestration.session_state import Cursor, ExecutionState
from ankie.orchestration.transcript import active_agent_id

_log = logging.getLogger(__name__)

INSTRUCTIONS_DIR = Path(__file__).resolve().parents[1] / "instructions"


class NodeDeps(NamedTuple):
    """Process-scoped collaborators shared by every node of every compiled graph."""

    registry: AgentRegistry
    tools: ToolRegistry
    models: ModelFactory
    cancellations: CancellationRegistry
    max_hops: int = 5


def run_user_id(config: Optional[RunnableConfig]) -> Optional[str]:
    return ((config or {}).get("configurable") or {}).get("user_id")


class BaseNode(ABC):
    """
    Abstract base for orchestration stages.

    - Holds the shared collaborators
    - Resolves the agent acting on the current transcript
    - Loads and caches prompt templates
    """

    name = "base"

    def __init__(self, deps: NodeDeps) -> None:
        self.deps = deps
        self._prompts: Dict[str, str] = {}

    def _load_prompt(self, template_name: str) -> str:
        """
        Load a prompt template by name from the orchestration instructions folder.
        """
        cached = self._prompts.get(template_name)
        if cached is not None:
            return cached

        path = INSTRUCTIONS_DIR / template_name
        _log.debug("Loading prompt template: %s", path)
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            _log.error("Prompt template not found: %s", path)
            raise

        self._prompts[template_name] = text
        return text

    def _agent(self, state: ExecutionState, config: Optional[RunnableConfig]) -> AgentConfig:
        """The agent whose transcript is active (top delegation frame, else the root agent)."""
        return self.deps.registry.get(active_agent_id(state), run_user_id(config))

    def _cursor(self, agent: AgentConfig, **extra: Any) -> Cursor:
        cursor: Cursor = {"node": self.name, "agent_id": agent.id, "agent_name": agent.name}
        cursor.update(extra)  # type: ignore[typeddict-item]
        return cursor

    @abstractmethod
    async def __call__(self, state: ExecutionState, config: RunnableConfig) -> Dict[str, Any]:
        """
        Process the execution state and return a partial state update.
        Concrete stages must implement this.
        """
        raise NotImplementedError("Stages must implement __call__")
