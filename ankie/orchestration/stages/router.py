# ankie/orchestration/stages/router.py

import logging
from typing import Any, Dict

from langchain_core.runnables import RunnableConfig

from ankie.orchestration.session_state import ExecutionState
from ankie.orchestration.stages.stage_base import BaseNode
from ankie.orchestration.transcript import active_messages, open_tool_calls, split_calls

_log = logging.getLogger(__name__)


def route_from_router(state: ExecutionState) -> str:
    """'delegation' when the active transcript holds an open hand-off, else 'agent'."""
    _, delegations = split_calls(open_tool_calls(active_messages(state)))
    return "delegation" if delegations else "agent"


class RouterNode(BaseNode):
    """Entry point of every pass: decides between a hand-off and the acting agent."""

    name = "router"

    async def __call__(self, state: ExecutionState, config: RunnableConfig) -> Dict[str, Any]:
        agent = self._agent(state, config)
        decision = route_from_router(state)
        _log.debug("Router: agent=%s -> %s", agent.id, decision)
        return {"cursor": self._cursor(agent, decision=decision)}
