# ankie/orchestration/stages/delegation.py

import logging
import uuid
from typing import Any, Dict

from langchain_core.messages import AIMessage, HumanMessage, ToolMessage
from langchain_core.runnables import RunnableConfig

from ankie.orchestration.errors import AgentNotFoundError, DelegationDepthExceededError
from ankie.orchestration.session_state import DelegationFrame, ExecutionState
from ankie.orchestration.stages.stage_base import BaseNode, run_user_id
from ankie.orchestration.transcript import (
    TranscriptWriter,
    active_messages,
    delegation_path,
    open_tool_calls,
    split_calls,
)

_log = logging.getLogger(__name__)


def route_from_delegation(state: ExecutionState) -> str:
    return "finalize" if state.get("failure") else "router"


class DelegationNode(BaseNode):
    """
    Opens a hand-off for the first open `delegate_to_*` call of the active transcript.

    Hops are counted per turn; the hop that would exceed `max_hops` ends the turn with a
    delegation_depth_exceeded failure instead of starting another specialist.
    """

    name = "delegation"

    async def __call__(self, state: ExecutionState, config: RunnableConfig) -> Dict[str, Any]:
        agent = self._agent(state, config)
        _, delegations = split_calls(open_tool_calls(active_messages(state)))
        tc = delegations[0]
        writer = TranscriptWriter(state)

        try:
            target = self.deps.registry.resolve_delegation_tool(tc["name"], run_user_id(config))
        except AgentNotFoundError as exc:
            _log.warning("Agent %s delegated to an unknown agent via %s.", agent.id, tc["name"])
            writer.append(ToolMessage(content=f"ERROR: {exc}", tool_call_id=tc["id"], name=tc["name"], status="error"))
            update = writer.update()
            update["cursor"] = self._cursor(agent, decision="unknown_target")
            return update

        hops = int(state.get("delegation_hops") or 0) + 1
        if hops > self.deps.max_hops:
            exc = DelegationDepthExceededError(delegation_path(state) + [target.id], self.deps.max_hops)
            _log.error("%s", exc)
            writer.unwind("Delegation stopped: too many hand-offs in this request.")
            writer.append(AIMessage(content=exc.user_message))
            update = writer.update()
            update["failure"] = {
                "code": exc.code, "message": exc.user_message, "detail": str(exc), "retryable": exc.retryable,
            }
            update["cursor"] = self._cursor(agent, decision="depth_exceeded", target_agent_id=target.id)
            return update

        task = str(tc["args"].get("task") or "").strip()
        context = str(tc["args"].get("context") or "").strip()
        brief = task if not context else f"{task}\n\nContext: {context}"

        frame: DelegationFrame = {
            "agent_id": target.id,
            "from_agent_id": agent.id,
            "call_id": tc["id"],
            "tool_name": tc["name"],
            "task": task,
            "messages": [HumanMessage(content=brief or "Continue the delegated task.", id=str(uuid.uuid4()))],
        }
        writer.stack.append(frame)
        _log.info("Delegation hop %d: %s -> %s", hops, agent.id, target.id)

        update = writer.update()
        update["delegation_hops"] = hops
        update["cursor"] = self._cursor(
            agent, decision="delegate", target_agent_id=target.id, target_agent_name=target.name,
        )
        return update
