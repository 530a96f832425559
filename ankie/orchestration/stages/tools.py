# ankie/orchestration/stages/tools.py

import asyncio
import json
import logging
from typing import Any, Dict, List

from langchain_core.messages import ToolMessage
from langchain_core.runnables import RunnableConfig

from ankie.orchestration.schema import ActionRequest, AgentConfig, HumanInterrupt
from ankie.orchestration.session_state import ExecutionState
from ankie.orchestration.stages.stage_base import BaseNode
from ankie.orchestration.transcript import TranscriptWriter, active_messages, open_tool_calls, split_calls

_log = logging.getLogger(__name__)


def route_from_tools(state: ExecutionState) -> str:
    if state.get("pending_approval"):
        return "approval"
    _, delegations = split_calls(open_tool_calls(active_messages(state)))
    return "router" if delegations else "agent"


def _render(result: Any) -> str:
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(result)


class ToolsNode(BaseNode):
    """
    Executes the open (non-delegation) tool calls of the active transcript in parallel.

    A call to an approval-gated tool that no human has cleared yet is not executed:
    the node records it as `pending_approval` and routes to the approval stage.
    """

    name = "tools"

    def _gate(self, state: ExecutionState, agent: AgentConfig, calls: List[Dict[str, Any]]) -> Dict[str, Any]:
        approved = set(state.get("approved_call_ids") or [])
        for tc in calls:
            if tc["id"] in approved or not self.deps.tools.requires_approval(tc["name"]):
                continue
            risk = self.deps.tools.risk_for(tc["name"])
            request = HumanInterrupt(
                action_request=ActionRequest(action=tc["name"], args=dict(tc["args"])),
                config=risk.interrupt_config(),
                description=risk.description or f"Run {tc['name']}",
                risk_level=risk.risk_level,
                execution_id=state.get("execution_id", ""),
                tool_call_id=tc["id"],
                agent_id=agent.id,
            )
            _log.info("Tool %s (%s risk) requires approval; pausing.", tc["name"], risk.risk_level)
            return request.model_dump()
        return {}

    async def _run_one(self, agent: AgentConfig, tc: Dict[str, Any], config: RunnableConfig) -> ToolMessage:
        name = tc["name"]
        tool = self.deps.tools.get(name)
        if tool is None or name not in agent.tools:
            _log.warning("Agent %s requested unavailable tool %s.", agent.id, name)
            return ToolMessage(
                content=f"ERROR: tool '{name}' is not available to {agent.name}.",
                tool_call_id=tc["id"], name=name, status="error",
            )
        try:
            result = await tool.ainvoke(tc["args"], config=config)
        except Exception as exc:
            _log.warning("Tool %s failed: %s", name, exc)
            return ToolMessage(content=f"ERROR: {exc}", tool_call_id=tc["id"], name=name, status="error")
        return ToolMessage(content=_render(result), tool_call_id=tc["id"], name=name)

    async def __call__(self, state: ExecutionState, config: RunnableConfig) -> Dict[str, Any]:
        agent = self._agent(state, config)
        calls, _ = split_calls(open_tool_calls(active_messages(state)))

        pending = self._gate(state, agent, calls)
        if pending:
            return {
                "pending_approval": pending,
                "cursor": self._cursor(agent, decision="approval_required", tool_names=[pending["action_request"]["action"]]),
            }

        _log.info("Executing %d tool call(s) for %s.", len(calls), agent.id)
        results = await asyncio.gather(*(self._run_one(agent, tc, config) for tc in calls))

        writer = TranscriptWriter(state)
        for msg in results:
            writer.append(msg)
        update = writer.update()
        update["cursor"] = self._cursor(agent, decision="executed", tool_names=[tc["name"] for tc in calls])
        return update
