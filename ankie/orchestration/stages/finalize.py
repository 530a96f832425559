# ankie/orchestration/stages/finalize.py

import logging
from typing import Any, Dict

from langchain_core.messages import ToolMessage
from langchain_core.runnables import RunnableConfig

from ankie.orchestration.session_state import ExecutionState
from ankie.orchestration.stages.stage_base import BaseNode, run_user_id
from ankie.orchestration.transcript import TranscriptWriter, last_ai_message, message_text

_log = logging.getLogger(__name__)

EMPTY_REPORT = "The specialist finished without a written report."


def route_from_finalize(state: ExecutionState) -> str:
    """Back to the router while a delegate has returned to its parent, else the end."""
    return "router" if (state.get("cursor") or {}).get("decision") == "returned" else "end"


class FinalizeNode(BaseNode):
    """
    Terminal stage of one agent's work.

    Inside a hand-off, the delegate's last answer closes the parent's delegation call and
    control returns to the parent; at the root, the turn is complete.
    """

    name = "end"

    async def __call__(self, state: ExecutionState, config: RunnableConfig) -> Dict[str, Any]:
        writer = TranscriptWriter(state)
        if not writer.in_frame:
            agent = self._agent(state, config)
            _log.info("Turn complete for %s.", agent.id)
            return {"cursor": self._cursor(agent, decision="failed" if state.get("failure") else "completed")}

        frame = writer.stack.pop()
        report = message_text(last_ai_message(frame["messages"])) or EMPTY_REPORT
        writer.append(ToolMessage(content=report, tool_call_id=frame["call_id"], name=frame["tool_name"]))
        delegate = self.deps.registry.get(frame["agent_id"], run_user_id(config))
        _log.info("Delegate %s returned to %s.", delegate.id, frame["from_agent_id"])

        update = writer.update()
        update["cursor"] = self._cursor(delegate, decision="returned")
        return update
