# ankie/orchestration/stages/approval.py

import logging
from typing import Any, Dict

from langchain_core.messages import AIMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langgraph.types import interrupt

from ankie.orchestration.schema import HumanResponse
from ankie.orchestration.session_state import ExecutionState
from ankie.orchestration.stages.stage_base import BaseNode
from ankie.orchestration.transcript import TranscriptWriter, last_ai_message

_log = logging.getLogger(__name__)

NOT_EXECUTED = "Not executed: the user reviewed a pending action before this call ran."
DECLINED_TOOL = "Declined by the user. The action was not executed."
DECLINED_ANSWER = "Understood. You declined {action}, so I did not run it."


def route_from_approval(state: ExecutionState) -> str:
    decision = (state.get("cursor") or {}).get("decision")
    if decision in ("accepted", "edited"):
        return "tools"
    if decision == "responded":
        return "agent"
    return "finalize"


class ApprovalNode(BaseNode):
    """
    Pauses the graph on the pending approval and applies the human decision on resume.

      accept  -> the call is cleared and the tools stage runs it as-is
      edit    -> the call's args are replaced, then it runs
      reject  -> nothing runs; open hand-offs are abandoned and the turn ends
      respond -> the feedback is returned to the agent in place of the tool result
    """

    name = "interrupt"

    async def __call__(self, state: ExecutionState, config: RunnableConfig) -> Dict[str, Any]:
        pending = state["pending_approval"]
        agent = self._agent(state, config)

        # Execution stops here until a resume value is supplied for this checkpoint
        raw = interrupt(pending)
        response = HumanResponse.model_validate(raw)
        call_id = pending["tool_call_id"]
        action = pending["action_request"]["action"]
        _log.info("Approval for %s (%s): %s", action, call_id, response.type)

        writer = TranscriptWriter(state)
        approved = list(state.get("approved_call_ids") or [])
        update: Dict[str, Any] = {"pending_approval": None}

        if response.type == "accept":
            approved.append(call_id)
            decision = "accepted"

        elif response.type == "edit":
            ai = last_ai_message(writer.messages)
            calls = [dict(tc, args=dict(response.args or {})) if tc["id"] == call_id else tc for tc in ai.tool_calls]
            writer.replace(ai.model_copy(update={"tool_calls": calls}))
            approved.append(call_id)
            decision = "edited"

        elif response.type == "respond":
            writer.append(ToolMessage(
                content=f"The user did not approve this call and replied: {response.message}",
                tool_call_id=call_id, name=action, status="error",
            ))
            writer.answer_open_calls(NOT_EXECUTED)
            decision = "responded"

        else:
            writer.append(ToolMessage(content=DECLINED_TOOL, tool_call_id=call_id, name=action, status="error"))
            writer.unwind(DECLINED_TOOL)
            writer.append(AIMessage(content=DECLINED_ANSWER.format(action=action)))
            decision = "rejected"

        update.update(writer.update())
        update["approved_call_ids"] = approved
        update["cursor"] = self._cursor(agent, decision=decision, tool_names=[action])
        return update
