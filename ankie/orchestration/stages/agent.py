# ankie/orchestration/stages/agent.py

import logging
from typing import Any, Dict, List

from langchain_core.messages import SystemMessage
from langchain_core.runnables import RunnableConfig

from ankie.orchestration.registry import delegation_tool_schema
from ankie.orchestration.schema import AgentConfig, ModelConfig
from ankie.orchestration.session_state import ExecutionState
from ankie.orchestration.stages.stage_base import BaseNode, run_user_id
from ankie.orchestration.transcript import TranscriptWriter, active_messages, open_tool_calls, split_calls

_log = logging.getLogger(__name__)


def route_from_agent(state: ExecutionState) -> str:
    """tools for open regular calls, router for hand-offs only, finalize for a plain answer."""
    regular, delegations = split_calls(open_tool_calls(active_messages(state)))
    if regular:
        return "tools"
    if delegations:
        return "router"
    return "finalize"


class AgentNode(BaseNode):
    """
    Reasoning stage: call the acting agent's model on its transcript with its tools bound.

    Tools bound per call:
      - the agent's registered tools
      - one `delegate_to_*` function per agent it may hand work to
    """

    name = "agent"

    def _system_prompt(self, agent: AgentConfig, state: ExecutionState, targets: List[AgentConfig]) -> str:
        stack = state.get("delegation_stack") or []
        team = "\n".join(f"- {t.name} ({t.id}): {t.description}" for t in targets) or "- none"

        if agent.is_supervisor:
            header = self._load_prompt("supervisor.md").format(agent_name=agent.name, team=team)
        else:
            delegator = stack[-1]["from_agent_id"] if stack else "the user"
            header = self._load_prompt("specialist.md").format(
                agent_name=agent.name, delegator=delegator, team=team,
            )

        prompt = header.rstrip() + "\n\n" + agent.prompt.strip()
        # The turn's delegation hint only applies to the agent reading the user directly
        if not stack and state.get("hint"):
            prompt += state["hint"]
        return prompt

    async def __call__(self, state: ExecutionState, config: RunnableConfig) -> Dict[str, Any]:
        """
        Invoke the acting agent's model and append its reply to the active transcript.
        """
        agent = self._agent(state, config)
        _log.info("Agent stage: %s (%s).", agent.id, agent.model)

        targets = self.deps.registry.delegation_targets(agent, run_user_id(config))
        tools: List[Any] = list(self.deps.tools.tools_for(agent.tools))
        tools.extend(delegation_tool_schema(t) for t in targets)

        handle = self.deps.models.get_model(
            agent.model, ModelConfig(temperature=agent.temperature, max_tokens=agent.max_tokens),
        )
        model = handle.bind_tools(tools)

        enriched = [SystemMessage(content=self._system_prompt(agent, state, targets))] + active_messages(state)
        cancel_event = self.deps.cancellations.get(state.get("execution_id"))

        _log.debug("Dispatching %d messages to %s with %d tools.", len(enriched), handle.model_name, len(tools))
        reply = await model.ainvoke(enriched, config=config, cancel_event=cancel_event)

        writer = TranscriptWriter(state)
        writer.append(reply)
        calls = [tc["name"] for tc in reply.tool_calls]
        if calls:
            _log.info("Agent %s requested tools: %s", agent.id, calls)

        update = writer.update()
        update["cursor"] = self._cursor(agent, decision="tool_calls" if calls else "answer")
        return update
