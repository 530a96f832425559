# ankie/orchestration/build_flow.py

import logging
from typing import Any, Dict, Optional

from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.graph import END, START, StateGraph
from langgraph.types import RetryPolicy

from ankie.orchestration.errors import GraphCompilationError, ModelTimeoutError
from ankie.orchestration.schema import AgentConfig
from ankie.orchestration.session_state import ExecutionState
from ankie.orchestration.stages.agent import AgentNode, route_from_agent
from ankie.orchestration.stages.approval import ApprovalNode, route_from_approval
from ankie.orchestration.stages.delegation import DelegationNode, route_from_delegation
from ankie.orchestration.stages.finalize import FinalizeNode, route_from_finalize
from ankie.orchestration.stages.router import RouterNode, route_from_router
from ankie.orchestration.stages.stage_base import NodeDeps
from ankie.orchestration.stages.tools import ToolsNode, route_from_tools

_log = logging.getLogger(__name__)


class GraphBuilder:
    """
    Assemble and compile the execution graph for one root agent.

    router -> {agent | delegation}
    agent -> {tools | router | finalize}
    tools -> {agent | approval | router}
    approval -> {tools | agent | finalize}
    delegation -> {router | finalize}
    finalize -> {router | END}

    Every compiled graph shares the one checkpointer handed to the builder.
    """

    def __init__(
        self,
        deps: NodeDeps,
        checkpointer: BaseCheckpointSaver,
        exec_cfg: Optional[Dict[str, Any]] = None,
    ) -> None:
        cfg = dict(exec_cfg or {})
        self.deps = deps
        self.checkpointer = checkpointer
        # max_attempts counts the first call too
        self.retry_policy = RetryPolicy(
            max_attempts=max(1, int(cfg.get("model_retry_attempts", 3))),
            initial_interval=float(cfg.get("retry_initial_interval_s", 0.5)),
            jitter=False,
            retry_on=ModelTimeoutError,
        )

    def _validate(self, agent: AgentConfig) -> None:
        for delegate in agent.delegates or ():
            if not self.deps.registry.has(delegate):
                raise ValueError(f"unknown delegate '{delegate}'")

    def compile(self, agent: AgentConfig) -> Any:
        """
        Compile the graph whose root agent is `agent`.

        Raises:
            GraphCompilationError: the agent config is malformed or the graph failed to build.
        """
        _log.info("Composing execution graph for %s ...", agent.id)
        try:
            self._validate(agent)
            g = StateGraph(ExecutionState)

            g.add_node("router", RouterNode(self.deps))
            g.add_node("agent", AgentNode(self.deps), retry_policy=self.retry_policy)
            g.add_node("tools", ToolsNode(self.deps))
            g.add_node("approval", ApprovalNode(self.deps))
            g.add_node("delegation", DelegationNode(self.deps))
            g.add_node("finalize", FinalizeNode(self.deps))

            g.add_edge(START, "router")
            g.add_conditional_edges("router", route_from_router, {"agent": "agent", "delegation": "delegation"})
            g.add_conditional_edges(
                "agent", route_from_agent, {"tools": "tools", "router": "router", "finalize": "finalize"},
            )
            g.add_conditional_edges(
                "tools", route_from_tools, {"approval": "approval", "router": "router", "agent": "agent"},
            )
            g.add_conditional_edges(
                "approval", route_from_approval, {"tools": "tools", "agent": "agent", "finalize": "finalize"},
            )
            g.add_conditional_edges("delegation", route_from_delegation, {"router": "router", "finalize": "finalize"})
            g.add_conditional_edges("finalize", route_from_finalize, {"router": "router", "end": END})

            graph = g.compile(checkpointer=self.checkpointer, name=f"ankie:{agent.id}")
        except Exception as exc:
            _log.error("Graph compilation failed for %s: %s", agent.id, exc, exc_info=True)
            raise GraphCompilationError(agent.id, str(exc)) from exc

        _log.info("Execution graph compiled for %s.", agent.id)
        return graph
