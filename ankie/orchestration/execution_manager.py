# ankie/orchestration/execution_manager.py

import logging
from contextlib import aclosing
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from langgraph.errors import GraphRecursionError

from ankie.orchestration.errors import (
    CheckpointOrderError,
    ExecutionCancelledError,
    OrchestrationError,
)
from ankie.orchestration.leases import CancellationRegistry
from ankie.orchestration.schema import ErrorInfo, ExecutionResult, ExecutionStep, HumanInterrupt, RunContext
from ankie.orchestration.step_builder import (
    StepConfig,
    build_delegation_step,
    build_humanized_step,
    build_interrupt_step,
    build_node_completed_step,
    build_tool_step,
)
from ankie.orchestration.transcript import last_ai_message, message_text

_log = logging.getLogger(__name__)

RunItem = Union[ExecutionStep, ExecutionResult]

DEFAULT_RECURSION_LIMIT = 50


def pending_interrupts(snapshot: Any) -> List[Any]:
    """Interrupts raised by the tasks of a state snapshot (empty when nothing is paused)."""
    return [intr for task in snapshot.tasks for intr in (task.interrupts or ())]


class ExecutionManager:
    """
    Drive one run (or resumed run) of a compiled graph.

    - one ExecutionStep per node transition, in traversal order
    - checkpoints are written synchronously after every node
    - a pause on an approval ends the run with status "interrupted"
    - recoverable failures end the run with status "failed"; checkpoint store
      failures propagate to the caller
    """

    def __init__(self, cancellations: CancellationRegistry, exec_cfg: Optional[Dict[str, Any]] = None) -> None:
        cfg = dict(exec_cfg or {})
        self.cancellations = cancellations
        self.recursion_limit = int(cfg.get("recursion_limit", DEFAULT_RECURSION_LIMIT))

    def run_config(self, context: RunContext) -> Dict[str, Any]:
        """Explicit per-request context passed to every node, model and tool call."""
        return {
            "configurable": {
                "thread_id": context.thread_id,
                "user_id": context.user_id,
                "request_id": context.request_id,
                "locale": context.locale,
            },
            "recursion_limit": self.recursion_limit,
        }

    # ──────────────────────────────────────────────────────────────────────────
    # Steps
    # ──────────────────────────────────────────────────────────────────────────
    @staticmethod
    def _step_for(cursor: Dict[str, Any], context: RunContext, execution_id: str) -> Optional[ExecutionStep]:
        node = cursor.get("node")
        decision = cursor.get("decision")
        base = StepConfig(
            agent_id=cursor.get("agent_id", "unknown"),
            agent_name=cursor.get("agent_name"),
            node_type=node or "default",
            context_locale=context.locale,
            metadata={"execution_id": execution_id, "decision": decision},
        )

        if node == "tools":
            if decision != "executed":
                return None
            names = cursor.get("tool_names") or []
            if len(names) == 1:
                return build_tool_step(base.model_copy(update={"tool_name": names[0]}))
            return build_tool_step(base.model_copy(update={"tool_count": len(names)}))

        if node == "delegation":
            if decision != "delegate":
                return None
            return build_delegation_step(base.model_copy(update={
                "target_agent_id": cursor.get("target_agent_id"),
                "target_agent_name": cursor.get("target_agent_name"),
            }))

        if node == "end":
            return build_node_completed_step(base)

        if node == "interrupt":
            # The pause itself is reported once, when the run stops on it
            return None

        return build_humanized_step(base)

    # ──────────────────────────────────────────────────────────────────────────
    # Run
    # ──────────────────────────────────────────────────────────────────────────
    async def run(
        self,
        graph: Any,
        payload: Any,
        *,
        context: RunContext,
        execution_id: str,
        agent_id: str,
    ) -> AsyncIterator[RunItem]:
        """
        Stream steps for one run, then yield exactly one ExecutionResult.

        Args:
            graph: Compiled graph (shares the process checkpointer).
            payload: Initial state for a new turn, or a resume Command.
            context: Request context.
            execution_id: Id of this execution; also the cancellation key.
            agent_id: Root agent of the thread.

        Raises:
            CheckpointOrderError: a checkpoint write was rejected.
            Exception: any checkpoint store failure.
        """
        config = self.run_config(context)
        cancel_event = self.cancellations.open(execution_id)
        steps = 0
        tools_used: List[str] = []
        path: List[str] = [agent_id]

        def finish(status: str, content: str = "", **extra: Any) -> ExecutionResult:
            return ExecutionResult(
                execution_id=execution_id,
                thread_id=context.thread_id,
                agent_id=agent_id,
                status=status,
                content=content,
                delegation_path=path,
                tools_used=tools_used,
                step_count=steps,
                **extra,
            )

        _log.info("Execution %s started on thread %s (agent %s).", execution_id, context.thread_id, agent_id)
        try:
            async with aclosing(graph.astream(payload, config, stream_mode="updates", durability="sync")) as stream:
                async for chunk in stream:
                    for node, update in chunk.items():
                        if node.startswith("__") or not isinstance(update, dict):
                            continue
                        cursor = update.get("cursor") or {}
                        if cursor.get("node") == "tools" and cursor.get("decision") == "executed":
                            tools_used.extend(cursor.get("tool_names") or [])
                        if cursor.get("node") == "delegation" and cursor.get("decision") == "delegate":
                            path.append(cursor["target_agent_id"])

                        step = self._step_for(cursor, context, execution_id)
                        if step is not None:
                            steps += 1
                            yield step

                    if cancel_event.is_set():
                        raise ExecutionCancelledError(f"Execution {execution_id} cancelled.")

        except CheckpointOrderError:
            raise
        except GraphRecursionError:
            _log.warning("Recursion limit reached; halting execution %s.", execution_id)
            yield finish("failed", error=ErrorInfo(
                code="recursion_limit",
                message="Stopped: maximum reasoning depth reached for this request.",
            ))
            return
        except ExecutionCancelledError as exc:
            _log.info("Execution %s cancelled.", execution_id)
            yield finish("cancelled", error=ErrorInfo(code=exc.code, message=exc.user_message))
            return
        except OrchestrationError as exc:
            _log.warning("Execution %s failed: %s", execution_id, exc)
            yield finish("failed", error=ErrorInfo(code=exc.code, message=exc.user_message, retryable=exc.retryable))
            return

        snapshot = await graph.aget_state(config)
        checkpoint_id = snapshot.config["configurable"].get("checkpoint_id")
        values = snapshot.values or {}

        interrupts = pending_interrupts(snapshot)
        if interrupts:
            request = HumanInterrupt.model_validate(dict(interrupts[0].value, checkpoint_id=checkpoint_id))
            steps += 1
            yield build_interrupt_step(StepConfig(
                agent_id=request.agent_id,
                node_type="interrupt",
                tool_name=request.action_request.action,
                context_locale=context.locale,
                metadata={"execution_id": execution_id, "checkpoint_id": checkpoint_id},
            ))
            _log.info("Execution %s paused for approval of %s.", execution_id, request.action_request.action)
            yield finish("interrupted", interrupt=request, checkpoint_id=checkpoint_id)
            return

        content = message_text(last_ai_message(values.get("messages") or []))
        failure = values.get("failure")
        if failure:
            _log.warning("Execution %s ended with %s: %s", execution_id, failure.get("code"), failure.get("detail"))
            yield finish("failed", content=content, checkpoint_id=checkpoint_id, error=ErrorInfo(
                code=failure["code"], message=failure["message"], retryable=bool(failure.get("retryable")),
            ))
            return

        _log.info("Execution %s completed (%d steps).", execution_id, steps)
        yield finish("completed", content=content, checkpoint_id=checkpoint_id)
