# ankie/orchestration/orchestrator.py

import asyncio
import logging
import sqlite3
import uuid
from typing import Any, AsyncIterator, Dict, NamedTuple, Optional, Union

from langchain_core.messages import HumanMessage
from langgraph.checkpoint.base import BaseCheckpointSaver
from langgraph.types import Command

from ankie.backends.checkpoint_store import close_checkpointer, latest_checkpoint, open_checkpointer
from ankie.backends.model_gateway import ModelFactory
from ankie.boot.load_settings import AppConfigLoader
from ankie.delegation.detector import DelegationDetector
from ankie.orchestration.adapters.local_tools import NoteStore, local_tools
from ankie.orchestration.adapters.tool_registry import ToolRegistry
from ankie.orchestration.build_flow import GraphBuilder
from ankie.orchestration.errors import (
    CheckpointOrderError,
    InterruptPendingError,
    InvalidInterruptError,
    OrchestrationError,
    ThreadAccessError,
)
from ankie.orchestration.execution_manager import ExecutionManager, RunItem, pending_interrupts
from ankie.orchestration.graph_cache import GraphCache
from ankie.orchestration.leases import CancellationRegistry, ThreadLeases
from ankie.orchestration.registry import AgentRegistry
from ankie.orchestration.schema import (
    AgentConfig,
    ErrorInfo,
    ExecutionResult,
    HumanInterrupt,
    HumanResponse,
    RunContext,
)
from ankie.orchestration.stages.stage_base import NodeDeps
from ankie.orchestration.transcript import close_abandoned_calls

_log = logging.getLogger(__name__)

# Failures of the persistence layer; the turn may succeed if retried
INFRASTRUCTURE_ERRORS = (CheckpointOrderError, sqlite3.Error, OSError)

# Interrupt config flag that must be set for each response type
RESPONSE_FLAGS: Dict[str, str] = {
    "accept": "allow_accept",
    "edit": "allow_edit",
    "respond": "allow_respond",
    "reject": "allow_ignore",
}


class ThreadBinding(NamedTuple):
    agent_id: str
    user_id: Optional[str]


class Orchestrator:
    """
    Process-wide entry point for chat turns and approvals.

    Owns exactly one checkpointer, graph cache, lease table and cancellation registry,
    and injects them into every graph builder and execution it creates.
    """

    _instance: Optional["Orchestrator"] = None
    _instance_lock: Optional[asyncio.Lock] = None

    def __init__(
        self,
        *,
        registry: AgentRegistry,
        models: ModelFactory,
        checkpointer: BaseCheckpointSaver,
        tools: Optional[ToolRegistry] = None,
        detector: Optional[DelegationDetector] = None,
        cache: Optional[GraphCache] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> None:
        cfg = dict(settings or {})
        exec_cfg = dict(cfg.get("execution") or {})

        self.registry = registry
        self.models = models
        self.checkpointer = checkpointer
        self.notes = NoteStore()
        self.tools = tools if tools is not None else ToolRegistry(local_tools(self.notes))
        self.detector = detector or DelegationDetector(registry, cfg.get("delegation"))
        self.cache = cache or GraphCache()
        self.leases = ThreadLeases()
        self.cancellations = CancellationRegistry()

        deps = NodeDeps(
            registry=registry,
            tools=self.tools,
            models=models,
            cancellations=self.cancellations,
            max_hops=int(exec_cfg.get("max_delegation_hops", 5)),
        )
        self.builder = GraphBuilder(deps, checkpointer, exec_cfg)
        self.manager = ExecutionManager(self.cancellations, exec_cfg)

    # ──────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ──────────────────────────────────────────────────────────────────────────
    @classmethod
    async def create(cls, settings: Optional[Dict[str, Any]] = None) -> "Orchestrator":
        """Build an orchestrator and its collaborators from the settings dict."""
        cfg = settings if settings is not None else AppConfigLoader().get_config()
        registry = AgentRegistry.from_yaml(cfg.get("agents_file", "settings/agents.yaml"), cfg.get("supervisor_id"))
        models = ModelFactory(cfg.get("models"))
        checkpointer = await open_checkpointer(cfg.get("checkpoints"))
        return cls(registry=registry, models=models, checkpointer=checkpointer, settings=cfg)

    @classmethod
    async def get_instance(cls, settings: Optional[Dict[str, Any]] = None) -> "Orchestrator":
        if cls._instance is not None:
            return cls._instance
        if cls._instance_lock is None:
            cls._instance_lock = asyncio.Lock()
        async with cls._instance_lock:
            if cls._instance is None:
                _log.info("Initializing orchestrator singleton.")
                cls._instance = await cls.create(settings)
        return cls._instance

    @classmethod
    async def reset_instance(cls) -> None:
        instance, cls._instance = cls._instance, None
        cls._instance_lock = None
        if instance is not None:
            await close_checkpointer(instance.checkpointer)
            _log.info("Orchestrator singleton reset.")

    # ──────────────────────────────────────────────────────────────────────────
    # Internals
    # ──────────────────────────────────────────────────────────────────────────
    async def _thread_binding(self, thread_id: str) -> Optional[ThreadBinding]:
        """Root agent and owner recorded in the thread's latest checkpoint, if any."""
        tup = await latest_checkpoint(self.checkpointer, thread_id)
        if tup is None:
            return None
        values = tup.checkpoint.get("channel_values") or {}
        agent_id = values.get("root_agent_id")
        if agent_id is None:
            return None
        return ThreadBinding(agent_id, values.get("user_id"))

    @staticmethod
    def _owner(binding: ThreadBinding, thread_id: str, user_id: Optional[str]) -> Optional[str]:
        """The user a thread's runs execute as; a different caller is refused."""
        if user_id is not None and binding.user_id is not None and user_id != binding.user_id:
            _log.warning("User %s attempted to act on thread %s owned by %s.", user_id, thread_id, binding.user_id)
            raise ThreadAccessError(thread_id, user_id)
        return binding.user_id or user_id

    async def _graph_for(self, agent: AgentConfig) -> Any:
        return await self.cache.get_or_compile(agent.id, lambda: self.builder.compile(agent))

    async def _hint(self, agent: AgentConfig, history: list, user_id: str) -> Optional[str]:
        intent = await self.detector.detect_intent(history, user_id)
        hint = self.detector.create_delegation_hint(intent)
        if not hint:
            return None
        reachable = {a.id for a in self.registry.delegation_targets(agent, user_id)}
        if intent.heuristic.target not in reachable:
            _log.debug("Hinted agent %s is not reachable from %s; hint dropped.", intent.heuristic.target, agent.id)
            return None
        return hint

    async def _drive(self, graph: Any, payload: Any, ctx: RunContext, execution_id: str, agent_id: str) -> AsyncIterator[RunItem]:
        try:
            async for item in self.manager.run(
                graph, payload, context=ctx, execution_id=execution_id, agent_id=agent_id,
            ):
                yield item
        except INFRASTRUCTURE_ERRORS as exc:
            _log.error("Execution %s aborted by storage failure: %s", execution_id, exc, exc_info=True)
            code = exc.code if isinstance(exc, OrchestrationError) else "infrastructure_unavailable"
            yield ExecutionResult(
                execution_id=execution_id, thread_id=ctx.thread_id, agent_id=agent_id, status="failed",
                error=ErrorInfo(code=code, message="The service is temporarily unavailable. Please retry.", retryable=True),
            )
        except Exception as exc:
            _log.error("Unhandled error during execution %s: %s", execution_id, exc, exc_info=True)
            yield ExecutionResult(
                execution_id=execution_id, thread_id=ctx.thread_id, agent_id=agent_id, status="failed",
                error=ErrorInfo(code="internal_error", message="This request cannot be completed."),
            )

    # ──────────────────────────────────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────────────────────────────────
    async def handle_turn(
        self,
        user_message: str,
        thread_id: str,
        user_id: str,
        agent_id: Optional[str] = None,
        locale: Optional[str] = None,
        request_id: Optional[str] = None,
    ) -> AsyncIterator[RunItem]:
        """
        Run one chat turn; yields ExecutionSteps, then one ExecutionResult.

        Request-level rejections are raised before the first item:
            ThreadBusyError: another execution holds the thread.
            InterruptPendingError: the thread waits on an approval.
            ThreadAccessError: the thread belongs to another user.
            AgentNotFoundError / GraphCompilationError: the root agent cannot run.
        """
        self.leases.acquire(thread_id)
        execution_id = f"exec-{uuid.uuid4().hex[:16]}"
        try:
            binding = await self._thread_binding(thread_id)
            bound = binding.agent_id if binding else None
            if binding:
                self._owner(binding, thread_id, user_id)
            root_id = bound or agent_id or self.registry.supervisor_id
            if bound and agent_id and agent_id != bound:
                _log.warning("Thread %s is bound to %s; ignoring requested agent %s.", thread_id, bound, agent_id)

            agent = self.registry.get(root_id, user_id)
            graph = await self._graph_for(agent)
            ctx = RunContext(user_id=user_id, thread_id=thread_id, request_id=request_id or uuid.uuid4().hex, locale=locale)

            history: list = []
            closed: list = []
            if bound:
                snapshot = await graph.aget_state(self.manager.run_config(ctx))
                if pending_interrupts(snapshot):
                    raise InterruptPendingError(f"Thread {thread_id} has a pending approval.")
                values = snapshot.values or {}
                # A cancelled or failed turn may have left calls unanswered
                closed = close_abandoned_calls(values)
                if closed:
                    _log.info("Closed %d call(s) left open on thread %s.", len(closed), thread_id)
                history = list(values.get("messages") or []) + closed
                if locale is None:
                    ctx = ctx.model_copy(update={"locale": values.get("locale")})

            user_turn = HumanMessage(content=user_message)
            hint = await self._hint(agent, history + [user_turn], user_id)

            state = {
                "messages": closed + [user_turn],
                "root_agent_id": agent.id,
                "user_id": user_id,
                "execution_id": execution_id,
                "cursor": {"node": "router", "agent_id": agent.id, "agent_name": agent.name},
                "delegation_stack": [],
                "delegation_hops": 0,
                "pending_approval": None,
                "approved_call_ids": [],
                "hint": hint,
                "locale": ctx.locale,
                "failure": None,
            }
            async for item in self._drive(graph, state, ctx, execution_id, agent.id):
                yield item
        finally:
            self.cancellations.close(execution_id)
            self.leases.release(thread_id)

    async def get_pending_interrupt(self, thread_id: str, user_id: Optional[str] = None) -> Optional[HumanInterrupt]:
        """
        The approval request the thread is paused on, or None.

        Raises:
            ThreadAccessError: `user_id` is given and does not own the thread.
        """
        binding = await self._thread_binding(thread_id)
        if binding is None:
            return None
        owner = self._owner(binding, thread_id, user_id)
        graph = await self._graph_for(self.registry.get(binding.agent_id, owner))
        snapshot = await graph.aget_state({"configurable": {"thread_id": thread_id}})
        interrupts = pending_interrupts(snapshot)
        if not interrupts:
            return None
        checkpoint_id = snapshot.config["configurable"].get("checkpoint_id")
        return HumanInterrupt.model_validate(dict(interrupts[0].value, checkpoint_id=checkpoint_id))

    async def resume(
        self,
        thread_id: str,
        execution_id: str,
        response: Union[HumanResponse, Dict[str, Any]],
        checkpoint_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> AsyncIterator[RunItem]:
        """
        Resolve the pending approval of `execution_id` and continue the run.

        Raises (before the first item):
            InvalidInterruptError: nothing is pending, the execution id does not match,
                the checkpoint is stale, or the response type is not allowed.
            ThreadAccessError: `user_id` is given and does not own the thread.
            ThreadBusyError: another execution holds the thread.

        The run continues as the user who started the turn; `user_id` is optional.
        """
        if not isinstance(response, HumanResponse):
            response = HumanResponse.model_validate(response)

        self.leases.acquire(thread_id)
        try:
            binding = await self._thread_binding(thread_id)
            if binding is None:
                raise InvalidInterruptError(f"Thread {thread_id} has no execution to resume.")
            owner = self._owner(binding, thread_id, user_id)
            if owner is None:
                raise InvalidInterruptError(f"Thread {thread_id} has no recorded owner to resume as.")
            graph = await self._graph_for(self.registry.get(binding.agent_id, owner))

            snapshot = await graph.aget_state({"configurable": {"thread_id": thread_id}})
            interrupts = pending_interrupts(snapshot)
            if not interrupts:
                raise InvalidInterruptError(f"Thread {thread_id} has no pending approval.")
            pending = interrupts[0].value
            current = snapshot.config["configurable"].get("checkpoint_id")
            if pending.get("execution_id") != execution_id:
                raise InvalidInterruptError(
                    f"Execution {execution_id} is not the one awaiting approval on thread {thread_id}."
                )
            if checkpoint_id is not None and checkpoint_id != current:
                raise InvalidInterruptError(f"Checkpoint {checkpoint_id} is stale (latest {current}).")

            allowed = pending.get("config") or {}
            flag = RESPONSE_FLAGS[response.type]
            if not allowed.get(flag, flag != "allow_edit"):
                raise InvalidInterruptError(f"A '{response.type}' response is not allowed for this action.")

            values = snapshot.values or {}
            ctx = RunContext(
                user_id=owner,
                thread_id=thread_id,
                request_id=uuid.uuid4().hex,
                locale=values.get("locale"),
            )
            _log.info("Resuming execution %s on thread %s with '%s'.", execution_id, thread_id, response.type)
            command = Command(resume=response.model_dump())
            async for item in self._drive(graph, command, ctx, execution_id, binding.agent_id):
                yield item
        finally:
            self.cancellations.close(execution_id)
            self.leases.release(thread_id)

    def cancel(self, execution_id: str) -> bool:
        """Abort an in-flight execution; its current model call stops at once."""
        return self.cancellations.cancel(execution_id)

    def invalidate_agent(self, agent_id: Optional[str] = None) -> int:
        """Forget compiled graphs after an agent definition changed (all when None)."""
        return self.cache.invalidate(agent_id)
