"""
Shared fakes for the orchestration tests.

Chat models are scripted: each call pops the next reply, so a test states exactly which
model turns it expects and any extra call fails loudly.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage
from langchain_core.outputs import ChatGeneration, ChatResult
from langchain_core.tools import BaseTool

from ankie.backends.checkpoint_store import OrderedMemorySaver
from ankie.backends.model_gateway import ModelFactory, ProviderSpec
from ankie.boot.env_vars import EnvConfig
from ankie.orchestration.adapters.tool_registry import ToolRegistry, ToolRisk
from ankie.orchestration.orchestrator import Orchestrator
from ankie.orchestration.registry import AgentRegistry
from ankie.orchestration.schema import AgentConfig, ExecutionResult, ExecutionStep


class ScriptedChatModel(GenericFakeChatModel):
    """Fake chat model that accepts tool binding and replays its script."""

    def bind_tools(self, tools: Sequence[Any], **kwargs: Any) -> "ScriptedChatModel":
        return self


class SlowChatModel(BaseChatModel):
    """
    Fake chat model whose async call takes `delay` seconds.

    With `slow_calls` set, only that many first calls are slow; later calls answer at once.
    """

    delay: float = 5.0
    slow_calls: Optional[int] = None
    reply: str = "late"
    calls: int = 0

    @property
    def _llm_type(self) -> str:
        return "slow-fake"

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        raise NotImplementedError("async only")

    def bind_tools(self, tools: Sequence[Any], **kwargs: Any) -> "SlowChatModel":
        return self

    async def _agenerate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        self.calls += 1
        if self.slow_calls is None or self.calls <= self.slow_calls:
            await asyncio.sleep(self.delay)
        return ChatResult(generations=[ChatGeneration(message=AIMessage(content=self.reply))])


def call(name: str, args: Optional[Dict[str, Any]] = None, call_id: str = "call_1") -> AIMessage:
    """An AI reply holding a single tool call."""
    return AIMessage(content="", tool_calls=[{"name": name, "args": dict(args or {}), "id": call_id}])


def delegate(agent_id: str, task: str, call_id: str = "call_1") -> AIMessage:
    tool_name = "delegate_to_" + agent_id.replace("-", "_")
    return call(tool_name, {"task": task}, call_id)


def team() -> List[AgentConfig]:
    return [
        AgentConfig(id="cleo-supervisor", name="Cleo", role="supervisor", tools=("memoryAddNote",),
                    description="Team coordinator."),
        AgentConfig(id="ami-creative", name="Ami", tools=("createCalendarEvent",),
                    description="Executive assistant for scheduling."),
        AgentConfig(id="astra-email", name="Astra", parent_agent_id="ami-creative",
                    tools=("sendGmailMessage",), description="Email specialist."),
        AgentConfig(id="jenn-community", name="Jenn", tools=("postTweet",),
                    description="Social media manager."),
    ]


def fake_models(model: BaseChatModel, timeout_s: float = 60.0) -> ModelFactory:
    """A model factory whose only provider family always returns `model`."""
    providers = {"openai": ProviderSpec("openai", 16384, lambda *_: model, requires_key=False)}
    cfg = {
        "call_timeout_s": timeout_s,
        "default_model": "gpt-4o-mini",
        "default_safe_model": "gpt-4o-mini",
        "catalog": {"openai": ["gpt-4o-mini"]},
        "response_cache": False,
    }
    return ModelFactory(cfg, providers=providers, env=EnvConfig(environ={}))


def make_orchestrator(
    replies: Sequence[AIMessage],
    *,
    tools: Sequence[BaseTool] = (),
    risk_overrides: Optional[Dict[str, ToolRisk]] = None,
    settings: Optional[Dict[str, Any]] = None,
    model: Optional[BaseChatModel] = None,
    timeout_s: float = 60.0,
) -> Orchestrator:
    """An orchestrator over the test team; `model` replaces the scripted replies."""
    if model is None:
        model = ScriptedChatModel(messages=iter(list(replies)))
    return Orchestrator(
        registry=AgentRegistry(team(), supervisor_id="cleo-supervisor"),
        models=fake_models(model, timeout_s),
        checkpointer=OrderedMemorySaver(),
        tools=ToolRegistry(tools, risk_overrides),
        settings=settings,
    )


async def collect(stream) -> List[Any]:
    return [item async for item in stream]


def split(items: List[Any]):
    """(steps, final result)"""
    steps = [i for i in items if isinstance(i, ExecutionStep)]
    results = [i for i in items if isinstance(i, ExecutionResult)]
    assert len(results) == 1, "exactly one result per run"
    assert items[-1] is results[0], "the result is the last item"
    return steps, results[0]
