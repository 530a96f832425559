import asyncio
import logging
import time

import pytest
from langchain_core.messages import AIMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import tool

from ankie.backends.checkpoint_store import latest_checkpoint
from ankie.orchestration.adapters.tool_registry import ToolRisk
from ankie.orchestration.errors import (
    InterruptPendingError,
    InvalidInterruptError,
    ThreadAccessError,
    ThreadBusyError,
)
from ankie.orchestration.schema import AgentConfig, ExecutionStep, HumanResponse
from ankie.orchestration.stages.agent import AgentNode

from tests.helpers import SlowChatModel, call, collect, delegate, make_orchestrator, split


def tweet_tool():
    posted = []

    @tool
    def postTweet(text: str) -> str:
        """Publish a post on Twitter/X."""
        posted.append(text)
        return f"Posted: {text}"

    return postTweet, posted


def recording_tweet_tool():
    """A postTweet tool that records the user each call ran for."""
    users = []

    @tool
    def postTweet(text: str, config: RunnableConfig) -> str:
        """Publish a post on Twitter/X."""
        users.append(config["configurable"].get("user_id"))
        return "Posted."

    return postTweet, users


async def thread_messages(orch, thread_id: str) -> list:
    tup = await latest_checkpoint(orch.checkpointer, thread_id)
    return list(tup.checkpoint["channel_values"]["messages"])


class TestPlainTurns:
    """Turns answered by the root agent itself."""

    @pytest.mark.asyncio
    async def test_direct_answer_completes(self):
        """A reply without tool calls completes the turn with that reply."""
        orch = make_orchestrator([AIMessage(content="Hello! How can I help?")])
        steps, result = split(await collect(orch.handle_turn("hi", "t-plain", "u1", locale="en")))

        assert result.status == "completed"
        assert result.content == "Hello! How can I help?"
        assert result.agent_id == "cleo-supervisor"
        assert result.delegation_path == ["cleo-supervisor"]
        assert result.checkpoint_id
        assert [s.action for s in steps] == ["routing", "analyzing", "completing"]
        assert result.step_count == len(steps)

    @pytest.mark.asyncio
    async def test_thread_stays_bound_to_its_first_agent(self):
        """A later turn naming another agent still runs on the thread's root agent."""
        orch = make_orchestrator([AIMessage(content="Hi from Jenn"), AIMessage(content="Still Jenn")])
        _, first = split(await collect(orch.handle_turn("hi", "t-bound", "u1", agent_id="jenn-community")))
        _, second = split(await collect(orch.handle_turn("again", "t-bound", "u1", agent_id="cleo-supervisor")))

        assert first.agent_id == "jenn-community"
        assert second.agent_id == "jenn-community"
        assert second.content == "Still Jenn"

    @pytest.mark.asyncio
    async def test_lease_released_after_turn(self):
        """The thread can take a new turn once the previous one finished."""
        orch = make_orchestrator([AIMessage(content="one")])
        await collect(orch.handle_turn("hi", "t-lease", "u1"))
        assert not orch.leases.is_held("t-lease")

    @pytest.mark.asyncio
    async def test_busy_thread_is_rejected(self):
        """A second execution on a thread with an active one fails fast."""
        orch = make_orchestrator([])
        orch.leases.acquire("t-busy")
        with pytest.raises(ThreadBusyError):
            await collect(orch.handle_turn("hi", "t-busy", "u1"))
        assert orch.leases.is_held("t-busy")


class TestDelegation:
    """Hand-offs from the supervisor to specialists."""

    @pytest.mark.asyncio
    async def test_delegate_then_summarize(self):
        """The delegate's report returns to the supervisor, which answers the user."""
        orch = make_orchestrator([
            delegate("jenn-community", "Draft a post about the launch"),
            AIMessage(content="Draft ready: 'We launched!'"),
            AIMessage(content="Jenn drafted the post for you."),
        ])
        steps, result = split(await collect(orch.handle_turn(
            "Ask Jenn to draft a tweet about the launch", "t-deleg", "u1", locale="en",
        )))

        assert result.status == "completed"
        assert result.content == "Jenn drafted the post for you."
        assert result.delegation_path == ["cleo-supervisor", "jenn-community"]

        delegating = [s for s in steps if s.action == "delegating"]
        assert len(delegating) == 1
        assert delegating[0].metadata["target_agent_id"] == "jenn-community"
        assert "Delegating to Jenn" in delegating[0].content
        assert "→jenn-community:delegate:" in delegating[0].id

        completed = [s for s in steps if s.action == "completing"]
        assert [s.agent for s in completed] == ["jenn-community", "cleo-supervisor"]
        assert len({s.id for s in steps}) == len(steps)
        assert all(s.metadata["canonical"] for s in steps)

    @pytest.mark.asyncio
    async def test_depth_limit_ends_turn_with_failure(self):
        """The hop beyond the limit fails the turn instead of starting another specialist."""
        orch = make_orchestrator(
            [
                delegate("ami-creative", "Email the team about Friday", call_id="c1"),
                delegate("astra-email", "Write and send the email", call_id="c2"),
            ],
            settings={"execution": {"max_delegation_hops": 1}},
        )
        _, result = split(await collect(orch.handle_turn("email the team", "t-depth", "u1")))

        assert result.status == "failed"
        assert result.error.code == "delegation_depth_exceeded"
        assert result.error.retryable is False
        assert result.content == result.error.message
        assert result.delegation_path == ["cleo-supervisor", "ami-creative"]
        assert not orch.leases.is_held("t-depth")

    @pytest.mark.asyncio
    async def test_nested_hand_off_completes(self):
        """Ami books the event, hands the invite to Astra, and both reports flow back up."""

        @tool
        def createCalendarEvent(title: str, start: str) -> str:
            """Create a calendar event."""
            return "evt-42"

        @tool
        def sendGmailMessage(to: str, subject: str) -> str:
            """Send an email."""
            return "msg-7"

        ungated = ToolRisk(risk_level="low", requires_approval=False)
        orch = make_orchestrator(
            [
                delegate("ami-creative", "Schedule a meeting with John tomorrow at 10am and email him", "c1"),
                call("createCalendarEvent", {"title": "Meeting with John", "start": "tomorrow 10:00"}, "c2"),
                delegate("astra-email", "Email John the invite for evt-42", "c3"),
                call("sendGmailMessage", {"to": "john@example.com", "subject": "Invite"}, "c4"),
                AIMessage(content="Invite sent to John (msg-7)."),
                AIMessage(content="Created evt-42 and Astra sent the invite (msg-7)."),
                AIMessage(content="Done: meeting evt-42 is booked and John got the invite (msg-7)."),
            ],
            tools=[createCalendarEvent, sendGmailMessage],
            risk_overrides={"createCalendarEvent": ungated, "sendGmailMessage": ungated},
        )
        steps, result = split(await collect(orch.handle_turn(
            "schedule a meeting with John tomorrow at 10am and email him an invite", "t-nested", "u1", locale="en",
        )))

        assert result.status == "completed"
        assert "evt-42" in result.content and "msg-7" in result.content
        assert result.delegation_path == ["cleo-supervisor", "ami-creative", "astra-email"]
        assert result.tools_used == ["createCalendarEvent", "sendGmailMessage"]

        actions = [s.action for s in steps]
        assert actions.index("delegating") < actions.index("completing")
        delegating = [s.metadata["target_agent_id"] for s in steps if s.action == "delegating"]
        assert delegating == ["ami-creative", "astra-email"]
        completed = [s.agent for s in steps if s.action == "completing"]
        assert completed == ["astra-email", "ami-creative", "cleo-supervisor"]


class TestApprovals:
    """Human-in-the-loop gating of high-risk tools."""

    @pytest.mark.asyncio
    async def test_gated_call_pauses_before_running(self):
        """A high-risk call interrupts the run and nothing is executed."""
        post, posted = tweet_tool()
        orch = make_orchestrator([call("postTweet", {"text": "hello"})], tools=[post])
        steps, result = split(await collect(orch.handle_turn(
            "post hello", "t-gate", "u1", agent_id="jenn-community", locale="en",
        )))

        assert result.status == "interrupted"
        assert posted == []
        request = result.interrupt
        assert request.action_request.action == "postTweet"
        assert request.action_request.args == {"text": "hello"}
        assert request.risk_level == "high"
        assert request.execution_id == result.execution_id
        assert request.checkpoint_id == result.checkpoint_id
        assert steps[-1].action == "interrupt"

        pending = await orch.get_pending_interrupt("t-gate")
        assert pending is not None
        assert pending.tool_call_id == request.tool_call_id

    @pytest.mark.asyncio
    async def test_accept_runs_the_call(self):
        """Accepting executes the call as proposed and continues the agent."""
        post, posted = tweet_tool()
        orch = make_orchestrator(
            [call("postTweet", {"text": "hello"}), AIMessage(content="Posted it.")], tools=[post],
        )
        _, paused = split(await collect(orch.handle_turn("post hello", "t-accept", "u1", agent_id="jenn-community")))
        _, result = split(await collect(orch.resume(
            "t-accept", paused.execution_id, HumanResponse(type="accept"),
            checkpoint_id=paused.checkpoint_id, user_id="u1",
        )))

        assert result.status == "completed"
        assert posted == ["hello"]
        assert result.tools_used == ["postTweet"]
        assert result.content == "Posted it."
        assert await orch.get_pending_interrupt("t-accept") is None

    @pytest.mark.asyncio
    async def test_edit_runs_with_new_args(self):
        """An edit replaces the call's arguments before it runs."""
        post, posted = tweet_tool()
        orch = make_orchestrator(
            [call("postTweet", {"text": "helo"}), AIMessage(content="Posted the fixed text.")], tools=[post],
        )
        _, paused = split(await collect(orch.handle_turn("post helo", "t-edit", "u1", agent_id="jenn-community")))
        _, result = split(await collect(orch.resume(
            "t-edit", paused.execution_id, {"type": "edit", "args": {"text": "hello"}}, user_id="u1",
        )))

        assert result.status == "completed"
        assert posted == ["hello"]

    @pytest.mark.asyncio
    async def test_respond_returns_feedback_to_agent(self):
        """A free-text reply goes back to the agent and the call never runs."""
        post, posted = tweet_tool()
        orch = make_orchestrator(
            [call("postTweet", {"text": "hello"}), AIMessage(content="Okay, I will wait.")], tools=[post],
        )
        _, paused = split(await collect(orch.handle_turn("post hello", "t-respond", "u1", agent_id="jenn-community")))
        _, result = split(await collect(orch.resume(
            "t-respond", paused.execution_id, HumanResponse(type="respond", message="Not today"), user_id="u1",
        )))

        assert result.status == "completed"
        assert result.content == "Okay, I will wait."
        assert posted == []

    @pytest.mark.asyncio
    async def test_reject_inside_delegation_ends_turn(self):
        """Rejecting a specialist's call abandons the hand-off without another model call."""
        post, posted = tweet_tool()
        orch = make_orchestrator(
            [
                delegate("jenn-community", "Tweet our launch"),
                call("postTweet", {"text": "We launched!"}, call_id="tw1"),
            ],
            tools=[post],
        )
        _, paused = split(await collect(orch.handle_turn("Ask Jenn to tweet our launch", "t-reject", "u1")))
        assert paused.status == "interrupted"
        assert paused.interrupt.agent_id == "jenn-community"

        _, result = split(await collect(orch.resume(
            "t-reject", paused.execution_id, HumanResponse(type="reject"), user_id="u1",
        )))

        assert result.status == "completed"
        assert posted == []
        assert "declined postTweet" in result.content

    @pytest.mark.asyncio
    async def test_second_resume_is_rejected(self):
        """Each pending approval can be resolved exactly once."""
        post, _ = tweet_tool()
        orch = make_orchestrator(
            [call("postTweet", {"text": "hello"}), AIMessage(content="done")], tools=[post],
        )
        _, paused = split(await collect(orch.handle_turn("post hello", "t-once", "u1", agent_id="jenn-community")))
        await collect(orch.resume("t-once", paused.execution_id, HumanResponse(type="accept"), user_id="u1"))

        with pytest.raises(InvalidInterruptError):
            await collect(orch.resume("t-once", paused.execution_id, HumanResponse(type="accept"), user_id="u1"))

    @pytest.mark.asyncio
    async def test_resume_validation(self):
        """Wrong execution ids, stale checkpoints and disallowed responses are refused."""
        post, posted = tweet_tool()
        no_edit = ToolRisk(risk_level="high", requires_approval=True, allow_edit=False)
        orch = make_orchestrator(
            [call("postTweet", {"text": "hello"}), AIMessage(content="done")],
            tools=[post],
            risk_overrides={"postTweet": no_edit},
        )
        _, paused = split(await collect(orch.handle_turn("post hello", "t-valid", "u1", agent_id="jenn-community")))

        with pytest.raises(InvalidInterruptError):
            await collect(orch.resume("t-valid", "exec-other", HumanResponse(type="accept"), user_id="u1"))
        with pytest.raises(InvalidInterruptError):
            await collect(orch.resume(
                "t-valid", paused.execution_id, HumanResponse(type="accept"), checkpoint_id="stale", user_id="u1",
            ))
        with pytest.raises(InvalidInterruptError):
            await collect(orch.resume(
                "t-valid", paused.execution_id, HumanResponse(type="edit", args={"text": "x"}), user_id="u1",
            ))
        assert posted == []

        _, result = split(await collect(orch.resume(
            "t-valid", paused.execution_id, HumanResponse(type="accept"), user_id="u1",
        )))
        assert result.status == "completed"
        assert posted == ["hello"]

    @pytest.mark.asyncio
    async def test_resume_runs_as_thread_owner(self):
        """A resume without a user id continues as the user who started the turn."""
        post, users = recording_tweet_tool()
        orch = make_orchestrator(
            [call("postTweet", {"text": "hello"}), AIMessage(content="Posted it.")], tools=[post],
        )
        orch.registry.register_user_agent("u1", AgentConfig(id="my-poster", name="Poster", tools=("postTweet",)))
        _, paused = split(await collect(orch.handle_turn("post hello", "t-owner", "u1", agent_id="my-poster")))

        pending = await orch.get_pending_interrupt("t-owner")
        assert pending.tool_call_id == paused.interrupt.tool_call_id

        _, result = split(await collect(orch.resume("t-owner", paused.execution_id, HumanResponse(type="accept"))))

        assert result.status == "completed"
        assert users == ["u1"]

    @pytest.mark.asyncio
    async def test_other_user_is_refused(self):
        """Only the thread's owner may inspect, resume or continue it."""
        post, users = recording_tweet_tool()
        orch = make_orchestrator([call("postTweet", {"text": "hello"})], tools=[post])
        _, paused = split(await collect(orch.handle_turn("post hello", "t-foreign", "u1", agent_id="jenn-community")))

        with pytest.raises(ThreadAccessError):
            await orch.get_pending_interrupt("t-foreign", user_id="u2")
        with pytest.raises(ThreadAccessError):
            await collect(orch.resume("t-foreign", paused.execution_id, HumanResponse(type="accept"), user_id="u2"))
        with pytest.raises(ThreadAccessError):
            await collect(orch.handle_turn("hello", "t-foreign", "u2"))

        assert users == []
        assert not orch.leases.is_held("t-foreign")
        assert await orch.get_pending_interrupt("t-foreign", user_id="u1") is not None

    @pytest.mark.asyncio
    async def test_new_message_while_approval_pending(self):
        """A new turn cannot start while the thread waits on an approval."""
        post, _ = tweet_tool()
        orch = make_orchestrator([call("postTweet", {"text": "hello"})], tools=[post])
        await collect(orch.handle_turn("post hello", "t-pending", "u1", agent_id="jenn-community"))

        with pytest.raises(InterruptPendingError):
            await collect(orch.handle_turn("something else", "t-pending", "u1"))
        assert not orch.leases.is_held("t-pending")


class TestFailures:
    """Errors inside a run."""

    @pytest.mark.asyncio
    async def test_timeout_is_retried(self):
        """A model call that times out once is retried and the turn completes."""
        model = SlowChatModel(delay=2.0, slow_calls=1, reply="Here you go.")
        orch = make_orchestrator(
            [], model=model, timeout_s=0.2,
            settings={"execution": {"model_retry_attempts": 3, "retry_initial_interval_s": 0.01}},
        )
        _, result = split(await collect(orch.handle_turn("hi", "t-retry", "u1")))

        assert result.status == "completed"
        assert result.content == "Here you go."
        assert model.calls == 2

    @pytest.mark.asyncio
    async def test_timeouts_exhaust_retries(self):
        """When every attempt times out the turn fails with a retryable timeout."""
        model = SlowChatModel(delay=2.0)
        orch = make_orchestrator(
            [], model=model, timeout_s=0.05,
            settings={"execution": {"model_retry_attempts": 2, "retry_initial_interval_s": 0.01}},
        )
        _, result = split(await collect(orch.handle_turn("hi", "t-timeout", "u1")))

        assert result.status == "failed"
        assert result.error.code == "model_timeout"
        assert result.error.retryable is True
        assert model.calls == 2

    @pytest.mark.asyncio
    async def test_tool_error_goes_back_to_agent(self):
        """A failing tool becomes an error result the agent can react to."""

        @tool
        def memoryAddNote(note: str) -> str:
            """Store a note about the user."""
            raise RuntimeError("notes backend offline")

        orch = make_orchestrator(
            [call("memoryAddNote", {"note": "likes tea"}), AIMessage(content="I could not save that note.")],
            tools=[memoryAddNote],
        )
        _, result = split(await collect(orch.handle_turn("remember that I like tea", "t-toolerr", "u1")))

        assert result.status == "completed"
        assert result.content == "I could not save that note."
        assert result.tools_used == ["memoryAddNote"]
        errors = [m for m in await thread_messages(orch, "t-toolerr") if isinstance(m, ToolMessage)]
        assert [(m.status, m.content) for m in errors] == [("error", "ERROR: notes backend offline")]


class TestCancellation:
    """Aborting a run and continuing the thread afterwards."""

    @pytest.mark.asyncio
    async def test_cancel_stops_inflight_model_call(self):
        """Cancelling during a slow model call ends the run at once."""
        orch = make_orchestrator([], model=SlowChatModel(delay=5.0))
        items = []
        started = time.monotonic()
        async for item in orch.handle_turn("hi", "t-abort", "u1"):
            items.append(item)
            if isinstance(item, ExecutionStep) and item.action == "routing":
                asyncio.get_running_loop().call_later(0.05, orch.cancel, item.metadata["execution_id"])

        _, result = split(items)
        assert result.status == "cancelled"
        assert result.error.code == "cancelled"
        assert time.monotonic() - started < 2.0
        assert not orch.leases.is_held("t-abort")

    @pytest.mark.asyncio
    async def test_cancelled_hand_off_is_not_replayed(self):
        """A hand-off requested by a cancelled turn is closed, not run by the next turn."""
        orch = make_orchestrator([
            delegate("jenn-community", "Post about the launch"),
            AIMessage(content="Hi!"),
        ])
        items = []
        async for item in orch.handle_turn("Ask Jenn to post about the launch", "t-cancel", "u1", locale="en"):
            items.append(item)
            if isinstance(item, ExecutionStep) and item.action == "delegating":
                assert orch.cancel(item.metadata["execution_id"])
        _, first = split(items)
        assert first.status == "cancelled"

        _, second = split(await collect(orch.handle_turn("never mind, just say hi", "t-cancel", "u1")))

        assert second.status == "completed"
        assert second.content == "Hi!"
        assert second.delegation_path == ["cleo-supervisor"]
        closing = [m for m in await thread_messages(orch, "t-cancel")
                   if isinstance(m, ToolMessage) and m.tool_call_id == "call_1"]
        assert len(closing) == 1
        assert closing[0].content.startswith("Cancelled")


class TestPrompts:
    """Instruction templates shipped with the package."""

    def test_templates_load_quietly(self, caplog):
        """Templates are read from the package without warnings."""
        node = AgentNode(make_orchestrator([]).builder.deps)
        with caplog.at_level(logging.WARNING):
            supervisor = node._load_prompt("supervisor.md")
            specialist = node._load_prompt("specialist.md")

        assert "{agent_name}" in supervisor and "{agent_name}" in specialist
        assert caplog.records == []


class TestCacheIntegration:
    """Compiled graphs are shared across turns."""

    @pytest.mark.asyncio
    async def test_graph_compiled_once_per_root_agent(self):
        """Two threads on the same root agent reuse one compiled graph."""
        orch = make_orchestrator([AIMessage(content="a"), AIMessage(content="b")])
        await collect(orch.handle_turn("hi", "t-c1", "u1"))
        await collect(orch.handle_turn("hi", "t-c2", "u1"))

        stats = orch.cache.stats()
        assert stats["misses"] == 1
        assert stats["total_graphs"] == 1
        assert orch.invalidate_agent("cleo-supervisor") == 1
