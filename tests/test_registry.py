import pytest

from ankie.orchestration.adapters.local_tools import NoteStore, local_tools
from ankie.orchestration.adapters.tool_registry import ToolRegistry
from ankie.orchestration.errors import AgentNotFoundError
from ankie.orchestration.registry import AgentRegistry, delegation_tool_name, delegation_tool_schema
from ankie.orchestration.schema import AgentConfig

from tests.helpers import team


class TestAgentRegistry:
    """Agent lookup and delegation topology."""

    def test_supervisor_reaches_top_level_specialists(self):
        """The supervisor sees top-level specialists but not sub-agents."""
        registry = AgentRegistry(team())
        targets = {a.id for a in registry.delegation_targets(registry.get("cleo-supervisor"))}
        assert targets == {"ami-creative", "jenn-community"}

    def test_parent_reaches_children(self):
        registry = AgentRegistry(team())
        assert [a.id for a in registry.delegation_targets(registry.get("ami-creative"))] == ["astra-email"]
        assert registry.delegation_targets(registry.get("jenn-community")) == []

    def test_explicit_delegates_win(self):
        agents = team() + [AgentConfig(id="solo", name="Solo", delegates=("astra-email",))]
        registry = AgentRegistry(agents)
        assert [a.id for a in registry.delegation_targets(registry.get("solo"))] == ["astra-email"]

    def test_supervisor_inferred(self):
        assert AgentRegistry(team()).supervisor_id == "cleo-supervisor"

    def test_duplicate_ids_rejected(self):
        with pytest.raises(ValueError):
            AgentRegistry(team() + [AgentConfig(id="astra-email", name="Other")])

    def test_unknown_agent(self):
        with pytest.raises(AgentNotFoundError):
            AgentRegistry(team()).get("nobody")

    def test_user_agents_are_private(self):
        """Tenant agents are only visible to their owner and cannot shadow built-ins."""
        registry = AgentRegistry(team())
        registry.register_user_agent("u1", AgentConfig(id="my-helper", name="Helper"))

        assert registry.has("my-helper", "u1")
        assert not registry.has("my-helper", "u2")
        assert "my-helper" in {a.id for a in registry.delegation_targets(registry.get("cleo-supervisor"), "u1")}
        with pytest.raises(ValueError):
            registry.register_user_agent("u1", AgentConfig(id="astra-email", name="Fake"))

    def test_delegation_tools(self):
        """Tool names are derived from agent ids and resolve back to the agent."""
        registry = AgentRegistry(team())
        assert delegation_tool_name("jenn-community") == "delegate_to_jenn_community"
        assert registry.resolve_delegation_tool("delegate_to_astra_email").id == "astra-email"
        with pytest.raises(AgentNotFoundError):
            registry.resolve_delegation_tool("delegate_to_ghost")

        schema = delegation_tool_schema(registry.get("jenn-community"))
        assert schema["function"]["name"] == "delegate_to_jenn_community"
        assert schema["function"]["parameters"]["required"] == ["task"]

    def test_settings_file_loads(self):
        """The shipped agents file builds a consistent registry."""
        registry = AgentRegistry.from_yaml("settings/agents.yaml", "cleo-supervisor")
        assert registry.get("astra-email").parent_agent_id == "ami-creative"
        assert len(registry.list_agents()) == 8


class TestToolRegistry:
    """Risk classification of tools."""

    def test_gated_tools(self):
        registry = ToolRegistry()
        assert registry.requires_approval("postTweet")
        assert registry.risk_for("postTweet").risk_level == "high"
        assert registry.risk_for("createCalendarEvent").risk_level == "medium"
        assert not registry.requires_approval("webSearch")
        assert registry.risk_for("anything").risk_level == "low"

    def test_destructive_tools_not_editable(self):
        config = ToolRegistry().risk_for("deleteGmailMessage").interrupt_config()
        assert config.allow_edit is False
        assert config.allow_accept is True

    def test_tools_for_skips_unknown(self):
        registry = ToolRegistry(local_tools())
        assert [t.name for t in registry.tools_for(["memoryAddNote", "sendGmailMessage"])] == ["memoryAddNote"]


class TestLocalTools:
    """Per-user memory notes."""

    def setup_method(self):
        self.store = NoteStore(max_per_user=3)
        self.add, self.recall = local_tools(self.store)

    def test_notes_scoped_by_user(self):
        """Notes stored for one user are invisible to another."""
        self.add.invoke({"note": "prefers tea"}, config={"configurable": {"user_id": "u1"}})

        assert "prefers tea" in self.recall.invoke({"query": "tea"}, config={"configurable": {"user_id": "u1"}})
        assert self.recall.invoke({"query": "tea"}, config={"configurable": {"user_id": "u2"}}) == "No matching notes."

    def test_user_required(self):
        with pytest.raises(ValueError):
            self.add.invoke({"note": "x"}, config={"configurable": {}})

    def test_store_keeps_latest_notes(self):
        """Each user keeps a bounded number of notes, newest last."""
        for i in range(5):
            self.add.invoke({"note": f"note {i}"}, config={"configurable": {"user_id": "u1"}})
        assert self.store.notes_for("u1") == ["note 2", "note 3", "note 4"]

    def test_separate_stores_do_not_share(self):
        """Tools built on different stores see different notes."""
        other_add, other_recall = local_tools()
        other_add.invoke({"note": "likes jazz"}, config={"configurable": {"user_id": "u1"}})
        assert self.recall.invoke({"query": ""}, config={"configurable": {"user_id": "u1"}}) == "No matching notes."
        assert "likes jazz" in other_recall.invoke({"query": "jazz"}, config={"configurable": {"user_id": "u1"}})
