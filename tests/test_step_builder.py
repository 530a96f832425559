from ankie.orchestration.step_builder import (
    StepConfig,
    build_delegation_step,
    build_humanized_step,
    build_interrupt_step,
    build_node_completed_step,
    build_tool_step,
    normalize_locale,
    resolve_locale,
)


class TestLocales:
    """Locale selection and fallbacks."""

    def test_normalize(self):
        """Regional variants collapse to the base language; unsupported ones are dropped."""
        assert normalize_locale("es-MX") == "es"
        assert normalize_locale("en_US") == "en"
        assert normalize_locale("pt-BR") is None
        assert normalize_locale(None) is None

    def test_explicit_then_context_then_default(self):
        """The explicit locale wins over the context locale, and Spanish is the default."""
        assert resolve_locale(StepConfig(agent_id="a", node_type="router", locale="fr", context_locale="en")) == "fr"
        assert resolve_locale(StepConfig(agent_id="a", node_type="router", context_locale="de")) == "de"
        assert resolve_locale(StepConfig(agent_id="a", node_type="router", locale="xx")) == "es"

    def test_unknown_node_type_uses_default_template(self):
        """An unknown node type never fails; it renders the generic template."""
        step = build_humanized_step(StepConfig(agent_id="a", node_type="summarize", locale="en"))
        assert step.content == "⚙️ Processing: summarize…"
        assert step.action == "analyzing"
        assert step.progress == 0


class TestBuilders:
    """Content, action and metadata of built steps."""

    def test_router_step(self):
        """Router steps are 'routing' at 5% progress."""
        step = build_humanized_step(StepConfig(agent_id="cleo-supervisor", node_type="router", locale="en"))
        assert step.action == "routing"
        assert step.progress == 5
        assert step.content.startswith("🧭 Analyzing your request")

    def test_agent_step_mentions_expertise(self):
        """Known agents are described with their expertise."""
        step = build_humanized_step(StepConfig(agent_id="astra-email", agent_name="Astra", node_type="agent", locale="en"))
        assert step.content == "🤖 Astra processing (expert in email management and professional communication)…"

    def test_delegation_step(self):
        """Delegation steps name the target and use the directional id."""
        step = build_delegation_step(StepConfig(
            agent_id="cleo-supervisor", node_type="agent", locale="es",
            target_agent_id="jenn-community", target_agent_name="Jenn", timestamp_ms=1700000000000,
        ))
        assert step.action == "delegating"
        assert step.id.startswith("cleo-supervisor→jenn-community:delegate:1700000000000-")
        assert "Delegando a Jenn" in step.content
        assert step.metadata["target_agent_id"] == "jenn-community"

    def test_tool_steps_single_and_parallel(self):
        """One tool is named (humanized); several are counted."""
        single = build_tool_step(StepConfig(agent_id="a", node_type="x", locale="en", tool_name="postTweet"))
        many = build_tool_step(StepConfig(agent_id="a", node_type="x", locale="en", tool_count=3))
        unknown = build_tool_step(StepConfig(agent_id="a", node_type="x", locale="en", tool_name="customThing"))

        assert single.content == "🔧 Using tool: Twitter/X post…"
        assert many.content == "🔧 Executing 3 tools in parallel…"
        assert unknown.content == "🔧 Using tool: customThing…"

    def test_interrupt_and_completed(self):
        """Interrupt steps wait on the named tool; completed steps report 100%."""
        paused = build_interrupt_step(StepConfig(agent_id="a", node_type="x", locale="en", tool_name="sendGmailMessage"))
        done = build_node_completed_step(StepConfig(agent_id="jenn-community", agent_name="Jenn", node_type="x", locale="en"))

        assert paused.action == "interrupt"
        assert paused.content == "⏸️ Waiting for your approval: email sending"
        assert done.action == "completing"
        assert done.progress == 100
        assert done.content == "✅ Jenn completed its work"

    def test_ids_unique_within_one_millisecond(self):
        """Steps built with the same timestamp still get distinct ids."""
        cfg = StepConfig(agent_id="a", node_type="agent", timestamp_ms=42)
        ids = {build_humanized_step(cfg).id for _ in range(50)}
        assert len(ids) == 50
        assert all(i.startswith("a:agent:42-") for i in ids)

    def test_metadata_is_canonical(self):
        """Every step is marked canonical and keeps caller metadata."""
        step = build_humanized_step(StepConfig(
            agent_id="a", node_type="tools", tool_name="webSearch", metadata={"execution_id": "exec-1"},
        ))
        assert step.metadata["canonical"] is True
        assert step.metadata["execution_id"] == "exec-1"
        assert step.metadata["tool_name"] == "webSearch"
        assert step.metadata["locale"] == "es"
