# ankie/orchestration/schema.py

"""
Value objects shared by the orchestration core.

Everything here is either immutable (agent definitions, emitted steps) or recreated per
call (model configs, delegation intents); none of these objects own mutable runtime state.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, model_validator


AgentRole = Literal["supervisor", "specialist"]

StepAction = Literal[
    "analyzing",
    "thinking",
    "responding",
    "delegating",
    "completing",
    "routing",
    "interrupt",
]

ResponseType = Literal["accept", "edit", "reject", "respond"]

ExecutionStatus = Literal["completed", "interrupted", "failed", "cancelled"]


# ──────────────────────────────────────────────────────────────────────────────
# Agents and models
# ──────────────────────────────────────────────────────────────────────────────

class AgentConfig(BaseModel):
    """Immutable descriptor of one supervisor or specialist agent."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str
    name: str
    role: AgentRole = "specialist"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 4000
    tools: Tuple[str, ...] = ()
    prompt: str = ""
    description: str = ""
    tags: Tuple[str, ...] = ()
    parent_agent_id: Optional[str] = None
    # Explicit delegation targets; None means "derive from role and parent links".
    delegates: Optional[Tuple[str, ...]] = None

    @model_validator(mode="after")
    def _check_identity(self) -> "AgentConfig":
        if not self.id.strip():
            raise ValueError("agent id must not be empty")
        if self.parent_agent_id == self.id:
            raise ValueError("an agent cannot be its own parent")
        return self

    @property
    def is_supervisor(self) -> bool:
        return self.role == "supervisor"


class ModelConfig(BaseModel):
    """Per-call generation parameters."""

    model_config = ConfigDict(frozen=True)

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    streaming: bool = False

    def cache_key(self) -> str:
        return f"t={self.temperature}|m={self.max_tokens}|s={int(self.streaming)}"


class RunContext(BaseModel):
    """Explicit per-request context handed to every graph, model and tool call."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    thread_id: str
    request_id: str
    locale: Optional[str] = None


# ──────────────────────────────────────────────────────────────────────────────
# Progress stream
# ──────────────────────────────────────────────────────────────────────────────

class ExecutionStep(BaseModel):
    """One observable unit of progress emitted while a graph runs."""

    model_config = ConfigDict(frozen=True)

    id: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    agent: str
    agent_name: Optional[str] = None
    action: StepAction
    content: str
    progress: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ──────────────────────────────────────────────────────────────────────────────
# Human-in-the-loop
# ──────────────────────────────────────────────────────────────────────────────

class ActionRequest(BaseModel):
    action: str
    args: Dict[str, Any] = Field(default_factory=dict)


class HumanInterruptConfig(BaseModel):
    allow_accept: bool = True
    allow_edit: bool = False
    allow_respond: bool = True
    allow_ignore: bool = True


class HumanInterrupt(BaseModel):
    """Approval request raised when a high-risk tool call is about to run."""

    action_request: ActionRequest
    config: HumanInterruptConfig = Field(default_factory=HumanInterruptConfig)
    description: str = ""
    risk_level: str = "medium"
    execution_id: str
    tool_call_id: str
    agent_id: str
    checkpoint_id: Optional[str] = None


class HumanResponse(BaseModel):
    """The human decision that resolves a pending interrupt."""

    type: ResponseType
    args: Optional[Dict[str, Any]] = None
    message: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self) -> "HumanResponse":
        if self.type == "edit" and self.args is None:
            raise ValueError("an 'edit' response must carry the edited args")
        if self.type == "respond" and not (self.message or "").strip():
            raise ValueError("a 'respond' response must carry a message")
        return self


# ──────────────────────────────────────────────────────────────────────────────
# Delegation intent
# ──────────────────────────────────────────────────────────────────────────────

class HeuristicScore(BaseModel):
    target: Optional[str] = None
    score: float = 0.0
    scores: Dict[str, float] = Field(default_factory=dict)
    reasons: List[str] = Field(default_factory=list)


class DelegationSuggestion(BaseModel):
    agent_id: str
    agent_name: str
    tool_name: str
    confidence: float
    reasoning: List[str] = Field(default_factory=list)
    suggested_task: str = ""
    needs_clarification: bool = False
    clarification_question: Optional[str] = None


class DelegationIntent(BaseModel):
    detected: bool = False
    quick_check: bool = False
    heuristic: Optional[HeuristicScore] = None
    intelligent: Optional[DelegationSuggestion] = None


# ──────────────────────────────────────────────────────────────────────────────
# Terminal result
# ──────────────────────────────────────────────────────────────────────────────

class ErrorInfo(BaseModel):
    code: str
    message: str
    retryable: bool = False


class ExecutionResult(BaseModel):
    """Terminal record of one run (or resumed run) of a compiled graph."""

    execution_id: str
    thread_id: str
    agent_id: str
    status: ExecutionStatus
    content: str = ""
    interrupt: Optional[HumanInterrupt] = None
    checkpoint_id: Optional[str] = None
    delegation_path: List[str] = Field(default_factory=list)
    tools_used: List[str] = Field(default_factory=list)
    error: Optional[ErrorInfo] = None
    step_count: int = 0
