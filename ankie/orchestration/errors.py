# ankie/orchestration/errors.py

from typing import Optional


class OrchestrationError(Exception):
    """
    Base class for failures raised by the orchestration core.

    Attributes:
        code      : Stable machine-readable identifier surfaced to callers.
        retryable : True when the same turn may succeed if submitted again.
        user_message : Short explanation that is safe to show to the end user.
    """

    code = "orchestration_error"
    retryable = False
    user_message = "This request cannot be completed."

    def __init__(self, message: str = "", *, user_message: Optional[str] = None) -> None:
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ProviderNotConfiguredError(OrchestrationError):
    code = "provider_not_configured"
    retryable = True
    user_message = "The language model is temporarily unavailable. Please retry."

    def __init__(self, provider: str, env_var: str) -> None:
        super().__init__(f"Provider '{provider}' is not configured (missing {env_var}).")
        self.provider = provider
        self.env_var = env_var


class ModelTimeoutError(OrchestrationError):
    code = "model_timeout"
    retryable = True
    user_message = "The language model took too long to answer. Please retry."

    def __init__(self, model_name: str, timeout_s: float) -> None:
        super().__init__(f"Model '{model_name}' did not answer within {timeout_s:.1f}s.")
        self.model_name = model_name
        self.timeout_s = timeout_s


class ExecutionCancelledError(OrchestrationError):
    code = "cancelled"
    user_message = "The request was cancelled."


class GraphCompilationError(OrchestrationError):
    code = "graph_compilation_failed"
    user_message = "This assistant is misconfigured and cannot run right now."

    def __init__(self, agent_id: str, reason: str) -> None:
        super().__init__(f"Failed to compile graph for agent '{agent_id}': {reason}")
        self.agent_id = agent_id


class AgentNotFoundError(OrchestrationError):
    code = "agent_not_found"
    user_message = "The requested assistant does not exist."

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Unknown agent '{agent_id}'.")
        self.agent_id = agent_id


class DelegationDepthExceededError(OrchestrationError):
    code = "delegation_depth_exceeded"
    user_message = (
        "There was too much back-and-forth between specialists to finish this request. "
        "Try splitting it into smaller steps."
    )

    def __init__(self, path: list, max_hops: int) -> None:
        super().__init__(
            f"Delegation depth exceeded ({max_hops} hops): {' -> '.join(path)}"
        )
        self.path = list(path)
        self.max_hops = max_hops


class InvalidInterruptError(OrchestrationError):
    code = "invalid_interrupt"
    user_message = "This approval request is no longer pending."


class InterruptPendingError(OrchestrationError):
    code = "interrupt_pending"
    user_message = "An action is still waiting for your approval. Answer it before sending a new message."


class ThreadBusyError(OrchestrationError):
    code = "thread_busy"
    retryable = True
    user_message = "This conversation is still processing a previous message. Please retry shortly."

    def __init__(self, thread_id: str) -> None:
        super().__init__(f"Thread '{thread_id}' already has an active execution.")
        self.thread_id = thread_id


class ThreadAccessError(OrchestrationError):
    """The thread belongs to another user."""

    code = "thread_forbidden"
    user_message = "This conversation belongs to another user."

    def __init__(self, thread_id: str, user_id: str) -> None:
        super().__init__(f"User '{user_id}' may not act on thread '{thread_id}'.")
        self.thread_id = thread_id
        self.user_id = user_id


class CheckpointOrderError(OrchestrationError):
    """A checkpoint write was rejected because it would fork or reorder the thread history."""

    code = "checkpoint_conflict"
    retryable = True
    user_message = "The conversation state is temporarily unavailable. Please retry."
