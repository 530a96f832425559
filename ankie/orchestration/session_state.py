# ankie/orchestration/session_state.py

from typing import TypedDict, Annotated, Optional, Dict, Any, List

from langchain_core.messages import AnyMessage
from langgraph.graph.message import add_messages


class Cursor(TypedDict, total=False):
    """
    Where the graph currently is; read by the step stream after every node.

    Keys:
        node            : Graph node that produced this update.
        agent_id        : Agent acting in that node.
        agent_name      : Display name of that agent.
        target_agent_id : Delegation target (delegation node only).
        target_agent_name : Display name of that target.
        tool_names      : Tools executed by the node (tools node only).
        decision        : Free-form outcome label ("delegate", "approved", "rejected", ...).
    """
    node: str
    agent_id: str
    agent_name: str
    target_agent_id: Optional[str]
    target_agent_name: Optional[str]
    tool_names: List[str]
    decision: Optional[str]


class DelegationFrame(TypedDict):
    """
    One open hand-off. The delegate works on its own transcript; when it finishes, its
    last answer becomes the ToolMessage that closes `call_id` in the parent transcript.
    """
    agent_id: str
    from_agent_id: str
    call_id: str
    tool_name: str
    task: str
    messages: List[Any]


class ExecutionState(TypedDict, total=False):
    """
    Per-thread graph state persisted by the checkpointer after every node.

    Keys:
        messages          : Root (supervisor-facing) transcript (append/replace by id).
        root_agent_id     : Agent the thread's graph was compiled for.
        user_id           : User who owns the thread; resumed runs execute on their behalf.
        execution_id      : Id of the execution that last wrote this state.
        cursor            : Current node and acting agent (see Cursor).
        delegation_stack  : Open hand-offs, innermost last.
        delegation_hops   : Hand-offs performed during the current turn.
        pending_approval  : Serialized HumanInterrupt while a call awaits a decision.
        approved_call_ids : Tool call ids already cleared by a human this turn.
        hint              : Delegation directive appended to the root agent's prompt this turn.
        locale            : Locale for humanized output.
        failure           : {code, message} when the turn ended in a handled failure.
    """
    messages: Annotated[List[AnyMessage], add_messages]
    root_agent_id: str
    user_id: str
    execution_id: str
    cursor: Cursor
    delegation_stack: List[DelegationFrame]
    delegation_hops: int
    pending_approval: Optional[Dict[str, Any]]
    approved_call_ids: List[str]
    hint: Optional[str]
    locale: Optional[str]
    failure: Optional[Dict[str, Any]]
