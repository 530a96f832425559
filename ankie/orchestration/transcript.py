# ankie/orchestration/transcript.py

"""
Helpers for reading and writing the *active* transcript.

While a delegation is open, the acting agent is the top frame's delegate and its
transcript lives inside that frame; otherwise it is the root `messages` channel.
Nodes never mutate state in place; they collect changes in a TranscriptWriter and
return `writer.update()`.
"""

import copy
import uuid
from typing import Any, Dict, List, Optional

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, ToolMessage

from ankie.orchestration.session_state import DelegationFrame, ExecutionState

DELEGATION_PREFIX = "delegate_to_"
ABANDONED_CALL = "Cancelled: the turn that requested this call ended before it completed."


def is_delegation_call(tool_name: str) -> bool:
    return tool_name.startswith(DELEGATION_PREFIX)


def message_text(msg: Optional[BaseMessage]) -> str:
    """Plain text of a message; list-of-blocks content is flattened to its text parts."""
    if msg is None:
        return ""
    content = msg.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def last_ai_message(messages: List[BaseMessage]) -> Optional[AIMessage]:
    for msg in reversed(messages):
        if isinstance(msg, AIMessage):
            return msg
    return None


def open_tool_calls(messages: List[BaseMessage]) -> List[Dict[str, Any]]:
    """
    Tool calls of the last AIMessage that no ToolMessage has answered yet.

    A HumanMessage after that AIMessage starts a new turn, so nothing is open.

    Returns:
        The unanswered calls, in the order the model emitted them.
    """
    answered = set()
    for msg in reversed(messages):
        if isinstance(msg, HumanMessage):
            return []
        if isinstance(msg, AIMessage):
            return [tc for tc in msg.tool_calls if tc["id"] not in answered]
        if isinstance(msg, ToolMessage):
            answered.add(msg.tool_call_id)
    return []


def split_calls(calls: List[Dict[str, Any]]):
    """(regular calls, delegation calls)"""
    regular = [tc for tc in calls if not is_delegation_call(tc["name"])]
    delegations = [tc for tc in calls if is_delegation_call(tc["name"])]
    return regular, delegations


def active_messages(state: ExecutionState) -> List[BaseMessage]:
    stack = state.get("delegation_stack") or []
    if stack:
        return list(stack[-1]["messages"])
    return list(state.get("messages") or [])


def active_agent_id(state: ExecutionState) -> str:
    stack = state.get("delegation_stack") or []
    if stack:
        return stack[-1]["agent_id"]
    return state["root_agent_id"]


def delegation_path(state: ExecutionState) -> List[str]:
    return [state["root_agent_id"]] + [f["agent_id"] for f in state.get("delegation_stack") or []]


def copy_stack(state: ExecutionState) -> List[DelegationFrame]:
    """Copy of the frame stack whose per-frame message lists may be modified freely."""
    frames = []
    for frame in state.get("delegation_stack") or []:
        clone = copy.copy(frame)
        clone["messages"] = list(frame["messages"])
        frames.append(clone)
    return frames


class TranscriptWriter:
    """
    Collects changes to the active transcript and renders them as a state update.

    - root transcript: new or replaced messages are emitted through the `add_messages` reducer
    - frame transcript: the whole (copied) stack is emitted
    """

    def __init__(self, state: ExecutionState) -> None:
        self.stack = copy_stack(state)
        self._root = list(state.get("messages") or [])
        self._root_changes: List[BaseMessage] = []

    @property
    def in_frame(self) -> bool:
        return bool(self.stack)

    @property
    def messages(self) -> List[BaseMessage]:
        return self.stack[-1]["messages"] if self.stack else self._root

    def append(self, msg: BaseMessage) -> None:
        if msg.id is None:
            msg.id = str(uuid.uuid4())
        self.messages.append(msg)
        if not self.stack:
            self._root_changes.append(msg)

    def replace(self, msg: BaseMessage) -> None:
        """Swap the message carrying `msg.id` for `msg`."""
        target = self.messages
        for i, existing in enumerate(target):
            if msg.id is not None and existing.id == msg.id:
                target[i] = msg
                break
        else:
            raise KeyError(f"No message with id {msg.id} in the active transcript.")
        if not self.stack:
            self._root_changes.append(msg)

    def answer_open_calls(self, note: str) -> None:
        """Close every unanswered tool call of the active transcript with `note`."""
        for tc in open_tool_calls(self.messages):
            self.append(ToolMessage(content=note, tool_call_id=tc["id"], name=tc["name"], status="error"))

    def unwind(self, note: str) -> List[DelegationFrame]:
        """
        Abandon every open hand-off, innermost first, closing each pending call with `note`.

        Returns:
            The popped frames, innermost first.
        """
        popped = []
        self.answer_open_calls(note)
        while self.stack:
            popped.append(self.stack.pop())
            self.answer_open_calls(note)
        return popped

    def update(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self._root_changes:
            out["messages"] = list(self._root_changes)
        out["delegation_stack"] = self.stack
        return out


def close_abandoned_calls(state: ExecutionState) -> List[BaseMessage]:
    """
    Answers for the calls an unfinished turn left open, to be added to the root transcript.

    Open hand-offs are unwound as well; callers start the next turn with an empty stack.
    """
    writer = TranscriptWriter(state)
    writer.unwind(ABANDONED_CALL)
    return writer.update().get("messages", [])
