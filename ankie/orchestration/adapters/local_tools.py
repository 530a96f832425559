# ankie/orchestration/adapters/local_tools.py

"""
Process-local tools available without any vendor credentials.

Every call receives the run's RunnableConfig, so notes are scoped by the
`user_id` of the request instead of any process-wide "current user". The notes
themselves live in a NoteStore owned by whoever builds the tools.
"""

import logging
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool, tool

_log = logging.getLogger(__name__)

MAX_RECALL = 20
MAX_NOTES_PER_USER = 200


def _user_of(config: RunnableConfig) -> str:
    user_id = (config.get("configurable") or {}).get("user_id")
    if not user_id:
        raise ValueError("memory tools need a user_id in the run context")
    return str(user_id)


class NoteStore:
    """Per-user notes; each user keeps only the most recent `max_per_user`."""

    def __init__(self, max_per_user: int = MAX_NOTES_PER_USER) -> None:
        self.max_per_user = max_per_user
        self._notes: Dict[str, Deque[str]] = {}
        self._lock = threading.Lock()

    def add(self, user_id: str, text: str) -> None:
        with self._lock:
            notes = self._notes.get(user_id)
            if notes is None:
                notes = self._notes[user_id] = deque(maxlen=self.max_per_user)
            notes.append(text)

    def notes_for(self, user_id: str) -> List[str]:
        with self._lock:
            return list(self._notes.get(user_id, ()))

    def clear(self, user_id: Optional[str] = None) -> None:
        with self._lock:
            if user_id is None:
                self._notes.clear()
            else:
                self._notes.pop(user_id, None)


def local_tools(store: Optional[NoteStore] = None) -> List[BaseTool]:
    """`memoryAddNote` and `memoryRecall` bound to `store` (a fresh one when omitted)."""
    notes = store if store is not None else NoteStore()

    @tool
    def memoryAddNote(note: str, config: RunnableConfig) -> str:
        """
        Store a short note about the user for later turns.
        """
        user_id = _user_of(config)
        text = note.strip()
        if not text:
            return "ERROR: note is empty."
        notes.add(user_id, text)
        _log.info("Stored note for user %s.", user_id)
        return "Note saved."

    @tool
    def memoryRecall(query: str, config: RunnableConfig) -> str:
        """
        Return stored notes about the user that mention `query` (all notes when empty).
        """
        user_id = _user_of(config)
        needle = query.strip().lower()
        hits = [n for n in notes.notes_for(user_id) if not needle or needle in n.lower()][-MAX_RECALL:]
        if not hits:
            return "No matching notes."
        return "\n".join(f"- {n}" for n in hits)

    return [memoryAddNote, memoryRecall]
