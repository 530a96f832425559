# ankie/orchestration/leases.py

import asyncio
import logging
from typing import Dict, Optional, Set

from ankie.orchestration.errors import ThreadBusyError

_log = logging.getLogger(__name__)


class ThreadLeases:
    """
    At most one active execution per thread within this process.

    Acquisition never waits: a second caller gets ThreadBusyError immediately.
    """

    def __init__(self) -> None:
        self._held: Set[str] = set()

    def acquire(self, thread_id: str) -> None:
        if thread_id in self._held:
            _log.warning("Thread %s is busy; rejecting concurrent execution.", thread_id)
            raise ThreadBusyError(thread_id)
        self._held.add(thread_id)

    def release(self, thread_id: str) -> None:
        self._held.discard(thread_id)

    def is_held(self, thread_id: str) -> bool:
        return thread_id in self._held


class CancellationRegistry:
    """execution_id -> asyncio.Event; setting the event aborts in-flight model calls."""

    def __init__(self) -> None:
        self._events: Dict[str, asyncio.Event] = {}

    def open(self, execution_id: str) -> asyncio.Event:
        event = self._events.get(execution_id)
        if event is None:
            event = self._events[execution_id] = asyncio.Event()
        return event

    def get(self, execution_id: Optional[str]) -> Optional[asyncio.Event]:
        if execution_id is None:
            return None
        return self._events.get(execution_id)

    def cancel(self, execution_id: str) -> bool:
        event = self._events.get(execution_id)
        if event is None:
            return False
        event.set()
        _log.info("Cancellation requested for execution %s.", execution_id)
        return True

    def is_cancelled(self, execution_id: str) -> bool:
        event = self._events.get(execution_id)
        return event is not None and event.is_set()

    def close(self, execution_id: str) -> None:
        self._events.pop(execution_id, None)
