# ankie/backends/checkpoint_store.py

import asyncio
import contextlib
import logging
import os
import threading
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple

import aiosqlite
from langgraph.checkpoint.base import BaseCheckpointSaver, CheckpointTuple
from langgraph.checkpoint.memory import MemorySaver
from langgraph.checkpoint.sqlite.aio import AsyncSqliteSaver

from ankie.boot.load_settings import resolve_path
from ankie.orchestration.errors import CheckpointOrderError

_log = logging.getLogger(__name__)


def _thread_key(config: Dict[str, Any]) -> Tuple[str, str]:
    conf = config.get("configurable", {})
    return str(conf["thread_id"]), str(conf.get("checkpoint_ns", ""))


def _latest_query(key: Tuple[str, str]) -> Dict[str, Any]:
    return {"configurable": {"thread_id": key[0], "checkpoint_ns": key[1]}}


class OrderedWritesMixin:
    """
    Serialize checkpoint writes per thread and keep each thread's history linear.

    A write is rejected with CheckpointOrderError when its id does not sort after the
    thread's latest checkpoint, or when it names a parent other than that latest
    checkpoint (two writers racing from the same snapshot).
    """

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._guard = threading.Lock()
        # key -> [lock, users]; an entry lives only while some writer holds or awaits it
        self._async_locks: Dict[Tuple[str, str], List[Any]] = {}
        self._sync_locks: Dict[Tuple[str, str], List[Any]] = {}
        self.rejected_writes = 0

    def _enter(self, table: Dict[Tuple[str, str], List[Any]], key: Tuple[str, str], factory: Any) -> Any:
        with self._guard:
            entry = table.get(key)
            if entry is None:
                entry = table[key] = [factory(), 0]
            entry[1] += 1
            return entry[0]

    def _leave(self, table: Dict[Tuple[str, str], List[Any]], key: Tuple[str, str]) -> None:
        with self._guard:
            entry = table.get(key)
            if entry is None:
                return
            entry[1] -= 1
            if entry[1] <= 0:
                del table[key]

    @contextlib.asynccontextmanager
    async def _async_lock(self, key: Tuple[str, str]) -> AsyncIterator[None]:
        lock = self._enter(self._async_locks, key, asyncio.Lock)
        try:
            async with lock:
                yield
        finally:
            self._leave(self._async_locks, key)

    @contextlib.contextmanager
    def _sync_lock(self, key: Tuple[str, str]) -> Iterator[None]:
        lock = self._enter(self._sync_locks, key, threading.Lock)
        try:
            with lock:
                yield
        finally:
            self._leave(self._sync_locks, key)

    def active_locks(self) -> int:
        """Per-thread locks currently held or awaited."""
        with self._guard:
            return len(self._async_locks) + len(self._sync_locks)

    def _check_order(self, config: Dict[str, Any], checkpoint: Dict[str, Any], latest: Optional[CheckpointTuple]) -> None:
        if latest is None:
            return
        latest_id = latest.config["configurable"]["checkpoint_id"]
        thread_id = config["configurable"]["thread_id"]
        if checkpoint["id"] <= latest_id:
            self.rejected_writes += 1
            _log.error("Rejected out-of-order checkpoint %s for thread %s (latest %s).", checkpoint["id"], thread_id, latest_id)
            raise CheckpointOrderError(
                f"Checkpoint {checkpoint['id']} does not follow latest {latest_id} on thread {thread_id}."
            )
        parent_id = config["configurable"].get("checkpoint_id")
        if parent_id is not None and parent_id != latest_id:
            self.rejected_writes += 1
            _log.error("Rejected stale checkpoint write on thread %s: parent %s, latest %s.", thread_id, parent_id, latest_id)
            raise CheckpointOrderError(
                f"Checkpoint parent {parent_id} is older than latest {latest_id} on thread {thread_id}."
            )

    def put(self, config, checkpoint, metadata, new_versions):  # type: ignore[override]
        key = _thread_key(config)
        with self._sync_lock(key):
            self._check_order(config, checkpoint, self.get_tuple(_latest_query(key)))
            return super().put(config, checkpoint, metadata, new_versions)

    async def aput(self, config, checkpoint, metadata, new_versions):  # type: ignore[override]
        key = _thread_key(config)
        async with self._async_lock(key):
            self._check_order(config, checkpoint, await self.aget_tuple(_latest_query(key)))
            return await super().aput(config, checkpoint, metadata, new_versions)


class OrderedMemorySaver(OrderedWritesMixin, MemorySaver):
    """In-process checkpoint store; one instance is shared by every graph in the process."""


class OrderedSqliteSaver(OrderedWritesMixin, AsyncSqliteSaver):
    """SQLite-backed checkpoint store; survives restarts and can be shared by co-located workers."""


# ──────────────────────────────────────────────────────────────────────────────
# Construction and inspection
# ──────────────────────────────────────────────────────────────────────────────

async def open_checkpointer(ckpt_cfg: Optional[Dict[str, Any]] = None) -> BaseCheckpointSaver:
    """
    Build the process-wide checkpoint saver from the `checkpoints` settings section.

    Backends:
        memory : OrderedMemorySaver (lost on restart)
        sqlite : OrderedSqliteSaver at `sqlite_path`
    """
    cfg = dict(ckpt_cfg or {})
    backend = cfg.get("backend", "memory")

    if backend == "memory":
        _log.info("Using in-memory checkpoint store.")
        return OrderedMemorySaver()

    if backend == "sqlite":
        path = resolve_path(cfg.get("sqlite_path", "data/checkpoints.db"))
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        conn = await aiosqlite.connect(path)
        saver = OrderedSqliteSaver(conn)
        await saver.setup()
        _log.info("Using SQLite checkpoint store at %s.", path)
        return saver

    raise ValueError(f"Unknown checkpoint backend: {backend}")


async def close_checkpointer(saver: BaseCheckpointSaver) -> None:
    conn = getattr(saver, "conn", None)
    if conn is not None:
        await conn.close()


async def latest_checkpoint(saver: BaseCheckpointSaver, thread_id: str) -> Optional[CheckpointTuple]:
    """Latest checkpoint for `thread_id`, or None for an unknown thread."""
    return await saver.aget_tuple({"configurable": {"thread_id": thread_id, "checkpoint_ns": ""}})


async def checkpoint_history(saver: BaseCheckpointSaver, thread_id: str) -> List[str]:
    """Checkpoint ids for `thread_id`, oldest first."""
    ids = [
        tup.config["configurable"]["checkpoint_id"]
        async for tup in saver.alist({"configurable": {"thread_id": thread_id, "checkpoint_ns": ""}})
    ]
    ids.reverse()
    return ids
