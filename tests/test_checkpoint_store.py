import asyncio

import pytest
from langgraph.checkpoint.base import empty_checkpoint

from ankie.backends.checkpoint_store import (
    OrderedMemorySaver,
    checkpoint_history,
    latest_checkpoint,
    open_checkpointer,
)
from ankie.orchestration.errors import CheckpointOrderError

METADATA = {"source": "loop", "step": 0, "parents": {}}


def thread(thread_id: str = "t1") -> dict:
    return {"configurable": {"thread_id": thread_id, "checkpoint_ns": ""}}


class TestOrderedWrites:
    """Per-thread checkpoint history stays linear."""

    @pytest.mark.asyncio
    async def test_linear_history(self):
        """Writes chained on the latest checkpoint are accepted in order."""
        saver = OrderedMemorySaver()
        first = empty_checkpoint()
        cfg = await saver.aput(thread(), first, METADATA, {})
        second = empty_checkpoint()
        await saver.aput(cfg, second, METADATA, {})

        assert await checkpoint_history(saver, "t1") == [first["id"], second["id"]]
        latest = await latest_checkpoint(saver, "t1")
        assert latest.config["configurable"]["checkpoint_id"] == second["id"]

    @pytest.mark.asyncio
    async def test_stale_parent_rejected(self):
        """A write based on an older snapshot is refused."""
        saver = OrderedMemorySaver()
        first = empty_checkpoint()
        cfg1 = await saver.aput(thread(), first, METADATA, {})
        await saver.aput(cfg1, empty_checkpoint(), METADATA, {})

        with pytest.raises(CheckpointOrderError):
            await saver.aput(cfg1, empty_checkpoint(), METADATA, {})
        assert saver.rejected_writes == 1

    @pytest.mark.asyncio
    async def test_out_of_order_id_rejected(self):
        """A checkpoint id that does not sort after the latest is refused."""
        saver = OrderedMemorySaver()
        first = empty_checkpoint()
        cfg1 = await saver.aput(thread(), first, METADATA, {})
        replay = dict(empty_checkpoint(), id=first["id"])

        with pytest.raises(CheckpointOrderError):
            await saver.aput(cfg1, replay, METADATA, {})
        assert await checkpoint_history(saver, "t1") == [first["id"]]

    @pytest.mark.asyncio
    async def test_threads_are_independent(self):
        """Ordering is enforced per thread."""
        saver = OrderedMemorySaver()
        await saver.aput(thread("a"), empty_checkpoint(), METADATA, {})
        await saver.aput(thread("b"), empty_checkpoint(), METADATA, {})
        assert len(await checkpoint_history(saver, "a")) == 1
        assert len(await checkpoint_history(saver, "b")) == 1
        assert await latest_checkpoint(saver, "missing") is None

    @pytest.mark.asyncio
    async def test_thread_locks_are_released(self):
        """Per-thread write locks do not outlive the writes that took them."""
        saver = OrderedMemorySaver()
        cfgs = await asyncio.gather(*(saver.aput(thread(f"t{i}"), empty_checkpoint(), METADATA, {}) for i in range(20)))
        assert len(cfgs) == 20
        assert saver.active_locks() == 0

        await saver.aput(cfgs[0], empty_checkpoint(), METADATA, {})
        with pytest.raises(CheckpointOrderError):
            await saver.aput(cfgs[0], empty_checkpoint(), METADATA, {})
        saver.put(thread("sync"), empty_checkpoint(), METADATA, {})
        assert saver.active_locks() == 0


class TestOpenCheckpointer:
    """Backend selection from settings."""

    @pytest.mark.asyncio
    async def test_memory_backend(self):
        assert isinstance(await open_checkpointer({"backend": "memory"}), OrderedMemorySaver)

    @pytest.mark.asyncio
    async def test_unknown_backend(self):
        with pytest.raises(ValueError):
            await open_checkpointer({"backend": "redis"})
