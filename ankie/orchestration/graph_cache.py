# ankie/orchestration/graph_cache.py

import asyncio
import contextlib
import inspect
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Union

_log = logging.getLogger(__name__)

GraphFactory = Callable[[], Union[Any, Awaitable[Any]]]


class GraphCache:
    """
    Compiled graphs memoized per agent id.

    Population is serialized per key, so concurrent misses on the same agent share one
    compilation. Entries are immutable once stored; invalidation only drops them.
    """

    def __init__(self) -> None:
        self._graphs: Dict[str, Any] = {}
        # agent_id -> [lock, users]; dropped once nobody holds or awaits it
        self._locks: Dict[str, List[Any]] = {}
        self.hits = 0
        self.misses = 0
        self.invalidations = 0
        self._compiles = 0
        self._compile_total_ms = 0.0

    @contextlib.asynccontextmanager
    async def _compile_slot(self, agent_id: str) -> AsyncIterator[None]:
        entry = self._locks.get(agent_id)
        if entry is None:
            entry = self._locks[agent_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(agent_id, None)

    def has(self, agent_id: str) -> bool:
        return agent_id in self._graphs

    async def get_or_compile(self, agent_id: str, factory: GraphFactory) -> Any:
        """
        Return the cached graph for `agent_id`, compiling it with `factory` on a miss.

        `factory` may be sync or async. Its exceptions propagate and nothing is cached.
        """
        graph = self._graphs.get(agent_id)
        if graph is not None:
            self.hits += 1
            _log.debug("Graph cache hit: %s", agent_id)
            return graph

        async with self._compile_slot(agent_id):
            graph = self._graphs.get(agent_id)
            if graph is not None:
                self.hits += 1
                _log.debug("Graph cache hit after wait: %s", agent_id)
                return graph

            self.misses += 1
            started = time.perf_counter()
            graph = factory()
            if inspect.isawaitable(graph):
                graph = await graph
            elapsed_ms = (time.perf_counter() - started) * 1000
            self._compiles += 1
            self._compile_total_ms += elapsed_ms
            self._graphs[agent_id] = graph
            _log.info("Graph cache miss: compiled %s in %.1f ms.", agent_id, elapsed_ms)
            return graph

    async def warmup(self, factories: Dict[str, GraphFactory]) -> List[str]:
        """Compile every listed agent concurrently; returns the ids that failed."""
        ids = list(factories)
        results = await asyncio.gather(
            *(self.get_or_compile(aid, factories[aid]) for aid in ids), return_exceptions=True,
        )
        failed = [aid for aid, res in zip(ids, results) if isinstance(res, BaseException)]
        for aid in failed:
            _log.warning("Warmup failed for %s.", aid)
        return failed

    def invalidate(self, agent_id: Optional[str] = None) -> int:
        """Drop one entry, or every entry when `agent_id` is None. Returns how many were dropped."""
        if agent_id is None:
            dropped = len(self._graphs)
            self._graphs.clear()
        else:
            dropped = 1 if self._graphs.pop(agent_id, None) is not None else 0
        self.invalidations += dropped
        if dropped:
            _log.info("Graph cache invalidated %d entr%s (%s).", dropped, "y" if dropped == 1 else "ies", agent_id or "all")
        return dropped

    def invalidate_many(self, agent_ids: Iterable[str]) -> int:
        return sum(self.invalidate(aid) for aid in agent_ids)

    # ──────────────────────────────────────────────────────────────────────────
    # Observability
    # ──────────────────────────────────────────────────────────────────────────
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0

    def avg_compile_ms(self) -> float:
        return self._compile_total_ms / self._compiles if self._compiles else 0.0

    def stats(self) -> Dict[str, Any]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "invalidations": self.invalidations,
            "total_graphs": len(self._graphs),
            "hit_rate": round(self.hit_rate(), 4),
            "avg_compile_ms": round(self.avg_compile_ms(), 2),
            "pending_compiles": len(self._locks),
        }

    def export_state(self) -> Dict[str, Any]:
        """Stats plus the cached agent ids, for diagnostics endpoints and logs."""
        state = self.stats()
        state["agents"] = sorted(self._graphs)
        return state
