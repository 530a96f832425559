# ankie/delegation/heuristics.py

"""
Lightweight lexical scorer: one pass over each agent's keyword list.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from ankie.delegation.keywords import HEURISTIC_KEYWORDS, KeywordEntry
from ankie.orchestration.schema import AgentConfig, HeuristicScore

_log = logging.getLogger(__name__)

NOISE_FLOOR = 0.05
MAX_DESCRIPTION_TERMS = 5
_ALPHA = re.compile(r"^[a-z]+$")


def structural_adjustment(raw: float, text: str) -> float:
    """Short queries are less certain; long multi-line requests slightly more."""
    if len(text) < 15:
        return raw * 0.85
    if "\n" in text and len(text) > 120:
        return raw * 1.05
    return raw


def normalize_score(hits: float, total_keywords: int) -> float:
    if hits <= 0:
        return 0.0
    return min(1.0, hits / max(4, total_keywords))


def matches(text: str, entry: KeywordEntry) -> bool:
    keyword = entry.k.lower()
    if entry.match == "word":
        return re.search(rf"\b{re.escape(keyword)}\b", text, re.IGNORECASE) is not None
    return keyword in text


def keywords_for_agent(agent: AgentConfig) -> List[KeywordEntry]:
    """Derive keywords for an agent with no hand-written list: name, tags, a few description terms."""
    words = [agent.name.lower()]
    words.extend(t.lower() for t in agent.tags)
    if agent.description:
        terms = [w for w in agent.description.lower().split() if len(w) > 4 and _ALPHA.match(w)]
        words.extend(terms[:MAX_DESCRIPTION_TERMS])
    return [KeywordEntry(w) for w in words if w]


class KeywordIndex:
    """
    Agent id -> keyword entries. Instances are never mutated once built; enrichment
    returns a new index so concurrent requests never observe each other's agents.
    """

    def __init__(self, table: Optional[Dict[str, List[KeywordEntry]]] = None) -> None:
        source = HEURISTIC_KEYWORDS if table is None else table
        self._table: Dict[str, List[KeywordEntry]] = {k: list(v) for k, v in source.items()}

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._table

    def keywords(self, agent_id: str) -> List[KeywordEntry]:
        return list(self._table.get(agent_id, []))

    def enriched(self, agents: Iterable[AgentConfig]) -> "KeywordIndex":
        """New index that also covers `agents` missing from this one (supervisors skipped)."""
        table = {k: list(v) for k, v in self._table.items()}
        for agent in agents:
            if agent.id in table or agent.is_supervisor:
                continue
            table[agent.id] = keywords_for_agent(agent)
        return KeywordIndex(table)

    def score(self, message: str, available: Optional[Sequence[str]] = None) -> HeuristicScore:
        """
        Score `message` against every (available) agent.

        Args:
            message: Raw user text.
            available: Agent ids allowed as targets; None scores every agent in the index.

        Returns:
            HeuristicScore with the best target (None when every score is below the noise
            floor), its score, the per-agent scores and the top matched keywords.
        """
        text = message.lower()
        candidates = [a for a in self._table if available is None or a in available]

        scores: Dict[str, float] = {}
        selections: Dict[str, List[KeywordEntry]] = {}
        for agent_id in candidates:
            entries = self._table[agent_id]
            if agent_id == "jenn-community" and "telegram" not in text:
                entries = [e for e in entries if "telegram" not in e.k]
            if not entries:
                continue
            selections[agent_id] = entries
            hits = sum(e.w for e in entries if matches(text, e))
            scores[agent_id] = structural_adjustment(normalize_score(hits, len(entries)), text)

        target = None
        best = 0.0
        for agent_id, value in scores.items():
            if value > best:
                best = value
                target = agent_id if value >= NOISE_FLOOR else None

        reasons: List[str] = []
        if target:
            matched = [e.k for e in selections[target] if matches(text, e)][:3]
            if matched:
                reasons.append(f"matched: {', '.join(matched)}")
            reasons.append(f"score:{best:.2f}")

        _log.debug("Heuristic delegation scores: %s", scores)
        return HeuristicScore(target=target, score=best, scores=scores, reasons=reasons)
