# ankie/delegation/detector.py

import logging
import re
from typing import Any, Dict, Optional, Sequence

from langchain_core.messages import BaseMessage, HumanMessage

from ankie.delegation.analyzer import IntelligentAnalyzer
from ankie.delegation.heuristics import KeywordIndex
from ankie.orchestration.registry import AgentRegistry, delegation_tool_name
from ankie.orchestration.schema import DelegationIntent
from ankie.orchestration.transcript import message_text

_log = logging.getLogger(__name__)

QUICK_DELEGATION_PATTERN = (
    r"\b(delega|delegate|ask|pregunta|call|llama|usa|use|pídele|with|encárgalo|handoff|sub[- ]?agent|agente)\b"
)

MIN_HINT_SCORE = 0.55
STRONG_HINT_SCORE = 0.65
MANDATORY_HINT_SCORE = 0.80
INTELLIGENT_THRESHOLD = 0.6


def last_user_text(history: Sequence[Any]) -> str:
    """Text of the last human turn; accepts messages or {"role", "content"} dicts."""
    for msg in reversed(list(history)):
        if isinstance(msg, HumanMessage):
            return message_text(msg)
        if isinstance(msg, dict) and msg.get("role") == "user":
            content = msg.get("content")
            if isinstance(content, str):
                return content
            return "\n".join(
                p.get("text", "") for p in content or [] if isinstance(p, dict) and p.get("type") == "text"
            )
    return ""


class DelegationDetector:
    """
    Decide whether a user turn should be routed to a specialist.

    - a cheap regex pre-filter gates the full analysis
    - the heuristic scorer and the fuzzy analyzer run independently
    - any failure degrades to "not detected"; detection never blocks a turn
    """

    def __init__(
        self,
        registry: AgentRegistry,
        cfg: Optional[Dict[str, Any]] = None,
        *,
        index: Optional[KeywordIndex] = None,
        analyzer: Optional[IntelligentAnalyzer] = None,
    ) -> None:
        cfg = dict(cfg or {})
        self.registry = registry
        self.index = index or KeywordIndex()
        self.analyzer = analyzer or IntelligentAnalyzer()
        self.quick_regex = re.compile(cfg.get("quick_pattern") or QUICK_DELEGATION_PATTERN, re.IGNORECASE)
        self.min_hint_score = float(cfg.get("min_hint_score", MIN_HINT_SCORE))
        self.strong_hint_score = float(cfg.get("strong_hint_score", STRONG_HINT_SCORE))
        self.mandatory_hint_score = float(cfg.get("mandatory_hint_score", MANDATORY_HINT_SCORE))
        self.intelligent_threshold = float(cfg.get("intelligent_threshold", INTELLIGENT_THRESHOLD))

    async def detect_intent(self, history: Sequence[BaseMessage], user_id: Optional[str]) -> DelegationIntent:
        text = last_user_text(history)
        if not text.strip():
            return DelegationIntent(detected=False, quick_check=False)

        if not self.quick_regex.search(text):
            return DelegationIntent(detected=False, quick_check=False)

        _log.debug("Delegation keywords present; running full analysis.")
        try:
            agents = [a for a in self.registry.list_agents(user_id) if not a.is_supervisor]
            available = [a.id for a in agents]
            index = self.index.enriched(agents)

            heuristic = index.score(text, available)
            suggestion = self.analyzer.analyze(text, available=available, names={a.id: a.name for a in agents})
        except Exception as exc:
            _log.error("Delegation detection failed: %s", exc, exc_info=True)
            return DelegationIntent(detected=False, quick_check=True)

        detected = heuristic.score > 0 or (
            suggestion is not None and suggestion.confidence >= self.intelligent_threshold
        )
        if detected:
            _log.info(
                "Delegation intent detected: heuristic=%s(%.2f) analyzer=%s",
                heuristic.target, heuristic.score, suggestion.agent_id if suggestion else None,
            )
        return DelegationIntent(detected=detected, quick_check=True, heuristic=heuristic, intelligent=suggestion)

    def create_delegation_hint(self, intent: DelegationIntent) -> str:
        """
        Directive text appended to the acting agent's instructions for this turn.

        Tiers by heuristic score: at or below the minimum -> "", then advisory,
        strong recommendation, and mandatory at `mandatory_hint_score` and above.
        """
        heuristic = intent.heuristic
        if not intent.detected or heuristic is None or not heuristic.target:
            return ""
        score = heuristic.score
        if score <= self.min_hint_score:
            return ""

        agent_id = heuristic.target
        tool = delegation_tool_name(agent_id)
        pct = int(round(score * 100))

        if score >= self.mandatory_hint_score:
            return (
                f"\n\nMANDATORY DELEGATION: This request belongs to specialist agent '{agent_id}' "
                f"(confidence {pct}%). You MUST call tool {tool} now. Do NOT answer the request directly."
            )
        if score >= self.strong_hint_score:
            return (
                f"\n\nSTRONG DELEGATION RECOMMENDATION: This request very likely maps to specialist agent "
                f"'{agent_id}' (confidence {pct}%). Call tool {tool} unless you can fully resolve it yourself."
            )
        return (
            f"\n\nINTERNAL DELEGATION HINT: The user's request likely maps to specialist agent '{agent_id}'. "
            f"Consider calling tool {tool} if it would provide unique capabilities or faster resolution. "
            "If you delegate, briefly explain why."
        )
