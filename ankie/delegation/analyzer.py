# ankie/delegation/analyzer.py

"""
Fuzzy, weighted intent analyzer.

Each agent collects points for primary (3), secondary (2) and contextual (4) phrases,
loses points for exclusions (-3), and the technical agent gets extra points for code
and tooling signals. Confidence reflects the gap to the runner-up.
"""

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from ankie.delegation.keywords import ANALYZER_PATTERNS, CLARIFICATIONS, AgentPatterns
from ankie.orchestration.registry import delegation_tool_name
from ankie.orchestration.schema import DelegationSuggestion

_log = logging.getLogger(__name__)

WEIGHT_PRIMARY = 3
WEIGHT_SECONDARY = 2
WEIGHT_CONTEXTUAL = 4
WEIGHT_EXCLUSION = -3

CONFIDENCE_MEDIUM = 0.6
CONFIDENCE_CAP = 0.95
TECHNICAL_AGENT = "toby-technical"

TECHNICAL_REGEXES = [
    re.compile(r"```[\s\S]*?```"),
    re.compile(r"\b(import|export)\s+[^;]+from\s+['\"]"),
    re.compile(r"\b(function|def|class)\s+[a-zA-Z0-9_]+"),
    re.compile(r"\bconst\s+[a-zA-Z0-9_]+\s*=\s*async"),
    re.compile(r"traceback\s*\(most recent call last\)", re.I),
    re.compile(r"exception[:\s]", re.I),
    re.compile(r"typeerror", re.I),
    re.compile(r"referenceerror", re.I),
    re.compile(r"segmentation fault", re.I),
    re.compile(r"module not found", re.I),
    re.compile(r"syntaxerror", re.I),
]
COMMAND_REGEXES = [
    re.compile(r"\b(npm|pnpm|yarn)\s+(install|run|test|build|lint)"),
    re.compile(r"\bpip\s+install"),
    re.compile(r"\b(poetry|pipenv)\s+"),
    re.compile(r"\bkubectl\b"),
    re.compile(r"\bdocker\s+(build|compose|run|push)"),
    re.compile(r"\bhelm\s+(install|upgrade|template)"),
    re.compile(r"\bterraform\s+(plan|apply|destroy)"),
    re.compile(r"\bgit\s+(commit|merge|rebase|push|pull)"),
]
FILE_EXTENSION_REGEX = re.compile(
    r"\.(ts|tsx|js|jsx|mjs|py|java|cs|cpp|go|rs|rb|php|swift|kt|dart|sh|yaml|yml|json|toml|lock|gradle)\b", re.I
)
LANGUAGE_REGEX = re.compile(
    r"\b(typescript|javascript|python|java|c\+\+|golang|rust|swift|kotlin|php|ruby|scala|elixir|haskell"
    r"|bash|powershell|sql|postgres|mysql|sqlite|mongodb|graphql|docker|kubernetes|helm|terraform|ansible|devops)\b",
    re.I,
)
ERROR_REGEX = re.compile(
    r"\b(error|exception|stack trace|traceback|build failed|deployment failed|ci failed|test failed|timeout"
    r"|http 500|http 502|crash|core dump|memory leak)\b",
    re.I,
)
CONTEXT_HINT_REGEX = re.compile(r"\b(delegate_to_toby|toby-technical|toby)\b", re.I)

_TASK_PREFIX = re.compile(r"^(can you|could you|please|help me|i need|i want to)\s*", re.I)


# ──────────────────────────────────────────────────────────────────────────────
# Fuzzy matching
# ──────────────────────────────────────────────────────────────────────────────

def levenshtein(a: str, b: str) -> int:
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(a) + 1))
    for j in range(1, len(b) + 1):
        cur = [j] + [0] * len(a)
        for i in range(1, len(a) + 1):
            cost = 0 if a[i - 1] == b[j - 1] else 1
            cur[i] = min(prev[i] + 1, cur[i - 1] + 1, prev[i - 1] + cost)
        prev = cur
    return prev[len(a)]


def fuzzy_includes(haystack: str, needle: str, tolerance: float = 0.85) -> bool:
    """
    Substring match that tolerates small typos in the opening of `haystack`.

    The fuzzy branch only compares the first len(needle)+4 characters, so it mostly
    rescues misspelled one-keyword requests.
    """
    h = haystack.lower()
    n = needle.lower()
    if n in h:
        return True
    max_len = max(len(n), 3)
    distance = levenshtein(h[: len(n) + 4], n)
    return 1 - distance / max_len >= tolerance


def extract_task(user_text: str) -> str:
    task = _TASK_PREFIX.sub("", user_text.strip())
    task = task.rstrip("?")
    task = task[:1].upper() + task[1:]
    return task.rstrip(".!?")


# ──────────────────────────────────────────────────────────────────────────────
# Analyzer
# ──────────────────────────────────────────────────────────────────────────────

class IntelligentAnalyzer:
    def __init__(self, patterns: Optional[Dict[str, AgentPatterns]] = None) -> None:
        self.patterns = dict(ANALYZER_PATTERNS if patterns is None else patterns)

    def _score_agent(self, text: str, patterns: AgentPatterns) -> Tuple[int, List[str]]:
        score = 0
        reasons: List[str] = []
        for kw in patterns.primary:
            if fuzzy_includes(text, kw, 0.88):
                score += WEIGHT_PRIMARY
                reasons.append(f"primary: {kw}")
        for kw in patterns.secondary:
            if fuzzy_includes(text, kw, 0.9):
                score += WEIGHT_SECONDARY
                reasons.append(f"secondary: {kw}")
        for phrase in patterns.contextual:
            if fuzzy_includes(text, phrase, 0.85):
                score += WEIGHT_CONTEXTUAL
                reasons.append(f'contextual: "{phrase}"')
        for kw in patterns.exclusions:
            if fuzzy_includes(text, kw, 0.9):
                score += WEIGHT_EXCLUSION
                reasons.append(f"excluded: {kw}")
        return max(0, score), reasons

    @staticmethod
    def _technical_boost(user_text: str, full_text: str, context: str) -> Tuple[int, List[str]]:
        boost = 0
        reasons = []
        if any(r.search(user_text) or r.search(context) for r in TECHNICAL_REGEXES):
            boost += 8
            reasons.append("heuristic: technical_code_pattern")
        if any(r.search(full_text) for r in COMMAND_REGEXES):
            boost += 6
            reasons.append("heuristic: developer_command")
        if FILE_EXTENSION_REGEX.search(full_text):
            boost += 5
            reasons.append("heuristic: technical_file_reference")
        if LANGUAGE_REGEX.search(full_text):
            boost += 5
            reasons.append("heuristic: language_keyword")
        if ERROR_REGEX.search(full_text):
            boost += 6
            reasons.append("heuristic: error_debugging")
        if CONTEXT_HINT_REGEX.search(context) or CONTEXT_HINT_REGEX.search(user_text):
            boost += 3
            reasons.append("heuristic: prior_toby_context")
        return boost, reasons

    def analyze(
        self,
        user_text: str,
        context: str = "",
        available: Optional[Sequence[str]] = None,
        names: Optional[Dict[str, str]] = None,
    ) -> Optional[DelegationSuggestion]:
        """
        Suggest the best specialist for `user_text`.

        Args:
            user_text: Latest user message.
            context: Optional extra conversation text.
            available: Restrict candidates to these agent ids.
            names: Agent id -> display name for the suggestion.

        Returns:
            A DelegationSuggestion, or None when no agent scores above zero.
        """
        full_text = f"{user_text} {context}".lower()
        names = names or {}

        scored: Dict[str, Tuple[int, List[str]]] = {}
        for agent_id, patterns in self.patterns.items():
            if available is not None and agent_id not in available:
                continue
            scored[agent_id] = self._score_agent(full_text, patterns)

        if TECHNICAL_AGENT in scored:
            boost, why = self._technical_boost(user_text, full_text, context)
            base, reasons = scored[TECHNICAL_AGENT]
            scored[TECHNICAL_AGENT] = (max(0, base + boost), reasons + why)

        ranked = sorted(
            ((aid, s, r) for aid, (s, r) in scored.items() if s > 0),
            key=lambda item: item[1],
            reverse=True,
        )
        if not ranked:
            return None

        best_id, best, reasons = ranked[0]
        second = ranked[1] if len(ranked) > 1 else None
        if second is not None:
            confidence = min(CONFIDENCE_CAP, best / max(1, best + second[1]))
        else:
            confidence = min(CONFIDENCE_CAP, max(0.5, best / 8))

        gap = best - second[1] if second is not None else None
        needs_clarification = confidence < CONFIDENCE_MEDIUM or (gap is not None and gap < 2)
        if best_id == TECHNICAL_AGENT and best >= 8 and (gap is None or gap >= 3):
            confidence = max(confidence, 0.88)
            needs_clarification = False

        question = None
        if needs_clarification:
            question = self._clarification(best_id, second[0] if second else None, names)

        _log.debug("Analyzer ranked %s (confidence %.2f).", [(a, s) for a, s, _ in ranked[:3]], confidence)
        return DelegationSuggestion(
            agent_id=best_id,
            agent_name=names.get(best_id, _title_from_id(best_id)),
            tool_name=delegation_tool_name(best_id),
            confidence=confidence,
            reasoning=reasons,
            suggested_task=extract_task(user_text),
            needs_clarification=needs_clarification,
            clarification_question=question,
        )

    @staticmethod
    def _clarification(primary: str, secondary: Optional[str], names: Dict[str, str]) -> str:
        p_name = names.get(primary, _title_from_id(primary))
        if secondary is None:
            return f"I think {p_name} might be able to help with this. Should I delegate this task to them?"
        known = CLARIFICATIONS.get((primary, secondary)) or CLARIFICATIONS.get((secondary, primary))
        if known:
            return known
        s_name = names.get(secondary, _title_from_id(secondary))
        return (
            f"I'm not sure if this is better suited for {p_name} or {s_name}. "
            "Could you clarify what type of help you're looking for?"
        )


def _title_from_id(agent_id: str) -> str:
    return " ".join(part.capitalize() for part in re.split(r"[-_]", agent_id) if part)
