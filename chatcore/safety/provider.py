"""Moderation providers.

``HeuristicModerationProvider`` scores text with a fixed set of compiled
patterns. Any object implementing ``ModerationProvider`` can replace it without
touching the policy logic.
"""

import re
from dataclasses import dataclass
from typing import Protocol

from chatcore.safety.types import CategoryScore, ModerationResult, SafetyCategory


class ModerationProvider(Protocol):
    async def moderate(self, content: str) -> ModerationResult:
        """Score ``content`` against the fixed category set."""


@dataclass(frozen=True)
class HeuristicPattern:
    name: str
    regex: re.Pattern[str]
    category: SafetyCategory
    score: float


def _pattern(
    name: str, expression: str, category: SafetyCategory, score: float
) -> HeuristicPattern:
    return HeuristicPattern(
        name=name,
        regex=re.compile(expression, re.IGNORECASE),
        category=category,
        score=score,
    )


# Declaration order breaks score ties.
DEFAULT_PATTERNS: tuple[HeuristicPattern, ...] = (
    _pattern("kill_myself", r"\bkill myself\b", SafetyCategory.SELF_HARM, 0.99),
    _pattern("suicide", r"\bsuicid(?:e|al)\b", SafetyCategory.SELF_HARM, 0.99),
    _pattern("end_my_life", r"\bend my life\b", SafetyCategory.SELF_HARM, 0.99),
    _pattern(
        "ignore_instructions",
        r"\bignore (?:all )?previous instructions\b",
        SafetyCategory.PROMPT_INJECTION,
        0.9,
    ),
    _pattern(
        "forget_rules", r"\byou must forget the rules\b", SafetyCategory.PROMPT_INJECTION, 0.9
    ),
    _pattern("system_override", r"\bsystem:\s*override\b", SafetyCategory.PROMPT_INJECTION, 0.9),
    _pattern("hate_speech", r"\bhate speech\b", SafetyCategory.HATE, 0.9),
    _pattern("discriminatory", r"\bdiscriminatory\b", SafetyCategory.HATE, 0.9),
    _pattern(
        "malware_request",
        r"\b(?:write|build|create)\b.{0,40}\b(?:ransomware|keylogger|malware)\b",
        SafetyCategory.MALWARE,
        0.85,
    ),
    _pattern("kill_you", r"\bkill you\b", SafetyCategory.VIOLENCE, 0.8),
    _pattern(
        "harm_someone",
        r"\b(?:harm|hurt)\s+(?:you|him|her|them|someone|people)\b",
        SafetyCategory.VIOLENCE,
        0.8,
    ),
    _pattern("violence", r"\bviolence\b", SafetyCategory.VIOLENCE, 0.8),
    _pattern("ssn", r"\b\d{3}-\d{2}-\d{4}\b", SafetyCategory.PII, 0.7),
    _pattern("credit_card", r"\b(?:\d{4}[\s-]?){3}\d{4}\b", SafetyCategory.PII, 0.7),
)


class HeuristicModerationProvider:
    def __init__(self, patterns: tuple[HeuristicPattern, ...] = DEFAULT_PATTERNS):
        self._patterns = patterns

    async def moderate(self, content: str) -> ModerationResult:
        scores: dict[SafetyCategory, float] = {}
        matched: list[str] = []
        for pattern in self._patterns:
            if not pattern.regex.search(content):
                continue
            matched.append(pattern.name)
            if pattern.score > scores.get(pattern.category, 0.0):
                scores[pattern.category] = pattern.score
        categories = [CategoryScore(category=key, score=value) for key, value in scores.items()]
        return ModerationResult(
            categories=categories,
            flagged=bool(categories),
            raw={"provider": "heuristic", "matched_patterns": matched},
        )
