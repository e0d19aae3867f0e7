from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ModerationSource(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class SafetyCategory(str, Enum):
    SELF_HARM = "self_harm"
    HATE = "hate"
    SEXUAL_MINORS = "sexual_minors"
    SEXUAL_CONTENT = "sexual_content"
    VIOLENCE = "violence"
    HARASSMENT = "harassment"
    MALWARE = "malware"
    PII = "pii"
    PROMPT_INJECTION = "prompt_injection"
    COPYRIGHT = "copyright"
    OTHER = "other"


class SafetyAction(str, Enum):
    BLOCK = "block"
    WARN = "warn"
    LOG_ONLY = "log_only"
    ALLOW = "allow"


@dataclass(frozen=True)
class CategoryScore:
    category: SafetyCategory
    score: float

    def as_dict(self) -> dict[str, Any]:
        return {"category": self.category.value, "score": self.score}


@dataclass(frozen=True)
class ModerationResult:
    categories: list[CategoryScore]
    flagged: bool
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SafetyDecision:
    action: SafetyAction
    categories: list[CategoryScore] = field(default_factory=list)
    reason: str | None = None

    @classmethod
    def allow(cls) -> "SafetyDecision":
        return cls(action=SafetyAction.ALLOW)

    @property
    def category_names(self) -> list[str]:
        return [item.category.value for item in self.categories]

    def as_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "categories": [item.as_dict() for item in self.categories],
            "reason": self.reason,
        }
