"""Persisted records shared by the store backends."""

from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import uuid4


def utc_now() -> datetime:
    return datetime.now(UTC)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex}"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class UsageFeature(str, Enum):
    CHAT = "chat"
    PLAYGROUND = "playground"
    EXPERIMENT = "experiment"


@dataclass
class Conversation:
    id: str
    user_id: str
    org_id: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    chat_profile_id: str | None = None
    tools_enabled: dict[str, Any] = field(default_factory=dict)
    kb_config: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    last_activity_at: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    @property
    def structured_tools_enabled(self) -> bool:
        return bool(self.tools_enabled.get("structured_tools"))

    @property
    def rag_config(self) -> dict[str, Any]:
        raw = self.kb_config.get("rag")
        return raw if isinstance(raw, dict) else {}

    @property
    def rag_enabled(self) -> bool:
        return bool(self.rag_config.get("enabled"))

    @property
    def preset_id(self) -> str | None:
        raw = self.metadata.get("preset_id")
        return str(raw) if raw else None


@dataclass
class ChatProfile:
    id: str
    provider: str | None = None
    model_name: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    system_template: str | None = None

    @property
    def model_id(self) -> str | None:
        if self.provider and self.model_name:
            return f"{self.provider}:{self.model_name}"
        return None


@dataclass
class ConversationPreset:
    id: str
    name: str
    system_prompt: str | None = None
    org_id: str | None = None


@dataclass
class OrgAiPolicy:
    org_id: str
    system_prompt: str | None = None


@dataclass
class OrgSafetyConfig:
    org_id: str
    category_actions: dict[str, str] = field(default_factory=dict)
    moderate_user_messages: bool = True
    moderate_assistant_messages: bool = False


@dataclass
class ExternalToolRecord:
    id: str
    org_id: str
    name: str
    description: str
    args_schema: dict[str, Any]
    url: str
    method: str = "POST"
    headers: dict[str, str] = field(default_factory=dict)
    enabled: bool = True


@dataclass
class Message:
    id: str
    conversation_id: str
    role: MessageRole
    content: str
    user_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class ModerationIncident:
    id: str
    org_id: str | None
    source: str
    categories: list[dict[str, Any]]
    action: str
    reason: str | None
    content_snippet: str
    is_severe: bool
    conversation_id: str | None = None
    user_id: str | None = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class Event:
    id: str
    type: str
    org_id: str
    user_id: str | None = None
    conversation_id: str | None = None
    message_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def as_payload(self) -> dict[str, Any]:
        """Canonical JSON shape delivered to webhook subscribers."""
        return {
            "id": self.id,
            "type": self.type,
            "created_at": self.created_at.isoformat(),
            "org_id": self.org_id,
            "user_id": self.user_id,
            "conversation_id": self.conversation_id,
            "message_id": self.message_id,
            "metadata": self.metadata,
        }


@dataclass
class WebhookSubscription:
    id: str
    org_id: str
    url: str
    secret: str
    event_types: list[str] = field(default_factory=list)
    is_active: bool = True


@dataclass
class WebhookDelivery:
    id: str
    event_id: str
    subscription_id: str
    status: DeliveryStatus = DeliveryStatus.PENDING
    status_code: int | None = None
    duration_ms: int | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None


@dataclass(frozen=True)
class UsageKey:
    """Aggregate row key; ``user_id`` is None for the org-daily row."""

    org_id: str
    day: date
    provider: str
    model: str
    feature: str
    user_id: str | None = None


@dataclass(frozen=True)
class UsageDelta:
    request_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_micros: int = 0


@dataclass
class UsageAggregate:
    key: UsageKey
    request_count: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    estimated_cost_micros: int = 0


@dataclass(frozen=True)
class ModelPrice:
    """Micro-dollar price per one million tokens; ``org_id`` None is global."""

    provider: str
    model: str
    input_price_micros: int
    output_price_micros: int
    org_id: str | None = None
