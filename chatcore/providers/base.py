from collections.abc import AsyncGenerator
from dataclasses import dataclass, field
from typing import Protocol

SUPPORTED_ROLES = frozenset({"system", "user", "assistant"})


class ProviderError(Exception):
    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        error_type: str = "provider",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.error_type = error_type


class ProviderConfigurationError(Exception):
    """Raised when a model id points at a provider that is unknown or not initialized."""


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class CompletionRequest:
    provider: str
    model: str
    messages: list[ChatMessage]
    temperature: float = 0.7
    top_p: float = 1.0
    max_tokens: int | None = None


@dataclass(frozen=True)
class CompletionResult:
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class StreamChunk:
    """One streamed delta; the last chunk has ``delta=None`` and ``done=True``."""

    delta: str | None
    done: bool = False
    usage: TokenUsage | None = None


class ChatProvider(Protocol):
    async def complete(self, request: CompletionRequest) -> CompletionResult:
        """Run one blocking round-trip and return the full content."""

    def stream(self, request: CompletionRequest) -> AsyncGenerator[StreamChunk, None]:
        """Yield incremental chunks terminated by a ``done`` sentinel."""


def normalize_messages(messages: list[ChatMessage]) -> list[dict[str, str]]:
    """Map roles a chat backend does not accept (``tool``) onto ``system``."""
    return [
        {
            "role": message.role if message.role in SUPPORTED_ROLES else "system",
            "content": message.content,
        }
        for message in messages
    ]


def coerce_token_count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    if isinstance(value, float):
        return max(int(value), 0)
    return 0
