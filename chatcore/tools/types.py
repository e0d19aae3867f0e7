from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any


class ToolArgumentError(Exception):
    """Raised when tool arguments fail schema validation."""


@dataclass(frozen=True)
class ToolContext:
    user_id: str
    org_id: str | None = None
    conversation_id: str | None = None


ToolExecutor = Callable[[Any, ToolContext], Awaitable[Any]]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    args_schema: dict[str, Any]
    executor: ToolExecutor
    source: str = "builtin"

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "args_schema": self.args_schema,
            "source": self.source,
        }


@dataclass(frozen=True)
class ToolCall:
    tool: str
    args: Any = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return {"tool": self.tool, "args": self.args}


@dataclass(frozen=True)
class ToolCallEnvelope:
    tool_calls: list[ToolCall]

    @property
    def tool_names(self) -> list[str]:
        return [call.tool for call in self.tool_calls]

    def as_dict(self) -> dict[str, Any]:
        return {"toolCalls": [call.as_dict() for call in self.tool_calls]}


@dataclass(frozen=True)
class ToolExecutionResult:
    tool: str
    ok: bool
    result: Any = None
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"tool": self.tool, "ok": True, "result": self.result}
        return {"tool": self.tool, "ok": False, "error": self.error}
