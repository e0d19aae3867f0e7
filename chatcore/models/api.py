from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class TurnRequest(BaseModel):
    content: str = Field(min_length=1)
    stream: bool = False


class Usage(BaseModel):
    input_tokens: int
    output_tokens: int
    total_tokens: int


class ToolResult(BaseModel):
    tool: str
    ok: bool
    result: Any = None
    error: str | None = None


class SafetyWarning(BaseModel):
    action: Literal["warn"] = "warn"
    categories: list[dict[str, Any]]
    reason: str | None = None


class TurnResponse(BaseModel):
    assistant_message_id: str
    role: Literal["assistant"] = "assistant"
    content: str
    model: str
    usage: Usage
    tools_used: bool = False
    tool_message_id: str | None = None
    tool_results: list[ToolResult] = Field(default_factory=list)
    safety_warning: SafetyWarning | None = None


class ToolDescriptor(BaseModel):
    name: str
    description: str
    args_schema: dict[str, Any]
    source: Literal["builtin", "external"]


class ToolListResponse(BaseModel):
    tools: list[ToolDescriptor]


class ToolExecuteRequest(BaseModel):
    tool: str = Field(min_length=1)
    args: Any = Field(default_factory=dict)
    conversation_id: str | None = None


class ToolCallModel(BaseModel):
    tool: str
    args: Any = None


class ToolEnvelopeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tool_calls: list[ToolCallModel] = Field(alias="toolCalls", min_length=1)
    conversation_id: str | None = None


class ToolEnvelopeResponse(BaseModel):
    results: list[ToolResult]


class DrainRequest(BaseModel):
    limit: int | None = Field(default=None, ge=1, le=1000)


class DrainResponse(BaseModel):
    processed: int


class ModelDescriptor(BaseModel):
    id: str
    provider: str
    label: str
    supports_tools: bool
    default_temperature: float


class ModelListResponse(BaseModel):
    default_model_id: str
    models: list[ModelDescriptor]
