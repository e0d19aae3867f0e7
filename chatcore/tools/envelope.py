"""Tool envelope detection and the planning prompt that asks for it.

A planning response is treated as a tool request only when the whole trimmed
text is a JSON object with a non-empty ``toolCalls`` array. Anything else is a
direct answer.
"""

import json
from collections.abc import Iterable
from typing import Any

from chatcore.tools.types import ToolCall, ToolCallEnvelope, ToolDefinition


def parse_tool_envelope(text: str) -> ToolCallEnvelope | None:
    candidate = text.strip()
    if not candidate.startswith("{"):
        return None
    try:
        parsed = json.loads(candidate)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    raw_calls = parsed.get("toolCalls")
    if not isinstance(raw_calls, list) or not raw_calls:
        return None
    return ToolCallEnvelope(tool_calls=[_parse_call(item) for item in raw_calls])


def _parse_call(item: Any) -> ToolCall:
    # Malformed entries still produce a call so results stay index-aligned.
    if not isinstance(item, dict):
        return ToolCall(tool="", args={})
    tool = item.get("tool")
    args = item.get("args")
    return ToolCall(
        tool=tool if isinstance(tool, str) else "",
        args={} if args is None else args,
    )


def build_tools_system_prompt(tools: Iterable[ToolDefinition]) -> str:
    tool_lines = "\n".join(f"- {tool.name}: {tool.description}" for tool in tools)
    return (
        "You can optionally call tools to help you answer the user.\n\n"
        f"Available tools:\n{tool_lines}\n\n"
        "When you decide that tools are necessary, respond with a JSON object ONLY, "
        "using this structure (no extra text):\n\n"
        '{"toolCalls": [{"tool": "tool.name", "args": { ... }}]}\n\n'
        "If you do not need tools, respond normally in natural language. "
        "Do NOT mix normal language and the JSON object in the same response."
    )


def build_tool_results_message(results: list[dict[str, Any]]) -> str:
    return (
        "Tool results (JSON):\n"
        + json.dumps({"toolResults": results}, ensure_ascii=False, indent=2, default=str)
        + "\nUse this information to answer the user. Respond normally to the user now."
    )
