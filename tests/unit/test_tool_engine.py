import asyncio
import json
from typing import Any

import httpx

from chatcore.events.emitter import EventEmitter
from chatcore.metrics import render_metrics
from chatcore.store.memory import InMemoryStore
from chatcore.store.models import ExternalToolRecord
from chatcore.tools.builtin import build_builtin_registry
from chatcore.tools.engine import ToolEngine
from chatcore.tools.external_http import ExternalHTTPToolFactory
from chatcore.tools.registry import ToolRegistry
from chatcore.tools.types import ToolCall, ToolCallEnvelope, ToolContext, ToolDefinition

CONTEXT = ToolContext(user_id="user-1", org_id="org-1", conversation_id="conv-1")


def _engine(
    store: InMemoryStore,
    registry: ToolRegistry | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    timeout_s: float = 10.0,
) -> ToolEngine:
    return ToolEngine(
        registry=registry or build_builtin_registry(store),
        store=store,
        external_tools=ExternalHTTPToolFactory(timeout_s=timeout_s, transport=transport),
        emitter=EventEmitter(store),
        timeout_s=timeout_s,
    )


def _external_tool(name: str = "crm.lookup", **overrides: Any) -> ExternalToolRecord:
    record = ExternalToolRecord(
        id=f"ext-{name}",
        org_id="org-1",
        name=name,
        description="Looks up a CRM record.",
        args_schema={
            "type": "object",
            "properties": {"id": {"type": "string"}},
            "required": ["id"],
        },
        url="https://tools.example.test/crm",
        headers={"X-Api-Key": "k-1"},
    )
    for key, value in overrides.items():
        setattr(record, key, value)
    return record


def test_time_now_returns_iso_and_unix_ms() -> None:
    store = InMemoryStore()
    result = asyncio.run(_engine(store).execute_tool_call(ToolCall("time.now", {}), CONTEXT))
    assert result.ok is True
    assert result.result["iso"].endswith("Z")
    assert isinstance(result.result["unixMs"], int)
    assert result.as_dict() == {"tool": "time.now", "ok": True, "result": result.result}


def test_unknown_tool_is_reported_not_raised() -> None:
    store = InMemoryStore()
    result = asyncio.run(_engine(store).execute_tool_call(ToolCall("nope.tool", {}), CONTEXT))
    assert result.ok is False
    assert result.error == "Unknown tool: nope.tool"
    assert result.as_dict() == {
        "tool": "nope.tool",
        "ok": False,
        "error": "Unknown tool: nope.tool",
    }


def test_invalid_args_fail_validation_without_running_executor() -> None:
    calls: list[Any] = []

    async def executor(args: Any, context: ToolContext) -> str:
        calls.append(args)
        return "ran"

    registry = ToolRegistry(
        [
            ToolDefinition(
                name="echo.value",
                description="Echoes a value.",
                args_schema={
                    "type": "object",
                    "properties": {"value": {"type": "integer"}},
                    "required": ["value"],
                },
                executor=executor,
            )
        ]
    )
    store = InMemoryStore()
    result = asyncio.run(
        _engine(store, registry).execute_tool_call(ToolCall("echo.value", {"value": "x"}), CONTEXT)
    )
    assert result.ok is False
    assert result.error is not None
    assert result.error.startswith("Tool argument validation failed: value:")
    assert calls == []


def test_slow_tool_times_out() -> None:
    async def slow(args: Any, context: ToolContext) -> str:
        await asyncio.sleep(1)
        return "late"

    registry = ToolRegistry([ToolDefinition("slow.tool", "Sleeps.", {"type": "object"}, slow)])
    store = InMemoryStore()
    result = asyncio.run(
        _engine(store, registry, timeout_s=0.05).execute_tool_call(
            ToolCall("slow.tool", {}), CONTEXT
        )
    )
    assert result.ok is False
    assert result.error == "Tool timed out after 0.05s"


def test_executor_exception_becomes_error_result() -> None:
    async def broken(args: Any, context: ToolContext) -> None:
        raise RuntimeError("backend unavailable")

    registry = ToolRegistry([ToolDefinition("broken.tool", "Fails.", {"type": "object"}, broken)])
    store = InMemoryStore()
    result = asyncio.run(
        _engine(store, registry).execute_tool_call(ToolCall("broken.tool", {}), CONTEXT)
    )
    assert result.ok is False
    assert result.error == "backend unavailable"


def test_envelope_results_keep_call_order() -> None:
    store = InMemoryStore()
    envelope = ToolCallEnvelope(
        [ToolCall("missing.one", {}), ToolCall("time.now", {}), ToolCall("", {})]
    )
    results = asyncio.run(_engine(store).execute_tool_envelope(envelope, CONTEXT))
    assert [item.tool for item in results] == ["missing.one", "time.now", ""]
    assert [item.ok for item in results] == [False, True, False]


def test_external_tool_posts_context_and_args() -> None:
    captured: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(request)
        return httpx.Response(200, json={"name": "Ada"})

    store = InMemoryStore()
    store.save_external_tool(_external_tool())
    engine = _engine(store, transport=httpx.MockTransport(handler))
    result = asyncio.run(engine.execute_tool_call(ToolCall("crm.lookup", {"id": "42"}), CONTEXT))

    assert result.ok is True
    assert result.result == {"name": "Ada"}
    assert len(captured) == 1
    request = captured[0]
    assert request.method == "POST"
    assert request.headers["X-Api-Key"] == "k-1"
    assert request.headers["Content-Type"] == "application/json"
    assert json.loads(request.content) == {
        "orgId": "org-1",
        "userId": "user-1",
        "conversationId": "conv-1",
        "args": {"id": "42"},
    }


def test_external_tool_non_2xx_is_error_result() -> None:
    store = InMemoryStore()
    store.save_external_tool(_external_tool())
    engine = _engine(
        store, transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    )
    result = asyncio.run(engine.execute_tool_call(ToolCall("crm.lookup", {"id": "1"}), CONTEXT))
    assert result.ok is False
    assert result.error == "External tool HTTP 500: boom"


def test_external_tool_empty_body_returns_none() -> None:
    store = InMemoryStore()
    store.save_external_tool(_external_tool())
    engine = _engine(store, transport=httpx.MockTransport(lambda request: httpx.Response(204)))
    result = asyncio.run(engine.execute_tool_call(ToolCall("crm.lookup", {"id": "1"}), CONTEXT))
    assert result.ok is True
    assert result.result is None


def test_external_tools_are_scoped_to_org_and_enabled_flag() -> None:
    store = InMemoryStore()
    store.save_external_tool(_external_tool())
    store.save_external_tool(_external_tool("crm.disabled", enabled=False))
    store.save_external_tool(_external_tool("other.org", org_id="org-2"))
    engine = _engine(store)

    names = [tool.name for tool in engine.list_tools(CONTEXT)]
    assert "crm.lookup" in names
    assert "crm.disabled" not in names
    assert "other.org" not in names

    no_org = ToolContext(user_id="user-1")
    assert "crm.lookup" not in [tool.name for tool in engine.list_tools(no_org)]


def test_builtin_wins_name_collision_with_external_tool() -> None:
    store = InMemoryStore()
    store.save_external_tool(_external_tool("time.now"))
    engine = _engine(store)

    tools = [tool for tool in engine.list_tools(CONTEXT) if tool.name == "time.now"]
    assert len(tools) == 1
    assert tools[0].source == "builtin"


def test_tool_outcomes_emit_events_and_metrics() -> None:
    store = InMemoryStore()
    engine = _engine(store)
    asyncio.run(engine.execute_tool_call(ToolCall("time.now", {}), CONTEXT))
    asyncio.run(engine.execute_tool_call(ToolCall("nope.tool", {}), CONTEXT))

    events = store.list_events("org-1")
    assert [event.type for event in events] == ["tool.exec.success", "tool.exec.error"]
    assert events[0].metadata["tool"] == "time.now"
    assert events[1].metadata["error"] == "Unknown tool: nope.tool"
    assert "duration_ms" in events[1].metadata

    rendered = render_metrics()
    assert (
        'chatcore_tool_execution_duration_seconds_count'
        '{ok="true",org="org-1",tool="time.now"} 1'
    ) in rendered


def test_tools_without_org_emit_no_events() -> None:
    store = InMemoryStore()
    asyncio.run(
        _engine(store).execute_tool_call(ToolCall("time.now", {}), ToolContext(user_id="u"))
    )
    assert store.list_events() == []


def test_list_tools_is_stable_across_calls_with_external_tools() -> None:
    store = InMemoryStore()
    store.save_external_tool(_external_tool())
    store.save_external_tool(_external_tool("crm.update"))
    engine = _engine(store)

    first = [tool.describe() for tool in engine.list_tools(CONTEXT)]
    second = [tool.describe() for tool in engine.list_tools(CONTEXT)]

    assert first == second
    assert [item["name"] for item in first].count("crm.lookup") == 1
    assert {"crm.lookup", "crm.update"} <= {item["name"] for item in first}
    builtin_names = [tool.name for tool in build_builtin_registry(store).list_tools()]
    assert [item["name"] for item in first][: len(builtin_names)] == builtin_names
