"""Tool resolution, argument validation and time-bounded execution.

``execute_tool_call`` never raises: unknown tools, invalid arguments, timeouts
and executor failures all come back as ``ok=False`` results so the model can
explain them to the user. ``execute_tool_envelope`` runs calls strictly in
order.
"""

import asyncio
import logging
from time import perf_counter
from typing import Any

from jsonschema import ValidationError, validate

from chatcore.events.emitter import EventEmitter, EventType
from chatcore.metrics import record_tool_execution
from chatcore.store.base import Store
from chatcore.tools.external_http import ExternalHTTPToolFactory
from chatcore.tools.registry import ToolRegistry
from chatcore.tools.types import (
    ToolArgumentError,
    ToolCall,
    ToolCallEnvelope,
    ToolContext,
    ToolDefinition,
    ToolExecutionResult,
)

logger = logging.getLogger("chatcore.tools")


def validate_tool_args(tool: ToolDefinition, args: Any) -> None:
    try:
        validate(instance=args, schema=tool.args_schema)
    except ValidationError as exc:
        location = "/".join(str(part) for part in exc.absolute_path)
        detail = f"{location}: {exc.message}" if location else exc.message
        raise ToolArgumentError(f"Tool argument validation failed: {detail}") from exc


class ToolEngine:
    def __init__(
        self,
        registry: ToolRegistry,
        store: Store,
        external_tools: ExternalHTTPToolFactory | None = None,
        emitter: EventEmitter | None = None,
        timeout_s: float = 10.0,
        metrics_enabled: bool = True,
    ) -> None:
        self._registry = registry
        self._store = store
        self._external_tools = external_tools or ExternalHTTPToolFactory(timeout_s=timeout_s)
        self._emitter = emitter
        self._timeout_s = timeout_s
        self._metrics_enabled = metrics_enabled

    def list_tools(self, context: ToolContext) -> list[ToolDefinition]:
        tools = self._registry.list_tools()
        if not context.org_id:
            return tools
        for record in self._store.list_external_tools(context.org_id):
            if record.name in self._registry:
                logger.warning(
                    "external_tool_shadowed",
                    extra={"tool": record.name, "org_id": context.org_id},
                )
                continue
            tools.append(self._external_tools.build(record))
        return tools

    def resolve_tool(self, name: str, context: ToolContext) -> ToolDefinition | None:
        builtin = self._registry.get(name)
        if builtin is not None:
            return builtin
        if not context.org_id:
            return None
        for record in self._store.list_external_tools(context.org_id):
            if record.name == name:
                return self._external_tools.build(record)
        return None

    async def execute_tool_call(self, call: ToolCall, context: ToolContext) -> ToolExecutionResult:
        started = perf_counter()
        try:
            tool = self.resolve_tool(call.tool, context)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "tool_resolve_failed",
                extra={"tool": call.tool, "org_id": context.org_id, "error": str(exc)},
            )
            tool = None

        if tool is None:
            logger.warning(
                "tool_unknown",
                extra={"tool": call.tool, "org_id": context.org_id},
            )
            result = ToolExecutionResult(
                tool=call.tool, ok=False, error=f"Unknown tool: {call.tool}"
            )
            self._finish(result, context, started)
            return result

        logger.info(
            "tool_exec_start",
            extra={
                "tool": tool.name,
                "org_id": context.org_id,
                "user_id": context.user_id,
                "conversation_id": context.conversation_id,
            },
        )
        try:
            validate_tool_args(tool, call.args)
            value = await asyncio.wait_for(
                tool.executor(call.args, context), timeout=self._timeout_s
            )
            result = ToolExecutionResult(tool=tool.name, ok=True, result=value)
        except ToolArgumentError as exc:
            result = ToolExecutionResult(tool=tool.name, ok=False, error=str(exc))
        except TimeoutError:
            result = ToolExecutionResult(
                tool=tool.name,
                ok=False,
                error=f"Tool timed out after {self._timeout_s:g}s",
            )
        except Exception as exc:  # noqa: BLE001
            result = ToolExecutionResult(
                tool=tool.name, ok=False, error=str(exc) or type(exc).__name__
            )
        self._finish(result, context, started)
        return result

    async def execute_tool_envelope(
        self, envelope: ToolCallEnvelope, context: ToolContext
    ) -> list[ToolExecutionResult]:
        results: list[ToolExecutionResult] = []
        for call in envelope.tool_calls:
            results.append(await self.execute_tool_call(call, context))
        return results

    def _finish(self, result: ToolExecutionResult, context: ToolContext, started: float) -> None:
        elapsed_s = perf_counter() - started
        duration_ms = int(elapsed_s * 1000)
        if self._metrics_enabled:
            record_tool_execution(result.tool, context.org_id, result.ok, elapsed_s)
        if result.ok:
            logger.info(
                "tool_exec_success",
                extra={"tool": result.tool, "org_id": context.org_id, "duration_ms": duration_ms},
            )
        else:
            logger.warning(
                "tool_exec_error",
                extra={
                    "tool": result.tool,
                    "org_id": context.org_id,
                    "duration_ms": duration_ms,
                    "error": result.error,
                },
            )
        self._emit_outcome(result, context, duration_ms)

    def _emit_outcome(
        self, result: ToolExecutionResult, context: ToolContext, duration_ms: int
    ) -> None:
        if self._emitter is None or not context.org_id:
            return
        metadata: dict[str, Any] = {"tool": result.tool, "duration_ms": duration_ms}
        if not result.ok:
            metadata["error"] = result.error
        try:
            self._emitter.emit_event(
                EventType.TOOL_EXEC_SUCCESS if result.ok else EventType.TOOL_EXEC_ERROR,
                context.org_id,
                user_id=context.user_id,
                conversation_id=context.conversation_id,
                metadata=metadata,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "tool_event_emit_failed",
                extra={"tool": result.tool, "org_id": context.org_id, "error": str(exc)},
            )
