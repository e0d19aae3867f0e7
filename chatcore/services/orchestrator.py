"""Chat turn orchestration.

One turn takes a user message through moderation, persistence, context
assembly and (optionally) the two-phase tool protocol before producing and
persisting the assistant reply. The state machine is linear::

    PLANNING -> TOOLS_DETECTED -> EXECUTING -> FINALIZING -> DONE
    PLANNING -> NO_TOOLS -> DONE

Conversations without structured tools skip planning and go straight to
``FINALIZING``.
"""

import json
import logging
from collections.abc import AsyncGenerator
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter
from typing import Any

from chatcore.core.errors import AppError, ConversationNotFoundError
from chatcore.events.emitter import EventEmitter, EventType
from chatcore.metrics import record_turn
from chatcore.providers.base import (
    ChatMessage,
    CompletionRequest,
    CompletionResult,
    ProviderConfigurationError,
    ProviderError,
    TokenUsage,
)
from chatcore.providers.catalog import DEFAULT_TOP_P, ModelCatalog
from chatcore.providers.registry import ModelRouter
from chatcore.safety.gate import ModerationGate, raise_if_blocked
from chatcore.safety.types import ModerationSource, SafetyAction, SafetyDecision
from chatcore.services.context import ContextAssembler, render_template, template_variables
from chatcore.store.base import Store
from chatcore.store.models import Conversation, Message, MessageRole, new_id, utc_now
from chatcore.tools.engine import ToolEngine
from chatcore.tools.envelope import (
    build_tool_results_message,
    build_tools_system_prompt,
    parse_tool_envelope,
)
from chatcore.tools.types import ToolCallEnvelope, ToolContext, ToolExecutionResult
from chatcore.usage.metering import UsageMeter, UsageRecord

logger = logging.getLogger("chatcore.turns")


class TurnState(str, Enum):
    PLANNING = "planning"
    TOOLS_DETECTED = "tools_detected"
    NO_TOOLS = "no_tools"
    EXECUTING = "executing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass(frozen=True)
class GenerationParams:
    model_id: str
    provider: str
    provider_model: str
    temperature: float
    top_p: float
    max_tokens: int | None
    custom_prompt: str | None


@dataclass
class TurnResult:
    assistant_message_id: str
    assistant_content: str
    usage: TokenUsage
    model: str
    tools_used: bool = False
    tool_message_id: str | None = None
    tool_results: list[ToolExecutionResult] = field(default_factory=list)
    safety_warning: SafetyDecision | None = None


@dataclass(frozen=True)
class TurnStreamEvent:
    """One frame of a streamed turn: ``token``, ``end`` or ``error``."""

    type: str
    token: str | None = None
    message: dict[str, Any] | None = None
    usage: TokenUsage | None = None
    error: dict[str, str] | None = None
    safety: dict[str, Any] | None = None

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type}
        if self.token is not None:
            payload["token"] = self.token
        if self.message is not None:
            payload["message"] = self.message
        if self.usage is not None:
            payload["usage"] = self.usage.as_dict()
        if self.error is not None:
            payload["error"] = self.error
        if self.safety is not None:
            payload["safety"] = self.safety
        return payload


@dataclass
class _PreparedTurn:
    conversation: Conversation
    user_id: str
    user_message: Message
    params: GenerationParams
    base_messages: list[ChatMessage]
    tool_context: ToolContext
    started: float
    state: TurnState = TurnState.PLANNING
    safety_warning: SafetyDecision | None = None


@dataclass
class _ToolPhase:
    usage: TokenUsage
    direct_answer: str | None = None
    final_messages: list[ChatMessage] | None = None
    envelope: ToolCallEnvelope | None = None
    tool_message: Message | None = None
    results: list[ToolExecutionResult] = field(default_factory=list)


def _app_error_from_provider_error(exc: ProviderError) -> AppError:
    if exc.status_code in {429, 501, 502, 503}:
        return AppError(exc.status_code, exc.code, exc.error_type, exc.message)
    return AppError(502, "provider_upstream_error", "provider", exc.message)


def _app_error_from_configuration(exc: ProviderConfigurationError) -> AppError:
    return AppError(500, "provider_not_configured", "provider", str(exc))


def _safety_payload(decision: SafetyDecision | None) -> dict[str, Any] | None:
    if decision is None:
        return None
    return {
        "categories": [item.as_dict() for item in decision.categories],
        "reason": decision.reason,
    }


class TurnOrchestrator:
    def __init__(
        self,
        store: Store,
        router: ModelRouter,
        catalog: ModelCatalog,
        tool_engine: ToolEngine,
        moderation: ModerationGate,
        context: ContextAssembler,
        emitter: EventEmitter,
        usage_meter: UsageMeter | None = None,
        history_limit: int = 50,
        metrics_enabled: bool = True,
    ) -> None:
        self._store = store
        self._router = router
        self._catalog = catalog
        self._tools = tool_engine
        self._moderation = moderation
        self._context = context
        self._emitter = emitter
        self._usage_meter = usage_meter
        self._history_limit = history_limit
        self._metrics_enabled = metrics_enabled

    async def run_turn(self, conversation_id: str, user_id: str, content: str) -> TurnResult:
        """Process one user message and return the persisted assistant reply."""
        turn = await self._prepare(conversation_id, user_id, content)
        phase: _ToolPhase | None = None
        try:
            if turn.conversation.structured_tools_enabled:
                phase = await self._plan(turn)
                if phase.direct_answer is not None:
                    answer, usage = phase.direct_answer, phase.usage
                else:
                    final = await self._complete(turn, phase.final_messages or [])
                    answer, usage = final.content, phase.usage + final.usage
            else:
                self._transition(turn, TurnState.FINALIZING)
                final = await self._complete(turn, turn.base_messages)
                answer, usage = final.content, final.usage
            return await self._finalize(turn, answer, usage, phase)
        except AppError as exc:
            self._record_failure(turn, exc, tools_used=self._tools_used(phase))
            raise

    async def stream_turn(
        self, conversation_id: str, user_id: str, content: str
    ) -> AsyncGenerator[TurnStreamEvent, None]:
        """Validate and persist the user message, then return the event stream.

        Anything that fails before the user message is persisted raises here;
        later failures arrive as a single ``error`` frame.
        """
        turn = await self._prepare(conversation_id, user_id, content)
        return self._stream_events(turn)

    async def _stream_events(self, turn: _PreparedTurn) -> AsyncGenerator[TurnStreamEvent, None]:
        parts: list[str] = []
        usage = TokenUsage()
        phase: _ToolPhase | None = None
        try:
            messages: list[ChatMessage] | None = turn.base_messages
            if turn.conversation.structured_tools_enabled:
                phase = await self._plan(turn)
                usage = phase.usage
                if phase.direct_answer is not None:
                    messages = None
                    parts.append(phase.direct_answer)
                    if phase.direct_answer:
                        yield TurnStreamEvent(type="token", token=phase.direct_answer)
                else:
                    messages = phase.final_messages or []
            else:
                self._transition(turn, TurnState.FINALIZING)

            if messages is not None:
                request = self._request(turn, messages)
                try:
                    upstream = self._router.stream(request)
                except ProviderConfigurationError as exc:
                    raise _app_error_from_configuration(exc) from exc
                async with aclosing(upstream) as chunks:
                    try:
                        async for chunk in chunks:
                            if chunk.delta:
                                parts.append(chunk.delta)
                                yield TurnStreamEvent(type="token", token=chunk.delta)
                            if chunk.done:
                                if chunk.usage is not None:
                                    usage = usage + chunk.usage
                                break
                    except ProviderError as exc:
                        raise _app_error_from_provider_error(exc) from exc

            result = await self._finalize(turn, "".join(parts), usage, phase)
        except AppError as exc:
            self._record_failure(turn, exc, tools_used=self._tools_used(phase))
            yield TurnStreamEvent(type="error", error={"code": exc.code, "message": exc.message})
            return
        except Exception as exc:
            logger.exception(
                "chat_stream_failed",
                extra={"conversation_id": turn.conversation.id, "error": str(exc)},
            )
            if self._metrics_enabled:
                record_turn(
                    turn.params.model_id,
                    turn.conversation.org_id,
                    self._tools_used(phase),
                    "failed",
                    perf_counter() - turn.started,
                )
            yield TurnStreamEvent(
                type="error",
                error={"code": "internal_error", "message": "Turn failed"},
            )
            return

        yield TurnStreamEvent(
            type="end",
            message={
                "id": result.assistant_message_id,
                "role": MessageRole.ASSISTANT.value,
                "content": result.assistant_content,
                "model": result.model,
            },
            usage=result.usage,
            safety=_safety_payload(result.safety_warning),
        )

    async def _prepare(self, conversation_id: str, user_id: str, content: str) -> _PreparedTurn:
        started = perf_counter()
        conversation = self._store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        params = self._resolve_params(conversation, user_id)
        try:
            self._router.resolve(params.provider)
        except ProviderConfigurationError as exc:
            raise _app_error_from_configuration(exc) from exc

        safety_warning: SafetyDecision | None = None
        if self._moderation.should_moderate(conversation.org_id, ModerationSource.USER):
            decision = await self._moderation.run_moderation(
                content,
                ModerationSource.USER,
                conversation.org_id,
                conversation_id=conversation.id,
                user_id=user_id,
            )
            raise_if_blocked(decision)
            if decision.action is SafetyAction.WARN:
                safety_warning = decision

        user_message = self._store.add_message(
            Message(
                id=new_id("msg"),
                conversation_id=conversation.id,
                role=MessageRole.USER,
                content=content,
                user_id=user_id,
                metadata={"safety": safety_warning.as_dict()} if safety_warning else {},
            )
        )
        self._emit(
            EventType.MESSAGE_SENT,
            conversation,
            user_id,
            message_id=user_message.id,
            metadata={
                "model_id": params.model_id,
                "has_tools": conversation.structured_tools_enabled,
                "has_rag": conversation.rag_enabled,
            },
        )

        history = self._store.list_messages(conversation.id, self._history_limit)
        context = await self._context.assemble(conversation, params.custom_prompt, content)
        if "rag" in context.layers:
            self._emit(
                EventType.RAG_USED,
                conversation,
                user_id,
                message_id=user_message.id,
                metadata={
                    "space_id": conversation.rag_config.get("space_id"),
                    "chunk_count": len(context.passages),
                },
            )

        base_messages = list(context.system_messages)
        base_messages.extend(
            ChatMessage(role=message.role.value, content=message.content) for message in history
        )
        return _PreparedTurn(
            conversation=conversation,
            user_id=user_id,
            user_message=user_message,
            params=params,
            base_messages=base_messages,
            tool_context=ToolContext(
                user_id=user_id,
                org_id=conversation.org_id,
                conversation_id=conversation.id,
            ),
            started=started,
            safety_warning=safety_warning,
        )

    def _resolve_params(self, conversation: Conversation, user_id: str) -> GenerationParams:
        raw_model = conversation.model
        temperature = conversation.temperature
        top_p = conversation.top_p
        max_tokens = conversation.max_tokens
        custom_prompt = conversation.system_prompt

        if conversation.chat_profile_id:
            profile = self._store.get_chat_profile(conversation.chat_profile_id)
            if profile is not None:
                raw_model = profile.model_id or raw_model
                if profile.temperature is not None:
                    temperature = profile.temperature
                if profile.top_p is not None:
                    top_p = profile.top_p
                if profile.max_tokens is not None:
                    max_tokens = profile.max_tokens
                if profile.system_template and not (custom_prompt and custom_prompt.strip()):
                    custom_prompt = render_template(
                        profile.system_template, template_variables(conversation, user_id)
                    )

        model_id = self._catalog.resolve_model_id(raw_model)
        config = self._catalog.get(model_id)
        return GenerationParams(
            model_id=model_id,
            provider=config.provider,
            provider_model=config.provider_model,
            temperature=config.default_temperature if temperature is None else temperature,
            top_p=DEFAULT_TOP_P if top_p is None else top_p,
            max_tokens=max_tokens,
            custom_prompt=custom_prompt,
        )

    async def _plan(self, turn: _PreparedTurn) -> _ToolPhase:
        self._transition(turn, TurnState.PLANNING)
        tools = self._tools.list_tools(turn.tool_context)
        planning_messages = [ChatMessage(role="system", content=build_tools_system_prompt(tools))]
        planning_messages.extend(turn.base_messages)
        planning = await self._complete(turn, planning_messages)

        envelope = parse_tool_envelope(planning.content)
        if envelope is None:
            self._transition(turn, TurnState.NO_TOOLS)
            return _ToolPhase(usage=planning.usage, direct_answer=planning.content)

        self._transition(turn, TurnState.TOOLS_DETECTED)
        self._emit(
            EventType.TOOL_CALL,
            turn.conversation,
            turn.user_id,
            message_id=turn.user_message.id,
            metadata={"tool_names": envelope.tool_names, "model_id": turn.params.model_id},
        )

        self._transition(turn, TurnState.EXECUTING)
        results = await self._tools.execute_tool_envelope(envelope, turn.tool_context)
        result_dicts = [result.as_dict() for result in results]
        tool_message = self._store.add_message(
            Message(
                id=new_id("msg"),
                conversation_id=turn.conversation.id,
                role=MessageRole.TOOL,
                content=json.dumps(result_dicts, indent=2, ensure_ascii=False, default=str),
                metadata={"tools_envelope": envelope.as_dict()},
            )
        )

        self._transition(turn, TurnState.FINALIZING)
        final_messages = list(turn.base_messages)
        final_messages.append(
            ChatMessage(role="tool", content=build_tool_results_message(result_dicts))
        )
        return _ToolPhase(
            usage=planning.usage,
            final_messages=final_messages,
            envelope=envelope,
            tool_message=tool_message,
            results=results,
        )

    def _request(self, turn: _PreparedTurn, messages: list[ChatMessage]) -> CompletionRequest:
        return CompletionRequest(
            provider=turn.params.provider,
            model=turn.params.provider_model,
            messages=messages,
            temperature=turn.params.temperature,
            top_p=turn.params.top_p,
            max_tokens=turn.params.max_tokens,
        )

    async def _complete(
        self, turn: _PreparedTurn, messages: list[ChatMessage]
    ) -> CompletionResult:
        try:
            return await self._router.complete(self._request(turn, messages))
        except ProviderError as exc:
            raise _app_error_from_provider_error(exc) from exc
        except ProviderConfigurationError as exc:
            raise _app_error_from_configuration(exc) from exc

    async def _finalize(
        self,
        turn: _PreparedTurn,
        content: str,
        usage: TokenUsage,
        phase: _ToolPhase | None,
    ) -> TurnResult:
        conversation = turn.conversation
        safety_warning = turn.safety_warning
        if self._moderation.should_moderate(conversation.org_id, ModerationSource.ASSISTANT):
            decision = await self._moderation.run_moderation(
                content,
                ModerationSource.ASSISTANT,
                conversation.org_id,
                conversation_id=conversation.id,
                user_id=turn.user_id,
            )
            raise_if_blocked(decision)
            if decision.action is SafetyAction.WARN:
                safety_warning = decision

        tools_used = self._tools_used(phase)
        metadata: dict[str, Any] = {"usage": usage.as_dict(), "model": turn.params.model_id}
        if phase is not None and phase.tool_message is not None:
            metadata["tool_message_id"] = phase.tool_message.id
        assistant = self._store.add_message(
            Message(
                id=new_id("msg"),
                conversation_id=conversation.id,
                role=MessageRole.ASSISTANT,
                content=content,
                metadata=metadata,
            )
        )
        self._transition(turn, TurnState.DONE)
        self._store.touch_conversation(conversation.id, utc_now())

        latency_s = perf_counter() - turn.started
        if self._metrics_enabled:
            record_turn(
                turn.params.model_id,
                conversation.org_id,
                tools_used,
                "completed",
                latency_s,
                tokens_in=usage.input_tokens,
                tokens_out=usage.output_tokens,
            )
        cost_micros = self._meter(turn, usage)
        logger.info(
            "chat_turn_completed",
            extra={
                "conversation_id": conversation.id,
                "org_id": conversation.org_id,
                "user_id": turn.user_id,
                "message_id": assistant.id,
                "model": turn.params.model_id,
                "provider": turn.params.provider,
                "latency_ms": int(latency_s * 1000),
                "token_in": usage.input_tokens,
                "token_out": usage.output_tokens,
                "cost_micros": cost_micros,
            },
        )
        results = phase.results if phase is not None else []
        self._emit(
            EventType.TURN_COMPLETED,
            conversation,
            turn.user_id,
            message_id=assistant.id,
            metadata={
                "assistant_message_id": assistant.id,
                "model": turn.params.model_id,
                "tools_used": tools_used,
                "tool_results_count": len(results),
            },
        )
        return TurnResult(
            assistant_message_id=assistant.id,
            assistant_content=content,
            usage=usage,
            model=turn.params.model_id,
            tools_used=tools_used,
            tool_message_id=metadata.get("tool_message_id"),
            tool_results=results,
            safety_warning=safety_warning,
        )

    def _meter(self, turn: _PreparedTurn, usage: TokenUsage) -> int | None:
        org_id = turn.conversation.org_id
        if self._usage_meter is None or not org_id:
            return None
        try:
            return self._usage_meter.record_usage(
                UsageRecord(
                    org_id=org_id,
                    provider=turn.params.provider,
                    model=turn.params.provider_model,
                    input_tokens=usage.input_tokens,
                    output_tokens=usage.output_tokens,
                    user_id=turn.user_id,
                )
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "usage_record_failed",
                extra={
                    "org_id": org_id,
                    "conversation_id": turn.conversation.id,
                    "error": str(exc),
                },
            )
            return None

    def _emit(
        self,
        event_type: EventType,
        conversation: Conversation,
        user_id: str,
        message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if not conversation.org_id:
            return
        try:
            self._emitter.emit_event(
                event_type,
                conversation.org_id,
                user_id=user_id,
                conversation_id=conversation.id,
                message_id=message_id,
                metadata=metadata,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "event_emit_failed",
                extra={
                    "event_type": event_type.value,
                    "org_id": conversation.org_id,
                    "conversation_id": conversation.id,
                    "error": str(exc),
                },
            )

    @staticmethod
    def _tools_used(phase: _ToolPhase | None) -> bool:
        return phase is not None and phase.tool_message is not None

    @staticmethod
    def _transition(turn: _PreparedTurn, state: TurnState) -> None:
        logger.debug(
            "turn_state_changed",
            extra={"conversation_id": turn.conversation.id, "state": state.value},
        )
        turn.state = state

    def _record_failure(self, turn: _PreparedTurn, exc: AppError, tools_used: bool) -> None:
        if self._metrics_enabled:
            record_turn(
                turn.params.model_id,
                turn.conversation.org_id,
                tools_used,
                "failed",
                perf_counter() - turn.started,
            )
        logger.warning(
            "chat_turn_failed",
            extra={
                "conversation_id": turn.conversation.id,
                "org_id": turn.conversation.org_id,
                "model": turn.params.model_id,
                "state": turn.state.value,
                "status_code": exc.status_code,
                "error": exc.code,
            },
        )
