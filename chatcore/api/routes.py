import json
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import aclosing

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from chatcore.core.errors import ConversationNotFoundError
from chatcore.metrics import metrics_router
from chatcore.models.api import (
    DrainRequest,
    DrainResponse,
    ModelDescriptor,
    ModelListResponse,
    SafetyWarning,
    ToolDescriptor,
    ToolEnvelopeRequest,
    ToolEnvelopeResponse,
    ToolExecuteRequest,
    ToolListResponse,
    ToolResult,
    TurnRequest,
    TurnResponse,
    Usage,
)
from chatcore.providers.catalog import ModelCatalog
from chatcore.providers.registry import ModelRouter
from chatcore.services.orchestrator import TurnOrchestrator, TurnResult, TurnStreamEvent
from chatcore.store.base import Store
from chatcore.tools.engine import ToolEngine
from chatcore.tools.types import ToolCall, ToolCallEnvelope, ToolContext
from chatcore.webhooks.dispatcher import WebhookDeliveryWorker

router = APIRouter()
router.include_router(metrics_router)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/readyz")
def readyz(request: Request) -> dict[str, object]:
    model_router: ModelRouter = request.app.state.model_router
    providers = model_router.registered()
    return {"status": "ready" if providers else "degraded", "providers": providers}


@router.get("/v1/models", response_model=ModelListResponse)
def list_models(request: Request) -> ModelListResponse:
    catalog: ModelCatalog = request.app.state.model_catalog
    return ModelListResponse(
        default_model_id=catalog.default_model_id,
        models=[
            ModelDescriptor(
                id=model.id,
                provider=model.provider,
                label=model.label,
                supports_tools=model.supports_tools,
                default_temperature=model.default_temperature,
            )
            for model in catalog.list_models()
        ],
    )


def _turn_response(result: TurnResult) -> TurnResponse:
    warning = result.safety_warning
    return TurnResponse(
        assistant_message_id=result.assistant_message_id,
        content=result.assistant_content,
        model=result.model,
        usage=Usage(**result.usage.as_dict()),
        tools_used=result.tools_used,
        tool_message_id=result.tool_message_id,
        tool_results=[ToolResult(**item.as_dict()) for item in result.tool_results],
        safety_warning=(
            SafetyWarning(
                categories=[item.as_dict() for item in warning.categories],
                reason=warning.reason,
            )
            if warning is not None
            else None
        ),
    )


async def _sse_frames(events: AsyncGenerator[TurnStreamEvent, None]) -> AsyncIterator[str]:
    async with aclosing(events) as stream:
        async for event in stream:
            yield f"data: {json.dumps(event.as_dict(), ensure_ascii=False, default=str)}\n\n"


@router.post(
    "/v1/conversations/{conversation_id}/turns",
    response_model=TurnResponse,
    response_model_exclude_none=True,
)
async def create_turn(
    request: Request, conversation_id: str, payload: TurnRequest
) -> TurnResponse | StreamingResponse:
    orchestrator: TurnOrchestrator = request.app.state.orchestrator
    user_id: str = request.state.user_id
    if payload.stream:
        events = await orchestrator.stream_turn(conversation_id, user_id, payload.content)
        return StreamingResponse(
            _sse_frames(events),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )
    result = await orchestrator.run_turn(conversation_id, user_id, payload.content)
    return _turn_response(result)


def _tool_context(request: Request, conversation_id: str | None) -> ToolContext:
    org_id: str | None = request.state.org_id
    if conversation_id:
        store: Store = request.app.state.store
        conversation = store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        org_id = conversation.org_id
    return ToolContext(
        user_id=request.state.user_id,
        org_id=org_id,
        conversation_id=conversation_id,
    )


@router.get("/v1/tools", response_model=ToolListResponse)
def list_tools(request: Request, conversation_id: str | None = None) -> ToolListResponse:
    engine: ToolEngine = request.app.state.tool_engine
    context = _tool_context(request, conversation_id)
    return ToolListResponse(
        tools=[ToolDescriptor(**tool.describe()) for tool in engine.list_tools(context)]
    )


@router.post("/v1/tools/execute", response_model=ToolResult, response_model_exclude_none=True)
async def execute_tool(request: Request, payload: ToolExecuteRequest) -> ToolResult:
    engine: ToolEngine = request.app.state.tool_engine
    context = _tool_context(request, payload.conversation_id)
    call = ToolCall(tool=payload.tool, args=payload.args)
    result = await engine.execute_tool_call(call, context)
    return ToolResult(**result.as_dict())


@router.post(
    "/v1/tools/execute-envelope",
    response_model=ToolEnvelopeResponse,
    response_model_exclude_none=True,
)
async def execute_tool_envelope(
    request: Request, payload: ToolEnvelopeRequest
) -> ToolEnvelopeResponse:
    engine: ToolEngine = request.app.state.tool_engine
    context = _tool_context(request, payload.conversation_id)
    envelope = ToolCallEnvelope(
        tool_calls=[
            ToolCall(tool=call.tool, args={} if call.args is None else call.args)
            for call in payload.tool_calls
        ]
    )
    results = await engine.execute_tool_envelope(envelope, context)
    return ToolEnvelopeResponse(results=[ToolResult(**item.as_dict()) for item in results])


@router.post("/v1/webhooks/drain", response_model=DrainResponse)
async def drain_webhooks(request: Request, payload: DrainRequest | None = None) -> DrainResponse:
    worker: WebhookDeliveryWorker = request.app.state.webhook_worker
    results = await worker.drain_once(limit=payload.limit if payload else None)
    return DrainResponse(processed=len(results))
