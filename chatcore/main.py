import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from chatcore.api.routes import router
from chatcore.config.settings import Settings, get_settings
from chatcore.core.errors import AppError, app_error_response, request_id_from_request
from chatcore.core.logging import configure_logging
from chatcore.events.emitter import EventEmitter
from chatcore.middleware.auth import AuthMiddleware
from chatcore.middleware.request_id import RequestIDMiddleware
from chatcore.providers.catalog import ModelCatalog
from chatcore.providers.registry import build_model_router
from chatcore.rag.embeddings import (
    EmbeddingGenerator,
    HashEmbeddingGenerator,
    HTTPEmbeddingGenerator,
)
from chatcore.rag.index import VectorPassageIndex
from chatcore.rag.retrieval import RetrievalAdapter
from chatcore.safety.gate import ModerationGate
from chatcore.safety.provider import HeuristicModerationProvider
from chatcore.services.context import ContextAssembler
from chatcore.services.orchestrator import TurnOrchestrator
from chatcore.store.base import create_store
from chatcore.tools.builtin import build_builtin_registry
from chatcore.tools.external_http import ExternalHTTPToolFactory
from chatcore.tools.engine import ToolEngine
from chatcore.usage.metering import PriceRegistry, UsageMeter
from chatcore.webhooks.dispatcher import WebhookDeliveryWorker

logger = logging.getLogger("chatcore.app")


def _build_rag_embedding_generator(settings: Settings) -> EmbeddingGenerator:
    source = settings.rag_embedding_source.strip().lower()
    if source == "hash":
        return HashEmbeddingGenerator(embedding_dim=settings.rag_embedding_dim)
    if source == "http":
        endpoint = settings.rag_embedding_endpoint
        if not endpoint:
            raise RuntimeError("CHATCORE_RAG_EMBEDDING_ENDPOINT is required when source=http")
        return HTTPEmbeddingGenerator(
            endpoint=endpoint,
            model=settings.rag_embedding_model,
            embedding_dim=settings.rag_embedding_dim,
            api_key=settings.rag_embedding_api_key,
        )
    raise RuntimeError(f"Unsupported CHATCORE_RAG_EMBEDDING_SOURCE value: {source}")


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: Settings = app.state.settings
    if not settings.webhook_drain_enabled:
        yield
        return

    worker: WebhookDeliveryWorker = app.state.webhook_worker
    stop = asyncio.Event()
    task = asyncio.create_task(worker.run_forever(settings.webhook_drain_interval_s, stop))
    logger.info("webhook_drain_loop_started")
    try:
        yield
    finally:
        stop.set()
        await task
        logger.info("webhook_drain_loop_stopped")


def create_app() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(title="chatcore", version="0.1.0", lifespan=_lifespan)

    app.add_middleware(AuthMiddleware)
    app.add_middleware(RequestIDMiddleware)

    store = create_store(settings.store_backend_normalized, settings.store_path)
    catalog = ModelCatalog.from_entries(
        settings.model_catalog_entries, default_model_id=settings.default_model_id
    )
    model_router = build_model_router(settings)
    emitter = EventEmitter(store, metrics_enabled=settings.metrics_enabled)

    tool_engine = ToolEngine(
        registry=build_builtin_registry(store),
        store=store,
        external_tools=ExternalHTTPToolFactory(timeout_s=settings.tool_timeout_s),
        emitter=emitter,
        timeout_s=settings.tool_timeout_s,
        metrics_enabled=settings.metrics_enabled,
    )
    moderation = ModerationGate(
        store=store,
        provider=HeuristicModerationProvider(),
        snippet_chars=settings.moderation_snippet_chars,
        enabled=settings.moderation_enabled,
        metrics_enabled=settings.metrics_enabled,
    )
    passage_index = VectorPassageIndex(
        embedder=_build_rag_embedding_generator(settings),
        index_path=settings.rag_index_path,
    )
    retrieval = RetrievalAdapter(passage_index, default_limit=settings.rag_default_max_chunks)
    context = ContextAssembler(
        store=store,
        retrieval=retrieval,
        rag_enabled=settings.rag_enabled,
        default_max_chunks=settings.rag_default_max_chunks,
    )
    usage_meter = UsageMeter(store, PriceRegistry(store, defaults=settings.model_price_map))

    app.state.settings = settings
    app.state.store = store
    app.state.model_catalog = catalog
    app.state.model_router = model_router
    app.state.event_emitter = emitter
    app.state.tool_engine = tool_engine
    app.state.moderation_gate = moderation
    app.state.passage_index = passage_index
    app.state.orchestrator = TurnOrchestrator(
        store=store,
        router=model_router,
        catalog=catalog,
        tool_engine=tool_engine,
        moderation=moderation,
        context=context,
        emitter=emitter,
        usage_meter=usage_meter,
        history_limit=settings.history_limit,
        metrics_enabled=settings.metrics_enabled,
    )
    app.state.webhook_worker = WebhookDeliveryWorker(
        store=store,
        timeout_s=settings.webhook_timeout_s,
        batch_size=settings.webhook_drain_batch_size,
        metrics_enabled=settings.metrics_enabled,
    )

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            exc.status_code,
            exc.code,
            exc.error_type,
            exc.message,
            request_id,
            details=exc.details,
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_id = request_id_from_request(request)
        return app_error_response(
            422, "request_validation_failed", "validation", str(exc), request_id
        )

    @app.exception_handler(Exception)
    async def unhandled_handler(request: Request, exc: Exception) -> JSONResponse:
        request_id = request_id_from_request(request)
        logger.error(
            "unhandled_error",
            extra={"request_id": request_id, "error": str(exc)},
            exc_info=exc,
        )
        return app_error_response(
            500, "internal_error", "internal", "Internal server error", request_id
        )

    app.include_router(router)
    return app


app = create_app()
