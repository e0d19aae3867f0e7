"""Model router: a closed mapping from provider kind to an initialized client."""

import logging
from collections.abc import AsyncGenerator, Callable
from enum import Enum

from chatcore.config.settings import Settings
from chatcore.providers.base import (
    ChatProvider,
    CompletionRequest,
    CompletionResult,
    ProviderConfigurationError,
    StreamChunk,
)
from chatcore.providers.http_openai import HTTPOpenAIProvider
from chatcore.providers.ollama import OllamaProvider
from chatcore.providers.stub import StubProvider

logger = logging.getLogger("chatcore.providers")


class ProviderKind(str, Enum):
    OLLAMA = "ollama"
    OPENAI = "openai"
    STUB = "stub"


def _build_ollama(settings: Settings) -> ChatProvider:
    return OllamaProvider(base_url=settings.ollama_base_url, timeout_s=settings.provider_timeout_s)


def _build_openai(settings: Settings) -> ChatProvider:
    if not settings.openai_api_key:
        raise ProviderConfigurationError("CHATCORE_OPENAI_API_KEY is required for openai")
    return HTTPOpenAIProvider(
        base_url=settings.openai_base_url,
        api_key=settings.openai_api_key,
        timeout_s=settings.provider_timeout_s,
    )


def _build_stub(settings: Settings) -> ChatProvider:
    return StubProvider()


PROVIDER_FACTORIES: dict[ProviderKind, Callable[[Settings], ChatProvider]] = {
    ProviderKind.OLLAMA: _build_ollama,
    ProviderKind.OPENAI: _build_openai,
    ProviderKind.STUB: _build_stub,
}


def parse_provider_kind(raw: str) -> ProviderKind:
    try:
        return ProviderKind(raw.strip().lower())
    except ValueError as exc:
        raise ProviderConfigurationError(f"Unsupported model provider: {raw}") from exc


class ModelRouter:
    def __init__(self) -> None:
        self._providers: dict[ProviderKind, ChatProvider] = {}

    def register(self, kind: ProviderKind, provider: ChatProvider) -> None:
        self._providers[kind] = provider
        logger.info("provider_registered", extra={"provider": kind.value})

    def registered(self) -> list[str]:
        return sorted(kind.value for kind in self._providers)

    def resolve(self, provider: str) -> ChatProvider:
        kind = parse_provider_kind(provider)
        client = self._providers.get(kind)
        if client is None:
            raise ProviderConfigurationError(f"{kind.value} provider not initialized")
        return client

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        return await self.resolve(request.provider).complete(request)

    def stream(self, request: CompletionRequest) -> AsyncGenerator[StreamChunk, None]:
        return self.resolve(request.provider).stream(request)


def build_model_router(settings: Settings) -> ModelRouter:
    router = ModelRouter()
    for name in sorted(settings.enabled_provider_set):
        kind = parse_provider_kind(name)
        router.register(kind, PROVIDER_FACTORIES[kind](settings))
    return router
