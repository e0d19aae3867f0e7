import asyncio

import pytest

from chatcore.config.settings import Settings
from chatcore.providers.base import (
    ChatMessage,
    CompletionRequest,
    ProviderConfigurationError,
    ProviderError,
)
from chatcore.providers.catalog import ModelCatalog
from chatcore.providers.registry import ModelRouter, ProviderKind, build_model_router
from chatcore.providers.stub import StubProvider


def _request(provider: str = "stub", model: str = "echo") -> CompletionRequest:
    return CompletionRequest(
        provider=provider,
        model=model,
        messages=[ChatMessage("system", "sys"), ChatMessage("user", "ping pong")],
    )


def test_catalog_resolves_default_and_bare_names() -> None:
    catalog = ModelCatalog(default_model_id="stub:echo")
    assert catalog.resolve_model_id(None) == "stub:echo"
    assert catalog.resolve_model_id("  default ") == "stub:echo"
    assert catalog.resolve_model_id("mistral") == "ollama:mistral"
    assert catalog.resolve_model_id("openai:gpt-4o") == "openai:gpt-4o"


def test_catalog_synthesizes_unknown_models() -> None:
    catalog = ModelCatalog()
    known = catalog.get("openai:gpt-4o-mini")
    assert known.supports_tools is True
    unknown = catalog.get("openai:gpt-4.1")
    assert (unknown.provider, unknown.provider_model) == ("openai", "gpt-4.1")


def test_catalog_entries_extend_builtins() -> None:
    catalog = ModelCatalog.from_entries(
        [{"id": "openai:gpt-4o", "label": "GPT-4o", "default_temperature": 0.3}]
    )
    ids = [model.id for model in catalog.list_models()]
    assert "openai:gpt-4o" in ids and "stub:echo" in ids
    assert catalog.get("openai:gpt-4o").default_temperature == 0.3


def test_router_dispatches_to_registered_provider() -> None:
    router = ModelRouter()
    router.register(ProviderKind.STUB, StubProvider())
    result = asyncio.run(router.complete(_request()))
    assert result.content == "Stub response: ping pong"
    assert router.registered() == ["stub"]


def test_router_rejects_unknown_and_unregistered_providers() -> None:
    router = ModelRouter()
    with pytest.raises(ProviderConfigurationError, match="Unsupported model provider"):
        router.resolve("bedrock")
    with pytest.raises(ProviderConfigurationError, match="not initialized"):
        router.resolve("OpenAI")


def test_build_model_router_requires_openai_key() -> None:
    router = build_model_router(Settings(enabled_providers="stub,ollama"))
    assert router.registered() == ["ollama", "stub"]
    with pytest.raises(ProviderConfigurationError):
        build_model_router(Settings(enabled_providers="openai", openai_api_key=None))


def test_stub_stream_ends_with_usage_sentinel() -> None:
    async def collect():
        return [chunk async for chunk in StubProvider(chunk_size=5).stream(_request())]

    chunks = asyncio.run(collect())
    assert "".join(chunk.delta or "" for chunk in chunks) == "Stub response: ping pong"
    assert chunks[-1].done is True
    assert chunks[-1].usage is not None


def test_stub_error_models_raise_provider_errors() -> None:
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(StubProvider().complete(_request(model="error-429")))
    assert exc_info.value.status_code == 429
