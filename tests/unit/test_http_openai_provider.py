import asyncio
import json

import httpx
import pytest

from chatcore.providers.base import ChatMessage, CompletionRequest, ProviderError, TokenUsage
from chatcore.providers.http_errors import raise_for_status, transport_error
from chatcore.providers.http_openai import HTTPOpenAIProvider

REQUEST = CompletionRequest(
    provider="openai",
    model="gpt-4o-mini",
    messages=[ChatMessage("user", "hello")],
)


async def _collect(stream):
    return [chunk async for chunk in stream]


def test_complete_sends_bearer_and_parses_choice() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer secret"
        body = json.loads(request.content)
        assert "max_tokens" not in body
        assert "stream" not in body
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"role": "assistant", "content": "Hi"}}],
                "usage": {"prompt_tokens": 7, "completion_tokens": 1},
            },
        )

    provider = HTTPOpenAIProvider(
        "https://api.example.test", api_key="secret", transport=httpx.MockTransport(handler)
    )
    result = asyncio.run(provider.complete(REQUEST))
    assert result.content == "Hi"
    assert result.usage == TokenUsage(input_tokens=7, output_tokens=1)


def test_stream_parses_sse_deltas_and_trailing_usage() -> None:
    frames = [
        'data: {"choices": [{"delta": {"role": "assistant"}}]}',
        'data: {"choices": [{"delta": {"content": "Hel"}}]}',
        ": keep-alive",
        "data: {broken",
        'data: {"choices": [{"delta": {"content": "lo"}}]}',
        'data: {"choices": [], "usage": {"prompt_tokens": 5, "completion_tokens": 2}}',
        "data: [DONE]",
    ]

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["stream"] is True
        assert body["stream_options"] == {"include_usage": True}
        return httpx.Response(200, content="\n\n".join(frames).encode())

    provider = HTTPOpenAIProvider(
        "https://api.example.test", api_key="secret", transport=httpx.MockTransport(handler)
    )
    chunks = asyncio.run(_collect(provider.stream(REQUEST)))
    assert [chunk.delta for chunk in chunks] == ["Hel", "lo", None]
    assert chunks[-1].usage == TokenUsage(input_tokens=5, output_tokens=2)


def test_raise_for_status_mapping() -> None:
    with pytest.raises(ProviderError, match="rate limit"):
        raise_for_status(httpx.Response(status_code=429))
    with pytest.raises(ProviderError) as upstream:
        raise_for_status(httpx.Response(status_code=503))
    assert upstream.value.code == "provider_upstream_error"
    with pytest.raises(ProviderError, match="Provider returned 400"):
        raise_for_status(httpx.Response(status_code=400))
    raise_for_status(httpx.Response(status_code=200))


def test_timeout_maps_to_503() -> None:
    error = transport_error(httpx.ReadTimeout("slow"))
    assert (error.status_code, error.code) == (503, "provider_timeout")


def test_non_json_success_body_maps_to_invalid_response() -> None:
    provider = HTTPOpenAIProvider(
        "https://api.example.test",
        api_key="secret",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>bad gateway</html>")
        ),
    )
    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(provider.complete(REQUEST))
    assert exc_info.value.status_code == 502
    assert exc_info.value.code == "provider_invalid_response"
