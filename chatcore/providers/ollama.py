"""Provider for a local or remote Ollama server (``/api/chat``)."""

import json
from collections.abc import AsyncGenerator
from typing import Any

import httpx

from chatcore.providers.base import (
    CompletionRequest,
    CompletionResult,
    StreamChunk,
    TokenUsage,
    coerce_token_count,
    normalize_messages,
)
from chatcore.providers.http_errors import json_body, raise_for_status, transport_error


class OllamaProvider:
    def __init__(
        self,
        base_url: str,
        timeout_s: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if self._transport is None:
            return httpx.AsyncClient(timeout=self._timeout)
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    @staticmethod
    def _body(request: CompletionRequest, stream: bool) -> dict[str, Any]:
        options: dict[str, Any] = {
            "temperature": request.temperature,
            "top_p": request.top_p,
        }
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        return {
            "model": request.model,
            "messages": normalize_messages(request.messages),
            "stream": stream,
            "options": options,
        }

    @staticmethod
    def _usage(data: dict[str, Any]) -> TokenUsage:
        return TokenUsage(
            input_tokens=coerce_token_count(data.get("prompt_eval_count")),
            output_tokens=coerce_token_count(data.get("eval_count")),
        )

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self._base_url}/api/chat", json=self._body(request, stream=False)
                )
        except httpx.HTTPError as exc:
            raise transport_error(exc) from exc
        raise_for_status(resp)

        data = json_body(resp)
        message = data.get("message") if isinstance(data, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        return CompletionResult(
            content=content if isinstance(content, str) else "",
            usage=self._usage(data if isinstance(data, dict) else {}),
        )

    async def stream(self, request: CompletionRequest) -> AsyncGenerator[StreamChunk, None]:
        usage: TokenUsage | None = None
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/api/chat",
                    json=self._body(request, stream=True),
                ) as resp:
                    raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if not line.strip():
                            continue
                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(data, dict):
                            continue
                        message = data.get("message")
                        token = message.get("content") if isinstance(message, dict) else None
                        if isinstance(token, str) and token:
                            yield StreamChunk(delta=token)
                        if data.get("done"):
                            usage = self._usage(data)
                            break
        except httpx.HTTPError as exc:
            raise transport_error(exc) from exc
        yield StreamChunk(delta=None, done=True, usage=usage)
