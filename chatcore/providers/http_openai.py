"""HTTP provider for OpenAI-compatible chat completion endpoints."""

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


class HTTPOpenAIProvider:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        timeout_s: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if self._transport is None:
            return httpx.AsyncClient(timeout=self._timeout)
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _body(request: CompletionRequest, stream: bool) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": normalize_messages(request.messages),
            "temperature": request.temperature,
            "top_p": request.top_p,
        }
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if stream:
            body["stream"] = True
            body["stream_options"] = {"include_usage": True}
        return body

    @staticmethod
    def _usage(raw: object) -> TokenUsage | None:
        if not isinstance(raw, dict):
            return None
        return TokenUsage(
            input_tokens=coerce_token_count(raw.get("prompt_tokens")),
            output_tokens=coerce_token_count(raw.get("completion_tokens")),
        )

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self._base_url}/v1/chat/completions",
                    json=self._body(request, stream=False),
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            raise transport_error(exc) from exc
        raise_for_status(resp)

        data = json_body(resp)
        content = ""
        choices = data.get("choices") if isinstance(data, dict) else None
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            message = choices[0].get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                content = message["content"]
        usage = self._usage(data.get("usage") if isinstance(data, dict) else None)
        return CompletionResult(content=content, usage=usage or TokenUsage())

    async def stream(self, request: CompletionRequest) -> AsyncGenerator[StreamChunk, None]:
        usage: TokenUsage | None = None
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/v1/chat/completions",
                    json=self._body(request, stream=True),
                    headers=self._headers(),
                ) as resp:
                    raise_for_status(resp)
                    async for line in resp.aiter_lines():
                        if not line.startswith("data:"):
                            continue
                        data = line.removeprefix("data:").strip()
                        if data == "[DONE]":
                            break
                        try:
                            parsed = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if not isinstance(parsed, dict):
                            continue
                        usage = self._usage(parsed.get("usage")) or usage
                        choices = parsed.get("choices")
                        if not isinstance(choices, list):
                            continue
                        for choice in choices:
                            delta = choice.get("delta") if isinstance(choice, dict) else None
                            token = delta.get("content") if isinstance(delta, dict) else None
                            if isinstance(token, str) and token:
                                yield StreamChunk(delta=token)
        except httpx.HTTPError as exc:
            raise transport_error(exc) from exc
        yield StreamChunk(delta=None, done=True, usage=usage)
