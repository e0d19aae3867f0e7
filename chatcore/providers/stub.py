from collections.abc import AsyncGenerator

from chatcore.providers.base import (
    CompletionRequest,
    CompletionResult,
    ProviderError,
    StreamChunk,
    TokenUsage,
)


class StubProvider:
    """Deterministic offline provider that echoes the last user message."""

    def __init__(self, chunk_size: int = 16):
        self._chunk_size = max(chunk_size, 1)

    async def complete(self, request: CompletionRequest) -> CompletionResult:
        self._maybe_raise_provider_error(request.model)
        last_user_message = next(
            (m.content for m in reversed(request.messages) if m.role == "user"), ""
        )
        answer = f"Stub response: {last_user_message[:120]}"
        if request.max_tokens is not None:
            answer = " ".join(answer.split()[: max(request.max_tokens, 1)])
        return CompletionResult(
            content=answer,
            usage=TokenUsage(
                input_tokens=max(sum(len(m.content.split()) for m in request.messages), 1),
                output_tokens=max(len(answer.split()), 1),
            ),
        )

    async def stream(self, request: CompletionRequest) -> AsyncGenerator[StreamChunk, None]:
        result = await self.complete(request)
        content = result.content
        for idx in range(0, len(content), self._chunk_size):
            yield StreamChunk(delta=content[idx : idx + self._chunk_size])
        yield StreamChunk(delta=None, done=True, usage=result.usage)

    @staticmethod
    def _maybe_raise_provider_error(model: str) -> None:
        if model.startswith("error-429"):
            raise ProviderError(
                status_code=429,
                code="provider_rate_limited",
                message="Provider rate limit exceeded",
                error_type="rate_limit",
            )
        if model.startswith("error-502"):
            raise ProviderError(
                status_code=502,
                code="provider_bad_gateway",
                message="Provider upstream bad gateway",
            )
