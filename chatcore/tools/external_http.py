"""Org-defined tools backed by an HTTP callout."""

from typing import Any

import httpx

from chatcore.store.models import ExternalToolRecord
from chatcore.tools.types import ToolContext, ToolDefinition


class ExternalToolHTTPError(Exception):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"External tool HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class ExternalHTTPToolFactory:
    def __init__(
        self,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout_s = timeout_s
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        if self._transport is None:
            return httpx.AsyncClient(timeout=self._timeout_s)
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    def build(self, record: ExternalToolRecord) -> ToolDefinition:
        async def call_external(args: Any, context: ToolContext) -> Any:
            body = {
                "orgId": context.org_id,
                "userId": context.user_id,
                "conversationId": context.conversation_id,
                "args": args,
            }
            headers = {**record.headers, "Content-Type": "application/json"}
            async with self._client() as client:
                resp = await client.request(
                    record.method.upper() or "POST",
                    record.url,
                    json=body,
                    headers=headers,
                )
            if not 200 <= resp.status_code < 300:
                raise ExternalToolHTTPError(resp.status_code, resp.text[:500])
            if not resp.content:
                return None
            try:
                return resp.json()
            except ValueError:
                return resp.text

        return ToolDefinition(
            name=record.name,
            description=record.description,
            args_schema=record.args_schema or {"type": "object"},
            executor=call_external,
            source="external",
        )
