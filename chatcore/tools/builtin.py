"""Built-in tools available to every conversation."""

from datetime import UTC, datetime, timedelta
from typing import Any

from chatcore.store.base import Store
from chatcore.tools.registry import ToolRegistry
from chatcore.tools.types import ToolContext, ToolDefinition

TIME_NOW_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {},
    "additionalProperties": False,
}

USAGE_SNAPSHOT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "windowDays": {"type": "integer", "minimum": 1, "maximum": 365},
    },
    "additionalProperties": False,
}

SEARCH_MESSAGES_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "query": {"type": "string", "minLength": 1},
        "limit": {"type": "integer", "minimum": 1, "maximum": 50},
    },
    "required": ["query"],
    "additionalProperties": False,
}


async def time_now(args: Any, context: ToolContext) -> dict[str, Any]:
    now = datetime.now(UTC)
    return {
        "iso": now.isoformat().replace("+00:00", "Z"),
        "unixMs": int(now.timestamp() * 1000),
    }


def build_usage_snapshot_tool(store: Store) -> ToolDefinition:
    async def usage_snapshot(args: Any, context: ToolContext) -> dict[str, Any]:
        if not context.org_id:
            raise ValueError("org.usageSnapshot requires an organization context")
        window_days = int(args.get("windowDays", 30))
        since = datetime.now(UTC).date() - timedelta(days=window_days - 1)
        rows = store.list_usage(context.org_id, since)
        totals = {
            "requestCount": sum(row.request_count for row in rows),
            "inputTokens": sum(row.input_tokens for row in rows),
            "outputTokens": sum(row.output_tokens for row in rows),
            "estimatedCostMicros": sum(row.estimated_cost_micros for row in rows),
        }
        return {
            "orgId": context.org_id,
            "windowDays": window_days,
            "since": since.isoformat(),
            "totals": totals,
        }

    return ToolDefinition(
        name="org.usageSnapshot",
        description=(
            "Returns the organization's usage and quota snapshot for the given window "
            "(e.g. 30 days)."
        ),
        args_schema=USAGE_SNAPSHOT_SCHEMA,
        executor=usage_snapshot,
    )


def build_search_messages_tool(store: Store) -> ToolDefinition:
    async def search_messages(args: Any, context: ToolContext) -> dict[str, Any]:
        if not context.conversation_id:
            raise ValueError("conversation.searchMessages requires a conversation context")
        query = str(args["query"])
        limit = int(args.get("limit", 20))
        matches = store.search_messages(context.conversation_id, query, limit)
        return {
            "conversationId": context.conversation_id,
            "query": query,
            "matches": [
                {
                    "role": message.role.value,
                    "content": message.content,
                    "createdAt": message.created_at.isoformat(),
                }
                for message in matches
            ],
        }

    return ToolDefinition(
        name="conversation.searchMessages",
        description=(
            "Searches recent messages in this conversation for the given query string "
            "and returns the best matches."
        ),
        args_schema=SEARCH_MESSAGES_SCHEMA,
        executor=search_messages,
    )


def build_builtin_registry(store: Store) -> ToolRegistry:
    return ToolRegistry(
        [
            ToolDefinition(
                name="time.now",
                description="Returns the current server time in ISO 8601 format.",
                args_schema=TIME_NOW_SCHEMA,
                executor=time_now,
            ),
            build_usage_snapshot_tool(store),
            build_search_messages_tool(store),
        ]
    )
