"""Domain event emission and webhook fan-out.

Emitting an event writes the canonical Event row together with one pending
Delivery per matching active subscription. Nothing is sent over HTTP here;
the delivery worker drains pending rows separately.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from chatcore.metrics import record_event_emitted
from chatcore.store.base import Store
from chatcore.store.models import Event, WebhookDelivery, new_id

logger = logging.getLogger("chatcore.events")


class EventType(str, Enum):
    MESSAGE_SENT = "conversation.message_sent"
    RAG_USED = "conversation.rag_used"
    TOOL_CALL = "conversation.tool_call"
    TOOL_EXEC_SUCCESS = "tool.exec.success"
    TOOL_EXEC_ERROR = "tool.exec.error"
    TURN_COMPLETED = "chat.turn.completed"


def matches_event_type(event_type: str, patterns: Iterable[str]) -> bool:
    """Empty filter matches everything; otherwise exact type or dot-prefix."""
    normalized = [pattern.strip() for pattern in patterns if pattern and pattern.strip()]
    if not normalized:
        return True
    for pattern in normalized:
        if pattern == "*" or event_type == pattern:
            return True
        prefix = pattern if pattern.endswith(".") else f"{pattern}."
        if event_type.startswith(prefix):
            return True
    return False


@dataclass(frozen=True)
class EmittedEvent:
    event: Event
    deliveries: list[WebhookDelivery]


class EventEmitter:
    def __init__(self, store: Store, metrics_enabled: bool = True) -> None:
        self._store = store
        self._metrics_enabled = metrics_enabled

    def emit_event(
        self,
        event_type: str,
        org_id: str,
        *,
        user_id: str | None = None,
        conversation_id: str | None = None,
        message_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> EmittedEvent:
        type_value = event_type.value if isinstance(event_type, EventType) else event_type
        event = Event(
            id=new_id("evt"),
            type=type_value,
            org_id=org_id,
            user_id=user_id,
            conversation_id=conversation_id,
            message_id=message_id,
            metadata=dict(metadata or {}),
        )
        deliveries = [
            WebhookDelivery(id=new_id("dlv"), event_id=event.id, subscription_id=subscription.id)
            for subscription in self._store.list_active_subscriptions(org_id)
            if matches_event_type(type_value, subscription.event_types)
        ]
        self._store.record_event(event, deliveries)

        if self._metrics_enabled:
            record_event_emitted(type_value, len(deliveries))
        logger.info(
            "event_emitted",
            extra={
                "event_type": type_value,
                "org_id": org_id,
                "conversation_id": conversation_id,
                "message_id": message_id,
                "deliveries": len(deliveries),
            },
        )
        return EmittedEvent(event=event, deliveries=deliveries)
