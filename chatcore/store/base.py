from datetime import date, datetime
from pathlib import Path
from typing import Protocol

from chatcore.store.models import (
    ChatProfile,
    Conversation,
    ConversationPreset,
    DeliveryStatus,
    Event,
    ExternalToolRecord,
    Message,
    ModelPrice,
    ModerationIncident,
    OrgAiPolicy,
    OrgSafetyConfig,
    UsageAggregate,
    UsageDelta,
    UsageKey,
    WebhookDelivery,
    WebhookSubscription,
)


class Store(Protocol):
    backend: str

    # Conversations and configuration
    def get_conversation(self, conversation_id: str) -> Conversation | None:
        """Return the conversation or None."""

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        """Advance ``last_activity_at``; never moves it backwards."""

    def get_chat_profile(self, profile_id: str) -> ChatProfile | None:
        """Return the chat profile or None."""

    def get_preset(self, preset_id: str) -> ConversationPreset | None:
        """Return the preset or None."""

    def get_org_ai_policy(self, org_id: str) -> OrgAiPolicy | None:
        """Return the org-wide AI policy or None."""

    def get_org_safety_config(self, org_id: str) -> OrgSafetyConfig | None:
        """Return the org safety config or None."""

    def list_external_tools(self, org_id: str) -> list[ExternalToolRecord]:
        """Return the org's enabled external tools ordered by name."""

    # Messages
    def add_message(self, message: Message) -> Message:
        """Append a message."""

    def list_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """Return the last ``limit`` messages, oldest first."""

    def search_messages(self, conversation_id: str, query: str, limit: int) -> list[Message]:
        """Case-insensitive substring search, newest first."""

    # Safety
    def add_moderation_incident(self, incident: ModerationIncident) -> ModerationIncident:
        """Persist an incident."""

    def list_moderation_incidents(self, org_id: str | None = None) -> list[ModerationIncident]:
        """Return incidents in creation order, optionally for one org."""

    # Events and deliveries
    def list_active_subscriptions(self, org_id: str) -> list[WebhookSubscription]:
        """Return active subscriptions of an org."""

    def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        """Return a subscription regardless of its active flag."""

    def record_event(self, event: Event, deliveries: list[WebhookDelivery]) -> None:
        """Write the event and its pending deliveries in one step."""

    def get_event(self, event_id: str) -> Event | None:
        """Return the event or None."""

    def list_events(self, org_id: str | None = None) -> list[Event]:
        """Return events in creation order."""

    def list_pending_deliveries(self, limit: int) -> list[WebhookDelivery]:
        """Return up to ``limit`` pending deliveries, oldest first."""

    def complete_delivery(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        status_code: int | None,
        duration_ms: int | None,
        error: str | None,
    ) -> bool:
        """Move a pending delivery to a terminal status; False if already claimed."""

    def list_deliveries(self, event_id: str | None = None) -> list[WebhookDelivery]:
        """Return deliveries in creation order."""

    # Usage
    def increment_usage(self, key: UsageKey, delta: UsageDelta) -> None:
        """Atomically add ``delta`` to the aggregate row for ``key``."""

    def get_usage(self, key: UsageKey) -> UsageAggregate | None:
        """Return one aggregate row or None."""

    def list_usage(
        self, org_id: str, since: date, user_id: str | None = None
    ) -> list[UsageAggregate]:
        """Return org-daily rows (or org-user-daily rows when ``user_id`` is set)."""

    def find_model_price(self, org_id: str | None, provider: str, model: str) -> ModelPrice | None:
        """Return the org-specific price, falling back to the global one."""


def create_store(backend: str, path: Path | None) -> Store:
    from chatcore.store.memory import InMemoryStore
    from chatcore.store.sqlite import SQLiteStore

    normalized = backend.strip().lower()
    if normalized == "memory":
        return InMemoryStore()
    if normalized == "sqlite":
        if path is None:
            raise ValueError("sqlite store requires a path")
        return SQLiteStore(path=path)
    raise ValueError(f"Unsupported store backend: {backend}")
