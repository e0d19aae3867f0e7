"""Process-local store used in development and tests.

All state is guarded by a single ``threading.Lock`` so that usage increments
and delivery claims stay atomic when several turns or drain cycles run at
once.
"""

import threading
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime

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
    utc_now,
)


class InMemoryStore:
    backend = "memory"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._conversations: dict[str, Conversation] = {}
        self._profiles: dict[str, ChatProfile] = {}
        self._presets: dict[str, ConversationPreset] = {}
        self._policies: dict[str, OrgAiPolicy] = {}
        self._safety_configs: dict[str, OrgSafetyConfig] = {}
        self._external_tools: dict[str, ExternalToolRecord] = {}
        self._messages: dict[str, list[Message]] = defaultdict(list)
        self._incidents: list[ModerationIncident] = []
        self._subscriptions: dict[str, WebhookSubscription] = {}
        self._events: dict[str, Event] = {}
        self._deliveries: dict[str, WebhookDelivery] = {}
        self._usage: dict[UsageKey, UsageAggregate] = {}
        self._prices: dict[tuple[str | None, str, str], ModelPrice] = {}

    # -- seeding --

    def save_conversation(self, conversation: Conversation) -> Conversation:
        with self._lock:
            self._conversations[conversation.id] = conversation
        return conversation

    def save_chat_profile(self, profile: ChatProfile) -> ChatProfile:
        with self._lock:
            self._profiles[profile.id] = profile
        return profile

    def save_preset(self, preset: ConversationPreset) -> ConversationPreset:
        with self._lock:
            self._presets[preset.id] = preset
        return preset

    def save_org_ai_policy(self, policy: OrgAiPolicy) -> OrgAiPolicy:
        with self._lock:
            self._policies[policy.org_id] = policy
        return policy

    def save_org_safety_config(self, config: OrgSafetyConfig) -> OrgSafetyConfig:
        with self._lock:
            self._safety_configs[config.org_id] = config
        return config

    def save_external_tool(self, record: ExternalToolRecord) -> ExternalToolRecord:
        with self._lock:
            self._external_tools[record.id] = record
        return record

    def save_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        with self._lock:
            self._subscriptions[subscription.id] = subscription
        return subscription

    def save_model_price(self, price: ModelPrice) -> ModelPrice:
        with self._lock:
            self._prices[(price.org_id, price.provider, price.model)] = price
        return price

    # -- conversations and configuration --

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._lock:
            return self._conversations.get(conversation_id)

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None:
                return
            if conversation.last_activity_at is None or at > conversation.last_activity_at:
                conversation.last_activity_at = at

    def get_chat_profile(self, profile_id: str) -> ChatProfile | None:
        with self._lock:
            return self._profiles.get(profile_id)

    def get_preset(self, preset_id: str) -> ConversationPreset | None:
        with self._lock:
            return self._presets.get(preset_id)

    def get_org_ai_policy(self, org_id: str) -> OrgAiPolicy | None:
        with self._lock:
            return self._policies.get(org_id)

    def get_org_safety_config(self, org_id: str) -> OrgSafetyConfig | None:
        with self._lock:
            return self._safety_configs.get(org_id)

    def list_external_tools(self, org_id: str) -> list[ExternalToolRecord]:
        with self._lock:
            records = [
                record
                for record in self._external_tools.values()
                if record.org_id == org_id and record.enabled
            ]
        return sorted(records, key=lambda record: record.name)

    # -- messages --

    def add_message(self, message: Message) -> Message:
        with self._lock:
            self._messages[message.conversation_id].append(message)
        return message

    def list_messages(self, conversation_id: str, limit: int) -> list[Message]:
        if limit < 1:
            return []
        with self._lock:
            return list(self._messages.get(conversation_id, [])[-limit:])

    def search_messages(self, conversation_id: str, query: str, limit: int) -> list[Message]:
        needle = query.lower()
        with self._lock:
            history = list(self._messages.get(conversation_id, []))
        matches = [message for message in reversed(history) if needle in message.content.lower()]
        return matches[:limit]

    # -- safety --

    def add_moderation_incident(self, incident: ModerationIncident) -> ModerationIncident:
        with self._lock:
            self._incidents.append(incident)
        return incident

    def list_moderation_incidents(self, org_id: str | None = None) -> list[ModerationIncident]:
        with self._lock:
            incidents = list(self._incidents)
        if org_id is None:
            return incidents
        return [incident for incident in incidents if incident.org_id == org_id]

    # -- events and deliveries --

    def list_active_subscriptions(self, org_id: str) -> list[WebhookSubscription]:
        with self._lock:
            return [
                subscription
                for subscription in self._subscriptions.values()
                if subscription.org_id == org_id and subscription.is_active
            ]

    def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        with self._lock:
            return self._subscriptions.get(subscription_id)

    def record_event(self, event: Event, deliveries: list[WebhookDelivery]) -> None:
        with self._lock:
            self._events[event.id] = event
            for delivery in deliveries:
                self._deliveries[delivery.id] = delivery

    def get_event(self, event_id: str) -> Event | None:
        with self._lock:
            return self._events.get(event_id)

    def list_events(self, org_id: str | None = None) -> list[Event]:
        with self._lock:
            events = list(self._events.values())
        if org_id is None:
            return events
        return [event for event in events if event.org_id == org_id]

    def list_pending_deliveries(self, limit: int) -> list[WebhookDelivery]:
        with self._lock:
            pending = [
                replace(delivery)
                for delivery in self._deliveries.values()
                if delivery.status is DeliveryStatus.PENDING
            ]
        pending.sort(key=lambda delivery: delivery.created_at)
        return pending[:limit]

    def complete_delivery(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        status_code: int | None,
        duration_ms: int | None,
        error: str | None,
    ) -> bool:
        with self._lock:
            delivery = self._deliveries.get(delivery_id)
            if delivery is None or delivery.status is not DeliveryStatus.PENDING:
                return False
            delivery.status = status
            delivery.status_code = status_code
            delivery.duration_ms = duration_ms
            delivery.error = error
            delivery.completed_at = utc_now()
            return True

    def list_deliveries(self, event_id: str | None = None) -> list[WebhookDelivery]:
        with self._lock:
            deliveries = list(self._deliveries.values())
        if event_id is None:
            return deliveries
        return [delivery for delivery in deliveries if delivery.event_id == event_id]

    # -- usage --

    def increment_usage(self, key: UsageKey, delta: UsageDelta) -> None:
        with self._lock:
            aggregate = self._usage.get(key)
            if aggregate is None:
                aggregate = UsageAggregate(key=key)
                self._usage[key] = aggregate
            aggregate.request_count += delta.request_count
            aggregate.input_tokens += delta.input_tokens
            aggregate.output_tokens += delta.output_tokens
            aggregate.estimated_cost_micros += delta.estimated_cost_micros

    def get_usage(self, key: UsageKey) -> UsageAggregate | None:
        with self._lock:
            aggregate = self._usage.get(key)
            return replace(aggregate) if aggregate is not None else None

    def list_usage(
        self, org_id: str, since: date, user_id: str | None = None
    ) -> list[UsageAggregate]:
        with self._lock:
            rows = [replace(aggregate) for aggregate in self._usage.values()]
        return [
            row
            for row in rows
            if row.key.org_id == org_id and row.key.day >= since and row.key.user_id == user_id
        ]

    def find_model_price(self, org_id: str | None, provider: str, model: str) -> ModelPrice | None:
        with self._lock:
            if org_id is not None:
                org_price = self._prices.get((org_id, provider, model))
                if org_price is not None:
                    return org_price
            return self._prices.get((None, provider, model))
