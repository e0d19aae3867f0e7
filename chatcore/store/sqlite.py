"""SQLite-backed store.

Usage rows are upserted with ``ON CONFLICT ... DO UPDATE SET x = x + excluded.x``
and a delivery is claimed by ``UPDATE ... WHERE status = 'pending'``, so both
stay correct when several processes share the database file.
"""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any

from chatcore.store.models import (
    ChatProfile,
    Conversation,
    ConversationPreset,
    DeliveryStatus,
    Event,
    ExternalToolRecord,
    Message,
    MessageRole,
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

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        org_id TEXT,
        model TEXT,
        system_prompt TEXT,
        temperature REAL,
        top_p REAL,
        max_tokens INTEGER,
        chat_profile_id TEXT,
        tools_enabled_json TEXT NOT NULL,
        kb_config_json TEXT NOT NULL,
        metadata_json TEXT NOT NULL,
        last_activity_at TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS chat_profiles (
        id TEXT PRIMARY KEY,
        provider TEXT,
        model_name TEXT,
        temperature REAL,
        top_p REAL,
        max_tokens INTEGER,
        system_template TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS presets (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        system_prompt TEXT,
        org_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS org_ai_policies (
        org_id TEXT PRIMARY KEY,
        system_prompt TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS org_safety_configs (
        org_id TEXT PRIMARY KEY,
        category_actions_json TEXT NOT NULL,
        moderate_user_messages INTEGER NOT NULL,
        moderate_assistant_messages INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS external_tools (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT NOT NULL,
        args_schema_json TEXT NOT NULL,
        url TEXT NOT NULL,
        method TEXT NOT NULL,
        headers_json TEXT NOT NULL,
        enabled INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        conversation_id TEXT NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        user_id TEXT,
        metadata_json TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_messages_conversation
    ON messages(conversation_id, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS moderation_incidents (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        org_id TEXT,
        conversation_id TEXT,
        user_id TEXT,
        source TEXT NOT NULL,
        categories_json TEXT NOT NULL,
        action TEXT NOT NULL,
        reason TEXT,
        content_snippet TEXT NOT NULL,
        is_severe INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_subscriptions (
        id TEXT PRIMARY KEY,
        org_id TEXT NOT NULL,
        url TEXT NOT NULL,
        secret TEXT NOT NULL,
        event_types_json TEXT NOT NULL,
        is_active INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        type TEXT NOT NULL,
        org_id TEXT NOT NULL,
        user_id TEXT,
        conversation_id TEXT,
        message_id TEXT,
        metadata_json TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS webhook_deliveries (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        id TEXT NOT NULL UNIQUE,
        event_id TEXT NOT NULL,
        subscription_id TEXT NOT NULL,
        status TEXT NOT NULL,
        status_code INTEGER,
        duration_ms INTEGER,
        error TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_webhook_deliveries_status
    ON webhook_deliveries(status, seq)
    """,
    """
    CREATE TABLE IF NOT EXISTS usage_aggregates (
        org_id TEXT NOT NULL,
        user_id TEXT NOT NULL DEFAULT '',
        day TEXT NOT NULL,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        feature TEXT NOT NULL,
        request_count INTEGER NOT NULL DEFAULT 0,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        estimated_cost_micros INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (org_id, user_id, day, provider, model, feature)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS model_prices (
        org_id TEXT NOT NULL DEFAULT '',
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        input_price_micros INTEGER NOT NULL,
        output_price_micros INTEGER NOT NULL,
        PRIMARY KEY (org_id, provider, model)
    )
    """,
)


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, sort_keys=True)


def _load(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    return json.loads(raw)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(raw: str | None) -> datetime | None:
    return datetime.fromisoformat(raw) if raw else None


@dataclass
class SQLiteStore:
    path: Path
    backend: str = "sqlite"

    def __post_init__(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(str(self.path), timeout=10.0)
        connection.row_factory = sqlite3.Row
        return connection

    def _ensure_schema(self) -> None:
        with self._connect() as connection:
            for statement in _SCHEMA:
                connection.execute(statement)
            connection.commit()

    # -- seeding --

    def save_conversation(self, conversation: Conversation) -> Conversation:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT OR REPLACE INTO conversations (
                    id, user_id, org_id, model, system_prompt, temperature, top_p,
                    max_tokens, chat_profile_id, tools_enabled_json, kb_config_json,
                    metadata_json, last_activity_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation.id,
                    conversation.user_id,
                    conversation.org_id,
                    conversation.model,
                    conversation.system_prompt,
                    conversation.temperature,
                    conversation.top_p,
                    conversation.max_tokens,
                    conversation.chat_profile_id,
                    _dump(conversation.tools_enabled),
                    _dump(conversation.kb_config),
                    _dump(conversation.metadata),
                    _ts(conversation.last_activity_at),
                    _ts(conversation.created_at),
                ),
            )
            connection.commit()
        return conversation

    def save_chat_profile(self, profile: ChatProfile) -> ChatProfile:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO chat_profiles VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    profile.id,
                    profile.provider,
                    profile.model_name,
                    profile.temperature,
                    profile.top_p,
                    profile.max_tokens,
                    profile.system_template,
                ),
            )
            connection.commit()
        return profile

    def save_preset(self, preset: ConversationPreset) -> ConversationPreset:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO presets VALUES (?, ?, ?, ?)",
                (preset.id, preset.name, preset.system_prompt, preset.org_id),
            )
            connection.commit()
        return preset

    def save_org_ai_policy(self, policy: OrgAiPolicy) -> OrgAiPolicy:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO org_ai_policies VALUES (?, ?)",
                (policy.org_id, policy.system_prompt),
            )
            connection.commit()
        return policy

    def save_org_safety_config(self, config: OrgSafetyConfig) -> OrgSafetyConfig:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO org_safety_configs VALUES (?, ?, ?, ?)",
                (
                    config.org_id,
                    _dump(config.category_actions),
                    int(config.moderate_user_messages),
                    int(config.moderate_assistant_messages),
                ),
            )
            connection.commit()
        return config

    def save_external_tool(self, record: ExternalToolRecord) -> ExternalToolRecord:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO external_tools VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.org_id,
                    record.name,
                    record.description,
                    _dump(record.args_schema),
                    record.url,
                    record.method,
                    _dump(record.headers),
                    int(record.enabled),
                ),
            )
            connection.commit()
        return record

    def save_subscription(self, subscription: WebhookSubscription) -> WebhookSubscription:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO webhook_subscriptions VALUES (?, ?, ?, ?, ?, ?)",
                (
                    subscription.id,
                    subscription.org_id,
                    subscription.url,
                    subscription.secret,
                    _dump(subscription.event_types),
                    int(subscription.is_active),
                ),
            )
            connection.commit()
        return subscription

    def save_model_price(self, price: ModelPrice) -> ModelPrice:
        with self._connect() as connection:
            connection.execute(
                "INSERT OR REPLACE INTO model_prices VALUES (?, ?, ?, ?, ?)",
                (
                    price.org_id or "",
                    price.provider,
                    price.model,
                    price.input_price_micros,
                    price.output_price_micros,
                ),
            )
            connection.commit()
        return price

    # -- conversations and configuration --

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM conversations WHERE id = ?", (conversation_id,)
            ).fetchone()
        if row is None:
            return None
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            org_id=row["org_id"],
            model=row["model"],
            system_prompt=row["system_prompt"],
            temperature=row["temperature"],
            top_p=row["top_p"],
            max_tokens=row["max_tokens"],
            chat_profile_id=row["chat_profile_id"],
            tools_enabled=_load(row["tools_enabled_json"], {}),
            kb_config=_load(row["kb_config_json"], {}),
            metadata=_load(row["metadata_json"], {}),
            last_activity_at=_parse_ts(row["last_activity_at"]),
            created_at=_parse_ts(row["created_at"]) or utc_now(),
        )

    def touch_conversation(self, conversation_id: str, at: datetime) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE conversations SET last_activity_at = ?
                WHERE id = ? AND (last_activity_at IS NULL OR last_activity_at < ?)
                """,
                (at.isoformat(), conversation_id, at.isoformat()),
            )
            connection.commit()

    def get_chat_profile(self, profile_id: str) -> ChatProfile | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM chat_profiles WHERE id = ?", (profile_id,)
            ).fetchone()
        if row is None:
            return None
        return ChatProfile(
            id=row["id"],
            provider=row["provider"],
            model_name=row["model_name"],
            temperature=row["temperature"],
            top_p=row["top_p"],
            max_tokens=row["max_tokens"],
            system_template=row["system_template"],
        )

    def get_preset(self, preset_id: str) -> ConversationPreset | None:
        with self._connect() as connection:
            row = connection.execute("SELECT * FROM presets WHERE id = ?", (preset_id,)).fetchone()
        if row is None:
            return None
        return ConversationPreset(
            id=row["id"],
            name=row["name"],
            system_prompt=row["system_prompt"],
            org_id=row["org_id"],
        )

    def get_org_ai_policy(self, org_id: str) -> OrgAiPolicy | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM org_ai_policies WHERE org_id = ?", (org_id,)
            ).fetchone()
        if row is None:
            return None
        return OrgAiPolicy(org_id=row["org_id"], system_prompt=row["system_prompt"])

    def get_org_safety_config(self, org_id: str) -> OrgSafetyConfig | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM org_safety_configs WHERE org_id = ?", (org_id,)
            ).fetchone()
        if row is None:
            return None
        return OrgSafetyConfig(
            org_id=row["org_id"],
            category_actions=_load(row["category_actions_json"], {}),
            moderate_user_messages=bool(row["moderate_user_messages"]),
            moderate_assistant_messages=bool(row["moderate_assistant_messages"]),
        )

    def list_external_tools(self, org_id: str) -> list[ExternalToolRecord]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM external_tools WHERE org_id = ? AND enabled = 1 ORDER BY name ASC",
                (org_id,),
            ).fetchall()
        return [
            ExternalToolRecord(
                id=row["id"],
                org_id=row["org_id"],
                name=row["name"],
                description=row["description"],
                args_schema=_load(row["args_schema_json"], {}),
                url=row["url"],
                method=row["method"],
                headers=_load(row["headers_json"], {}),
                enabled=bool(row["enabled"]),
            )
            for row in rows
        ]

    # -- messages --

    def add_message(self, message: Message) -> Message:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO messages (
                    id, conversation_id, role, content, user_id, metadata_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message.id,
                    message.conversation_id,
                    message.role.value,
                    message.content,
                    message.user_id,
                    _dump(message.metadata),
                    _ts(message.created_at),
                ),
            )
            connection.commit()
        return message

    @staticmethod
    def _message_from_row(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            conversation_id=row["conversation_id"],
            role=MessageRole(row["role"]),
            content=row["content"],
            user_id=row["user_id"],
            metadata=_load(row["metadata_json"], {}),
            created_at=_parse_ts(row["created_at"]) or utc_now(),
        )

    def list_messages(self, conversation_id: str, limit: int) -> list[Message]:
        if limit < 1:
            return []
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM messages WHERE conversation_id = ?
                ORDER BY seq DESC LIMIT ?
                """,
                (conversation_id, limit),
            ).fetchall()
        return [self._message_from_row(row) for row in reversed(rows)]

    def search_messages(self, conversation_id: str, query: str, limit: int) -> list[Message]:
        if limit <= 0:
            return []
        # SQLite lower() only folds ASCII, so matching happens in Python.
        needle = query.lower()
        matches: list[Message] = []
        with self._connect() as connection:
            cursor = connection.execute(
                "SELECT * FROM messages WHERE conversation_id = ? ORDER BY seq DESC",
                (conversation_id,),
            )
            for row in cursor:
                if needle in row["content"].lower():
                    matches.append(self._message_from_row(row))
                    if len(matches) >= limit:
                        break
        return matches

    # -- safety --

    def add_moderation_incident(self, incident: ModerationIncident) -> ModerationIncident:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO moderation_incidents (
                    id, org_id, conversation_id, user_id, source, categories_json,
                    action, reason, content_snippet, is_severe, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    incident.id,
                    incident.org_id,
                    incident.conversation_id,
                    incident.user_id,
                    incident.source,
                    _dump(incident.categories),
                    incident.action,
                    incident.reason,
                    incident.content_snippet,
                    int(incident.is_severe),
                    _ts(incident.created_at),
                ),
            )
            connection.commit()
        return incident

    def list_moderation_incidents(self, org_id: str | None = None) -> list[ModerationIncident]:
        sql = "SELECT * FROM moderation_incidents"
        params: tuple[str, ...] = ()
        if org_id is not None:
            sql += " WHERE org_id = ?"
            params = (org_id,)
        with self._connect() as connection:
            rows = connection.execute(sql + " ORDER BY seq ASC", params).fetchall()
        return [
            ModerationIncident(
                id=row["id"],
                org_id=row["org_id"],
                source=row["source"],
                categories=_load(row["categories_json"], []),
                action=row["action"],
                reason=row["reason"],
                content_snippet=row["content_snippet"],
                is_severe=bool(row["is_severe"]),
                conversation_id=row["conversation_id"],
                user_id=row["user_id"],
                created_at=_parse_ts(row["created_at"]) or utc_now(),
            )
            for row in rows
        ]

    # -- events and deliveries --

    @staticmethod
    def _subscription_from_row(row: sqlite3.Row) -> WebhookSubscription:
        return WebhookSubscription(
            id=row["id"],
            org_id=row["org_id"],
            url=row["url"],
            secret=row["secret"],
            event_types=_load(row["event_types_json"], []),
            is_active=bool(row["is_active"]),
        )

    def list_active_subscriptions(self, org_id: str) -> list[WebhookSubscription]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM webhook_subscriptions WHERE org_id = ? AND is_active = 1",
                (org_id,),
            ).fetchall()
        return [self._subscription_from_row(row) for row in rows]

    def get_subscription(self, subscription_id: str) -> WebhookSubscription | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM webhook_subscriptions WHERE id = ?", (subscription_id,)
            ).fetchone()
        return self._subscription_from_row(row) if row is not None else None

    def record_event(self, event: Event, deliveries: list[WebhookDelivery]) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO events (
                    id, type, org_id, user_id, conversation_id, message_id,
                    metadata_json, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.type,
                    event.org_id,
                    event.user_id,
                    event.conversation_id,
                    event.message_id,
                    _dump(event.metadata),
                    _ts(event.created_at),
                ),
            )
            connection.executemany(
                """
                INSERT INTO webhook_deliveries (
                    id, event_id, subscription_id, status, created_at
                ) VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        delivery.id,
                        delivery.event_id,
                        delivery.subscription_id,
                        delivery.status.value,
                        _ts(delivery.created_at),
                    )
                    for delivery in deliveries
                ],
            )
            connection.commit()

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> Event:
        return Event(
            id=row["id"],
            type=row["type"],
            org_id=row["org_id"],
            user_id=row["user_id"],
            conversation_id=row["conversation_id"],
            message_id=row["message_id"],
            metadata=_load(row["metadata_json"], {}),
            created_at=_parse_ts(row["created_at"]) or utc_now(),
        )

    def get_event(self, event_id: str) -> Event | None:
        with self._connect() as connection:
            row = connection.execute("SELECT * FROM events WHERE id = ?", (event_id,)).fetchone()
        return self._event_from_row(row) if row is not None else None

    def list_events(self, org_id: str | None = None) -> list[Event]:
        sql = "SELECT * FROM events"
        params: tuple[str, ...] = ()
        if org_id is not None:
            sql += " WHERE org_id = ?"
            params = (org_id,)
        with self._connect() as connection:
            rows = connection.execute(sql + " ORDER BY seq ASC", params).fetchall()
        return [self._event_from_row(row) for row in rows]

    @staticmethod
    def _delivery_from_row(row: sqlite3.Row) -> WebhookDelivery:
        return WebhookDelivery(
            id=row["id"],
            event_id=row["event_id"],
            subscription_id=row["subscription_id"],
            status=DeliveryStatus(row["status"]),
            status_code=row["status_code"],
            duration_ms=row["duration_ms"],
            error=row["error"],
            created_at=_parse_ts(row["created_at"]) or utc_now(),
            completed_at=_parse_ts(row["completed_at"]),
        )

    def list_pending_deliveries(self, limit: int) -> list[WebhookDelivery]:
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT * FROM webhook_deliveries WHERE status = ? ORDER BY seq ASC LIMIT ?",
                (DeliveryStatus.PENDING.value, limit),
            ).fetchall()
        return [self._delivery_from_row(row) for row in rows]

    def complete_delivery(
        self,
        delivery_id: str,
        status: DeliveryStatus,
        status_code: int | None,
        duration_ms: int | None,
        error: str | None,
    ) -> bool:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE webhook_deliveries
                SET status = ?, status_code = ?, duration_ms = ?, error = ?, completed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    status_code,
                    duration_ms,
                    error,
                    utc_now().isoformat(),
                    delivery_id,
                    DeliveryStatus.PENDING.value,
                ),
            )
            connection.commit()
        return int(cursor.rowcount or 0) == 1

    def list_deliveries(self, event_id: str | None = None) -> list[WebhookDelivery]:
        sql = "SELECT * FROM webhook_deliveries"
        params: tuple[str, ...] = ()
        if event_id is not None:
            sql += " WHERE event_id = ?"
            params = (event_id,)
        with self._connect() as connection:
            rows = connection.execute(sql + " ORDER BY seq ASC", params).fetchall()
        return [self._delivery_from_row(row) for row in rows]

    # -- usage --

    def increment_usage(self, key: UsageKey, delta: UsageDelta) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                INSERT INTO usage_aggregates (
                    org_id, user_id, day, provider, model, feature,
                    request_count, input_tokens, output_tokens, estimated_cost_micros
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (org_id, user_id, day, provider, model, feature) DO UPDATE SET
                    request_count = request_count + excluded.request_count,
                    input_tokens = input_tokens + excluded.input_tokens,
                    output_tokens = output_tokens + excluded.output_tokens,
                    estimated_cost_micros = estimated_cost_micros + excluded.estimated_cost_micros
                """,
                (
                    key.org_id,
                    key.user_id or "",
                    key.day.isoformat(),
                    key.provider,
                    key.model,
                    key.feature,
                    delta.request_count,
                    delta.input_tokens,
                    delta.output_tokens,
                    delta.estimated_cost_micros,
                ),
            )
            connection.commit()

    @staticmethod
    def _usage_from_row(row: sqlite3.Row) -> UsageAggregate:
        return UsageAggregate(
            key=UsageKey(
                org_id=row["org_id"],
                day=date.fromisoformat(row["day"]),
                provider=row["provider"],
                model=row["model"],
                feature=row["feature"],
                user_id=row["user_id"] or None,
            ),
            request_count=row["request_count"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            estimated_cost_micros=row["estimated_cost_micros"],
        )

    def get_usage(self, key: UsageKey) -> UsageAggregate | None:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT * FROM usage_aggregates
                WHERE org_id = ? AND user_id = ? AND day = ? AND provider = ?
                  AND model = ? AND feature = ?
                """,
                (
                    key.org_id,
                    key.user_id or "",
                    key.day.isoformat(),
                    key.provider,
                    key.model,
                    key.feature,
                ),
            ).fetchone()
        return self._usage_from_row(row) if row is not None else None

    def list_usage(
        self, org_id: str, since: date, user_id: str | None = None
    ) -> list[UsageAggregate]:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM usage_aggregates
                WHERE org_id = ? AND user_id = ? AND day >= ?
                ORDER BY day ASC
                """,
                (org_id, user_id or "", since.isoformat()),
            ).fetchall()
        return [self._usage_from_row(row) for row in rows]

    def find_model_price(self, org_id: str | None, provider: str, model: str) -> ModelPrice | None:
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM model_prices
                WHERE provider = ? AND model = ? AND org_id IN (?, '')
                """,
                (provider, model, org_id or ""),
            ).fetchall()
        by_org = {row["org_id"]: row for row in rows}
        row = by_org.get(org_id or "") if org_id else None
        if row is None:
            row = by_org.get("")
        if row is None:
            return None
        return ModelPrice(
            provider=row["provider"],
            model=row["model"],
            input_price_micros=row["input_price_micros"],
            output_price_micros=row["output_price_micros"],
            org_id=row["org_id"] or None,
        )

