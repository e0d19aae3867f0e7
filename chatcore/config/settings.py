import json as json_mod
from functools import lru_cache
from pathlib import Path
from typing import Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="CHATCORE_", case_sensitive=False)

    env: str = "dev"
    api_keys: str = Field(default="dev-key", description="Comma separated API keys")
    log_level: str = "INFO"
    metrics_enabled: bool = True

    # Model routing
    default_model_id: str = "ollama:llama3.1"
    model_catalog_json: str = ""
    enabled_providers: str = "stub,ollama"
    ollama_base_url: str = "http://localhost:11434"
    openai_base_url: str = "https://api.openai.com"
    openai_api_key: str | None = None
    provider_timeout_s: float = 60.0

    # Turn orchestration
    history_limit: int = 50
    tool_timeout_s: float = 10.0

    # Retrieval
    rag_enabled: bool = True
    rag_default_max_chunks: int = 4
    rag_index_path: Path = Path("artifacts/rag/passages.jsonl")
    rag_embedding_dim: int = 16
    rag_embedding_source: str = "hash"
    rag_embedding_endpoint: str | None = None
    rag_embedding_model: str = "text-embedding-3-small"
    rag_embedding_api_key: str | None = None

    # Persistence
    store_backend: str = "memory"
    store_path: Path = Path("artifacts/chatcore.db")

    # Safety
    moderation_enabled: bool = True
    moderation_snippet_chars: int = 512

    # Webhook delivery
    webhook_timeout_s: float = 5.0
    webhook_drain_enabled: bool = False
    webhook_drain_interval_s: float = 5.0
    webhook_drain_batch_size: int = 50

    # Usage metering
    model_prices_json: str = ""

    @property
    def api_key_set(self) -> set[str]:
        return {item.strip() for item in self.api_keys.split(",") if item.strip()}

    @property
    def enabled_provider_set(self) -> set[str]:
        return {
            item.strip().lower() for item in self.enabled_providers.split(",") if item.strip()
        }

    @property
    def store_backend_normalized(self) -> str:
        return self.store_backend.strip().lower()

    @property
    def model_catalog_entries(self) -> list[dict[str, Any]]:
        """Parse ``[{"id": "...", "provider": "...", ...}]``; malformed input is ignored."""
        parsed = _parse_json(self.model_catalog_json)
        if not isinstance(parsed, list):
            return []
        return [item for item in parsed if isinstance(item, dict) and item.get("id")]

    @property
    def model_price_map(self) -> dict[str, tuple[int, int]]:
        """Parse ``{"provider:model": [input_micros, output_micros]}`` per 1M tokens."""
        parsed = _parse_json(self.model_prices_json)
        if not isinstance(parsed, dict):
            return {}
        result: dict[str, tuple[int, int]] = {}
        for key, value in parsed.items():
            if not isinstance(value, list | tuple) or len(value) != 2:
                continue
            try:
                result[str(key).strip()] = (int(value[0]), int(value[1]))
            except (TypeError, ValueError):
                continue
        return result


def _parse_json(raw: str) -> Any:
    candidate = raw.strip()
    if not candidate:
        return None
    try:
        return json_mod.loads(candidate)
    except json_mod.JSONDecodeError:
        return None


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
