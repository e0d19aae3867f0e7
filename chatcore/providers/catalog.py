"""Model catalog: maps model ids (``provider:model``) to generation defaults."""

from dataclasses import dataclass
from typing import Any

DEFAULT_MODEL_ID = "ollama:llama3.1"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_TOP_P = 1.0


@dataclass(frozen=True)
class ModelConfig:
    id: str
    provider: str
    label: str
    provider_model: str
    default_temperature: float = DEFAULT_TEMPERATURE
    supports_tools: bool = False


_BUILTIN_MODELS: tuple[ModelConfig, ...] = (
    ModelConfig(
        id="ollama:llama3.1",
        provider="ollama",
        label="Llama 3.1 (Ollama)",
        provider_model="llama3.1",
        supports_tools=True,
    ),
    ModelConfig(
        id="ollama:mistral",
        provider="ollama",
        label="Mistral (Ollama)",
        provider_model="mistral",
    ),
    ModelConfig(
        id="openai:gpt-4o-mini",
        provider="openai",
        label="GPT-4o mini",
        provider_model="gpt-4o-mini",
        supports_tools=True,
    ),
    ModelConfig(
        id="stub:echo",
        provider="stub",
        label="Offline stub",
        provider_model="echo",
        supports_tools=True,
    ),
)


class ModelCatalog:
    def __init__(
        self,
        models: list[ModelConfig] | None = None,
        default_model_id: str = DEFAULT_MODEL_ID,
    ):
        entries = list(models) if models is not None else list(_BUILTIN_MODELS)
        self._models = {model.id: model for model in entries}
        self._default_model_id = default_model_id

    @classmethod
    def from_entries(
        cls, entries: list[dict[str, Any]], default_model_id: str = DEFAULT_MODEL_ID
    ) -> "ModelCatalog":
        models = list(_BUILTIN_MODELS)
        for entry in entries:
            model_id = str(entry["id"])
            provider, _, provider_model = model_id.partition(":")
            models.append(
                ModelConfig(
                    id=model_id,
                    provider=str(entry.get("provider", provider)),
                    label=str(entry.get("label", model_id)),
                    provider_model=str(entry.get("provider_model", provider_model or model_id)),
                    default_temperature=float(
                        entry.get("default_temperature", DEFAULT_TEMPERATURE)
                    ),
                    supports_tools=bool(entry.get("supports_tools", False)),
                )
            )
        return cls(models=models, default_model_id=default_model_id)

    @property
    def default_model_id(self) -> str:
        return self._default_model_id

    def list_models(self) -> list[ModelConfig]:
        return sorted(self._models.values(), key=lambda model: model.id)

    def resolve_model_id(self, raw: str | None) -> str:
        """``None``/``default`` -> default id; bare names are treated as Ollama models."""
        if raw is None:
            return self._default_model_id
        candidate = raw.strip()
        if not candidate or candidate == "default":
            return self._default_model_id
        if ":" in candidate:
            return candidate
        return f"ollama:{candidate}"

    def get(self, model_id: str) -> ModelConfig:
        known = self._models.get(model_id)
        if known is not None:
            return known
        provider, _, provider_model = model_id.partition(":")
        return ModelConfig(
            id=model_id,
            provider=provider,
            label=model_id,
            provider_model=provider_model or model_id,
        )
