from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from chatcore.config.settings import clear_settings_cache
from chatcore.main import create_app
from chatcore.metrics import reset_metrics


@pytest.fixture(autouse=True)
def _reset_metrics() -> None:
    reset_metrics()


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("CHATCORE_API_KEYS", "test-key")
    monkeypatch.setenv("CHATCORE_ENABLED_PROVIDERS", "stub")
    monkeypatch.setenv("CHATCORE_DEFAULT_MODEL_ID", "stub:echo")
    monkeypatch.setenv("CHATCORE_STORE_BACKEND", "memory")
    monkeypatch.setenv("CHATCORE_RAG_INDEX_PATH", str(tmp_path / "passages.jsonl"))
    monkeypatch.setenv("CHATCORE_WEBHOOK_DRAIN_ENABLED", "false")
    clear_settings_cache()
    app = create_app()
    return TestClient(app)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {
        "Authorization": "Bearer test-key",
        "x-chatcore-user-id": "user-1",
        "x-chatcore-org-id": "org-1",
    }
