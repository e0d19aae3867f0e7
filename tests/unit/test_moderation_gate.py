import asyncio

import pytest

from chatcore.core.errors import ModerationBlockedError
from chatcore.metrics import counter_value
from chatcore.safety.gate import ModerationGate, raise_if_blocked
from chatcore.safety.provider import HeuristicModerationProvider
from chatcore.safety.types import ModerationSource, SafetyAction
from chatcore.store.memory import InMemoryStore
from chatcore.store.models import OrgSafetyConfig


def _gate(store: InMemoryStore, **kwargs: object) -> ModerationGate:
    return ModerationGate(store, HeuristicModerationProvider(), **kwargs)  # type: ignore[arg-type]


def test_allowed_content_writes_no_incident() -> None:
    store = InMemoryStore()
    decision = asyncio.run(
        _gate(store).run_moderation("hello there", ModerationSource.USER, "org-1")
    )
    assert decision.action is SafetyAction.ALLOW
    assert store.list_moderation_incidents() == []
    assert counter_value(
        "chatcore_moderation_decisions_total", {"source": "user", "action": "allow"}
    ) == 1


def test_blocked_content_persists_severe_incident() -> None:
    store = InMemoryStore()
    store.save_org_safety_config(
        OrgSafetyConfig(org_id="org-1", category_actions={"self_harm": "block"})
    )
    decision = asyncio.run(
        _gate(store).run_moderation(
            "I want to kill myself",
            ModerationSource.USER,
            "org-1",
            conversation_id="conv-1",
            user_id="user-1",
        )
    )
    assert decision.action is SafetyAction.BLOCK

    incidents = store.list_moderation_incidents("org-1")
    assert len(incidents) == 1
    incident = incidents[0]
    assert incident.is_severe is True
    assert incident.action == "block"
    assert incident.source == "user"
    assert incident.conversation_id == "conv-1"
    assert incident.categories == [{"category": "self_harm", "score": 0.99}]

    with pytest.raises(ModerationBlockedError) as exc_info:
        raise_if_blocked(decision)
    assert exc_info.value.status_code == 403
    assert exc_info.value.details == {"categories": ["self_harm"]}


def test_warn_incident_is_not_severe_and_snippet_is_truncated() -> None:
    store = InMemoryStore()
    content = "there was violence " + "x" * 100
    decision = asyncio.run(
        _gate(store, snippet_chars=10).run_moderation(content, ModerationSource.USER, None)
    )
    assert decision.action is SafetyAction.WARN
    incident = store.list_moderation_incidents()[0]
    assert incident.is_severe is False
    assert incident.org_id is None
    assert incident.content_snippet == content[:10]


def test_should_moderate_respects_org_flags() -> None:
    store = InMemoryStore()
    gate = _gate(store)
    assert gate.should_moderate("org-1", ModerationSource.USER) is True
    assert gate.should_moderate("org-1", ModerationSource.ASSISTANT) is False
    assert gate.should_moderate(None, ModerationSource.USER) is True

    store.save_org_safety_config(
        OrgSafetyConfig(
            org_id="org-1",
            moderate_user_messages=False,
            moderate_assistant_messages=True,
        )
    )
    assert gate.should_moderate("org-1", ModerationSource.USER) is False
    assert gate.should_moderate("org-1", ModerationSource.ASSISTANT) is True


def test_disabled_gate_never_moderates() -> None:
    gate = _gate(InMemoryStore(), enabled=False)
    assert gate.should_moderate("org-1", ModerationSource.USER) is False
