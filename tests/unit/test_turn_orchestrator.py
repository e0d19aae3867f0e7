import asyncio

import httpx
import pytest

from chatcore.core.errors import AppError, ConversationNotFoundError, ModerationBlockedError
from chatcore.metrics import counter_value
from chatcore.providers.base import ProviderError
from chatcore.providers.http_openai import HTTPOpenAIProvider
from chatcore.rag.retrieval import RetrievalAdapter
from chatcore.rag.types import Passage, RetrievalQuery
from chatcore.store.memory import InMemoryStore
from chatcore.store.models import (
    ChatProfile,
    Message,
    MessageRole,
    OrgAiPolicy,
    OrgSafetyConfig,
)
from tests.fakes import ScriptedProvider, build_orchestrator, make_conversation


def _store(**conversation_overrides: object) -> InMemoryStore:
    store = InMemoryStore()
    store.save_conversation(make_conversation(**conversation_overrides))
    return store


def test_unknown_conversation_raises_not_found() -> None:
    orchestrator = build_orchestrator(InMemoryStore(), ScriptedProvider([]))
    with pytest.raises(ConversationNotFoundError):
        asyncio.run(orchestrator.run_turn("missing", "user-1", "hi"))


def test_unconfigured_provider_fails_before_persisting() -> None:
    store = _store(model="openai:gpt-4o-mini")
    orchestrator = build_orchestrator(store, ScriptedProvider([]))
    with pytest.raises(AppError) as exc_info:
        asyncio.run(orchestrator.run_turn("conv-1", "user-1", "hi"))
    assert (exc_info.value.status_code, exc_info.value.code) == (500, "provider_not_configured")
    assert store.list_messages("conv-1", 10) == []


def test_rate_limit_passes_through_and_keeps_user_message() -> None:
    store = _store()
    provider = ScriptedProvider(
        [ProviderError(429, "provider_rate_limited", "slow down", error_type="rate_limit")]
    )
    orchestrator = build_orchestrator(store, provider)

    with pytest.raises(AppError) as exc_info:
        asyncio.run(orchestrator.run_turn("conv-1", "user-1", "hi"))

    assert exc_info.value.status_code == 429
    assert [m.role for m in store.list_messages("conv-1", 10)] == [MessageRole.USER]
    failed = {"model": "stub:echo", "outcome": "failed"}
    assert counter_value("chatcore_turns_total", failed) == 1


def test_other_provider_errors_map_to_bad_gateway() -> None:
    provider = ScriptedProvider([ProviderError(400, "provider_error", "bad request")])
    orchestrator = build_orchestrator(_store(), provider)
    with pytest.raises(AppError) as exc_info:
        asyncio.run(orchestrator.run_turn("conv-1", "user-1", "hi"))
    assert (exc_info.value.status_code, exc_info.value.code) == (502, "provider_upstream_error")


def test_unparseable_provider_body_fails_turn_as_provider_error() -> None:
    store = _store()
    provider = HTTPOpenAIProvider(
        "https://api.example.test",
        api_key="secret",
        transport=httpx.MockTransport(
            lambda request: httpx.Response(200, text="<html>bad gateway</html>")
        ),
    )
    orchestrator = build_orchestrator(store, provider)

    with pytest.raises(AppError) as exc_info:
        asyncio.run(orchestrator.run_turn("conv-1", "user-1", "hi"))

    assert (exc_info.value.status_code, exc_info.value.code) == (
        502,
        "provider_invalid_response",
    )
    assert [m.role for m in store.list_messages("conv-1", 10)] == [MessageRole.USER]
    failed = {"model": "stub:echo", "outcome": "failed"}
    assert counter_value("chatcore_turns_total", failed) == 1


def test_chat_profile_overrides_generation_params() -> None:
    store = _store(chat_profile_id="profile-1", temperature=0.9)
    store.save_chat_profile(
        ChatProfile(
            id="profile-1",
            provider="stub",
            model_name="echo-large",
            temperature=0.1,
            max_tokens=256,
            system_template="You help {{user_id}} in {{org_id}}.",
        )
    )
    provider = ScriptedProvider(["ok"])
    result = asyncio.run(build_orchestrator(store, provider).run_turn("conv-1", "user-1", "hi"))

    request = provider.requests[0]
    assert result.model == "stub:echo-large"
    assert (request.model, request.temperature, request.max_tokens) == ("echo-large", 0.1, 256)
    assert request.messages[0].content == "You help user-1 in org-1."


def test_conversation_prompt_wins_over_profile_template() -> None:
    store = _store(chat_profile_id="profile-1", system_prompt="Conversation prompt.")
    store.save_chat_profile(ChatProfile(id="profile-1", system_template="Template."))
    provider = ScriptedProvider(["ok"])
    asyncio.run(build_orchestrator(store, provider).run_turn("conv-1", "user-1", "hi"))
    assert [m.content for m in provider.requests[0].messages if m.role == "system"] == [
        "Conversation prompt."
    ]


def test_history_is_bounded_and_ordered() -> None:
    store = _store(system_prompt="Be brief.")
    store.save_org_ai_policy(OrgAiPolicy(org_id="org-1", system_prompt="Org rules."))
    for idx, content in enumerate(["old question", "old answer", "recent question"]):
        role = MessageRole.ASSISTANT if idx % 2 else MessageRole.USER
        store.add_message(
            Message(id=f"msg-old-{idx}", conversation_id="conv-1", role=role, content=content)
        )
    provider = ScriptedProvider(["ok"])
    orchestrator = build_orchestrator(store, provider, history_limit=2)

    asyncio.run(orchestrator.run_turn("conv-1", "user-1", "newest"))

    assert [(m.role, m.content) for m in provider.requests[0].messages] == [
        ("system", "Org rules."),
        ("system", "Be brief."),
        ("user", "recent question"),
        ("user", "newest"),
    ]


def test_warning_is_recorded_on_user_message_and_returned() -> None:
    store = _store()
    result = asyncio.run(
        build_orchestrator(store, ScriptedProvider(["noted"])).run_turn(
            "conv-1", "user-1", "the movie had a lot of violence"
        )
    )
    assert result.safety_warning is not None
    assert result.safety_warning.category_names == ["violence"]
    user_message = store.list_messages("conv-1", 10)[0]
    assert user_message.metadata["safety"]["action"] == "warn"


def test_assistant_output_moderation_blocks_reply_when_enabled() -> None:
    store = _store()
    store.save_org_safety_config(
        OrgSafetyConfig(org_id="org-1", moderate_assistant_messages=True)
    )
    orchestrator = build_orchestrator(store, ScriptedProvider(["Here is some hate speech."]))

    with pytest.raises(ModerationBlockedError):
        asyncio.run(orchestrator.run_turn("conv-1", "user-1", "tell me something"))

    assert [m.role for m in store.list_messages("conv-1", 10)] == [MessageRole.USER]
    assert store.list_moderation_incidents("org-1")[0].source == "assistant"


def test_assistant_output_is_not_moderated_by_default() -> None:
    store = _store()
    orchestrator = build_orchestrator(store, ScriptedProvider(["Here is some hate speech."]))
    asyncio.run(orchestrator.run_turn("conv-1", "user-1", "tell me something"))
    assert store.list_moderation_incidents() == []


def test_retrieved_passages_are_injected_and_reported() -> None:
    class StaticSearcher:
        def search(self, query: RetrievalQuery) -> list[Passage]:
            return [Passage(id="p-1", text="Refunds take 5 days.", score=0.9)]

    store = _store(kb_config={"rag": {"enabled": True, "space_id": "kb-1"}})
    provider = ScriptedProvider(["Five days."])
    orchestrator = build_orchestrator(
        store, provider, retrieval=RetrievalAdapter(StaticSearcher())
    )

    asyncio.run(orchestrator.run_turn("conv-1", "user-1", "How long do refunds take?"))

    system_text = "\n".join(m.content for m in provider.requests[0].messages if m.role == "system")
    assert "Refunds take 5 days." in system_text
    rag_events = [e for e in store.list_events("org-1") if e.type == "conversation.rag_used"]
    assert len(rag_events) == 1
    assert rag_events[0].metadata == {"space_id": "kb-1", "chunk_count": 1}


def test_turns_without_org_emit_no_events_and_skip_metering() -> None:
    store = _store(org_id=None)
    result = asyncio.run(
        build_orchestrator(store, ScriptedProvider(["hi"])).run_turn("conv-1", "user-1", "hey")
    )
    assert result.assistant_content == "hi"
    assert store.list_events() == []


def test_failing_tool_still_produces_final_answer() -> None:
    store = _store(tools=True)
    provider = ScriptedProvider(
        ['{"toolCalls": [{"tool": "no.such.tool", "args": {}}]}', "I could not look that up."]
    )
    result = asyncio.run(build_orchestrator(store, provider).run_turn("conv-1", "user-1", "q"))

    assert result.tools_used is True
    assert result.tool_results[0].ok is False
    assert result.tool_results[0].error == "Unknown tool: no.such.tool"
    assert result.assistant_content == "I could not look that up."
    assert "tool.exec.error" in [event.type for event in store.list_events("org-1")]
