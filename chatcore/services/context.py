"""System-context assembly for a turn.

Layers are stacked in a fixed order: org AI policy, active preset, the
conversation's own prompt, then retrieved knowledge. Each layer is optional and
a failure while loading one is logged and skipped.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime

from chatcore.providers.base import ChatMessage
from chatcore.rag.retrieval import RetrievalAdapter, build_context_block
from chatcore.rag.types import Passage
from chatcore.store.base import Store
from chatcore.store.models import Conversation

logger = logging.getLogger("chatcore.context")

_TEMPLATE_VAR_RE = re.compile(r"{{\s*(\w+)\s*}}")


def render_template(template: str, variables: dict[str, str]) -> str:
    """Replace ``{{name}}`` placeholders; unknown names are left untouched."""
    return _TEMPLATE_VAR_RE.sub(
        lambda match: variables.get(match.group(1), match.group(0)), template
    )


def template_variables(conversation: Conversation, user_id: str) -> dict[str, str]:
    return {
        "org_id": conversation.org_id or "",
        "user_id": user_id,
        "conversation_id": conversation.id,
        "today": datetime.now(UTC).date().isoformat(),
    }


@dataclass
class AssembledContext:
    system_messages: list[ChatMessage] = field(default_factory=list)
    layers: list[str] = field(default_factory=list)
    passages: list[Passage] = field(default_factory=list)


class ContextAssembler:
    def __init__(
        self,
        store: Store,
        retrieval: RetrievalAdapter | None = None,
        rag_enabled: bool = True,
        default_max_chunks: int = 4,
    ) -> None:
        self._store = store
        self._retrieval = retrieval
        self._rag_enabled = rag_enabled
        self._default_max_chunks = default_max_chunks

    async def assemble(
        self,
        conversation: Conversation,
        custom_prompt: str | None,
        query: str,
    ) -> AssembledContext:
        context = AssembledContext()

        policy_prompt = self._org_policy_prompt(conversation)
        if policy_prompt:
            context.system_messages.append(ChatMessage(role="system", content=policy_prompt))
            context.layers.append("org_policy")

        preset_prompt = self._preset_prompt(conversation)
        if preset_prompt:
            context.system_messages.append(ChatMessage(role="system", content=preset_prompt))
            context.layers.append("preset")

        if custom_prompt and custom_prompt.strip():
            context.system_messages.append(ChatMessage(role="system", content=custom_prompt))
            context.layers.append("custom")

        passages = await self._retrieve(conversation, query)
        if passages:
            context.system_messages.append(
                ChatMessage(role="system", content=build_context_block(passages))
            )
            context.layers.append("rag")
            context.passages = passages
        return context

    def _org_policy_prompt(self, conversation: Conversation) -> str | None:
        if not conversation.org_id:
            return None
        try:
            policy = self._store.get_org_ai_policy(conversation.org_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "org_policy_load_failed",
                extra={"org_id": conversation.org_id, "error": str(exc)},
            )
            return None
        if policy is None or not policy.system_prompt:
            return None
        return policy.system_prompt.strip() or None

    def _preset_prompt(self, conversation: Conversation) -> str | None:
        preset_id = conversation.preset_id
        if not preset_id:
            return None
        try:
            preset = self._store.get_preset(preset_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "preset_load_failed",
                extra={"conversation_id": conversation.id, "error": str(exc)},
            )
            return None
        if preset is None or not preset.system_prompt:
            return None
        return preset.system_prompt.strip() or None

    async def _retrieve(self, conversation: Conversation, query: str) -> list[Passage]:
        if (
            self._retrieval is None
            or not self._rag_enabled
            or not conversation.rag_enabled
            or not conversation.org_id
        ):
            return []
        rag = conversation.rag_config
        raw_limit = rag.get("max_chunks")
        limit = raw_limit if isinstance(raw_limit, int) and raw_limit > 0 else None
        space_id = rag.get("space_id")
        return await self._retrieval.retrieve(
            query=query,
            org_id=conversation.org_id,
            namespace=str(space_id) if space_id else None,
            limit=limit or self._default_max_chunks,
        )
