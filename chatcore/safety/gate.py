"""Safety moderation gate: score, decide, persist incidents."""

import logging

from chatcore.core.errors import ModerationBlockedError
from chatcore.metrics import record_moderation
from chatcore.safety.policy import decide_safety_action
from chatcore.safety.provider import ModerationProvider
from chatcore.safety.types import ModerationSource, SafetyAction, SafetyDecision
from chatcore.store.base import Store
from chatcore.store.models import ModerationIncident, OrgSafetyConfig, new_id

logger = logging.getLogger("chatcore.safety")


def raise_if_blocked(decision: SafetyDecision) -> None:
    if decision.action is SafetyAction.BLOCK:
        raise ModerationBlockedError(
            reason=decision.reason or "Blocked by safety policy",
            categories=decision.category_names,
        )


class ModerationGate:
    def __init__(
        self,
        store: Store,
        provider: ModerationProvider,
        snippet_chars: int = 512,
        enabled: bool = True,
        metrics_enabled: bool = True,
    ) -> None:
        self._store = store
        self._provider = provider
        self._snippet_chars = snippet_chars
        self._enabled = enabled
        self._metrics_enabled = metrics_enabled

    def _org_config(self, org_id: str | None) -> OrgSafetyConfig | None:
        if not org_id:
            return None
        try:
            return self._store.get_org_safety_config(org_id)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "safety_config_load_failed",
                extra={"org_id": org_id, "error": str(exc)},
            )
            return None

    def should_moderate(self, org_id: str | None, source: ModerationSource) -> bool:
        if not self._enabled:
            return False
        config = self._org_config(org_id)
        if source is ModerationSource.ASSISTANT:
            return bool(config and config.moderate_assistant_messages)
        if source is ModerationSource.USER:
            return config is None or config.moderate_user_messages
        return True

    async def run_moderation(
        self,
        content: str,
        source: ModerationSource,
        org_id: str | None,
        conversation_id: str | None = None,
        user_id: str | None = None,
    ) -> SafetyDecision:
        result = await self._provider.moderate(content)
        if not result.flagged or not result.categories:
            if self._metrics_enabled:
                record_moderation(source.value, SafetyAction.ALLOW.value)
            return SafetyDecision.allow()

        config = self._org_config(org_id)
        decision = decide_safety_action(result, config.category_actions if config else None)
        self._store.add_moderation_incident(
            ModerationIncident(
                id=new_id("inc"),
                org_id=org_id,
                conversation_id=conversation_id,
                user_id=user_id,
                source=source.value,
                categories=[item.as_dict() for item in decision.categories],
                action=decision.action.value,
                reason=decision.reason,
                content_snippet=content[: self._snippet_chars],
                is_severe=decision.action is SafetyAction.BLOCK,
            )
        )
        if self._metrics_enabled:
            record_moderation(source.value, decision.action.value)
        logger.warning(
            "moderation_flagged",
            extra={
                "org_id": org_id,
                "conversation_id": conversation_id,
                "user_id": user_id,
                "action": decision.action.value,
                "categories": decision.category_names,
            },
        )
        return decision
