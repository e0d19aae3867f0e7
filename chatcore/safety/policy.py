from collections.abc import Mapping

from chatcore.safety.types import ModerationResult, SafetyAction, SafetyCategory, SafetyDecision

PLATFORM_DEFAULTS: dict[SafetyCategory, SafetyAction] = {
    SafetyCategory.SELF_HARM: SafetyAction.BLOCK,
    SafetyCategory.HATE: SafetyAction.BLOCK,
    SafetyCategory.SEXUAL_MINORS: SafetyAction.BLOCK,
    SafetyCategory.MALWARE: SafetyAction.BLOCK,
    SafetyCategory.SEXUAL_CONTENT: SafetyAction.WARN,
    SafetyCategory.VIOLENCE: SafetyAction.WARN,
    SafetyCategory.HARASSMENT: SafetyAction.WARN,
    SafetyCategory.PII: SafetyAction.WARN,
    SafetyCategory.PROMPT_INJECTION: SafetyAction.WARN,
    SafetyCategory.COPYRIGHT: SafetyAction.LOG_ONLY,
    SafetyCategory.OTHER: SafetyAction.LOG_ONLY,
}


def merge_category_actions(
    overrides: Mapping[str, str] | None,
) -> dict[SafetyCategory, SafetyAction]:
    """Org overrides win per category; unknown keys or actions are ignored."""
    merged = dict(PLATFORM_DEFAULTS)
    for raw_category, raw_action in (overrides or {}).items():
        try:
            merged[SafetyCategory(raw_category)] = SafetyAction(raw_action)
        except ValueError:
            continue
    return merged


def decide_safety_action(
    result: ModerationResult, overrides: Mapping[str, str] | None = None
) -> SafetyDecision:
    if not result.flagged or not result.categories:
        return SafetyDecision.allow()

    actions = merge_category_actions(overrides)
    ranked = sorted(result.categories, key=lambda item: item.score, reverse=True)
    top = ranked[0]
    action = actions.get(top.category, SafetyAction.ALLOW)

    reason: str | None
    if action is SafetyAction.BLOCK:
        reason = f"Blocked due to {top.category.value} (score={top.score:.2f})"
    elif action is SafetyAction.WARN:
        reason = f"Warning: {top.category.value} (score={top.score:.2f})"
    elif action is SafetyAction.LOG_ONLY:
        reason = f"Logged category {top.category.value}"
    else:
        reason = None
    return SafetyDecision(action=action, categories=ranked, reason=reason)
