"""Token usage metering.

Cost is computed from a micro-dollar price per one million tokens and rolled
into org-daily and org-user-daily aggregates with atomic increments.
"""

import logging
from dataclasses import dataclass
from datetime import UTC, date, datetime

from chatcore.store.base import Store
from chatcore.store.models import ModelPrice, UsageDelta, UsageFeature, UsageKey

logger = logging.getLogger("chatcore.usage")

TOKENS_PER_PRICE_UNIT = 1_000_000


@dataclass(frozen=True)
class UsageRecord:
    org_id: str
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    feature: UsageFeature = UsageFeature.CHAT
    user_id: str | None = None


def estimate_cost_micros(input_tokens: int, output_tokens: int, price: ModelPrice | None) -> int:
    if price is None:
        return 0
    return (max(input_tokens, 0) * price.input_price_micros) // TOKENS_PER_PRICE_UNIT + (
        max(output_tokens, 0) * price.output_price_micros
    ) // TOKENS_PER_PRICE_UNIT


class PriceRegistry:
    """Org-specific price, then global price, then configured defaults."""

    def __init__(self, store: Store, defaults: dict[str, tuple[int, int]] | None = None):
        self._store = store
        self._defaults = defaults or {}

    def price_for(self, org_id: str | None, provider: str, model: str) -> ModelPrice | None:
        stored = self._store.find_model_price(org_id, provider, model)
        if stored is not None:
            return stored
        default = self._defaults.get(f"{provider}:{model}")
        if default is None:
            return None
        return ModelPrice(
            provider=provider,
            model=model,
            input_price_micros=default[0],
            output_price_micros=default[1],
        )


class UsageMeter:
    def __init__(self, store: Store, prices: PriceRegistry) -> None:
        self._store = store
        self._prices = prices

    def record_usage(self, record: UsageRecord, day: date | None = None) -> int:
        """Increment aggregates for one request and return its estimated cost in micros."""
        usage_day = day or datetime.now(UTC).date()
        price = self._prices.price_for(record.org_id, record.provider, record.model)
        cost_micros = estimate_cost_micros(record.input_tokens, record.output_tokens, price)
        delta = UsageDelta(
            request_count=1,
            input_tokens=max(record.input_tokens, 0),
            output_tokens=max(record.output_tokens, 0),
            estimated_cost_micros=cost_micros,
        )
        org_key = UsageKey(
            org_id=record.org_id,
            day=usage_day,
            provider=record.provider,
            model=record.model,
            feature=record.feature.value,
        )
        self._store.increment_usage(org_key, delta)
        if record.user_id:
            self._store.increment_usage(
                UsageKey(
                    org_id=record.org_id,
                    day=usage_day,
                    provider=record.provider,
                    model=record.model,
                    feature=record.feature.value,
                    user_id=record.user_id,
                ),
                delta,
            )
        logger.info(
            "usage_recorded",
            extra={
                "org_id": record.org_id,
                "user_id": record.user_id,
                "provider": record.provider,
                "model": record.model,
                "token_in": record.input_tokens,
                "token_out": record.output_tokens,
                "cost_micros": cost_micros,
            },
        )
        return cost_micros
