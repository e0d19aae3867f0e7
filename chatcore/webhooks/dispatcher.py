"""Drains pending webhook deliveries.

Each drain cycle selects a bounded batch of ``pending`` deliveries, POSTs the
signed canonical event JSON to the subscriber and moves the row to
``success`` (2xx) or ``failed`` (anything else, including transport errors).
Failed rows are terminal; nothing here re-queues them.

The status transition only applies while the row is still ``pending``, so two
concurrent drains never both record an outcome for the same delivery.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from time import perf_counter, time

import httpx

from chatcore.metrics import record_webhook_delivery
from chatcore.store.base import Store
from chatcore.store.models import DeliveryStatus, WebhookDelivery
from chatcore.webhooks.signing import signed_headers

logger = logging.getLogger("chatcore.webhooks")


@dataclass
class WebhookDeliveryResult:
    delivery_id: str
    status: DeliveryStatus
    status_code: int | None = None
    error: str | None = None
    duration_ms: int = 0
    claimed: bool = True


def canonical_body(payload: dict[str, object]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, sort_keys=True)


class WebhookDeliveryWorker:
    def __init__(
        self,
        store: Store,
        timeout_s: float = 5.0,
        batch_size: int = 50,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time,
        metrics_enabled: bool = True,
    ) -> None:
        self._store = store
        self._timeout_s = timeout_s
        self._batch_size = batch_size
        self._transport = transport
        self._clock = clock
        self._metrics_enabled = metrics_enabled

    def _client(self) -> httpx.AsyncClient:
        if self._transport is None:
            return httpx.AsyncClient(timeout=self._timeout_s)
        return httpx.AsyncClient(timeout=self._timeout_s, transport=self._transport)

    async def drain_once(self, limit: int | None = None) -> list[WebhookDeliveryResult]:
        """Attempt every pending delivery in one bounded batch.

        Returns results for the deliveries this call actually completed.
        """
        batch = self._store.list_pending_deliveries(limit or self._batch_size)
        if not batch:
            return []
        results: list[WebhookDeliveryResult] = []
        async with self._client() as client:
            for delivery in batch:
                result = await self._deliver(client, delivery)
                if result.claimed:
                    results.append(result)
        logger.info(
            "webhook_drain_completed",
            extra={"selected": len(batch), "completed": len(results)},
        )
        return results

    async def run_forever(self, interval_s: float, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.drain_once()
            except Exception as exc:  # noqa: BLE001
                logger.warning("webhook_drain_failed", extra={"error": str(exc)})
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_s)
            except TimeoutError:
                continue

    async def _deliver(
        self, client: httpx.AsyncClient, delivery: WebhookDelivery
    ) -> WebhookDeliveryResult:
        event = self._store.get_event(delivery.event_id)
        subscription = self._store.get_subscription(delivery.subscription_id)
        if event is None or subscription is None:
            return self._complete(
                delivery, DeliveryStatus.FAILED, None, 0, "event or subscription missing"
            )
        if not subscription.is_active:
            return self._complete(
                delivery, DeliveryStatus.FAILED, None, 0, "subscription inactive"
            )

        body = canonical_body(event.as_payload())
        headers = signed_headers(subscription.secret, event.type, body, int(self._clock()))
        started = perf_counter()
        try:
            resp = await client.post(subscription.url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            duration_ms = int((perf_counter() - started) * 1000)
            error = f"{type(exc).__name__}: {exc}" if str(exc) else type(exc).__name__
            return self._complete(delivery, DeliveryStatus.FAILED, None, duration_ms, error)

        duration_ms = int((perf_counter() - started) * 1000)
        if 200 <= resp.status_code < 300:
            return self._complete(
                delivery, DeliveryStatus.SUCCESS, resp.status_code, duration_ms, None
            )
        return self._complete(
            delivery,
            DeliveryStatus.FAILED,
            resp.status_code,
            duration_ms,
            f"HTTP {resp.status_code}",
        )

    def _complete(
        self,
        delivery: WebhookDelivery,
        status: DeliveryStatus,
        status_code: int | None,
        duration_ms: int,
        error: str | None,
    ) -> WebhookDeliveryResult:
        claimed = self._store.complete_delivery(
            delivery.id, status, status_code, duration_ms, error
        )
        if not claimed:
            logger.info("webhook_delivery_already_claimed", extra={"delivery_id": delivery.id})
        else:
            if self._metrics_enabled:
                record_webhook_delivery(status.value)
            log = logger.info if status is DeliveryStatus.SUCCESS else logger.warning
            log(
                "webhook_delivery_completed",
                extra={
                    "delivery_id": delivery.id,
                    "status_code": status_code,
                    "duration_ms": duration_ms,
                    "error": error,
                },
            )
        return WebhookDeliveryResult(
            delivery_id=delivery.id,
            status=status,
            status_code=status_code,
            error=error,
            duration_ms=duration_ms,
            claimed=claimed,
        )
