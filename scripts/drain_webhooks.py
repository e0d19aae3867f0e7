#!/usr/bin/env python3
import argparse
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from chatcore.config.settings import get_settings
from chatcore.core.logging import configure_logging
from chatcore.store.base import create_store
from chatcore.store.models import DeliveryStatus
from chatcore.webhooks.dispatcher import WebhookDeliveryResult, WebhookDeliveryWorker

logger = logging.getLogger("chatcore.webhooks.cli")


@dataclass(frozen=True)
class DrainSummary:
    processed: int
    succeeded: int
    failed: int

    @classmethod
    def from_results(cls, results: list[WebhookDeliveryResult]) -> "DrainSummary":
        succeeded = sum(1 for item in results if item.status is DeliveryStatus.SUCCESS)
        return cls(processed=len(results), succeeded=succeeded, failed=len(results) - succeeded)


async def drain(worker: WebhookDeliveryWorker, limit: int | None = None) -> DrainSummary:
    return DrainSummary.from_results(await worker.drain_once(limit=limit))


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Deliver pending webhook events")
    parser.add_argument(
        "--store-backend",
        default=settings.store_backend_normalized,
        choices=["memory", "sqlite"],
        help="Store holding the delivery queue",
    )
    parser.add_argument(
        "--store-path",
        default=str(settings.store_path),
        help="SQLite database path (sqlite backend only)",
    )
    parser.add_argument("--once", action="store_true", help="Run a single drain cycle and exit")
    parser.add_argument(
        "--limit",
        type=int,
        default=settings.webhook_drain_batch_size,
        help="Maximum deliveries attempted per cycle",
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=settings.webhook_drain_interval_s,
        help="Seconds between drain cycles when running continuously",
    )
    parser.add_argument(
        "--timeout-s",
        type=float,
        default=settings.webhook_timeout_s,
        help="HTTP timeout per delivery",
    )
    args = parser.parse_args()
    configure_logging(settings.log_level)

    if args.limit < 1:
        print("ERROR: --limit must be >= 1")
        raise SystemExit(2)
    if args.store_backend == "memory":
        logger.warning("webhook_drain_memory_store", extra={"action": "drain"})

    store = create_store(args.store_backend, Path(args.store_path))
    worker = WebhookDeliveryWorker(store=store, timeout_s=args.timeout_s, batch_size=args.limit)

    if args.once:
        summary = asyncio.run(drain(worker, limit=args.limit))
        print(
            "Drain summary: "
            f"processed={summary.processed} "
            f"succeeded={summary.succeeded} "
            f"failed={summary.failed}"
        )
        return

    stop = asyncio.Event()
    try:
        asyncio.run(worker.run_forever(args.interval, stop))
    except KeyboardInterrupt:
        print("Stopped")


if __name__ == "__main__":
    main()
