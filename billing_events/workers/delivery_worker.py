"""
Outbound delivery worker.

Polls for deliveries whose next attempt is due and sends them.
"""
import asyncio
from typing import Dict

import structlog

from billing_events.services import Services

from .runner import run_worker

logger = structlog.get_logger(__name__)


async def deliver_due(services: Services) -> Dict[str, int]:
    counts = await services.delivery.process_due()
    if counts.get("exhausted"):
        logger.warning("deliveries_exhausted", count=counts["exhausted"])
    return counts


async def start_delivery_worker() -> None:
    await run_worker(
        "delivery_worker",
        lambda settings: settings.delivery_poll_interval_seconds,
        deliver_due,
    )


def main() -> None:
    asyncio.run(start_delivery_worker())


if __name__ == "__main__":
    main()
