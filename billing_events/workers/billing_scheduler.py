"""
Billing scheduler worker.

Runs renewals, dunning retries, final dunning actions and incomplete expiry
on a fixed cycle. Every subscription is handled under its own lock, so
several scheduler processes can run side by side.
"""
import asyncio
from typing import Dict

import structlog

from billing_events.services import Services

from .runner import run_worker

logger = structlog.get_logger(__name__)


async def run_billing_cycle(services: Services) -> Dict[str, int]:
    report = await services.scheduler.run()
    summary = report.to_dict()
    if any(summary.values()):
        logger.info("billing_cycle_completed", **summary)
    return summary


async def start_billing_scheduler() -> None:
    await run_worker(
        "billing_scheduler",
        lambda settings: settings.billing_cycle_interval_seconds,
        run_billing_cycle,
    )


def main() -> None:
    asyncio.run(start_billing_scheduler())


if __name__ == "__main__":
    main()
