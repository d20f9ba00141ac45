"""
Payout settlement worker.

Each pass first transfers pending payouts to their connected accounts, then
triggers the processor payout for transfers past the settlement delay.
"""
import asyncio
from typing import Dict

import structlog

from billing_events.services import Services

from .runner import run_worker

logger = structlog.get_logger(__name__)


async def settle_payouts(services: Services) -> Dict[str, int]:
    transferred = await services.payouts.transfer_pending()
    triggered = await services.payouts.trigger_due_payouts()
    if transferred or triggered:
        logger.info("payout_settlement_pass", transferred=transferred, triggered=triggered)
    return {"transferred": transferred, "triggered": triggered}


async def start_payout_worker() -> None:
    await run_worker(
        "payout_worker",
        lambda settings: settings.payout_worker_interval_seconds,
        settle_payouts,
    )


def main() -> None:
    asyncio.run(start_payout_worker())


if __name__ == "__main__":
    main()
