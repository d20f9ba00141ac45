"""
Ledger reconciliation worker.

Periodically checks that every correlated group of ledger entries nets to
zero and that no payout has been in transit for too long.
"""
import asyncio
from typing import Any, Dict

import structlog

from billing_events.services import Services

from .runner import run_worker

logger = structlog.get_logger(__name__)


async def reconcile(services: Services) -> Dict[str, Any]:
    result = await services.reconciler.find_unbalanced_keys()
    if not result["balanced"] or result["stuck_payouts"]:
        logger.error(
            "reconciliation_discrepancies_found",
            unbalanced_keys=len(result["unbalanced_keys"]),
            stuck_payouts=len(result["stuck_payouts"]),
        )
    else:
        logger.info("reconciliation_clean")
    return result


async def start_reconciliation_worker() -> None:
    await run_worker(
        "reconciliation_worker",
        lambda settings: settings.reconciliation_interval_seconds,
        reconcile,
    )


def main() -> None:
    asyncio.run(start_reconciliation_worker())


if __name__ == "__main__":
    main()
