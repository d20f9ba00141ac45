"""
Ledger reconciliation.

Detects inconsistencies that should never happen but must be visible if
they do:
- Correlation keys whose legs do not net to zero
- Payouts stuck in transit past the configured threshold
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_events.config.settings import Settings
from billing_events.database.models import Payout, PayoutStatus, Transaction, utc_now
from billing_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LedgerReconciler:
    """Periodic consistency check over transactions and payouts."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self.session_factory = session_factory
        self.settings = settings

    async def _unbalanced_keys(self, db: AsyncSession) -> List[Dict[str, Any]]:
        stmt = (
            select(
                Transaction.balance_correlation_key,
                func.sum(Transaction.amount).label("total"),
            )
            .where(Transaction.balance_correlation_key.is_not(None))
            .group_by(Transaction.balance_correlation_key)
            .having(func.sum(Transaction.amount) != 0)
        )
        result = await db.execute(stmt)
        return [
            {"correlation_key": row.balance_correlation_key, "total": int(row.total)}
            for row in result
        ]

    async def _stuck_payouts(self, db: AsyncSession, now: datetime) -> List[Dict[str, Any]]:
        cutoff = now - timedelta(hours=self.settings.payout_stuck_after_hours)
        result = await db.execute(
            select(Payout).where(
                Payout.status == PayoutStatus.IN_TRANSIT.value,
                Payout.modified_at <= cutoff,
            )
        )
        return [
            {
                "payout_id": payout.id,
                "account_id": payout.account_id,
                "in_transit_since": payout.modified_at.isoformat(),
            }
            for payout in result.scalars()
        ]

    async def find_unbalanced_keys(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run all checks.

        Returns:
            Dict[str, Any]: Report with ``unbalanced_keys`` and ``stuck_payouts``
        """
        now = now or utc_now()
        async with self.session_factory() as db:
            unbalanced = await self._unbalanced_keys(db)
            stuck = await self._stuck_payouts(db, now)

        metrics.set_reconciliation_metrics(len(unbalanced), len(stuck))

        if unbalanced:
            logger.error("ledger_unbalanced_keys_found", count=len(unbalanced), keys=unbalanced)
        if stuck:
            logger.warning("payouts_stuck_in_transit", count=len(stuck))

        logger.info(
            "ledger_reconciliation_completed",
            unbalanced_keys=len(unbalanced),
            stuck_payouts=len(stuck),
        )
        return {
            "checked_at": now.isoformat(),
            "balanced": not unbalanced,
            "unbalanced_keys": unbalanced,
            "stuck_payouts": stuck,
        }
