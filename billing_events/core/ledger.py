"""
Append-only ledger.

Balances are never stored; ``get_balance`` sums the account's transactions.
Every method adds rows to the caller's session and flushes, so the entries
commit or roll back together with the rest of the caller's transaction.
"""
from typing import List, Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from billing_events.database.models import (
    BillingOrder,
    Payout,
    Transaction,
    TransactionType,
    generate_id,
)

logger = structlog.get_logger(__name__)


class Ledger:
    """Records money movement as immutable transactions."""

    def __init__(self, platform_account_id: str):
        self.platform_account_id = platform_account_id

    async def get_balance(self, session: AsyncSession, account_id: str) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.account_id == account_id
            )
        )
        return int(result.scalar_one())

    async def record_payment(self, session: AsyncSession, order: BillingOrder) -> Transaction:
        """Credit the payee account for a paid order."""
        transaction = Transaction(
            type=TransactionType.PAYMENT.value,
            amount=order.amount,
            currency=order.currency,
            account_id=order.account_id,
            order_id=order.id,
        )
        session.add(transaction)
        await session.flush()
        logger.info(
            "ledger_payment_recorded",
            account_id=order.account_id,
            order_id=order.id,
            amount=order.amount,
        )
        return transaction

    async def record_refund(
        self, session: AsyncSession, order: BillingOrder, amount: Optional[int] = None
    ) -> Transaction:
        """Debit the payee account for a refunded order (full refund by default)."""
        refunded = order.amount if amount is None else amount
        transaction = Transaction(
            type=TransactionType.REFUND.value,
            amount=-refunded,
            currency=order.currency,
            account_id=order.account_id,
            order_id=order.id,
        )
        session.add(transaction)
        await session.flush()
        logger.info(
            "ledger_refund_recorded",
            account_id=order.account_id,
            order_id=order.id,
            amount=refunded,
        )
        return transaction

    async def record_fees(
        self,
        session: AsyncSession,
        account_id: str,
        currency: str,
        transfer_fee: int,
        payout_fee: int,
        payout_id: str,
        correlation_key: Optional[str] = None,
    ) -> List[Transaction]:
        """
        Move payout fees from the account to the platform.

        Each fee is a debit on the account and a matching platform credit.
        All legs share one correlation key and net to zero.
        """
        correlation_key = correlation_key or generate_id("bck")
        legs: List[Transaction] = []
        for fee_type, fee in (
            (TransactionType.TRANSFER_FEE, transfer_fee),
            (TransactionType.PAYOUT_FEE, payout_fee),
        ):
            if fee == 0:
                continue
            for leg_account, leg_amount in (
                (account_id, -fee),
                (self.platform_account_id, fee),
            ):
                legs.append(
                    Transaction(
                        type=fee_type.value,
                        amount=leg_amount,
                        currency=currency,
                        account_id=leg_account,
                        payout_id=payout_id,
                        balance_correlation_key=correlation_key,
                    )
                )

        session.add_all(legs)
        await session.flush()
        logger.info(
            "ledger_fees_recorded",
            account_id=account_id,
            payout_id=payout_id,
            transfer_fee=transfer_fee,
            payout_fee=payout_fee,
            correlation_key=correlation_key,
        )
        return legs

    async def record_payout_debit(self, session: AsyncSession, payout: Payout) -> Transaction:
        transaction = Transaction(
            type=TransactionType.PAYOUT.value,
            amount=-payout.account_amount,
            currency=payout.currency,
            account_id=payout.account_id,
            payout_id=payout.id,
        )
        session.add(transaction)
        await session.flush()
        return transaction

    async def correlated_sum(self, session: AsyncSession, correlation_key: str) -> int:
        result = await session.execute(
            select(func.coalesce(func.sum(Transaction.amount), 0)).where(
                Transaction.balance_correlation_key == correlation_key
            )
        )
        return int(result.scalar_one())

    async def reverse_payout(
        self, session: AsyncSession, payout: Payout, correlation_key: Optional[str] = None
    ) -> List[Transaction]:
        """
        Return a failed payout's money to the account.

        Writes the negation of every transaction recorded for the payout: the
        debit is credited back and each fee leg is mirrored, so the platform
        gives its fees back too. Mirrored fee legs share ``correlation_key``
        and net to zero like the originals.
        """
        result = await session.execute(
            select(Transaction)
            .where(Transaction.payout_id == payout.id)
            .order_by(Transaction.created_at)
        )
        originals = list(result.scalars().all())
        correlation_key = correlation_key or generate_id("bck")

        reversals = [
            Transaction(
                type=original.type,
                amount=-original.amount,
                currency=original.currency,
                account_id=original.account_id,
                payout_id=payout.id,
                balance_correlation_key=(
                    correlation_key if original.balance_correlation_key else None
                ),
            )
            for original in originals
        ]
        session.add_all(reversals)
        await session.flush()
        logger.info(
            "ledger_payout_reversed",
            account_id=payout.account_id,
            payout_id=payout.id,
            amount=payout.amount,
            correlation_key=correlation_key,
        )
        return reversals
