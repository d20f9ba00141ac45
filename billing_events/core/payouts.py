"""
Two-phase payout settlement.

Phase 1 runs under the account's payout lock: check the balance, compute
fees, and write the fee legs, the payout debit and the payout row in one
transaction. The processor transfer happens afterwards, outside the lock.

Phase 2 runs on a schedule once the transfer has settled: re-check the
connected account's balance and trigger the bank payout.

A payout that fails while its money is still on the platform has its debit
and fee legs reversed, so the account can be paid out again.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from billing_events.config.settings import Settings
from billing_events.core.errors import (
    BillingError,
    InsufficientBalance,
    PayoutAccountNotReady,
    ProcessorPermanentFailure,
    ResourceNotFound,
)
from billing_events.core.fees import PayoutFees, calculate_fees, fees_for_net
from billing_events.core.ledger import Ledger
from billing_events.core.locking import LockManager
from billing_events.core.outbox import EventEmitter
from billing_events.database.models import (
    Account,
    AccountStatus,
    Payout,
    PayoutStatus,
    generate_id,
    utc_now,
)
from billing_events.integrations.processor_client import ProcessorClient
from billing_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


def payout_payload(payout: Payout) -> Dict[str, Any]:
    return {
        "id": payout.id,
        "account_id": payout.account_id,
        "status": payout.status,
        "amount": payout.amount,
        "fees_amount": payout.fees_amount,
        "account_amount": payout.account_amount,
        "currency": payout.currency,
        "transfer_id": payout.transfer_id,
        "processor_id": payout.processor_id,
        "transferred_at": payout.transferred_at.isoformat() if payout.transferred_at else None,
        "failure_reason": payout.failure_reason,
        "created_at": payout.created_at.isoformat() if payout.created_at else None,
    }


class PayoutService:
    """Creates payouts and drives them through settlement."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock_manager: LockManager,
        ledger: Ledger,
        emitter: EventEmitter,
        processor: ProcessorClient,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.lock_manager = lock_manager
        self.ledger = ledger
        self.emitter = emitter
        self.processor = processor
        self.settings = settings

    def _fees(self, account: Account, balance: int, amount: Optional[int]) -> PayoutFees:
        rates = (
            self.settings.transfer_fee_rate(account.country),
            self.settings.payout_fee_rate,
            self.settings.payout_fee_flat,
        )
        if amount is None:
            return calculate_fees(balance, *rates)

        fees = fees_for_net(amount, *rates)
        if fees.gross > balance:
            raise InsufficientBalance(account.id, balance, fees.gross)
        return fees

    async def get(self, payout_id: str) -> Payout:
        async with self.session_factory() as db:
            payout = await db.get(Payout, payout_id)
        if payout is None:
            raise ResourceNotFound("Payout", payout_id)
        return payout

    async def create_payout(self, account_id: str, amount: Optional[int] = None) -> Payout:
        """
        Phase 1: reserve the balance and record the payout.

        Args:
            account_id: Payee account
            amount: Net amount to receive; the whole balance when omitted

        Returns:
            Payout: The new payout, status ``pending``

        Raises:
            LockContention: Another payout for the account is in progress
            ResourceNotFound: Unknown account
            PayoutAccountNotReady: Account inactive or payouts disabled
            InsufficientBalance: Balance below the minimum or the requested amount
            AmountTooLowForPayout: Fees would consume the payout
        """
        async with self.lock_manager.hold(f"payout:{account_id}"):
            async with self.session_factory() as db:
                account = await db.get(Account, account_id)
                if account is None:
                    raise ResourceNotFound("Account", account_id)
                if account.status != AccountStatus.ACTIVE.value or not account.payouts_enabled:
                    raise PayoutAccountNotReady(
                        f"Account {account_id} cannot receive payouts",
                        account_id=account_id,
                        status=account.status,
                        payouts_enabled=account.payouts_enabled,
                    )

                balance = await self.ledger.get_balance(db, account_id)
                if balance < self.settings.payout_minimum_amount:
                    raise InsufficientBalance(
                        account_id, balance, self.settings.payout_minimum_amount
                    )

                fees = self._fees(account, balance, amount)

                payout = Payout(
                    id=generate_id("po"),
                    account_id=account_id,
                    status=PayoutStatus.PENDING.value,
                    amount=fees.gross,
                    fees_amount=fees.fees_amount,
                    account_amount=fees.net,
                    currency=account.currency,
                    created_at=utc_now(),
                )
                db.add(payout)
                await self.ledger.record_fees(
                    db,
                    account_id=account_id,
                    currency=account.currency,
                    transfer_fee=fees.transfer_fee,
                    payout_fee=fees.payout_fee,
                    payout_id=payout.id,
                    correlation_key=f"payout-fees-{payout.id}",
                )
                await self.ledger.record_payout_debit(db, payout)
                await self.emitter.emit(db, "payout.created", payout_payload(payout))
                await db.commit()

        metrics.record_payout("created", payout.amount)
        logger.info(
            "payout_created",
            payout_id=payout.id,
            account_id=account_id,
            amount=payout.amount,
            fees_amount=payout.fees_amount,
            account_amount=payout.account_amount,
        )
        return payout

    async def transfer(self, payout_id: str) -> Payout:
        """
        Phase 1b: move the payout amount to the connected account.

        Idempotent on the payout id; a payout that already has a transfer
        is returned unchanged.

        Raises:
            ProcessorTransientFailure: Left pending for the next sweep
            ProcessorPermanentFailure: Payout is marked failed
        """
        async with self.session_factory() as db:
            payout = await db.get(Payout, payout_id)
            if payout is None:
                raise ResourceNotFound("Payout", payout_id)
            if payout.transfer_id or payout.status != PayoutStatus.PENDING.value:
                return payout
            account = await db.get(Account, payout.account_id)

        if account is None or not account.processor_account_id:
            raise PayoutAccountNotReady(
                f"Account {payout.account_id} has no processor account",
                account_id=payout.account_id,
            )

        try:
            transfer = await self.processor.create_transfer(
                amount=payout.account_amount,
                currency=payout.currency,
                destination=account.processor_account_id,
                idempotency_key=f"payout-transfer-{payout.id}",
                metadata={"payout_id": payout.id},
            )
        except ProcessorPermanentFailure as e:
            await self._fail(payout.id, str(e))
            raise

        async with self.session_factory() as db:
            payout = await db.get(Payout, payout_id)
            payout.transfer_id = transfer["id"]
            payout.transferred_at = utc_now()
            await db.commit()

        metrics.record_payout("transferred")
        logger.info("payout_transferred", payout_id=payout_id, transfer_id=transfer["id"])
        return payout

    async def transfer_pending(self, limit: int = 100) -> int:
        """Transfer every pending payout that has no transfer yet."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Payout.id)
                .where(
                    Payout.status == PayoutStatus.PENDING.value,
                    Payout.transfer_id.is_(None),
                )
                .order_by(Payout.created_at)
                .limit(limit)
            )
            payout_ids: List[str] = list(result.scalars().all())

        transferred = 0
        for payout_id in payout_ids:
            try:
                await self.transfer(payout_id)
                transferred += 1
            except BillingError as e:
                logger.warning("payout_transfer_failed", payout_id=payout_id, **e.to_log())
        return transferred

    async def trigger_due_payouts(self, now: Optional[datetime] = None) -> int:
        """
        Phase 2: trigger bank payouts for transfers that have settled.

        Returns:
            int: Number of payouts moved to ``in_transit``
        """
        now = now or utc_now()
        cutoff = now - timedelta(hours=self.settings.payout_settlement_delay_hours)

        async with self.session_factory() as db:
            result = await db.execute(
                select(Payout, Account)
                .join(Account, Account.id == Payout.account_id)
                .where(
                    Payout.status == PayoutStatus.PENDING.value,
                    Payout.transfer_id.is_not(None),
                    Payout.processor_id.is_(None),
                    Payout.transferred_at <= cutoff,
                )
                .order_by(Payout.transferred_at)
            )
            due = [(payout, account) for payout, account in result.all()]

        triggered = 0
        for payout, account in due:
            try:
                if await self._trigger(payout, account):
                    triggered += 1
            except ProcessorPermanentFailure as e:
                await self._fail(payout.id, str(e))
                logger.error("payout_trigger_failed", payout_id=payout.id, **e.to_log())
            except BillingError as e:
                logger.warning("payout_trigger_deferred", payout_id=payout.id, **e.to_log())

        logger.info("payouts_triggered", count=triggered, due=len(due))
        return triggered

    async def _trigger(self, payout: Payout, account: Account) -> bool:
        available = await self.processor.retrieve_balance(
            account.processor_account_id, payout.currency
        )
        if available < payout.account_amount:
            logger.warning(
                "payout_destination_balance_insufficient",
                payout_id=payout.id,
                available=available,
                required=payout.account_amount,
            )
            return False

        processor_payout = await self.processor.create_payout(
            amount=payout.account_amount,
            currency=payout.currency,
            stripe_account=account.processor_account_id,
            idempotency_key=f"payout-{payout.id}",
            metadata={"payout_id": payout.id},
        )

        async with self.session_factory() as db:
            stored = await db.get(Payout, payout.id)
            stored.processor_id = processor_payout["id"]
            stored.status = PayoutStatus.IN_TRANSIT.value
            await self.emitter.emit(db, "payout.updated", payout_payload(stored))
            await db.commit()

        metrics.record_payout("triggered")
        logger.info(
            "payout_triggered", payout_id=payout.id, processor_id=processor_payout["id"]
        )
        return True

    async def _fail(self, payout_id: str, reason: str) -> None:
        async with self.session_factory() as db:
            await self.mark_failed(db, payout_id, reason)
            await db.commit()

    async def mark_paid(self, db: AsyncSession, payout_id: str) -> Payout:
        """Finalize a payout the processor reports as paid. Caller commits."""
        return await self._finalize(db, payout_id, PayoutStatus.SUCCEEDED, "payout.paid")

    async def mark_failed(
        self,
        db: AsyncSession,
        payout_id: str,
        reason: Optional[str] = None,
        funds_returned: bool = False,
    ) -> Payout:
        """
        Finalize a payout as failed. Caller commits.

        When the money is back on the platform, because the transfer never
        happened or was reversed, the reserved balance and the fees are
        returned to the account.
        """
        return await self._finalize(
            db,
            payout_id,
            PayoutStatus.FAILED,
            "payout.failed",
            failure_reason=reason,
            funds_returned=funds_returned,
        )

    async def _finalize(
        self,
        db: AsyncSession,
        payout_id: str,
        status: PayoutStatus,
        event_type: str,
        failure_reason: Optional[str] = None,
        funds_returned: bool = False,
    ) -> Payout:
        result = await db.execute(
            select(Payout).where(Payout.id == payout_id).with_for_update()
        )
        payout = result.scalar_one_or_none()
        if payout is None:
            raise ResourceNotFound("Payout", payout_id)

        if payout.status in (PayoutStatus.SUCCEEDED.value, PayoutStatus.FAILED.value):
            logger.info("payout_already_final", payout_id=payout_id, status=payout.status)
            return payout

        payout.status = status.value
        if failure_reason:
            payout.failure_reason = failure_reason
        if status == PayoutStatus.FAILED and (funds_returned or payout.transfer_id is None):
            await self.ledger.reverse_payout(
                db, payout, correlation_key=f"payout-reversal-{payout.id}"
            )
        await self.emitter.emit(db, event_type, payout_payload(payout))

        metrics.record_payout(status.value)
        logger.info("payout_finalized", payout_id=payout_id, status=status.value)
        return payout
