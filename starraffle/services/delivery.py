"""
Out-of-band delivery of prizes and refunds.

A transaction is claimed (``processing``, attempts + 1, ``claimed_at``) in its own
short database transaction before the bridge is called, so an immediate delivery
and the retry job never pay the same row twice. A claim older than
``claim_timeout`` seconds belongs to a worker that died mid-call; the retry sweep
takes it over. Delivery only ever touches star_transactions; a failed payout
leaves the completed raffle exactly as it was drawn.
"""
import asyncio
import logging
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import and_, or_, select, func
from sqlalchemy.ext.asyncio import async_sessionmaker

from starraffle.constants import (
    TX_PRIZE, TX_REFUND, TX_PENDING, TX_PROCESSING, TX_COMPLETED, TX_FAILED,
)
from starraffle.core.timeutil import utcnow_naive
from starraffle.db.session import transaction
from starraffle.models.star_transaction import StarTransaction
from starraffle.services.payment import PaymentBridge

logger = logging.getLogger(__name__)

RETRYABLE = (TX_PENDING, TX_FAILED)


class DeliveryService:
    def __init__(self, session_factory: async_sessionmaker, payments: PaymentBridge,
                 max_attempts: int = 10, batch_limit: int = 100, claim_timeout: int = 300):
        self.session_factory = session_factory
        self.payments = payments
        self.max_attempts = max_attempts
        self.batch_limit = batch_limit
        self.claim_timeout = claim_timeout

    def _stale_claim(self):
        cutoff = utcnow_naive() - timedelta(seconds=self.claim_timeout)
        return and_(StarTransaction.status == TX_PROCESSING, StarTransaction.claimed_at < cutoff)

    async def _claim(self, transaction_id: int) -> Optional[dict]:
        async with transaction(self.session_factory) as session:
            tx = await session.scalar(
                select(StarTransaction)
                .where(
                    StarTransaction.id == transaction_id,
                    StarTransaction.kind.in_((TX_PRIZE, TX_REFUND)),
                    or_(StarTransaction.status.in_(RETRYABLE), self._stale_claim()),
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            if tx is None:
                return None
            if tx.status == TX_PROCESSING:
                logger.warning("%s #%s: taking over a claim from %s", tx.kind, tx.id, tx.claimed_at)
            tx.status = TX_PROCESSING
            tx.attempts = (tx.attempts or 0) + 1
            tx.claimed_at = utcnow_naive()
            return {
                "kind": tx.kind,
                "participant_id": tx.participant_id,
                "amount": tx.amount,
                "raffle_id": tx.raffle_id,
                "reason": tx.reason or "",
                "attempts": tx.attempts,
            }

    async def _finish(self, transaction_id: int, *, receipt: Optional[str] = None,
                      error: Optional[str] = None) -> None:
        async with transaction(self.session_factory) as session:
            tx = await session.get(StarTransaction, transaction_id)
            tx.claimed_at = None
            if error is None:
                tx.status = TX_COMPLETED
                tx.completed_at = utcnow_naive()
                tx.last_error = None
                if receipt and not tx.external_id:
                    tx.external_id = receipt
            else:
                tx.status = TX_FAILED
                tx.last_error = error[:255]

    async def _send(self, job: dict) -> str:
        if job["kind"] == TX_PRIZE:
            return await self.payments.payout(job["participant_id"], job["amount"], job["raffle_id"])
        return await self.payments.refund(job["participant_id"], job["amount"], job["reason"])

    async def deliver(self, transaction_id: int) -> bool:
        """Send one prize or refund. Returns True when the provider accepted it."""
        job = await self._claim(transaction_id)
        if job is None:
            return False

        try:
            receipt = await self._send(job)
        except asyncio.CancelledError:
            # release the claim; the provider may or may not have paid, the sweep retries
            await asyncio.shield(self._finish(transaction_id, error="delivery interrupted"))
            logger.warning("%s #%s to %s interrupted; left for retry",
                           job["kind"], transaction_id, job["participant_id"])
            raise
        except Exception as e:
            await self._finish(transaction_id, error=str(e) or e.__class__.__name__)
            level = logging.ERROR if job["attempts"] >= self.max_attempts else logging.WARNING
            logger.log(level, "%s #%s to %s failed (attempt %s/%s): %s",
                       job["kind"], transaction_id, job["participant_id"],
                       job["attempts"], self.max_attempts, e)
            return False

        await self._finish(transaction_id, receipt=receipt)
        logger.info("%s #%s delivered to %s: %s stars", job["kind"], transaction_id,
                    job["participant_id"], job["amount"])
        return True

    async def deliver_many(self, transaction_ids: List[int]) -> int:
        delivered = 0
        for tx_id in transaction_ids:
            if await self.deliver(tx_id):
                delivered += 1
        return delivered

    async def retry_pending(self) -> int:
        async with transaction(self.session_factory) as session:
            rs = await session.execute(
                select(StarTransaction.id)
                .where(
                    StarTransaction.kind.in_((TX_PRIZE, TX_REFUND)),
                    or_(StarTransaction.status.in_(RETRYABLE), self._stale_claim()),
                    StarTransaction.attempts < self.max_attempts,
                )
                .order_by(StarTransaction.id.asc())
                .limit(self.batch_limit)
            )
            ids = [int(i) for i in rs.scalars().all()]
            exhausted = await session.scalar(
                select(func.count(StarTransaction.id)).where(
                    StarTransaction.kind.in_((TX_PRIZE, TX_REFUND)),
                    or_(StarTransaction.status == TX_FAILED, self._stale_claim()),
                    StarTransaction.attempts >= self.max_attempts,
                )
            )

        if exhausted:
            logger.error("%s deliveries exhausted their retries and need manual handling", exhausted)
        if not ids:
            return 0
        delivered = await self.deliver_many(ids)
        logger.info("Delivery retry: %s/%s delivered", delivered, len(ids))
        return delivered
