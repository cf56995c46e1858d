"""
RaffleLedger: the only writer of raffle and entry rows.

Every transition runs against a ``SELECT ... FOR UPDATE`` locked raffle row inside
the caller's transaction and returns frozen snapshots, never ORM objects. Two
admissions on the same raffle serialize on the row lock; the second one
re-evaluates its guards against the first one's committed state.
"""
import logging
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from starraffle.constants import (
    ACTIVE_SLOT, RAFFLE_ACTIVE, RAFFLE_COMPLETED, RAFFLE_CANCELLED,
    ENTRY_CONFIRMED, ENTRY_REFUNDED,
    TX_BID, TX_PRIZE, TX_REFUND, TX_PENDING, TX_COMPLETED,
    AUDIT_RAFFLE_CREATED, AUDIT_RAFFLE_COMPLETED, AUDIT_RAFFLE_CANCELLED,
)
from starraffle.core.errors import (
    AlreadyParticipated, InvalidAmount, PaymentRejected,
    RaffleFull, RaffleNotActive, RaffleNotFound, RaffleNotFull,
)
from starraffle.core.timeutil import utcnow_naive
from starraffle.models.audit_log import AuditLog
from starraffle.models.raffle import Raffle, Entry
from starraffle.models.star_transaction import StarTransaction
from starraffle.models.user import User
from starraffle.schemas.raffle import (
    AdmissionResult, CancellationOutcome, CompletionOutcome,
    EntryView, RaffleView, RefundView,
)
from starraffle.schemas.settings import RaffleSettings
from starraffle.services.selector import WinnerSelector, split_prize

logger = logging.getLogger(__name__)


class RaffleLedger:
    def __init__(self, selector: Optional[WinnerSelector] = None):
        self.selector = selector or WinnerSelector()

    # ------------------------------
    # reads
    # ------------------------------
    async def _lock(self, session: AsyncSession, raffle_id: int) -> Raffle:
        row = await session.scalar(
            select(Raffle)
            .where(Raffle.id == raffle_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if row is None:
            raise RaffleNotFound(f"Raffle {raffle_id} not found")
        return row

    async def get(self, session: AsyncSession, raffle_id: int) -> RaffleView:
        row = await session.get(Raffle, raffle_id)
        if row is None:
            raise RaffleNotFound(f"Raffle {raffle_id} not found")
        return RaffleView.model_validate(row)

    async def active_raffle(self, session: AsyncSession, *, lock: bool = False) -> Optional[RaffleView]:
        stmt = select(Raffle).where(Raffle.status == RAFFLE_ACTIVE).order_by(Raffle.id.desc()).limit(1)
        if lock:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        row = await session.scalar(stmt)
        return RaffleView.model_validate(row) if row else None

    async def has_entry(self, session: AsyncSession, raffle_id: int, participant_id: int) -> bool:
        found = await session.scalar(
            select(Entry.id).where(Entry.raffle_id == raffle_id, Entry.participant_id == participant_id)
        )
        return found is not None

    async def admission_order(self, session: AsyncSession, raffle_id: int) -> List[int]:
        """Confirmed participant ids ordered by position (1..N)."""
        rs = await session.execute(
            select(Entry.participant_id)
            .where(Entry.raffle_id == raffle_id, Entry.status == ENTRY_CONFIRMED)
            .order_by(Entry.position.asc())
        )
        return [int(pid) for pid in rs.scalars().all()]

    # ------------------------------
    # transitions
    # ------------------------------
    async def open_raffle(self, session: AsyncSession, raffle_settings: RaffleSettings) -> RaffleView:
        """
        Insert a new active raffle from a settings snapshot.

        Raises ``IntegrityError`` if another active raffle exists (unique
        ``active_slot``); callers run this inside a savepoint.
        """
        row = Raffle(
            settings_id=raffle_settings.id,
            required_participants=raffle_settings.required_participants,
            bid_amount=raffle_settings.bid_amount,
            winner_share=raffle_settings.winner_share,
            operator_share=raffle_settings.operator_share,
            current_participants=0,
            total_prize_pool=0,
            status=RAFFLE_ACTIVE,
            active_slot=ACTIVE_SLOT,
        )
        session.add(row)
        await session.flush()

        session.add(AuditLog(
            action=AUDIT_RAFFLE_CREATED,
            entity_type="raffle",
            entity_id=row.id,
            details={
                "settings_id": raffle_settings.id,
                "required_participants": row.required_participants,
                "bid_amount": row.bid_amount,
                "winner_share": str(row.winner_share),
            },
        ))
        await session.flush()
        logger.info("Raffle %s opened (quota=%s, bid=%s)", row.id, row.required_participants, row.bid_amount)
        return RaffleView.model_validate(row)

    async def admit(
        self,
        session: AsyncSession,
        raffle_id: int,
        participant_id: int,
        amount: int,
        *,
        username: Optional[str] = None,
        first_name: Optional[str] = None,
        charge_id: Optional[str] = None,
    ) -> AdmissionResult:
        row = await self._lock(session, raffle_id)

        # guard order matters: each failure is reported distinctly
        if row.status != RAFFLE_ACTIVE:
            raise RaffleNotActive(f"Raffle {raffle_id} is {row.status}")
        if await self.has_entry(session, raffle_id, participant_id):
            raise AlreadyParticipated()
        if row.current_participants >= row.required_participants:
            raise RaffleFull()
        if amount != row.bid_amount:
            raise InvalidAmount(f"Bid amount must be {row.bid_amount} stars")

        await self._touch_participant(session, participant_id, username, first_name)

        row.current_participants = row.current_participants + 1
        row.total_prize_pool = row.total_prize_pool + amount

        entry = Entry(
            raffle_id=row.id,
            participant_id=participant_id,
            amount=amount,
            position=row.current_participants,
            status=ENTRY_CONFIRMED,
        )
        session.add(entry)
        try:
            await session.flush()
        except IntegrityError as e:
            raise AlreadyParticipated() from e

        if charge_id:
            session.add(StarTransaction(
                participant_id=participant_id,
                kind=TX_BID,
                amount=amount,
                raffle_id=row.id,
                entry_id=entry.id,
                external_id=charge_id,
                status=TX_COMPLETED,
                attempts=1,
                completed_at=utcnow_naive(),
            ))
            try:
                await session.flush()
            except IntegrityError as e:
                raise PaymentRejected("Payment proof was already used") from e

        completed = row.current_participants >= row.required_participants
        logger.info(
            "Raffle %s admitted participant %s at position %s/%s",
            row.id, participant_id, entry.position, row.required_participants,
        )
        return AdmissionResult(
            raffle=RaffleView.model_validate(row),
            entry=EntryView.model_validate(entry),
            completed=completed,
        )

    async def complete(self, session: AsyncSession, raffle_id: int) -> CompletionOutcome:
        """Draw the winner and fix the outcome. Runs under the same lock as the filling admission."""
        row = await self._lock(session, raffle_id)
        if row.status != RAFFLE_ACTIVE:
            raise RaffleNotActive(f"Raffle {raffle_id} is {row.status}")
        if row.current_participants < row.required_participants:
            raise RaffleNotFull()

        participant_ids = await self.admission_order(session, raffle_id)
        # the seed only exists from quota closure on
        seed = self.selector.generate_seed(row.id, participant_ids)
        selection = self.selector.select_winner(seed, participant_ids)
        winner_prize, operator_fee = split_prize(row.total_prize_pool, row.winner_share)

        row.status = RAFFLE_COMPLETED
        row.active_slot = None
        row.winner_id = selection.winner_id
        row.winner_prize = winner_prize
        row.operator_fee = operator_fee
        row.selection_seed = seed
        row.completed_at = utcnow_naive()

        await session.execute(
            update(User)
            .where(User.telegram_id == selection.winner_id)
            .values(total_winnings=User.total_winnings + winner_prize)
        )

        payout = None
        if winner_prize > 0:
            payout = StarTransaction(
                participant_id=selection.winner_id,
                kind=TX_PRIZE,
                amount=winner_prize,
                raffle_id=row.id,
                reason=f"Raffle #{row.id} prize",
                status=TX_PENDING,
                attempts=0,
            )
            session.add(payout)

        session.add(AuditLog(
            action=AUDIT_RAFFLE_COMPLETED,
            entity_type="raffle",
            entity_id=row.id,
            participant_id=selection.winner_id,
            details={
                "winner_id": selection.winner_id,
                "winner_prize": winner_prize,
                "operator_fee": operator_fee,
                "total_participants": len(participant_ids),
                "seed": seed,
            },
        ))
        await session.flush()

        logger.info(
            "Raffle %s completed: winner=%s prize=%s fee=%s seed=%s",
            row.id, selection.winner_id, winner_prize, operator_fee, seed,
        )
        return CompletionOutcome(
            raffle=RaffleView.model_validate(row),
            participant_ids=participant_ids,
            winner_index=selection.winner_index,
            verification_hash=selection.verification_hash,
            payout_transaction_id=payout.id if payout else None,
        )

    async def cancel(self, session: AsyncSession, raffle_id: int, reason: str) -> CancellationOutcome:
        row = await self._lock(session, raffle_id)
        if row.status != RAFFLE_ACTIVE:
            raise RaffleNotActive("Only active raffles can be cancelled")

        now = utcnow_naive()
        row.status = RAFFLE_CANCELLED
        row.active_slot = None
        row.cancel_reason = reason
        row.cancelled_at = now

        entries = (await session.execute(
            select(Entry)
            .where(Entry.raffle_id == raffle_id, Entry.status == ENTRY_CONFIRMED)
            .order_by(Entry.position.asc())
        )).scalars().all()

        pending = []
        for e in entries:
            e.status = ENTRY_REFUNDED
            e.refunded_at = now
            tx = StarTransaction(
                participant_id=e.participant_id,
                kind=TX_REFUND,
                amount=e.amount,
                raffle_id=row.id,
                entry_id=e.id,
                reason=reason,
                status=TX_PENDING,
                attempts=0,
            )
            session.add(tx)
            pending.append((e, tx))

        session.add(AuditLog(
            action=AUDIT_RAFFLE_CANCELLED,
            entity_type="raffle",
            entity_id=row.id,
            details={"reason": reason, "refunded_entries": len(entries)},
        ))
        await session.flush()

        logger.info("Raffle %s cancelled (%s refunds): %s", row.id, len(entries), reason)
        return CancellationOutcome(
            raffle=RaffleView.model_validate(row),
            refunds=[
                RefundView(transaction_id=tx.id, participant_id=e.participant_id, amount=e.amount, entry_id=e.id)
                for e, tx in pending
            ],
        )

    async def record_refund(self, session: AsyncSession, raffle_id: int, participant_id: int,
                            amount: int, reason: str) -> int:
        """Pending refund for a capture whose admission was rejected; returns the transaction id."""
        tx = StarTransaction(
            participant_id=participant_id,
            kind=TX_REFUND,
            amount=amount,
            raffle_id=raffle_id,
            reason=reason,
            status=TX_PENDING,
            attempts=0,
        )
        session.add(tx)
        await session.flush()
        return tx.id

    # ------------------------------
    # helpers
    # ------------------------------
    async def _touch_participant(self, session: AsyncSession, participant_id: int,
                                 username: Optional[str], first_name: Optional[str]) -> None:
        user = await session.get(User, participant_id)
        if user is None:
            user = User(telegram_id=participant_id, username=username, first_name=first_name,
                        total_bids=0, total_winnings=0)
            session.add(user)
        else:
            if username:
                user.username = username
            if first_name:
                user.first_name = first_name
        user.total_bids = (user.total_bids or 0) + 1
        user.last_active = utcnow_naive()
