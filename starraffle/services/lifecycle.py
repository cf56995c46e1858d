"""
RaffleLifecycleController

NoActiveRaffle -> Active -> (Completed | Cancelled) -> NoActiveRaffle, and the next
round is opened as soon as a cycle ends.

Each state change is one database transaction holding the raffle row lock. Calls
to the payment bridge happen strictly outside those transactions: capture before
admission, payout and refunds after commit. Notifications are best-effort.
"""
import logging
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from starraffle.constants import (
    RAFFLE_COMPLETED,
    EV_NEW_RAFFLE, EV_RAFFLE_UPDATE, EV_RAFFLE_COMPLETED, EV_RAFFLE_CANCELLED,
    EV_YOU_WON, EV_REFUND, EV_INTEGRITY_ALERT,
)
from starraffle.core.errors import (
    AlreadyParticipated, InvalidAmount, PaymentRejected,
    RaffleFull, RaffleNotActive, RaffleNotCompleted, ValidationFailed,
)
from starraffle.db.session import transaction
from starraffle.schemas.raffle import (
    ActiveRaffleView, BidResult, CancellationOutcome, CompletionOutcome,
    CompletionSummary, RaffleView, VerificationResult,
)
from starraffle.schemas.settings import RaffleSettings, SettingsPublic
from starraffle.schemas.user import Participant
from starraffle.services.delivery import DeliveryService
from starraffle.services.gate import AdmissionGate
from starraffle.services.ledger import RaffleLedger
from starraffle.services.notify import NotificationSink
from starraffle.services.payment import PaymentBridge
from starraffle.services.settings_service import require_current_settings

logger = logging.getLogger(__name__)

# conflicts that leave a captured fee without an entry
ADMISSION_CONFLICTS = (AlreadyParticipated, RaffleFull, RaffleNotActive, InvalidAmount)


class RaffleLifecycleController:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        gate: AdmissionGate,
        payments: PaymentBridge,
        sink: NotificationSink,
        *,
        ledger: Optional[RaffleLedger] = None,
        delivery: Optional[DeliveryService] = None,
    ):
        self.session_factory = session_factory
        self.gate = gate
        self.payments = payments
        self.sink = sink
        self.ledger = ledger or RaffleLedger()
        self.delivery = delivery or DeliveryService(session_factory, payments)

    def _tx(self):
        return transaction(self.session_factory)

    # ------------------------------
    # rounds
    # ------------------------------
    async def ensure_active_raffle(self, raffle_settings: Optional[RaffleSettings] = None) -> RaffleView:
        """Return the active raffle, opening one if none exists."""
        created = False
        async with self._tx() as session:
            raffle = await self.ledger.active_raffle(session)
            if raffle is None:
                if raffle_settings is None:
                    raffle_settings = await require_current_settings(session)
                try:
                    async with session.begin_nested():
                        raffle = await self.ledger.open_raffle(session, raffle_settings)
                    created = True
                except IntegrityError:
                    # another worker opened it first; the unique active_slot rejected ours
                    raffle = await self.ledger.active_raffle(session, lock=True)
                    if raffle is None:
                        raise

        if created:
            await self._broadcast(EV_NEW_RAFFLE, {"raffle": raffle.public().model_dump(mode="json")})
        return raffle

    async def get_active_raffle(self, raffle_settings: Optional[RaffleSettings] = None) -> ActiveRaffleView:
        raffle = await self.ensure_active_raffle(raffle_settings)
        return ActiveRaffleView(
            raffle=raffle.public(),
            settings=SettingsPublic(
                required_participants=raffle.required_participants,
                bid_amount=raffle.bid_amount,
                winner_share=raffle.winner_share,
                operator_share=raffle.operator_share,
            ),
        )

    # ------------------------------
    # bids
    # ------------------------------
    async def place_bid(self, participant: Participant, amount: int, proof: str) -> BidResult:
        participant_id = participant.telegram_id
        await self.gate.hit(participant_id)

        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise InvalidAmount("Bid amount must be a positive whole number of stars")
        if not proof:
            raise ValidationFailed("Payment proof is required")

        raffle = await self.ensure_active_raffle()
        if amount != raffle.bid_amount:
            raise InvalidAmount(f"Bid amount must be {raffle.bid_amount} stars")

        # snapshot check so a double tap is not charged; admit() re-checks under the lock
        async with self._tx() as session:
            if await self.ledger.has_entry(session, raffle.id, participant_id):
                raise AlreadyParticipated()

        capture = await self.payments.verify_and_capture(participant_id, amount, proof)
        if not capture.ok:
            raise PaymentRejected(capture.reason)

        outcome: Optional[CompletionOutcome] = None
        try:
            async with self._tx() as session:
                admission = await self.ledger.admit(
                    session, raffle.id, participant_id, amount,
                    username=participant.username,
                    first_name=participant.first_name,
                    charge_id=capture.charge_id,
                )
                if admission.completed:
                    # drawn under the same lock: nobody sees a full, undrawn raffle
                    outcome = await self.ledger.complete(session, raffle.id)
        except ADMISSION_CONFLICTS as e:
            await self._refund_capture(raffle.id, participant_id, amount, e.code)
            raise
        except PaymentRejected:
            # the charge id was already spent; nothing new was captured
            raise
        except Exception as e:
            await self._refund_capture(raffle.id, participant_id, amount, e.__class__.__name__)
            raise

        await self._broadcast(EV_RAFFLE_UPDATE, {
            "raffle": admission.raffle.public().model_dump(mode="json"),
            "position": admission.entry.position,
        })

        summary = None
        final = admission.raffle
        if outcome is not None:
            final = outcome.raffle
            summary = CompletionSummary(
                winner_id=final.winner_id,
                winner_prize=final.winner_prize,
                operator_fee=final.operator_fee,
                seed=final.selection_seed,
            )
            await self._after_completion(outcome)

        return BidResult(raffle=final.public(), entry=admission.entry,
                         completed=admission.completed, outcome=summary)

    async def _refund_capture(self, raffle_id: int, participant_id: int, amount: int, cause: str) -> None:
        try:
            async with self._tx() as session:
                tx_id = await self.ledger.record_refund(
                    session, raffle_id, participant_id, amount, reason=f"Bid rejected: {cause}",
                )
            await self.delivery.deliver(tx_id)
        except Exception:
            logger.exception("Refund of captured bid for %s (raffle %s) not recorded", participant_id, raffle_id)

    # ------------------------------
    # completion / cancellation
    # ------------------------------
    async def complete_raffle(self, raffle_id: int, raffle_settings: Optional[RaffleSettings] = None) -> RaffleView:
        async with self._tx() as session:
            outcome = await self.ledger.complete(session, raffle_id)
        await self._after_completion(outcome, raffle_settings)
        return outcome.raffle

    async def _after_completion(self, outcome: CompletionOutcome,
                                raffle_settings: Optional[RaffleSettings] = None) -> None:
        raffle = outcome.raffle
        if outcome.payout_transaction_id is not None:
            try:
                if not await self.delivery.deliver(outcome.payout_transaction_id):
                    logger.warning("Prize for raffle %s not delivered yet; queued for retry", raffle.id)
            except Exception:
                logger.exception("Prize delivery for raffle %s deferred to retry", raffle.id)

        await self._broadcast(EV_RAFFLE_COMPLETED, {
            "raffle_id": raffle.id,
            "winner_id": raffle.winner_id,
            "winner_prize": raffle.winner_prize,
            "operator_fee": raffle.operator_fee,
            "total_participants": len(outcome.participant_ids),
            "seed": raffle.selection_seed,
        })
        await self._notify(raffle.winner_id, EV_YOU_WON, {
            "raffle_id": raffle.id,
            "prize": raffle.winner_prize,
        })

        try:
            await self.ensure_active_raffle(raffle_settings)
        except Exception:
            logger.exception("Could not open the next raffle after %s", raffle.id)

    async def cancel_raffle(self, raffle_id: int, reason: str) -> CancellationOutcome:
        async with self._tx() as session:
            outcome = await self.ledger.cancel(session, raffle_id, reason)

        try:
            await self.delivery.deliver_many([r.transaction_id for r in outcome.refunds])
        except Exception:
            logger.exception("Refund delivery for raffle %s deferred to retry", raffle_id)

        for refund in outcome.refunds:
            await self._notify(refund.participant_id, EV_REFUND, {
                "raffle_id": raffle_id,
                "amount": refund.amount,
                "reason": reason,
            })
        await self._broadcast(EV_RAFFLE_CANCELLED, {"raffle_id": raffle_id, "reason": reason})

        try:
            await self.ensure_active_raffle()
        except Exception:
            logger.exception("Could not open the next raffle after cancelling %s", raffle_id)
        return outcome

    # ------------------------------
    # verification
    # ------------------------------
    async def verify_raffle(self, raffle_id: int) -> VerificationResult:
        async with self._tx() as session:
            raffle = await self.ledger.get(session, raffle_id)
            if raffle.status != RAFFLE_COMPLETED or not raffle.selection_seed:
                raise RaffleNotCompleted()
            participant_ids = await self.ledger.admission_order(session, raffle_id)

        if participant_ids:
            is_valid, selection = self.ledger.selector.verify(raffle.selection_seed, participant_ids, raffle.winner_id)
            recomputed, digest = selection.winner_id, selection.verification_hash
        else:
            is_valid, recomputed, digest = False, None, ""

        result = VerificationResult(
            raffle_id=raffle.id,
            is_valid=is_valid,
            stored_winner=raffle.winner_id,
            recomputed_winner=recomputed,
            seed=raffle.selection_seed,
            verification_hash=digest,
            participant_ids=participant_ids,
        )
        if not is_valid:
            logger.critical(
                "Raffle %s failed verification: stored winner %s, recomputed %s, seed %s",
                raffle.id, raffle.winner_id, recomputed, raffle.selection_seed,
            )
            try:
                await self.sink.alert_admins(EV_INTEGRITY_ALERT, result.model_dump(mode="json"))
            except Exception:
                logger.exception("Integrity alert for raffle %s not delivered", raffle.id)
        return result

    # ------------------------------
    # notifications
    # ------------------------------
    async def _broadcast(self, event: str, payload: dict) -> None:
        try:
            await self.sink.broadcast(event, payload)
        except Exception:
            logger.exception("Broadcast %s failed", event)

    async def _notify(self, participant_id: int, event: str, payload: dict) -> None:
        try:
            await self.sink.notify(participant_id, event, payload)
        except Exception:
            logger.exception("Notification %s to %s failed", event, participant_id)
