from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from starraffle.core.auth import get_current_participant
from starraffle.core.deps import get_controller
from starraffle.db.session import get_session
from starraffle.schemas.raffle import (
    ActiveRaffleView, BidIn, BidResult, HistoryResp, RaffleDetail,
    RaffleStatusResp, VerificationResult,
)
from starraffle.schemas.settings import SettingsPublic
from starraffle.schemas.user import Participant
from starraffle.services import query_service
from starraffle.services.lifecycle import RaffleLifecycleController

router = APIRouter(prefix="/api/raffle", tags=["raffle"])


@router.get("/current", response_model=ActiveRaffleView)
async def current_raffle(
        controller: RaffleLifecycleController = Depends(get_controller),
        participant: Participant = Depends(get_current_participant),
):
    """The active raffle and its settings. Opens a new raffle when none is active."""
    return await controller.get_active_raffle()


@router.post("/bid", response_model=BidResult)
async def place_bid(
        payload: BidIn,
        controller: RaffleLifecycleController = Depends(get_controller),
        participant: Participant = Depends(get_current_participant),
):
    """
    Enter the active raffle:
      - throttled per participant
      - fee captured through the payment bridge before admission
      - the admission that fills the quota also draws the winner
    """
    return await controller.place_bid(participant, payload.amount, payload.proof)


@router.get("/status", response_model=RaffleStatusResp)
async def raffle_status(
        session: AsyncSession = Depends(get_session),
        controller: RaffleLifecycleController = Depends(get_controller),
        participant: Participant = Depends(get_current_participant),
):
    raffle = await controller.ledger.active_raffle(session)
    if raffle is None:
        return RaffleStatusResp()
    return RaffleStatusResp(
        raffle=raffle.public(),
        settings=SettingsPublic(
            required_participants=raffle.required_participants,
            bid_amount=raffle.bid_amount,
            winner_share=raffle.winner_share,
            operator_share=raffle.operator_share,
        ),
        participants=await query_service.participants(session, raffle.id),
    )


@router.get("/history", response_model=HistoryResp)
async def raffle_history(
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        session: AsyncSession = Depends(get_session),
        participant: Participant = Depends(get_current_participant),
):
    return await query_service.history(session, page=page, limit=limit)


@router.get("/{raffle_id}/verify", response_model=VerificationResult)
async def verify_raffle(
        raffle_id: int,
        controller: RaffleLifecycleController = Depends(get_controller),
        participant: Participant = Depends(get_current_participant),
):
    return await controller.verify_raffle(raffle_id)


@router.get("/{raffle_id}", response_model=RaffleDetail)
async def raffle_detail(
        raffle_id: int,
        session: AsyncSession = Depends(get_session),
        participant: Participant = Depends(get_current_participant),
):
    return await query_service.raffle_detail(session, raffle_id)
