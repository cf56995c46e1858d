from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from starraffle.db.session import get_session
from starraffle.core.auth import get_current_participant
from starraffle.schemas.raffle import TopWinnersResp
from starraffle.schemas.user import Participant, ParticipantStats, TransactionsResp
from starraffle.services.query_service import participant_stats, participant_transactions, top_winners


router = APIRouter(prefix="/api/user", tags=["user"])


@router.get("/profile", response_model=ParticipantStats)
async def profile(
        session: AsyncSession = Depends(get_session),
        participant: Participant = Depends(get_current_participant),
):
    stats = await participant_stats(session, participant.telegram_id)
    # identity layer is authoritative for display names
    return stats.model_copy(update={
        "username": stats.username or participant.username,
        "first_name": stats.first_name or participant.first_name,
    })


@router.get("/transactions", response_model=TransactionsResp)
async def transactions(
        type: Optional[str] = Query(None, description="bid | prize | refund"),
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        session: AsyncSession = Depends(get_session),
        participant: Participant = Depends(get_current_participant),
):
    return await participant_transactions(session, participant.telegram_id, kind=type, page=page, limit=limit)


@router.get("/top-winners", response_model=TopWinnersResp)
async def get_top_winners(
        limit: int = Query(10, ge=1, le=100),
        session: AsyncSession = Depends(get_session),
        participant: Participant = Depends(get_current_participant),
):
    return TopWinnersResp(winners=await top_winners(session, limit=limit))
