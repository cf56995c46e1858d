from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from starraffle.db.session import get_session
from starraffle.schemas.raffle import GlobalStats
from starraffle.services.query_service import global_stats

router = APIRouter(prefix="/api/stats", tags=["stats"])


@router.get("/global", response_model=GlobalStats)
async def get_global_stats(session: AsyncSession = Depends(get_session)):
    """Public counters for the landing screen; needs no login."""
    return await global_stats(session)
