from sqlalchemy.ext.asyncio import AsyncSession
from starraffle.db.session import engine, Base
from starraffle.core.config import settings
from starraffle.schemas.settings import RaffleSettings
from starraffle.services.settings_service import get_current_settings, create_settings

# register every table on Base.metadata
from starraffle.models import audit_log, raffle, raffle_settings, star_transaction, user  # noqa: F401

async def init_db(bind=engine):
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

async def ensure_default_settings(session: AsyncSession) -> RaffleSettings:
    current = await get_current_settings(session)
    if current is None:
        current = await create_settings(session, {
            "required_participants": settings.DEFAULT_REQUIRED_PARTICIPANTS,
            "bid_amount": settings.DEFAULT_BID_AMOUNT,
            "winner_share": settings.DEFAULT_WINNER_SHARE,
        })
        await session.commit()
    return current
