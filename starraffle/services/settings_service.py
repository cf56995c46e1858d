import logging
from typing import List, Optional

from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from starraffle.constants import AUDIT_SETTINGS_CHANGED
from starraffle.core.errors import SettingsInvalid, SettingsNotFound
from starraffle.models.audit_log import AuditLog
from starraffle.models.raffle_settings import RaffleSettingsRow
from starraffle.schemas.settings import RaffleSettings, RaffleSettingsIn

logger = logging.getLogger(__name__)


def validate_settings(data: dict) -> RaffleSettingsIn:
    try:
        return RaffleSettingsIn.model_validate(data)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc']) or 'settings'}: {err['msg']}" for err in e.errors()]
        raise SettingsInvalid(errors) from e


async def get_current_settings(session: AsyncSession) -> Optional[RaffleSettings]:
    row = await session.scalar(
        select(RaffleSettingsRow)
        .where(RaffleSettingsRow.is_active.is_(True))
        .order_by(RaffleSettingsRow.id.desc())
        .limit(1)
    )
    return RaffleSettings.model_validate(row) if row else None


async def require_current_settings(session: AsyncSession) -> RaffleSettings:
    current = await get_current_settings(session)
    if current is None:
        raise SettingsNotFound()
    return current


async def create_settings(session: AsyncSession, data: RaffleSettingsIn | dict,
                          changed_by: Optional[int] = None) -> RaffleSettings:
    """Supersede the active settings. The running raffle keeps its own snapshot."""
    if isinstance(data, dict):
        data = validate_settings(data)

    await session.execute(
        update(RaffleSettingsRow).where(RaffleSettingsRow.is_active.is_(True)).values(is_active=False)
    )
    row = RaffleSettingsRow(
        required_participants=data.required_participants,
        bid_amount=data.bid_amount,
        winner_share=data.winner_share,
        operator_share=data.operator_share,
        is_active=True,
    )
    session.add(row)
    await session.flush()

    session.add(AuditLog(
        action=AUDIT_SETTINGS_CHANGED,
        entity_type="raffle_settings",
        entity_id=row.id,
        participant_id=changed_by,
        details={
            "required_participants": row.required_participants,
            "bid_amount": row.bid_amount,
            "winner_share": str(row.winner_share),
            "operator_share": str(row.operator_share),
        },
    ))
    await session.flush()
    logger.info("Raffle settings %s activated: quota=%s bid=%s share=%s",
                row.id, row.required_participants, row.bid_amount, row.winner_share)
    return RaffleSettings.model_validate(row)


async def settings_history(session: AsyncSession, limit: int = 50) -> List[RaffleSettings]:
    rs = await session.execute(
        select(RaffleSettingsRow).order_by(RaffleSettingsRow.id.desc()).limit(limit)
    )
    return [RaffleSettings.model_validate(r) for r in rs.scalars().all()]
