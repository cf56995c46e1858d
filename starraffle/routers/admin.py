from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from starraffle.core.auth import require_admin
from starraffle.core.deps import get_controller
from starraffle.db.session import get_session
from starraffle.schemas.raffle import AdminRafflesResp, AuditLogResp, CancelIn, CancellationOutcome
from starraffle.schemas.settings import RaffleSettings, RaffleSettingsIn
from starraffle.schemas.user import Participant
from starraffle.services import query_service
from starraffle.services.lifecycle import RaffleLifecycleController
from starraffle.services.settings_service import create_settings, require_current_settings, settings_history

router = APIRouter(prefix="/api/admin", tags=["admin"])


@router.get("/settings", response_model=RaffleSettings)
async def current_settings(
        session: AsyncSession = Depends(get_session),
        admin: Participant = Depends(require_admin),
):
    return await require_current_settings(session)


@router.post("/settings", response_model=RaffleSettings, status_code=201)
async def update_settings(
        payload: RaffleSettingsIn,
        session: AsyncSession = Depends(get_session),
        admin: Participant = Depends(require_admin),
):
    """New settings apply from the next raffle; the running one keeps its snapshot."""
    try:
        created = await create_settings(session, payload, changed_by=admin.telegram_id)
        await session.commit()
        return created
    except Exception:
        await session.rollback(); raise


@router.get("/settings/history", response_model=List[RaffleSettings])
async def get_settings_history(
        limit: int = Query(50, ge=1, le=200),
        session: AsyncSession = Depends(get_session),
        admin: Participant = Depends(require_admin),
):
    return await settings_history(session, limit=limit)


@router.get("/raffles", response_model=AdminRafflesResp)
async def list_raffles(
        status: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(20, ge=1, le=100),
        session: AsyncSession = Depends(get_session),
        admin: Participant = Depends(require_admin),
):
    return await query_service.list_raffles(session, status=status, page=page, limit=limit)


@router.post("/raffles/{raffle_id}/cancel", response_model=CancellationOutcome)
async def cancel_raffle(
        raffle_id: int,
        payload: CancelIn,
        controller: RaffleLifecycleController = Depends(get_controller),
        admin: Participant = Depends(require_admin),
):
    return await controller.cancel_raffle(raffle_id, payload.reason)


@router.post("/limits/{telegram_id}/reset")
async def reset_limits(
        telegram_id: int,
        controller: RaffleLifecycleController = Depends(get_controller),
        admin: Participant = Depends(require_admin),
):
    await controller.gate.reset(telegram_id)
    return {"ok": True}


@router.get("/audit", response_model=AuditLogResp)
async def audit_log(
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1, le=100),
        session: AsyncSession = Depends(get_session),
        admin: Participant = Depends(require_admin),
):
    return await query_service.audit_log(session, action=action, entity_type=entity_type, page=page, limit=limit)
