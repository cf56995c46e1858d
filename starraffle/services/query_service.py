import math
from datetime import timedelta
from typing import List, Optional

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from starraffle.constants import (
    RAFFLE_ACTIVE, RAFFLE_COMPLETED, RAFFLE_STATUSES, ENTRY_CONFIRMED, TX_BID, TX_PRIZE, TX_REFUND,
)
from starraffle.core.timeutil import utcnow_naive
from starraffle.core.errors import RaffleNotFound, ValidationFailed
from starraffle.models.audit_log import AuditLog
from starraffle.models.raffle import Raffle, Entry
from starraffle.models.star_transaction import StarTransaction
from starraffle.models.user import User
from starraffle.schemas.raffle import (
    AdminRaffleItem, AdminRafflesResp, AuditLogItem, AuditLogResp, GlobalStats, HistoryItem,
    HistoryResp, Pagination, ParticipantItem, RaffleDetail, RafflePublicView, TopWinner, WinnerInfo,
)
from starraffle.schemas.user import ParticipantEntryOut, ParticipantStats, TransactionItem, TransactionsResp

MAX_PAGE_SIZE = 100
TX_KINDS = (TX_BID, TX_PRIZE, TX_REFUND)


def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit) if limit else 0)


def _clamp(page: int, limit: int) -> tuple[int, int]:
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)


async def participants(session: AsyncSession, raffle_id: int, include_refunded: bool = False) -> List[ParticipantItem]:
    stmt = (
        select(Entry, User.username, User.first_name)
        .join(User, User.telegram_id == Entry.participant_id, isouter=True)
        .where(Entry.raffle_id == raffle_id)
        .order_by(Entry.position.asc())
    )
    if not include_refunded:
        stmt = stmt.where(Entry.status == ENTRY_CONFIRMED)
    rows = (await session.execute(stmt)).all()
    return [
        ParticipantItem(
            position=e.position,
            participant_id=e.participant_id,
            username=username or "Anonymous",
            first_name=first_name or "User",
            amount=e.amount,
            status=e.status,
            placed_at=e.placed_at,
        )
        for e, username, first_name in rows
    ]


async def raffle_detail(session: AsyncSession, raffle_id: int) -> RaffleDetail:
    r = await session.get(Raffle, raffle_id)
    if r is None:
        raise RaffleNotFound(f"Raffle {raffle_id} not found")
    completed = r.status == RAFFLE_COMPLETED
    return RaffleDetail(
        id=r.id,
        required_participants=r.required_participants,
        bid_amount=r.bid_amount,
        current_participants=r.current_participants,
        total_prize_pool=r.total_prize_pool,
        status=r.status,
        # winner fields only once drawn
        winner_id=r.winner_id if completed else None,
        winner_prize=r.winner_prize if completed else None,
        operator_fee=r.operator_fee if completed else None,
        cancel_reason=r.cancel_reason,
        created_at=r.created_at,
        completed_at=r.completed_at,
        cancelled_at=r.cancelled_at,
        participants=await participants(session, raffle_id, include_refunded=True),
    )


async def history(session: AsyncSession, page: int = 1, limit: int = 20) -> HistoryResp:
    page, limit = _clamp(page, limit)
    total = await session.scalar(select(func.count(Raffle.id)).where(Raffle.status == RAFFLE_COMPLETED)) or 0

    counts = (
        select(Entry.raffle_id, func.count(Entry.id).label("n"))
        .where(Entry.status == ENTRY_CONFIRMED)
        .group_by(Entry.raffle_id)
        .subquery()
    )
    rows = (await session.execute(
        select(Raffle, User.username, User.first_name, counts.c.n)
        .join(User, User.telegram_id == Raffle.winner_id, isouter=True)
        .join(counts, counts.c.raffle_id == Raffle.id, isouter=True)
        .where(Raffle.status == RAFFLE_COMPLETED)
        .order_by(Raffle.completed_at.desc(), Raffle.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).all()

    items = [
        HistoryItem(
            id=r.id,
            required_participants=r.required_participants,
            total_participants=int(n or 0),
            total_prize_pool=r.total_prize_pool,
            winner_prize=r.winner_prize,
            winner_info=WinnerInfo(
                telegram_id=r.winner_id,
                username=username or "Anonymous",
                first_name=first_name or "User",
            ),
            created_at=r.created_at,
            completed_at=r.completed_at,
        )
        for r, username, first_name, n in rows
    ]
    return HistoryResp(history=items, pagination=_pagination(page, limit, total))


async def recent_winners(session: AsyncSession, limit: int = 10) -> List[HistoryItem]:
    return (await history(session, page=1, limit=limit)).history


async def list_raffles(session: AsyncSession, status: Optional[str] = None,
                       page: int = 1, limit: int = 20) -> AdminRafflesResp:
    if status is not None and status not in RAFFLE_STATUSES:
        raise ValidationFailed(f"Unknown raffle status: {status}")
    page, limit = _clamp(page, limit)

    stmt = select(Raffle)
    count = select(func.count(Raffle.id))
    if status:
        stmt = stmt.where(Raffle.status == status)
        count = count.where(Raffle.status == status)
    total = await session.scalar(count) or 0
    rows = (await session.execute(
        stmt.order_by(Raffle.id.desc()).offset((page - 1) * limit).limit(limit)
    )).scalars().all()
    return AdminRafflesResp(
        raffles=[AdminRaffleItem.model_validate(r, from_attributes=True) for r in rows],
        pagination=_pagination(page, limit, total),
    )


async def participant_stats(session: AsyncSession, participant_id: int, limit: int = 20) -> ParticipantStats:
    user = await session.get(User, participant_id)
    rows = (await session.execute(
        select(Entry, Raffle.status, Raffle.winner_id)
        .join(Raffle, Raffle.id == Entry.raffle_id)
        .where(Entry.participant_id == participant_id)
        .order_by(Entry.id.desc())
        .limit(min(max(limit, 1), MAX_PAGE_SIZE))
    )).all()
    entries = [
        ParticipantEntryOut(
            raffle_id=e.raffle_id,
            position=e.position,
            amount=e.amount,
            status=e.status,
            raffle_status=raffle_status,
            won=raffle_status == RAFFLE_COMPLETED and winner_id == participant_id,
            placed_at=e.placed_at,
        )
        for e, raffle_status, winner_id in rows
    ]
    if user is None:
        return ParticipantStats(telegram_id=participant_id, recent_entries=entries)
    return ParticipantStats(
        telegram_id=user.telegram_id,
        username=user.username,
        first_name=user.first_name,
        total_bids=user.total_bids or 0,
        total_winnings=user.total_winnings or 0,
        recent_entries=entries,
    )


async def audit_log(session: AsyncSession, action: Optional[str] = None, entity_type: Optional[str] = None,
                    page: int = 1, limit: int = 50) -> AuditLogResp:
    page, limit = _clamp(page, limit)
    conditions = []
    if action:
        conditions.append(AuditLog.action == action)
    if entity_type:
        conditions.append(AuditLog.entity_type == entity_type)

    total = await session.scalar(select(func.count(AuditLog.id)).where(*conditions)) or 0
    rows = (await session.execute(
        select(AuditLog)
        .where(*conditions)
        .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).scalars().all()
    return AuditLogResp(
        logs=[AuditLogItem.model_validate(r) for r in rows],
        pagination=_pagination(page, limit, total),
    )


async def participant_transactions(session: AsyncSession, participant_id: int, kind: Optional[str] = None,
                                   page: int = 1, limit: int = 20) -> TransactionsResp:
    if kind is not None and kind not in TX_KINDS:
        raise ValidationFailed(f"Unknown transaction type: {kind}")
    page, limit = _clamp(page, limit)
    conditions = [StarTransaction.participant_id == participant_id]
    if kind:
        conditions.append(StarTransaction.kind == kind)

    total = await session.scalar(select(func.count(StarTransaction.id)).where(*conditions)) or 0
    rows = (await session.execute(
        select(StarTransaction, Raffle.status)
        .join(Raffle, Raffle.id == StarTransaction.raffle_id, isouter=True)
        .where(*conditions)
        .order_by(StarTransaction.created_at.desc(), StarTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )).all()
    items = [
        TransactionItem(
            id=tx.id,
            kind=tx.kind,
            amount=tx.amount,
            status=tx.status,
            raffle_id=tx.raffle_id,
            raffle_status=raffle_status,
            reason=tx.reason,
            created_at=tx.created_at,
            completed_at=tx.completed_at,
        )
        for tx, raffle_status in rows
    ]
    return TransactionsResp(transactions=items, pagination=_pagination(page, limit, total))


async def top_winners(session: AsyncSession, limit: int = 10) -> List[TopWinner]:
    rows = (await session.execute(
        select(User)
        .where(User.total_winnings > 0)
        .order_by(User.total_winnings.desc(), User.telegram_id.asc())
        .limit(min(max(limit, 1), MAX_PAGE_SIZE))
    )).scalars().all()
    return [
        TopWinner(
            username=u.username or "Anonymous",
            first_name=u.first_name or "User",
            total_winnings=u.total_winnings or 0,
            total_bids=u.total_bids or 0,
        )
        for u in rows
    ]


async def global_stats(session: AsyncSession) -> GlobalStats:
    since = utcnow_naive() - timedelta(hours=24)
    current = await session.scalar(select(Raffle).where(Raffle.status == RAFFLE_ACTIVE))
    return GlobalStats(
        total_users=await session.scalar(select(func.count(User.telegram_id))) or 0,
        active_users_24h=await session.scalar(
            select(func.count(User.telegram_id)).where(User.last_active > since)
        ) or 0,
        total_raffles_completed=await session.scalar(
            select(func.count(Raffle.id)).where(Raffle.status == RAFFLE_COMPLETED)
        ) or 0,
        total_prizes_distributed=await session.scalar(
            select(func.coalesce(func.sum(Raffle.winner_prize), 0)).where(Raffle.status == RAFFLE_COMPLETED)
        ) or 0,
        current_raffle=RafflePublicView.model_validate(current) if current is not None else None,
        recent_winners=await recent_winners(session, limit=5),
    )
