from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Numeric, DateTime, BigInteger, SmallInteger, ForeignKey, UniqueConstraint
from starraffle.db.session import Base, IdType
from starraffle.core.timeutil import utcnow_naive
from starraffle.constants import RAFFLE_ACTIVE, ENTRY_CONFIRMED

class Raffle(Base):
    __tablename__ = "raffles"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    settings_id: Mapped[int | None] = mapped_column(IdType, ForeignKey("raffle_settings.id"))

    # settings snapshot taken at creation
    required_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    bid_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    winner_share: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    operator_share: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)

    current_participants: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_prize_pool: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RAFFLE_ACTIVE, index=True)
    # 1 while active, NULL afterwards; the unique index allows a single active raffle
    active_slot: Mapped[int | None] = mapped_column(SmallInteger, unique=True)

    winner_id: Mapped[int | None] = mapped_column(BigInteger)
    winner_prize: Mapped[int | None] = mapped_column(Integer)
    operator_fee: Mapped[int | None] = mapped_column(Integer)
    selection_seed: Mapped[str | None] = mapped_column(String(64))
    cancel_reason: Mapped[str | None] = mapped_column(String(255))

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive, index=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime)


class Entry(Base):
    __tablename__ = "entries"
    __table_args__ = (UniqueConstraint("raffle_id", "participant_id", name="uq_entry_raffle_participant"),)

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    raffle_id: Mapped[int] = mapped_column(IdType, ForeignKey("raffles.id"), nullable=False, index=True)
    participant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)  # 1..N admission order
    status: Mapped[str] = mapped_column(String(20), default=ENTRY_CONFIRMED, index=True)
    placed_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime)
