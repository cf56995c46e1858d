from datetime import datetime
from decimal import Decimal
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import Integer, Numeric, DateTime, Boolean
from starraffle.db.session import Base, IdType
from starraffle.core.timeutil import utcnow_naive

class RaffleSettingsRow(Base):
    """Superseded, never updated: a new row replaces the active one."""
    __tablename__ = "raffle_settings"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    required_participants: Mapped[int] = mapped_column(Integer, nullable=False)
    bid_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    winner_share: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    operator_share: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)
