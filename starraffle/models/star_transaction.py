from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, BigInteger, ForeignKey
from starraffle.db.session import Base, IdType
from starraffle.core.timeutil import utcnow_naive
from starraffle.constants import TX_PENDING

class StarTransaction(Base):
    __tablename__ = "star_transactions"

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    participant_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)  # bid | prize | refund
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    raffle_id: Mapped[int] = mapped_column(IdType, ForeignKey("raffles.id"), nullable=False, index=True)
    entry_id: Mapped[int | None] = mapped_column(IdType, ForeignKey("entries.id"))
    # provider charge / receipt id; unique so one capture proof pays for one entry
    external_id: Mapped[str | None] = mapped_column(String(255), unique=True)
    reason: Mapped[str | None] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default=TX_PENDING, index=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    # set when a delivery attempt claims the row; a stale claim is taken over by the retry sweep
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime)
    last_error: Mapped[str | None] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
