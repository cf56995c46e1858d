from datetime import datetime
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, DateTime, BigInteger
from starraffle.db.session import Base
from starraffle.core.timeutil import utcnow_naive

class User(Base):
    __tablename__ = "users"

    telegram_id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)
    username: Mapped[str | None] = mapped_column(String(255))
    first_name: Mapped[str | None] = mapped_column(String(255))

    total_bids: Mapped[int] = mapped_column(Integer, default=0)
    total_winnings: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)
    last_active: Mapped[datetime] = mapped_column(DateTime, default=utcnow_naive)
