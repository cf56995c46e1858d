from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict

from starraffle.schemas.raffle import Pagination


class Participant(BaseModel):
    """Caller identity as handed over by the identity layer."""
    model_config = ConfigDict(frozen=True)

    telegram_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None


class ParticipantEntryOut(BaseModel):
    raffle_id: int
    position: int
    amount: int
    status: str
    raffle_status: str
    won: bool
    placed_at: Optional[datetime] = None


class ParticipantStats(BaseModel):
    telegram_id: int
    username: Optional[str] = None
    first_name: Optional[str] = None
    total_bids: int = 0
    total_winnings: int = 0
    recent_entries: List[ParticipantEntryOut] = []


class TransactionItem(BaseModel):
    id: int
    kind: str
    amount: int
    status: str
    raffle_id: int
    raffle_status: Optional[str] = None
    reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TransactionsResp(BaseModel):
    transactions: List[TransactionItem]
    pagination: Pagination
