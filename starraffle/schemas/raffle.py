from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from starraffle.schemas.settings import SettingsPublic

FROZEN = ConfigDict(frozen=True, from_attributes=True)


# ---- snapshots returned by the ledger ----

class RaffleView(BaseModel):
    model_config = FROZEN

    id: int
    settings_id: Optional[int] = None
    required_participants: int
    bid_amount: int
    winner_share: Decimal
    operator_share: Decimal
    current_participants: int
    total_prize_pool: int
    status: str
    winner_id: Optional[int] = None
    winner_prize: Optional[int] = None
    operator_fee: Optional[int] = None
    selection_seed: Optional[str] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def public(self) -> "RafflePublicView":
        return RafflePublicView.model_validate(self.model_dump())


class RafflePublicView(BaseModel):
    """What any participant may see; no winner or seed fields."""
    model_config = FROZEN

    id: int
    required_participants: int
    bid_amount: int
    current_participants: int
    total_prize_pool: int
    status: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class EntryView(BaseModel):
    model_config = FROZEN

    id: int
    raffle_id: int
    participant_id: int
    amount: int
    position: int
    status: str
    placed_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None


class AdmissionResult(BaseModel):
    model_config = FROZEN

    raffle: RaffleView
    entry: EntryView
    completed: bool


class Selection(BaseModel):
    model_config = FROZEN

    winner_id: int
    winner_index: int
    verification_hash: str


class CompletionOutcome(BaseModel):
    model_config = FROZEN

    raffle: RaffleView
    participant_ids: List[int]
    winner_index: int
    verification_hash: str
    payout_transaction_id: Optional[int] = None


class RefundView(BaseModel):
    model_config = FROZEN

    transaction_id: int
    participant_id: int
    amount: int
    entry_id: int


class CancellationOutcome(BaseModel):
    model_config = FROZEN

    raffle: RaffleView
    refunds: List[RefundView]


class VerificationResult(BaseModel):
    model_config = FROZEN

    raffle_id: int
    is_valid: bool
    stored_winner: Optional[int] = None
    recomputed_winner: Optional[int] = None
    seed: str
    verification_hash: str
    participant_ids: List[int]


# ---- controller / router payloads ----

class ActiveRaffleView(BaseModel):
    raffle: RafflePublicView
    settings: Optional[SettingsPublic] = None


class CompletionSummary(BaseModel):
    winner_id: int
    winner_prize: int
    operator_fee: int
    seed: str


class BidIn(BaseModel):
    amount: int = Field(ge=1)
    # payment proof: the provider's transaction / charge id
    proof: str = Field(min_length=1, max_length=255,
                       validation_alias=AliasChoices("proof", "transaction_id"))


class BidResult(BaseModel):
    raffle: RafflePublicView
    entry: EntryView
    completed: bool
    outcome: Optional[CompletionSummary] = None


class CancelIn(BaseModel):
    reason: str = Field(default="Cancelled by administrator", max_length=255)


class ParticipantItem(BaseModel):
    position: int
    participant_id: int
    username: str
    first_name: str
    amount: int
    status: str
    placed_at: Optional[datetime] = None


class RaffleStatusResp(BaseModel):
    raffle: Optional[RafflePublicView] = None
    settings: Optional[SettingsPublic] = None
    participants: List[ParticipantItem] = []


class RaffleDetail(BaseModel):
    id: int
    required_participants: int
    bid_amount: int
    current_participants: int
    total_prize_pool: int
    status: str
    winner_id: Optional[int] = None
    winner_prize: Optional[int] = None
    operator_fee: Optional[int] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    participants: List[ParticipantItem] = []


class WinnerInfo(BaseModel):
    telegram_id: Optional[int] = None
    username: str = "Anonymous"
    first_name: str = "User"


class HistoryItem(BaseModel):
    id: int
    required_participants: int
    total_participants: int
    total_prize_pool: int
    winner_prize: Optional[int] = None
    winner_info: WinnerInfo
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class HistoryResp(BaseModel):
    history: List[HistoryItem]
    pagination: Pagination


class AdminRaffleItem(BaseModel):
    id: int
    status: str
    required_participants: int
    bid_amount: int
    current_participants: int
    total_prize_pool: int
    winner_id: Optional[int] = None
    winner_prize: Optional[int] = None
    operator_fee: Optional[int] = None
    cancel_reason: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class AdminRafflesResp(BaseModel):
    raffles: List[AdminRaffleItem]
    pagination: Pagination


class AuditLogItem(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    participant_id: Optional[int] = None
    details: Optional[dict] = None
    created_at: Optional[datetime] = None


class AuditLogResp(BaseModel):
    logs: List[AuditLogItem]
    pagination: Pagination


class TopWinner(BaseModel):
    username: str = "Anonymous"
    first_name: str = "User"
    total_winnings: int
    total_bids: int


class TopWinnersResp(BaseModel):
    winners: List[TopWinner]


class GlobalStats(BaseModel):
    total_users: int
    active_users_24h: int
    total_raffles_completed: int
    total_prizes_distributed: int
    current_raffle: Optional[RafflePublicView] = None
    recent_winners: List[HistoryItem] = []
