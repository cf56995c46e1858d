from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

ONE = Decimal("1")


class RaffleSettingsIn(BaseModel):
    required_participants: int = Field(ge=2, le=1000)
    bid_amount: int = Field(ge=1, le=1000)             # Telegram Stars
    winner_share: Decimal = Field(gt=0, lt=1, decimal_places=4)
    # derived from winner_share when omitted
    operator_share: Optional[Decimal] = Field(default=None, gt=0, lt=1, decimal_places=4)

    @field_validator("winner_share", "operator_share", mode="before")
    @classmethod
    def _float_as_decimal(cls, v):
        # 0.7 must stay 0.7, not its binary expansion
        if isinstance(v, float):
            return Decimal(str(v))
        return v

    @model_validator(mode="after")
    def _shares_sum_to_one(self):
        if self.operator_share is None:
            self.operator_share = ONE - self.winner_share
        elif self.winner_share + self.operator_share != ONE:
            raise ValueError("winner_share + operator_share must equal 1")
        return self


class RaffleSettings(BaseModel):
    """Immutable settings snapshot; a round keeps the one it was created with."""
    model_config = ConfigDict(frozen=True, from_attributes=True)

    id: int
    required_participants: int
    bid_amount: int
    winner_share: Decimal
    operator_share: Decimal
    is_active: bool
    created_at: Optional[datetime] = None

    def public(self) -> "SettingsPublic":
        return SettingsPublic(
            required_participants=self.required_participants,
            bid_amount=self.bid_amount,
            winner_share=self.winner_share,
            operator_share=self.operator_share,
        )


class SettingsPublic(BaseModel):
    model_config = ConfigDict(frozen=True)

    required_participants: int
    bid_amount: int
    winner_share: Decimal
    operator_share: Decimal
