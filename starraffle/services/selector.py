"""
Winner selection.

Provably fair scheme:
1. At quota closure build ``raffle_id | sorted ids | unix-ms | 32 random bytes (hex)``
   and hash it with SHA-256; the hex digest is the seed stored on the raffle.
2. ``h = sha256(seed)``; the first 8 hex chars of ``h`` as an integer, modulo the
   participant count, index the admission-ordered id list.

Step 2 is pure, so anyone holding the seed and the ordered ids can recompute it.
"""
import hashlib
import secrets
from datetime import datetime
from decimal import Decimal, ROUND_FLOOR
from typing import Callable, Optional, Sequence, Tuple

from starraffle.core.timeutil import now_utc, epoch_ms
from starraffle.schemas.raffle import Selection

ENTROPY_BYTES = 32
HASH_PREFIX_CHARS = 8


class WinnerSelector:
    def __init__(self, entropy: Callable[[int], str] = secrets.token_hex,
                 clock: Callable[[], datetime] = now_utc):
        self._entropy = entropy
        self._clock = clock

    def generate_seed(self, raffle_id: int, participant_ids: Sequence[int],
                      now: Optional[datetime] = None) -> str:
        if not participant_ids:
            raise ValueError("cannot seed a raffle without participants")
        # the set of entrants, independent of admission order
        entrants = ",".join(sorted(str(pid) for pid in participant_ids))
        data = "|".join([
            str(raffle_id),
            entrants,
            str(epoch_ms(now or self._clock())),
            self._entropy(ENTROPY_BYTES),
        ])
        return hashlib.sha256(data.encode()).hexdigest()

    @staticmethod
    def select_winner(seed: str, participant_ids: Sequence[int]) -> Selection:
        if not participant_ids:
            raise ValueError("cannot select from an empty participant list")
        digest = hashlib.sha256(seed.encode()).hexdigest()
        index = int(digest[:HASH_PREFIX_CHARS], 16) % len(participant_ids)
        return Selection(
            winner_id=participant_ids[index],
            winner_index=index,
            verification_hash=digest,
        )

    @classmethod
    def verify(cls, seed: str, participant_ids: Sequence[int], stored_winner: Optional[int]) -> Tuple[bool, Selection]:
        selection = cls.select_winner(seed, participant_ids)
        return selection.winner_id == stored_winner, selection


def split_prize(total_prize_pool: int, winner_share: Decimal) -> Tuple[int, int]:
    """Return (winner_prize, operator_fee); the two always sum to the pool."""
    share = Decimal(str(winner_share))
    winner_prize = int((Decimal(total_prize_pool) * share).to_integral_value(rounding=ROUND_FLOOR))
    return winner_prize, total_prize_pool - winner_prize
