# raffle status
RAFFLE_ACTIVE = "active"
RAFFLE_COMPLETED = "completed"
RAFFLE_CANCELLED = "cancelled"
RAFFLE_STATUSES = (RAFFLE_ACTIVE, RAFFLE_COMPLETED, RAFFLE_CANCELLED)

# value of raffle.active_slot while a raffle is active; NULL otherwise
ACTIVE_SLOT = 1

# entry status
ENTRY_CONFIRMED = "confirmed"
ENTRY_REFUNDED = "refunded"

# star_transactions.kind / status
TX_BID = "bid"
TX_PRIZE = "prize"
TX_REFUND = "refund"
TX_PENDING = "pending"
TX_PROCESSING = "processing"  # claimed by a delivery attempt
TX_COMPLETED = "completed"
TX_FAILED = "failed"

# audit_logs.action
AUDIT_RAFFLE_CREATED = "RAFFLE_CREATED"
AUDIT_RAFFLE_COMPLETED = "RAFFLE_COMPLETED"
AUDIT_RAFFLE_CANCELLED = "RAFFLE_CANCELLED"
AUDIT_SETTINGS_CHANGED = "SETTINGS_CHANGED"

# notification events
EV_NEW_RAFFLE = "new_raffle"
EV_RAFFLE_UPDATE = "raffle_update"
EV_RAFFLE_COMPLETED = "raffle_completed"
EV_RAFFLE_CANCELLED = "raffle_cancelled"
EV_YOU_WON = "you_won"
EV_REFUND = "refund_notification"
EV_INTEGRITY_ALERT = "integrity_alert"

# redis keys / channels
def k_gate_points(prefix: str, key: str) -> str:
    return f"{prefix}:points:{key}"

def k_gate_block(prefix: str, key: str) -> str:
    return f"{prefix}:block:{key}"

def ch_broadcast(prefix: str) -> str:
    return f"{prefix}:events"

def ch_participant(prefix: str, participant_id: int) -> str:
    return f"{prefix}:user:{participant_id}"

def ch_admin(prefix: str) -> str:
    return f"{prefix}:admin"
