"""
Typed errors raised by the ledger, the controller and the settings service.

The routing layer maps every ``RaffleError`` to ``{"error": code, "message": ...}``
with ``status_code``; nothing below the routers knows about HTTP beyond that.
"""
from typing import Optional


class RaffleError(Exception):
    code = "RAFFLE_ERROR"
    status_code = 400
    message = "Raffle error"

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.message
        self.details = details
        super().__init__(self.message)


# --- validation ---

class ValidationFailed(RaffleError):
    code = "VALIDATION_ERROR"
    message = "Invalid request"


class SettingsInvalid(ValidationFailed):
    message = "Invalid raffle settings"

    def __init__(self, errors: list[str]):
        super().__init__(f"Validation failed: {', '.join(errors)}", errors=errors)
        self.errors = errors


class InvalidAmount(RaffleError):
    code = "INVALID_BID_AMOUNT"
    message = "Bid amount does not match the raffle entry fee"


# --- concurrency conflicts ---

class AlreadyParticipated(RaffleError):
    code = "ALREADY_PARTICIPATED"
    status_code = 409
    message = "Participant already entered this raffle"


class RaffleFull(RaffleError):
    code = "RAFFLE_FULL"
    status_code = 409
    message = "Raffle is already full"


class RaffleNotActive(RaffleError):
    code = "RAFFLE_NOT_ACTIVE"
    status_code = 409
    message = "Raffle is not active"


class RaffleNotFull(RaffleError):
    code = "RAFFLE_NOT_FULL"
    status_code = 409
    message = "Raffle has not reached its quota"


# --- lookups ---

class RaffleNotFound(RaffleError):
    code = "RAFFLE_NOT_FOUND"
    status_code = 404
    message = "Raffle not found"


class RaffleNotCompleted(RaffleError):
    code = "RAFFLE_NOT_COMPLETED"
    status_code = 409
    message = "Raffle is not completed"


class SettingsNotFound(RaffleError):
    code = "SETTINGS_NOT_FOUND"
    status_code = 503
    message = "No active raffle settings"


# --- external dependencies ---

class PaymentRejected(RaffleError):
    code = "PAYMENT_REJECTED"
    status_code = 402
    message = "Payment could not be verified"


class PaymentBridgeError(RaffleError):
    code = "PAYMENT_BRIDGE_ERROR"
    status_code = 502
    message = "Payment provider unavailable"


# --- throttling ---

class RateLimited(RaffleError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    message = "Too many requests, try again later"

    def __init__(self, retry_after: int, message: Optional[str] = None):
        super().__init__(message, retry_after=retry_after)
        self.retry_after = max(int(retry_after), 1)
