"""Typed failures raised by the credits services."""

from typing import Optional


class CreditsError(Exception):
    """Base class for ledger failures that carry a stable error code."""

    code = "CREDITS_ERROR"
    status_code = 400

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class UserNotFoundError(CreditsError):
    code = "USER_NOT_FOUND"
    status_code = 404

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class InsufficientCreditsError(CreditsError):
    code = "INSUFFICIENT_CREDITS"
    status_code = 402


class InvalidAmountError(CreditsError):
    code = "VALIDATION_ERROR"
    status_code = 422


class ReferralError(CreditsError):
    """Referral rejected by a business rule (self referral, caps, duplicates)."""

    status_code = 400


class PaymentEventError(CreditsError):
    code = "INVALID_EVENT"
    status_code = 400


class LedgerInvariantError(CreditsError):
    code = "LEDGER_INVARIANT"
    status_code = 500
