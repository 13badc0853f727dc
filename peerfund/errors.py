"""
Error Taxonomy Module

Exceptions raised by the lending core. Validation-type errors also derive
from ValueError so callers that only know about ValueError keep working.
"""

from typing import Optional


class LendingError(Exception):
    """Base class for all lending core errors"""


class ValidationError(LendingError, ValueError):
    """Bad amount, rate, duration or request shape; raised before any write"""


class NotFoundError(ValidationError):
    """Referenced record does not exist"""


class AuthorizationError(LendingError):
    """Wrong party acting on a loan, offer or request"""


class StateConflict(LendingError):
    """Action attempted on a record that is not in the required state"""


class InsufficientFunds(LendingError):
    """Wallet debit would take the available balance below zero"""

    def __init__(self, user_id: str, required_cents: int, available_cents: int):
        self.user_id = user_id
        self.required_cents = required_cents
        self.available_cents = available_cents
        super().__init__(
            f"Insufficient funds: required {required_cents} cents, "
            f"available {available_cents} cents"
        )


class GatewayError(LendingError):
    """External payment call failed or returned a non-success status"""

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.status_code = status_code
        self.code = code
        super().__init__(message)


class GatewayTimeout(GatewayError):
    """Payment gateway did not answer in time; the outcome is unknown"""


class WebhookSignatureError(ValidationError):
    """Inbound webhook failed signature verification"""


class AuditWriteFailure(LendingError):
    """Best-effort Fee/Transaction audit row could not be written"""
