"""
Error Taxonomy Module

Domain exceptions raised by the agreement state machine and the settlement
layer. Settlement business failures are NOT exceptions: they come back as
PaymentResult(success=False).
"""

from typing import Optional


class LendingError(Exception):
    """Base class for all lending core errors"""


class ValidationError(LendingError, ValueError):
    """Malformed or missing input. Always raised before any write."""


class AuthorizationError(LendingError):
    """Caller is not the party allowed to perform the operation"""


class InvalidStateError(LendingError):
    """Operation not permitted for the agreement's current status"""

    def __init__(self, message: str, current_status: Optional[str] = None):
        super().__init__(message)
        self.current_status = current_status


class ConflictError(LendingError):
    """
    A conditional write lost against a concurrent change.

    `reason` tells the caller which message to show:
    already_claimed, stale_state or not_found.
    """

    ALREADY_CLAIMED = "already_claimed"
    STALE_STATE = "stale_state"
    NOT_FOUND = "not_found"

    def __init__(self, message: str, reason: str = STALE_STATE):
        super().__init__(message)
        self.reason = reason


class NotFoundError(ConflictError):
    """Record does not exist (deleted or never created)"""

    def __init__(self, message: str):
        super().__init__(message, reason=ConflictError.NOT_FOUND)
