"""
Shared API dependencies: the lending system instance, caller identity and
domain error mapping
"""

from typing import Optional

from fastapi import Header, HTTPException, status

from ..agreements import UserIdentity
from ..errors import (
    AuthorizationError, ConflictError, InvalidStateError, LendingError, NotFoundError, ValidationError
)
from ..system import LendingSystem


_lending_system: Optional[LendingSystem] = None


def get_lending_system() -> LendingSystem:
    """Lending system built from configuration on first use"""
    global _lending_system
    if _lending_system is None:
        _lending_system = LendingSystem(configure_logging=True)
    return _lending_system


def set_lending_system(system: Optional[LendingSystem]) -> None:
    global _lending_system
    _lending_system = system


def get_current_user(
    x_user_id: Optional[str] = Header(None),
    x_user_name: Optional[str] = Header(None),
    x_user_email: Optional[str] = Header(None)
) -> UserIdentity:
    """Caller identity forwarded by the authenticating gateway"""
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-User-Id header is required"
        )
    return UserIdentity(id=x_user_id, name=x_user_name, email=x_user_email)


def to_http_exception(error: LendingError) -> HTTPException:
    """Map a domain error onto an HTTP status"""
    if isinstance(error, ValidationError):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    if isinstance(error, AuthorizationError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(error))
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ConflictError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(error), "reason": error.reason}
        )
    if isinstance(error, InvalidStateError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(error), "current_status": error.current_status}
        )
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
