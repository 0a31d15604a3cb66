"""
Loan request browsing endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_current_user, get_lending_system
from .schemas import agreement_response
from ..agreements import UserIdentity
from ..system import LendingSystem


router = APIRouter()


@router.get("")
async def browse_open_requests(
    purpose: Optional[str] = None,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Open requests from other borrowers, newest first, with per-purpose counts"""
    all_open = system.queries.browse_open_requests(exclude_user_id=user.id)
    requests = all_open
    if purpose and purpose.strip().lower() not in ("", "all"):
        requests = system.queries.browse_open_requests(exclude_user_id=user.id, purpose=purpose)
    return {
        "requests": [agreement_response(r) for r in requests],
        "count": len(requests),
        "purpose_counts": system.queries.count_by_purpose(all_open)
    }


@router.get("/mine")
async def list_my_requests(
    unclaimed_only: bool = True,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Requests the caller has posted"""
    requests = system.queries.list_own_requests(user.id, unclaimed_only=unclaimed_only)
    return {
        "requests": [agreement_response(r) for r in requests],
        "count": len(requests)
    }
