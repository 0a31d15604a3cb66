"""
Notification and dashboard endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, HTTPException, Depends

from .dependencies import get_current_user, get_lending_system
from .schemas import MoneyModel
from ..agreements import UserIdentity
from ..system import LendingSystem


router = APIRouter()
dashboard_router = APIRouter()


@router.get("")
async def list_notifications(
    unread_only: bool = False,
    limit: int = 20,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Caller's notifications, newest first"""
    notifications = system.inbox.get_notifications(user.id, unread_only=unread_only, limit=limit)
    return {
        "notifications": [n.to_dict() for n in notifications],
        "unread_count": system.inbox.get_unread_count(user.id)
    }


@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: str,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    if not system.inbox.mark_as_read(notification_id, user.id):
        raise HTTPException(status_code=404, detail="Notification not found")
    return {"notification_id": notification_id, "read": True}


@dashboard_router.get("")
async def get_dashboard(
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Counts per status and total lent/borrowed"""
    summary = system.queries.dashboard_summary(user.id)
    summary["total_lent"] = MoneyModel.from_money(summary["total_lent"]).dict()
    summary["total_borrowed"] = MoneyModel.from_money(summary["total_borrowed"]).dict()
    return summary


@dashboard_router.get("/reminders")
async def get_payment_reminders(
    today: Optional[str] = None,
    user: UserIdentity = Depends(get_current_user),
    system: LendingSystem = Depends(get_lending_system)
):
    """Next installment due on each of the caller's active loans"""
    try:
        as_of = date.fromisoformat(today) if today else None
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Invalid date: {today}")
    reminders = system.queries.payment_reminders(user.id, today=as_of)
    return {"reminders": [r.to_dict() for r in reminders]}
