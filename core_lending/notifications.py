"""
Notification Module

Notification records emitted by agreement transitions and settlement, plus the
sinks that deliver them. Delivery is fire-and-forget from the state machine's
point of view: a failing sink never unwinds a committed transition.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any
from enum import Enum
from abc import ABC, abstractmethod
import uuid

import requests

from .storage import StorageInterface, StorageRecord
from .logging_config import get_logger, log_action


class NotificationType(Enum):
    """Types of notifications"""
    LOAN_REQUEST_CREATED = "loan_request_created"
    LOAN_OFFER_RECEIVED = "loan_offer_received"
    LOAN_CLAIMED = "loan_claimed"
    LOAN_ACCEPTED = "loan_accepted"
    LOAN_REJECTED = "loan_rejected"
    LOAN_COMPLETED = "loan_completed"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_DUE = "payment_due"


@dataclass
class Notification(StorageRecord):
    """Individual notification instance"""
    user_id: str
    notification_type: NotificationType
    title: str
    message: str
    agreement_id: Optional[str] = None
    read: bool = False
    read_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['notification_type'] = self.notification_type.value
        result['read_at'] = self.read_at.isoformat() if self.read_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Notification':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            notification_type=NotificationType(data['notification_type']),
            title=data['title'],
            message=data['message'],
            agreement_id=data.get('agreement_id'),
            read=data.get('read', False),
            read_at=datetime.fromisoformat(data['read_at']) if data.get('read_at') else None,
            metadata=data.get('metadata') or {}
        )


def build_notification(
    user_id: str,
    notification_type: NotificationType,
    title: str,
    message: str,
    agreement_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> Notification:
    now = datetime.now(timezone.utc)
    return Notification(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        user_id=user_id,
        notification_type=notification_type,
        title=title,
        message=message,
        agreement_id=agreement_id,
        metadata=metadata or {}
    )


class NotificationSink(ABC):
    """Destination for notifications emitted by the core"""

    @abstractmethod
    def notify(
        self,
        user_id: str,
        notification_type: NotificationType,
        title: str,
        message: str,
        agreement_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Notification:
        """Deliver a notification. May raise; callers log and continue."""
        pass


class InAppNotificationSink(NotificationSink):
    """Stores notifications for in-app display"""

    def __init__(self, storage: StorageInterface, table: str = "notifications"):
        self.storage = storage
        self.table = table

    def notify(self, user_id, notification_type, title, message,
               agreement_id=None, metadata=None) -> Notification:
        notification = build_notification(
            user_id, notification_type, title, message, agreement_id, metadata
        )
        self.storage.save(self.table, notification.id, notification.to_dict())
        return notification

    def get_notifications(self, user_id: str, unread_only: bool = False,
                          limit: Optional[int] = 20) -> List[Notification]:
        """Notifications for a user, newest first"""
        filters: Dict[str, Any] = {'user_id': user_id}
        if unread_only:
            filters['read'] = False
        notifications = [Notification.from_dict(d) for d in self.storage.find(self.table, filters)]
        notifications.sort(key=lambda n: n.created_at, reverse=True)
        if limit:
            notifications = notifications[:limit]
        return notifications

    def mark_as_read(self, notification_id: str, user_id: str) -> bool:
        """Mark one of the user's notifications as read"""
        now = datetime.now(timezone.utc).isoformat()
        return self.storage.conditional_update(
            self.table, notification_id,
            expected={'user_id': user_id},
            updates={'read': True, 'read_at': now, 'updated_at': now}
        )

    def get_unread_count(self, user_id: str) -> int:
        return len(self.storage.find(self.table, {'user_id': user_id, 'read': False}))


class WebhookNotificationSink(NotificationSink):
    """POSTs notifications to an external delivery service"""

    def __init__(self, url: str, timeout: int = 10):
        self.url = url
        self.timeout = timeout

    def notify(self, user_id, notification_type, title, message,
               agreement_id=None, metadata=None) -> Notification:
        notification = build_notification(
            user_id, notification_type, title, message, agreement_id, metadata
        )
        payload = {
            "notification_id": notification.id,
            "type": notification_type.value,
            "user_id": user_id,
            "title": title,
            "message": message,
            "agreement_id": agreement_id,
            "timestamp": notification.created_at.isoformat(),
            "metadata": notification.metadata
        }
        response = requests.post(
            self.url,
            json=payload,
            timeout=self.timeout,
            headers={"Content-Type": "application/json"}
        )
        response.raise_for_status()
        return notification


class LogNotificationSink(NotificationSink):
    """Writes notifications to the log instead of delivering them"""

    def __init__(self, logger=None):
        self.logger = logger or get_logger("lendit.notifications")

    def notify(self, user_id, notification_type, title, message,
               agreement_id=None, metadata=None) -> Notification:
        notification = build_notification(
            user_id, notification_type, title, message, agreement_id, metadata
        )
        log_action(
            self.logger, "info", f"Notification: {title}",
            user_id=user_id, action=notification_type.value,
            resource=f"agreement:{agreement_id}" if agreement_id else None,
            extra={"message": message}
        )
        return notification


class CompositeNotificationSink(NotificationSink):
    """Fans a notification out to several sinks; the first sink's record is returned"""

    def __init__(self, sinks: List[NotificationSink]):
        if not sinks:
            raise ValueError("CompositeNotificationSink needs at least one sink")
        self.sinks = sinks
        self.logger = get_logger("lendit.notifications")

    def notify(self, user_id, notification_type, title, message,
               agreement_id=None, metadata=None) -> Notification:
        primary = self.sinks[0].notify(
            user_id, notification_type, title, message, agreement_id, metadata
        )
        for sink in self.sinks[1:]:
            try:
                sink.notify(user_id, notification_type, title, message, agreement_id, metadata)
            except Exception as e:
                log_action(
                    self.logger, "warning", f"Secondary notification sink failed: {e}",
                    user_id=user_id, action="notify",
                    extra={"sink": type(sink).__name__}
                )
        return primary
