"""
Test suite for notification sinks
"""

import logging
import pytest

from core_lending.notifications import (
    CompositeNotificationSink, InAppNotificationSink, LogNotificationSink,
    NotificationSink, NotificationType, WebhookNotificationSink
)
from core_lending.storage import InMemoryStorage


class TestInAppNotifications:

    def setup_method(self):
        self.storage = InMemoryStorage()
        self.inbox = InAppNotificationSink(self.storage)

    def test_notify_stores_for_user(self):
        notification = self.inbox.notify(
            "user-1", NotificationType.LOAN_CLAIMED, "Funded", "A lender claimed your request",
            agreement_id="A1", metadata={"status": "claimed"}
        )

        stored = self.inbox.get_notifications("user-1")
        assert [n.id for n in stored] == [notification.id]
        assert stored[0].agreement_id == "A1"
        assert stored[0].metadata == {"status": "claimed"}
        assert not stored[0].read
        assert self.inbox.get_notifications("user-2") == []

    def test_mark_as_read(self):
        notification = self.inbox.notify("user-1", NotificationType.LOAN_ACCEPTED, "t", "m")
        self.inbox.notify("user-1", NotificationType.LOAN_REJECTED, "t", "m")
        assert self.inbox.get_unread_count("user-1") == 2

        assert self.inbox.mark_as_read(notification.id, "user-1")
        assert self.inbox.get_unread_count("user-1") == 1
        unread = self.inbox.get_notifications("user-1", unread_only=True)
        assert [n.notification_type for n in unread] == [NotificationType.LOAN_REJECTED]
        read = [n for n in self.inbox.get_notifications("user-1") if n.read]
        assert read[0].read_at is not None

    def test_cannot_mark_someone_elses_notification(self):
        notification = self.inbox.notify("user-1", NotificationType.PAYMENT_RECEIVED, "t", "m")
        assert not self.inbox.mark_as_read(notification.id, "user-2")
        assert not self.inbox.mark_as_read("missing", "user-1")
        assert self.inbox.get_unread_count("user-1") == 1

    def test_limit(self):
        for i in range(5):
            self.inbox.notify("user-1", NotificationType.PAYMENT_DUE, f"t{i}", "m")
        assert len(self.inbox.get_notifications("user-1", limit=3)) == 3
        assert len(self.inbox.get_notifications("user-1", limit=None)) == 5


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise RuntimeError(f"HTTP {self.status_code}")


class TestWebhookNotifications:

    def test_posts_json_payload(self, monkeypatch):
        calls = []

        def fake_post(url, json=None, timeout=None, headers=None):
            calls.append((url, json, timeout))
            return FakeResponse()

        monkeypatch.setattr("core_lending.notifications.requests.post", fake_post)
        sink = WebhookNotificationSink("https://hooks.example.com/lendit", timeout=3)
        notification = sink.notify("user-1", NotificationType.LOAN_ACCEPTED, "Accepted", "ok",
                                   agreement_id="A1")

        url, payload, timeout = calls[0]
        assert url == "https://hooks.example.com/lendit"
        assert timeout == 3
        assert payload["type"] == "loan_accepted"
        assert payload["notification_id"] == notification.id
        assert payload["agreement_id"] == "A1"

    def test_http_error_raises(self, monkeypatch):
        monkeypatch.setattr("core_lending.notifications.requests.post",
                            lambda *args, **kwargs: FakeResponse(503))
        sink = WebhookNotificationSink("https://hooks.example.com/lendit")
        with pytest.raises(RuntimeError):
            sink.notify("user-1", NotificationType.LOAN_ACCEPTED, "Accepted", "ok")


class TestCompositeNotifications:

    class FailingSink(NotificationSink):
        def notify(self, *args, **kwargs):
            raise RuntimeError("down")

    def test_secondary_failure_is_swallowed(self):
        inbox = InAppNotificationSink(InMemoryStorage())
        sink = CompositeNotificationSink([inbox, self.FailingSink()])

        notification = sink.notify("user-1", NotificationType.LOAN_COMPLETED, "Done", "closed")
        assert inbox.get_notifications("user-1")[0].id == notification.id

    def test_primary_failure_propagates(self):
        sink = CompositeNotificationSink([self.FailingSink(), InAppNotificationSink(InMemoryStorage())])
        with pytest.raises(RuntimeError):
            sink.notify("user-1", NotificationType.LOAN_COMPLETED, "Done", "closed")

    def test_needs_a_sink(self):
        with pytest.raises(ValueError):
            CompositeNotificationSink([])


class TestLogNotifications:

    def test_logs_notification(self):
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        logger = logging.getLogger("lendit.test.notifications")
        logger.setLevel(logging.INFO)
        logger.addHandler(Capture())

        LogNotificationSink(logger).notify("user-1", NotificationType.PAYMENT_DUE, "Due", "pay up",
                                           agreement_id="A1")

        assert records[0].getMessage() == "Notification: Due"
        assert records[0].action == "payment_due"
        assert records[0].resource == "agreement:A1"
