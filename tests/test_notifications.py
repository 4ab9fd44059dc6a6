import pytest

from circulation import models
from circulation.notifications import (
    DatabaseNotificationSink,
    NotificationMessage,
    dispatch_notifications,
)


def test_database_sink_stores_notification(db_session, factory, session_factory):
    reader = factory.user()
    sink = DatabaseNotificationSink(session_factory)

    sink.queue_notification(
        NotificationMessage(
            user_id=reader.id,
            title="  Violation Recorded ",
            message="A payment is due.",
            type=models.NotificationType.PAYMENT,
        )
    )

    stored = db_session.query(models.Notification).one()
    assert stored.user_id == reader.id
    assert stored.title == "Violation Recorded"
    assert stored.type == models.NotificationType.PAYMENT
    assert stored.is_read is False


def test_database_sink_requires_title_and_message(session_factory):
    sink = DatabaseNotificationSink(session_factory)

    with pytest.raises(ValueError):
        sink.queue_notification(NotificationMessage(user_id=1, title=" ", message="x"))


def test_dispatch_keeps_going_after_a_failure(caplog):
    """
    Test one failing notification does not stop the others.

    Verifies:
    - No exception escapes dispatch_notifications
    - The remaining notifications are still delivered
    - The failure is logged
    """
    delivered = []

    class FlakySink:
        def queue_notification(self, notification):
            if notification.user_id == 1:
                raise RuntimeError("boom")
            delivered.append(notification.user_id)

    dispatch_notifications(
        FlakySink(),
        [
            NotificationMessage(user_id=1, title="a", message="a"),
            NotificationMessage(user_id=2, title="b", message="b"),
        ],
    )

    assert delivered == [2]
    assert "Failed to queue notification for user 1" in caplog.text


def test_list_user_notifications(client, factory, session_factory):
    reader = factory.user()
    sink = DatabaseNotificationSink(session_factory)
    sink.queue_notification(NotificationMessage(user_id=reader.id, title="First", message="1"))
    sink.queue_notification(NotificationMessage(user_id=reader.id, title="Second", message="2"))

    response = client.get(f"/users/{reader.id}/notifications")

    assert response.status_code == 200
    data = response.json()
    assert {n["title"] for n in data} == {"First", "Second"}
    assert all(n["type"] == "SYSTEM" and n["isRead"] is False for n in data)

    limited = client.get(f"/users/{reader.id}/notifications?limit=1")
    assert len(limited.json()) == 1
