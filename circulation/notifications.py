import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from sqlalchemy.orm import Session

from circulation import models


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class NotificationMessage:
    user_id: int
    title: str
    message: str
    type: models.NotificationType = models.NotificationType.SYSTEM


class NotificationSink(Protocol):
    def queue_notification(self, notification: NotificationMessage) -> None:
        ...


class DatabaseNotificationSink:
    """
    Stores notifications as rows, each in its own short-lived session.

    Runs after the business transaction has committed, so it never shares
    a session with it.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def queue_notification(self, notification: NotificationMessage) -> None:
        if not notification.title.strip() or not notification.message.strip():
            raise ValueError("Notification title and message are required")

        db = self.session_factory()
        try:
            db.add(
                models.Notification(
                    user_id=notification.user_id,
                    title=notification.title.strip(),
                    message=notification.message.strip(),
                    type=notification.type,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        logger.info(
            f"Notification queued for user {notification.user_id}: {notification.title}"
        )


def dispatch_notifications(
    sink: NotificationSink, notifications: Iterable[NotificationMessage]
) -> None:
    """
    Fire-and-forget delivery of notifications produced by a committed
    operation. Failures are logged per notification and never raised.
    """
    for notification in notifications:
        try:
            sink.queue_notification(notification)
        except Exception as e:
            logger.error(
                f"Failed to queue notification for user {notification.user_id}: {e}"
            )
