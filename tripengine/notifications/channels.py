"""Outbound delivery channels: user inboxes and the live-update stream."""

import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from tripengine.clock import Clock, system_clock
from tripengine.models import Notification, User
from tripengine.notifications.schemas import Audience, NotificationPriority, NotificationType, UserRole

logger = logging.getLogger(__name__)


class LiveUpdateChannel:
    """Pushes events to connected viewers; delivery is best-effort"""

    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        raise NotImplementedError


class NullLiveChannel(LiveUpdateChannel):
    def publish(self, topic: str, event: str, payload: Dict[str, Any]) -> None:
        return None


class NotifyChannel:
    """Delivers messages to user inboxes"""

    def send_to_user(
        self,
        user_id: int,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        notification_type: NotificationType = NotificationType.BROADCAST,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> None:
        raise NotImplementedError

    def send_to_audience(
        self,
        organization_id: int,
        audience: Audience,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Deliver one message to every user in an audience; returns how many succeeded.

        Entry point for callers outside the request path, such as an external
        messaging adapter. In-app broadcasts go through
        ``NotificationFanout.broadcast``, which reports failures per user.
        """
        raise NotImplementedError


def audience_user_ids(db: Session, organization_id: int, audience: Audience) -> List[int]:
    """Users of an organization that belong to a broadcast audience"""
    query = db.query(User.id).filter(User.organization_id == organization_id)
    if audience == Audience.DRIVERS:
        query = query.filter(User.role == UserRole.DRIVER.value)
    elif audience == Audience.PARENTS:
        query = query.filter(User.role == UserRole.PARENT.value)
    return [row.id for row in query.order_by(User.id).all()]


class DatabaseNotifyChannel(NotifyChannel):
    """Stores notifications as rows and announces them on the live channel.

    Each send opens its own session, so sends can run on worker threads.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        live_channel: Optional[LiveUpdateChannel] = None,
        clock: Clock = system_clock,
    ):
        self.session_factory = session_factory
        self.live_channel = live_channel or NullLiveChannel()
        self.clock = clock

    def send_to_user(
        self,
        user_id: int,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        notification_type: NotificationType = NotificationType.BROADCAST,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> None:
        db = self.session_factory()
        try:
            notification = Notification(
                user_id=user_id,
                type=notification_type.value,
                title=title,
                message=message,
                priority=priority.value,
                notification_metadata=metadata or {},
                is_read=False,
                created_at=self.clock.now(),
            )
            db.add(notification)
            db.commit()
            db.refresh(notification)
            payload = {
                "id": notification.id,
                "type": notification.type,
                "title": title,
                "message": message,
                "priority": notification.priority,
                "metadata": notification.notification_metadata,
                "createdAt": notification.created_at.isoformat(),
            }
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        try:
            self.live_channel.publish(f"notifications-{user_id}", "new-notification", payload)
        except Exception as e:
            logger.warning("Live publish for user %s failed: %s", user_id, e)

    def send_to_audience(
        self,
        organization_id: int,
        audience: Audience,
        title: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Sends on the caller's thread; a failed user is logged and skipped"""
        db = self.session_factory()
        try:
            user_ids = audience_user_ids(db, organization_id, audience)
        finally:
            db.close()

        delivered = 0
        for user_id in user_ids:
            try:
                self.send_to_user(user_id, title, message, metadata, NotificationType.BROADCAST)
                delivered += 1
            except Exception as e:
                logger.warning("Broadcast to user %s failed: %s", user_id, e)
        return delivered
