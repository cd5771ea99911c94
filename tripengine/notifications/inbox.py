from typing import List

from sqlalchemy.orm import Session

from tripengine.clock import Clock, system_clock
from tripengine.exceptions import NotificationNotFound
from tripengine.models import Notification


class NotificationInbox:
    """Read side of the notifications stored for each user"""

    def __init__(self, db: Session, clock: Clock = system_clock):
        self.db = db
        self.clock = clock

    def list_for_user(self, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Notification]:
        query = self.db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read == False)
        return query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(limit).all()

    def unread_count(self, user_id: int) -> int:
        return self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.is_read == False,
        ).count()

    def mark_read(self, notification_id: int) -> Notification:
        notification = self.db.get(Notification, notification_id)
        if not notification:
            raise NotificationNotFound(f"Notification with ID {notification_id} not found")
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = self.clock.now()
            self.db.commit()
            self.db.refresh(notification)
        return notification

    def mark_all_read(self, user_id: int) -> int:
        """Returns how many notifications changed"""
        updated = self.db.query(Notification).filter(
            Notification.user_id == user_id,
            Notification.is_read == False,
        ).update({"is_read": True, "read_at": self.clock.now()}, synchronize_session=False)
        self.db.commit()
        return updated
