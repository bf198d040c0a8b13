from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from medmarket.models.base import row_to_dict
from medmarket.models.notification import Notification
from medmarket.realtime.channels import publish_change
from medmarket.utils.errors import NotFoundError


class NotificationService:

    @staticmethod
    def create(
        db: Session,
        user_id: int,
        notification_type: str,
        title: str,
        body: str,
        data: Optional[Dict[str, Any]] = None,
    ) -> Notification:
        notification = Notification(
            user_id=user_id,
            notification_type=notification_type,
            title=title,
            body=body,
            data=data or {},
            is_read=False,
        )
        db.add(notification)
        db.commit()
        db.refresh(notification)
        return notification

    @staticmethod
    def list_for_user(db: Session, user_id: int, unread_only: bool = False, limit: int = 50) -> List[Dict[str, Any]]:
        query = db.query(Notification).filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read == False)  # noqa: E712
        rows = query.order_by(Notification.created_at.desc()).limit(limit).all()
        return [row_to_dict(n) for n in rows]

    @staticmethod
    def unread_count(db: Session, user_id: int) -> int:
        return (
            db.query(Notification)
            .filter(Notification.user_id == user_id, Notification.is_read == False)  # noqa: E712
            .count()
        )

    @staticmethod
    async def mark_read(db: Session, notification_id: int, user_id: int) -> Dict[str, Any]:
        notification = (
            db.query(Notification)
            .filter(Notification.id == notification_id, Notification.user_id == user_id)
            .first()
        )
        if not notification:
            raise NotFoundError("Notification not found")
        if not notification.is_read:
            old = row_to_dict(notification)
            notification.is_read = True
            notification.read_at = datetime.utcnow()
            db.commit()
            db.refresh(notification)
            await publish_change("notifications", "UPDATE", new=row_to_dict(notification), old=old)
        return row_to_dict(notification)
