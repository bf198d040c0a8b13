import logging
from typing import Optional

from sqlalchemy.orm import Session

from medmarket.models.compliance import SecurityAuditLog, Activity

logger = logging.getLogger(__name__)


class AuditService:
    """Writes the security audit trail and the user-facing activity feed."""

    @staticmethod
    def log(
        db: Session,
        user_id: Optional[int],
        action: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        details: Optional[dict] = None,
    ) -> SecurityAuditLog:
        entry = SecurityAuditLog(
            user_id=user_id,
            action=action,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            ip_address=ip_address,
            details=details or {},
        )
        db.add(entry)
        db.commit()
        logger.debug(f"Audit: user={user_id} action={action} {resource_type}:{resource_id}")
        return entry

    @staticmethod
    def record_activity(db: Session, user_id: int, activity_type: str, details: Optional[dict] = None) -> Activity:
        activity = Activity(user_id=user_id, activity_type=activity_type, details=details or {})
        db.add(activity)
        db.commit()
        db.refresh(activity)
        return activity
