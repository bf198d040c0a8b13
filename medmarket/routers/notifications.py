from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_user
from medmarket.services.notification_service import NotificationService

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    unread_only: bool = Query(False),
    limit: int = Query(50, ge=1, le=200),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user_id = current_user["sub"]
    return {
        "success": True,
        "data": {
            "items": NotificationService.list_for_user(db, user_id, unread_only=unread_only, limit=limit),
            "unread_count": NotificationService.unread_count(db, user_id),
        },
    }


@router.post("/{notification_id}/read")
async def mark_notification_read(
    notification_id: int,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification = await NotificationService.mark_read(db, notification_id, current_user["sub"])
    return {"success": True, "data": notification}
