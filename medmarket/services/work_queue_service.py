from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from medmarket.core.config import settings
from medmarket.core.constants import URGENCY_RANK
from medmarket.models.base import row_to_dict
from medmarket.models.clinic import Clinic
from medmarket.models.work_queue import WorkQueue, WorkQueueItem, EveningLoadMetric
from medmarket.realtime.channels import publish_change
from medmarket.utils.errors import ConflictError, NotFoundError
from medmarket.utils.helpers import minutes_between

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("pending", "assigned", "in_progress")
QUEUE_PAGE_SIZE = 50

URGENCY_BASE = {"urgent": 100, "high": 70, "routine": 40, "low": 10}
ESTIMATED_MINUTES = {"message": 5, "lab_result": 10, "refill": 5, "document": 15}
SUGGESTED_ACTIONS = {
    "message": "Reply to the patient message",
    "lab_result": "Review the result and notify the patient",
    "refill": "Approve or deny the refill request",
    "document": "Review and sign the document",
}


def _urgency_order():
    return case(
        *[(WorkQueueItem.urgency == name, rank) for name, rank in URGENCY_RANK.items()],
        else_=0,
    )


def priority_label(score: int) -> str:
    if score >= 100:
        return "urgent"
    if score >= 70:
        return "high"
    if score >= 40:
        return "routine"
    return "low"


def score_item(item: WorkQueueItem, now: datetime) -> Dict[str, Any]:
    """Deterministic prioritization of a single work item."""
    score = URGENCY_BASE.get(item.urgency or "routine", 40)
    reasons = [f"{item.urgency or 'routine'} urgency"]

    if item.due_date:
        if item.due_date <= now:
            score += 50
            reasons.append("overdue")
        elif item.due_date <= now + timedelta(hours=1):
            score += 40
            reasons.append("due within the hour")
        elif item.due_date <= now + timedelta(hours=24):
            score += 20
            reasons.append("due today")

    if item.created_at:
        waited_hours = int((now - item.created_at).total_seconds() // 3600)
        age_points = min(max(waited_hours, 0), 24)
        if age_points:
            score += age_points
            reasons.append(f"waiting {waited_hours}h")

    if item.requires_md_review:
        score += 15
        reasons.append("needs MD review")

    item_type = item.item_type or "other"
    return {
        "itemId": item.id,
        "score": score,
        "newPriority": priority_label(score),
        "estimatedMinutes": ESTIMATED_MINUTES.get(item_type, 10),
        "reasoning": ", ".join(reasons),
        "suggestedAction": SUGGESTED_ACTIONS.get(item_type, "Open and triage the item"),
    }


class WorkQueueService:
    """
    Clinical work queue operations:
    - Queue listing and item browsing
    - Atomic claiming, start / complete / defer / escalate
    - After-hours (evening load) tracking
    - Deterministic reprioritization
    """

    # -------------------------------------------------------------------------
    # Browsing
    # -------------------------------------------------------------------------
    @staticmethod
    def get_queues(db: Session, clinic_id: int) -> List[Dict[str, Any]]:
        counts = dict(
            db.query(WorkQueueItem.queue_id, func.count(WorkQueueItem.id))
            .join(WorkQueue, WorkQueue.id == WorkQueueItem.queue_id)
            .filter(WorkQueue.clinic_id == clinic_id)
            .group_by(WorkQueueItem.queue_id)
            .all()
        )
        queues = (
            db.query(WorkQueue)
            .filter(WorkQueue.clinic_id == clinic_id, WorkQueue.is_active == True)  # noqa: E712
            .order_by(WorkQueue.id)
            .all()
        )
        return [{**row_to_dict(q), "item_count": counts.get(q.id, 0)} for q in queues]

    @staticmethod
    def get_queue_items(db: Session, queue_id: int) -> List[Dict[str, Any]]:
        items = (
            db.query(WorkQueueItem)
            .filter(
                WorkQueueItem.queue_id == queue_id,
                WorkQueueItem.status.in_(OPEN_STATUSES),
            )
            .order_by(_urgency_order().desc(), WorkQueueItem.created_at.asc(), WorkQueueItem.id.asc())
            .limit(QUEUE_PAGE_SIZE)
            .all()
        )
        return [row_to_dict(i) for i in items]

    # -------------------------------------------------------------------------
    # Item lifecycle
    # -------------------------------------------------------------------------
    @staticmethod
    async def _publish(item: WorkQueueItem, old: Optional[dict] = None):
        await publish_change("work_queue_items", "UPDATE", new=row_to_dict(item), old=old)

    @staticmethod
    def _assigned_item(db: Session, item_id: int, user_id: int) -> WorkQueueItem:
        item = (
            db.query(WorkQueueItem)
            .filter(WorkQueueItem.id == item_id, WorkQueueItem.assigned_to == user_id)
            .first()
        )
        if not item:
            raise NotFoundError("Item not found or not assigned to you")
        return item

    @staticmethod
    async def claim_item(db: Session, item_id: int, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Single conditional UPDATE; the first claimant wins."""
        now = now or datetime.utcnow()
        claimed = (
            db.query(WorkQueueItem)
            .filter(WorkQueueItem.id == item_id, WorkQueueItem.status == "pending")
            .update(
                {"assigned_to": user_id, "assigned_at": now, "status": "assigned", "updated_at": now},
                synchronize_session=False,
            )
        )
        db.commit()
        if claimed != 1:
            raise ConflictError("Item already claimed or not found")

        item = db.query(WorkQueueItem).filter(WorkQueueItem.id == item_id).first()
        db.refresh(item)
        logger.info(f"Work item {item_id} claimed by user {user_id}")
        await WorkQueueService._publish(item)
        return row_to_dict(item)

    @staticmethod
    async def start_work(db: Session, item_id: int, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        item = WorkQueueService._assigned_item(db, item_id, user_id)
        old = row_to_dict(item)
        item.status = "in_progress"
        item.first_viewed_at = now
        item.time_to_first_view_minutes = minutes_between(item.created_at, now)
        db.commit()
        db.refresh(item)
        await WorkQueueService._publish(item, old)
        return row_to_dict(item)

    @staticmethod
    async def complete_item(db: Session, item_id: int, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        item = WorkQueueService._assigned_item(db, item_id, user_id)
        old = row_to_dict(item)
        item.status = "completed"
        item.completed_at = now
        item.time_to_completion_minutes = minutes_between(item.created_at, now)
        db.commit()
        db.refresh(item)
        await WorkQueueService._publish(item, old)
        return row_to_dict(item)

    @staticmethod
    async def defer_item(
        db: Session,
        item_id: int,
        user_id: int,
        reason: Optional[str] = None,
        defer_until: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        item = WorkQueueService._assigned_item(db, item_id, user_id)
        old = row_to_dict(item)
        item.status = "pending"
        item.assigned_to = None
        item.assigned_at = None
        details = dict(item.details or {})
        details["deferral"] = {
            "reason": reason,
            "defer_until": defer_until.isoformat() if defer_until else None,
            "deferred_by": user_id,
        }
        item.details = details
        db.commit()
        db.refresh(item)
        await WorkQueueService._publish(item, old)
        return row_to_dict(item)

    @staticmethod
    async def escalate_item(db: Session, item_id: int, user_id: int, reason: Optional[str] = None) -> Dict[str, Any]:
        item = db.query(WorkQueueItem).filter(WorkQueueItem.id == item_id).first()
        if not item:
            raise NotFoundError("Item not found")
        old = row_to_dict(item)
        item.status = "escalated"
        item.requires_md_review = True
        details = dict(item.details or {})
        details["escalation"] = {"reason": reason, "escalated_by": user_id}
        item.details = details
        db.commit()
        db.refresh(item)

        clinic_owner = (
            db.query(Clinic.owner_id)
            .join(WorkQueue, WorkQueue.clinic_id == Clinic.id)
            .filter(WorkQueue.id == item.queue_id)
            .scalar()
        )
        if clinic_owner:
            from medmarket.tasks.notification_tasks import send_notification_task

            send_notification_task.delay(
                user_id=clinic_owner,
                notification_type="work_item_escalated",
                title="Work item escalated",
                body=f"'{item.title or item.item_type}' needs MD review. {reason or ''}".strip(),
                data={"item_id": item.id, "queue_id": item.queue_id},
            )

        logger.info(f"Work item {item_id} escalated by user {user_id}")
        await WorkQueueService._publish(item, old)
        return row_to_dict(item)

    # -------------------------------------------------------------------------
    # Evening load
    # -------------------------------------------------------------------------
    @staticmethod
    def get_metrics(db: Session, user_id: int, today=None) -> Optional[Dict[str, Any]]:
        today = today or datetime.now().date()
        metric = (
            db.query(EveningLoadMetric)
            .filter(EveningLoadMetric.user_id == user_id, EveningLoadMetric.metric_date == today)
            .first()
        )
        return row_to_dict(metric) if metric else None

    @staticmethod
    def is_after_hours(moment: datetime) -> bool:
        return moment.hour < settings.BUSINESS_HOURS_START or moment.hour >= settings.BUSINESS_HOURS_END

    @staticmethod
    def track_evening_work(
        db: Session,
        user_id: int,
        duration_minutes: int,
        activity_type: str,
        clinic_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Add after-hours minutes to today's row. Work in business hours is ignored."""
        if duration_minutes < 0:
            raise ValueError("durationMinutes must be >= 0")
        now = now or datetime.now()
        if not WorkQueueService.is_after_hours(now):
            return False

        metric = (
            db.query(EveningLoadMetric)
            .filter(EveningLoadMetric.user_id == user_id, EveningLoadMetric.metric_date == now.date())
            .first()
        )
        if not metric:
            metric = EveningLoadMetric(
                user_id=user_id,
                clinic_id=clinic_id,
                metric_date=now.date(),
                after_hours_minutes=0,
                inbox_time_minutes=0,
                documentation_time_minutes=0,
            )
            db.add(metric)

        metric.after_hours_minutes = (metric.after_hours_minutes or 0) + duration_minutes
        if activity_type == "inbox":
            metric.inbox_time_minutes = (metric.inbox_time_minutes or 0) + duration_minutes
        elif activity_type == "documentation":
            metric.documentation_time_minutes = (metric.documentation_time_minutes or 0) + duration_minutes
        db.commit()
        return True

    # -------------------------------------------------------------------------
    # Prioritization
    # -------------------------------------------------------------------------
    @staticmethod
    async def prioritize(db: Session, user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        items = (
            db.query(WorkQueueItem)
            .filter(
                WorkQueueItem.assigned_to == user_id,
                WorkQueueItem.status.in_(("pending", "assigned", "in_progress")),
            )
            .all()
        )
        if not items:
            return {"success": True, "prioritizedItems": [], "message": "No pending items"}

        recommendations = []
        for item in items:
            rec = score_item(item, now)
            recommendations.append(rec)
            item.priority = rec["newPriority"]
            details = dict(item.details or {})
            details["ai_prioritization"] = {
                "score": rec["score"],
                "estimatedMinutes": rec["estimatedMinutes"],
                "reasoning": rec["reasoning"],
                "suggestedAction": rec["suggestedAction"],
                "updated_at": now.isoformat(),
            }
            item.details = details
        db.commit()

        scores = {rec["itemId"]: rec["score"] for rec in recommendations}
        ordered = sorted(items, key=lambda i: (-scores[i.id], i.created_at or now, i.id))
        for item in ordered:
            await WorkQueueService._publish(item)

        recommendations.sort(key=lambda r: -r["score"])
        return {
            "success": True,
            "prioritizedItems": [row_to_dict(i) for i in ordered],
            "aiRecommendations": recommendations,
            "summary": {
                "urgent": sum(1 for r in recommendations if r["newPriority"] == "urgent"),
                "totalEstimatedMinutes": sum(r["estimatedMinutes"] for r in recommendations),
            },
        }
