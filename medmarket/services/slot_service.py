from datetime import datetime, timedelta, date as date_type
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from medmarket.core.constants import BLOCKING_APPOINTMENT_STATUSES
from medmarket.models.appointment import Appointment
from medmarket.models.specialist import AvailabilitySchedule, Specialist
from medmarket.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

MAX_RANGE_DAYS = 14
MAX_SLOTS_RETURNED = 50


def schedule_weekday(day: date_type) -> int:
    """0 = Sunday ... 6 = Saturday, as stored in availability_schedules."""
    return (day.weekday() + 1) % 7


def _overlaps(start: datetime, end: datetime, busy: List[tuple]) -> bool:
    return any(b_start < end and start < b_end for b_start, b_end in busy)


class SlotService:
    """
    Free-slot computation from weekly availability schedules minus booked time.
    """

    @staticmethod
    def busy_intervals(db: Session, specialist_id: int, window_start: datetime, window_end: datetime, now: Optional[datetime] = None) -> List[tuple]:
        """Intervals taken by blocking appointments. Expired holds do not count."""
        now = now or datetime.utcnow()
        appts = (
            db.query(Appointment)
            .filter(
                Appointment.specialist_id == specialist_id,
                Appointment.status.in_(BLOCKING_APPOINTMENT_STATUSES),
                Appointment.scheduled_at < window_end,
                Appointment.scheduled_at >= window_start - timedelta(hours=24),
                or_(
                    Appointment.status != "hold",
                    and_(Appointment.status == "hold", Appointment.hold_expires_at > now),
                ),
            )
            .all()
        )
        return [
            (a.scheduled_at, a.scheduled_at + timedelta(minutes=a.duration_minutes or 30))
            for a in appts
        ]

    @staticmethod
    def compute_slots(
        db: Session,
        specialist_id: int,
        start_date: date_type,
        end_date: Optional[date_type] = None,
        duration_minutes: int = 30,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Every free slot in the date range, in chronological order."""
        end_date = end_date or start_date
        if end_date < start_date:
            raise ValueError("endDate must not be before startDate")
        if (end_date - start_date).days >= MAX_RANGE_DAYS:
            raise ValueError(f"Date range cannot exceed {MAX_RANGE_DAYS} days")
        if duration_minutes < 5 or duration_minutes > 480:
            raise ValueError("durationMinutes must be between 5 and 480")

        now = now or datetime.utcnow()
        schedules = (
            db.query(AvailabilitySchedule)
            .filter(
                AvailabilitySchedule.specialist_id == specialist_id,
                AvailabilitySchedule.is_active == True,  # noqa: E712
            )
            .all()
        )
        if not schedules:
            return []

        window_start = datetime.combine(start_date, datetime.min.time())
        window_end = datetime.combine(end_date + timedelta(days=1), datetime.min.time())
        busy = SlotService.busy_intervals(db, specialist_id, window_start, window_end, now=now)

        step = timedelta(minutes=duration_minutes)
        slots = []
        day = start_date
        while day <= end_date:
            weekday = schedule_weekday(day)
            for sched in sorted((s for s in schedules if s.day_of_week == weekday), key=lambda s: s.start_time):
                cursor = datetime.combine(day, sched.start_time)
                closing = datetime.combine(day, sched.end_time)
                while cursor + step <= closing:
                    slot_end = cursor + step
                    if cursor > now and not _overlaps(cursor, slot_end, busy):
                        slots.append({
                            "specialist_id": specialist_id,
                            "date": day.isoformat(),
                            "start": cursor.isoformat(),
                            "end": slot_end.isoformat(),
                            "duration_minutes": duration_minutes,
                        })
                    cursor = slot_end
            day += timedelta(days=1)

        slots.sort(key=lambda s: s["start"])
        return slots

    @staticmethod
    def find_available_slots(
        db: Session,
        specialist_id: int,
        start_date: date_type,
        end_date: Optional[date_type] = None,
        duration_minutes: int = 30,
    ) -> Dict[str, Any]:
        specialist = db.query(Specialist).filter(Specialist.id == specialist_id).first()
        if not specialist:
            raise NotFoundError("Specialist not found")

        slots = SlotService.compute_slots(db, specialist_id, start_date, end_date, duration_minutes)
        return {
            "specialist_id": specialist_id,
            "slots": slots[:MAX_SLOTS_RETURNED],
            "total_found": len(slots),
        }

    @staticmethod
    def next_available(db: Session, specialist_id: int, days_ahead: int = MAX_RANGE_DAYS, now: Optional[datetime] = None) -> Optional[datetime]:
        now = now or datetime.utcnow()
        today = now.date()
        slots = SlotService.compute_slots(
            db, specialist_id, today, today + timedelta(days=days_ahead - 1), now=now,
        )
        if not slots:
            return None
        return datetime.fromisoformat(slots[0]["start"])

    @staticmethod
    def is_slot_free(db: Session, specialist_id: int, start: datetime, duration_minutes: int, now: Optional[datetime] = None) -> bool:
        end = start + timedelta(minutes=duration_minutes)
        busy = SlotService.busy_intervals(db, specialist_id, start, end, now=now)
        return not _overlaps(start, end, busy)
