from datetime import datetime, timedelta, date as date_type
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from medmarket.cache.cache_service import redis_cache
from medmarket.core.config import settings
from medmarket.core.constants import BLOCKING_APPOINTMENT_STATUSES
from medmarket.models.appointment import Appointment, GroupBookingSession
from medmarket.models.base import row_to_dict
from medmarket.models.specialist import Specialist
from medmarket.realtime.channels import publish_change
from medmarket.services.slot_service import SlotService
from medmarket.utils.errors import ConflictError, ForbiddenError, GoneError, NotFoundError

logger = logging.getLogger(__name__)

PARTIAL_MATCH_RATIO = 0.7
GROUP_SUGGESTION = "Consider booking specialists sequentially or on different dates"


def hold_key(specialist_id: int, scheduled_at: datetime) -> str:
    return f"hold:{specialist_id}:{scheduled_at.isoformat()}"


class BookingService:
    """
    Appointment booking:
    - Short-lived slot holds backed by Redis and a `hold` appointment row
    - Hold commit / release
    - Multi-specialist group booking (all-or-nothing)
    - Confirm / cancel / complete
    """

    @staticmethod
    def _specialist(db: Session, specialist_id: int) -> Specialist:
        specialist = db.query(Specialist).filter(Specialist.id == specialist_id).first()
        if not specialist:
            raise NotFoundError("Specialist not found")
        return specialist

    @staticmethod
    def _slot_taken(db: Session, specialist_id: int, scheduled_at: datetime, now: datetime) -> bool:
        existing = (
            db.query(Appointment)
            .filter(
                Appointment.specialist_id == specialist_id,
                Appointment.scheduled_at == scheduled_at,
                Appointment.status.in_(BLOCKING_APPOINTMENT_STATUSES),
            )
            .all()
        )
        return any(
            a.status != "hold" or (a.hold_expires_at and a.hold_expires_at > now)
            for a in existing
        )

    # -------------------------------------------------------------------------
    # Holds
    # -------------------------------------------------------------------------
    @staticmethod
    async def create_hold(
        db: Session,
        patient_id: int,
        specialist_id: int,
        scheduled_at: datetime,
        duration_minutes: int = 30,
        consultation_type: str = "in_person",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        if scheduled_at <= now:
            raise ValueError("Cannot hold a slot in the past")
        specialist = BookingService._specialist(db, specialist_id)

        if BookingService._slot_taken(db, specialist_id, scheduled_at, now):
            raise ConflictError("Slot no longer available")
        if not SlotService.is_slot_free(db, specialist_id, scheduled_at, duration_minutes, now=now):
            raise ConflictError("Slot no longer available")

        key = hold_key(specialist_id, scheduled_at)
        if not await redis_cache.set_if_absent(key, str(patient_id), ttl=settings.HOLD_SECONDS):
            raise ConflictError("Slot no longer available")

        expires_at = now + timedelta(seconds=settings.HOLD_SECONDS)
        appointment = Appointment(
            patient_id=patient_id,
            specialist_id=specialist_id,
            clinic_id=specialist.clinic_id,
            scheduled_at=scheduled_at,
            duration_minutes=duration_minutes,
            status="hold",
            consultation_type=consultation_type,
            fee=specialist.consultation_fee,
            currency=specialist.currency or "USD",
            hold_expires_at=expires_at,
        )
        db.add(appointment)
        db.commit()
        db.refresh(appointment)

        logger.info(f"Hold {appointment.id} placed on specialist {specialist_id} at {scheduled_at.isoformat()}")
        await publish_change("appointments", "INSERT", new=row_to_dict(appointment))
        return {
            "appointmentId": appointment.id,
            "expiresAt": expires_at.isoformat(),
            "holdSeconds": settings.HOLD_SECONDS,
        }

    @staticmethod
    def _own_hold(db: Session, appointment_id: int, patient_id: int) -> Optional[Appointment]:
        return (
            db.query(Appointment)
            .filter(
                Appointment.id == appointment_id,
                Appointment.patient_id == patient_id,
                Appointment.status == "hold",
            )
            .first()
        )

    @staticmethod
    async def commit_hold(
        db: Session,
        appointment_id: int,
        patient_id: int,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        appt = BookingService._own_hold(db, appointment_id, patient_id)
        if not appt or not appt.hold_expires_at or appt.hold_expires_at <= now:
            raise GoneError("Hold expired or invalid")

        old = row_to_dict(appt)
        appt.status = "pending"
        appt.hold_expires_at = None
        if reason:
            appt.reason = reason
        db.commit()
        db.refresh(appt)
        await redis_cache.delete(hold_key(appt.specialist_id, appt.scheduled_at))

        from medmarket.tasks.notification_tasks import send_appointment_confirmation

        send_appointment_confirmation.delay(appt.id)

        await publish_change("appointments", "UPDATE", new=row_to_dict(appt), old=old)
        return {"appointmentId": appt.id, "status": appt.status, "scheduledAt": appt.scheduled_at.isoformat()}

    @staticmethod
    async def release_hold(db: Session, appointment_id: int, patient_id: int) -> Dict[str, Any]:
        appt = BookingService._own_hold(db, appointment_id, patient_id)
        if not appt:
            return {"released": False}
        old = row_to_dict(appt)
        key = hold_key(appt.specialist_id, appt.scheduled_at)
        db.delete(appt)
        db.commit()
        await redis_cache.delete(key)
        await publish_change("appointments", "DELETE", old=old)
        return {"released": True}

    @staticmethod
    async def purge_expired_holds(db: Session, now: Optional[datetime] = None) -> int:
        now = now or datetime.utcnow()
        expired = (
            db.query(Appointment)
            .filter(Appointment.status == "hold", Appointment.hold_expires_at <= now)
            .all()
        )
        removed = [(hold_key(appt.specialist_id, appt.scheduled_at), row_to_dict(appt)) for appt in expired]
        for appt in expired:
            db.delete(appt)
        db.commit()

        for key, old in removed:
            await redis_cache.delete(key)
            await publish_change("appointments", "DELETE", old=old)
        return len(removed)

    # -------------------------------------------------------------------------
    # Group booking
    # -------------------------------------------------------------------------
    @staticmethod
    def find_group_slots(
        db: Session,
        patient_id: int,
        specialist_ids: List[int],
        preferred_date: date_type,
        duration_minutes: int = 30,
    ) -> Dict[str, Any]:
        specialist_ids = list(dict.fromkeys(specialist_ids))
        if len(specialist_ids) < 2:
            raise ValueError("Group booking needs at least two specialists")
        for sid in specialist_ids:
            BookingService._specialist(db, sid)

        # "start|end" -> specialists free for that window
        windows: Dict[str, Dict[str, Any]] = {}
        for sid in specialist_ids:
            for slot in SlotService.compute_slots(db, sid, preferred_date, duration_minutes=duration_minutes):
                key = f"{slot['start']}|{slot['end']}"
                entry = windows.setdefault(key, {"start": slot["start"], "end": slot["end"], "specialists": []})
                entry["specialists"].append(sid)

        total = len(specialist_ids)
        perfect, partial = [], []
        for entry in sorted(windows.values(), key=lambda e: e["start"]):
            available = entry["specialists"]
            if len(available) == total:
                perfect.append({"start": entry["start"], "end": entry["end"], "specialist_ids": available})
            elif len(available) / total >= PARTIAL_MATCH_RATIO:
                partial.append({
                    "start": entry["start"],
                    "end": entry["end"],
                    "available_specialists": available,
                    "missing_count": total - len(available),
                })

        session = GroupBookingSession(
            patient_id=patient_id,
            specialist_ids=specialist_ids,
            preferred_date=preferred_date,
            duration_minutes=duration_minutes,
            status="searching",
        )
        db.add(session)
        db.commit()
        db.refresh(session)

        result = {
            "sessionId": session.id,
            "perfect_matches": perfect,
            "partial_matches": partial,
        }
        if not perfect:
            result["suggestion"] = GROUP_SUGGESTION
        return result

    @staticmethod
    async def confirm_group_booking(
        db: Session,
        patient_id: int,
        session_id: int,
        slot_start: datetime,
        consultation_type: str = "in_person",
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        session = (
            db.query(GroupBookingSession)
            .filter(GroupBookingSession.id == session_id, GroupBookingSession.patient_id == patient_id)
            .first()
        )
        if not session:
            raise NotFoundError("Group booking session not found")
        if session.status != "searching":
            raise ValueError(f"Group booking session is already {session.status}")

        created: List[Appointment] = []
        failure = None
        for sid in session.specialist_ids:
            specialist = db.query(Specialist).filter(Specialist.id == sid).first()
            if not specialist or not SlotService.is_slot_free(db, sid, slot_start, session.duration_minutes, now=now):
                failure = f"Specialist {sid} is no longer available at {slot_start.isoformat()}"
                break
            appt = Appointment(
                patient_id=patient_id,
                specialist_id=sid,
                clinic_id=specialist.clinic_id,
                scheduled_at=slot_start,
                duration_minutes=session.duration_minutes,
                status="pending",
                consultation_type=consultation_type,
                fee=specialist.consultation_fee,
                currency=specialist.currency or "USD",
                group_session_id=session.id,
            )
            db.add(appt)
            db.flush()
            created.append(appt)

        if failure:
            # compensate: keep the rows for the audit trail, but free the time
            for appt in created:
                appt.status = "cancelled"
                appt.cancellation_reason = "Group booking failed"
                appt.cancelled_at = now
            session.status = "failed"
            db.commit()
            logger.warning(f"Group booking {session.id} failed: {failure}")
            raise ConflictError(failure)

        session.status = "confirmed"
        session.selected_slot = {
            "start": slot_start.isoformat(),
            "end": (slot_start + timedelta(minutes=session.duration_minutes)).isoformat(),
        }
        session.appointment_ids = [a.id for a in created]
        db.commit()

        for appt in created:
            db.refresh(appt)
            await publish_change("appointments", "INSERT", new=row_to_dict(appt))

        from medmarket.tasks.notification_tasks import send_notification_task

        send_notification_task.delay(
            user_id=patient_id,
            notification_type="group_booking_confirmed",
            title="Group booking confirmed",
            body=f"{len(created)} appointments booked for {slot_start.strftime('%Y-%m-%d %H:%M')}.",
            data={"session_id": session.id, "appointment_ids": session.appointment_ids},
        )

        return {
            "sessionId": session.id,
            "status": session.status,
            "appointments": [row_to_dict(a) for a in created],
        }

    # -------------------------------------------------------------------------
    # Appointment status changes
    # -------------------------------------------------------------------------
    @staticmethod
    def _get(db: Session, appointment_id: int) -> Appointment:
        appt = db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appt:
            raise NotFoundError("Appointment not found")
        return appt

    @staticmethod
    def _specialist_user_id(db: Session, appt: Appointment) -> Optional[int]:
        return db.query(Specialist.user_id).filter(Specialist.id == appt.specialist_id).scalar()

    @staticmethod
    async def confirm_appointment(db: Session, appointment_id: int, specialist_user_id: int) -> Dict[str, Any]:
        appt = BookingService._get(db, appointment_id)
        if BookingService._specialist_user_id(db, appt) != specialist_user_id:
            raise ForbiddenError("Only the booked specialist can confirm this appointment")
        if appt.status != "pending":
            raise ValueError("Only pending appointments can be confirmed")
        old = row_to_dict(appt)
        appt.status = "confirmed"
        db.commit()
        db.refresh(appt)
        await publish_change("appointments", "UPDATE", new=row_to_dict(appt), old=old)
        return row_to_dict(appt)

    @staticmethod
    async def complete_appointment(db: Session, appointment_id: int, specialist_user_id: int) -> Dict[str, Any]:
        appt = BookingService._get(db, appointment_id)
        if BookingService._specialist_user_id(db, appt) != specialist_user_id:
            raise ForbiddenError("Only the booked specialist can complete this appointment")
        if appt.status not in ("pending", "confirmed"):
            raise ValueError("Only pending or confirmed appointments can be completed")
        old = row_to_dict(appt)
        appt.status = "completed"
        db.commit()
        db.refresh(appt)
        await publish_change("appointments", "UPDATE", new=row_to_dict(appt), old=old)
        return row_to_dict(appt)

    @staticmethod
    async def cancel_appointment(db: Session, appointment_id: int, user_id: int, reason: str) -> Dict[str, Any]:
        appt = BookingService._get(db, appointment_id)
        if user_id not in (appt.patient_id, BookingService._specialist_user_id(db, appt)):
            raise ForbiddenError("You cannot cancel this appointment")
        if appt.status not in BLOCKING_APPOINTMENT_STATUSES:
            raise ValueError("Only upcoming appointments can be cancelled")
        old = row_to_dict(appt)
        appt.status = "cancelled"
        appt.cancellation_reason = reason
        appt.cancelled_at = datetime.utcnow()
        db.commit()
        db.refresh(appt)
        if old["status"] == "hold":
            await redis_cache.delete(hold_key(appt.specialist_id, appt.scheduled_at))
        await publish_change("appointments", "UPDATE", new=row_to_dict(appt), old=old)
        return row_to_dict(appt)

    @staticmethod
    def list_for_user(db: Session, user_id: int, user_type: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        query = db.query(Appointment)
        if user_type == "specialist":
            specialist_id = db.query(Specialist.id).filter(Specialist.user_id == user_id).scalar()
            query = query.filter(Appointment.specialist_id == specialist_id)
        else:
            query = query.filter(Appointment.patient_id == user_id)
        if status:
            query = query.filter(Appointment.status == status)
        return [row_to_dict(a) for a in query.order_by(Appointment.scheduled_at.desc()).all()]
