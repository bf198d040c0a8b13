from datetime import datetime, timedelta, date as date_type, time as time_type
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from medmarket.models.base import row_to_dict
from medmarket.models.clinic import Clinic
from medmarket.models.shift import ShiftApplication, ShiftAssignment, ShiftListing
from medmarket.models.specialist import CredentialVerification, Specialist
from medmarket.realtime.channels import publish_change
from medmarket.utils.errors import ConflictError, ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

APPLICATION_TTL = timedelta(hours=24)
AUTO_APPROVE_SCORE = 80
AUTO_APPROVE_RATING = 4.5


def shift_match_score(shift: ShiftListing, specialist: Specialist) -> int:
    """specialty 40, meets minimum rating 30, emergency shift 30."""
    score = 0
    specialties = [s.lower() for s in (specialist.specialties or [])]
    if shift.specialty_required and shift.specialty_required.lower() in specialties:
        score += 40
    if not shift.minimum_rating or (specialist.average_rating or 0) >= shift.minimum_rating:
        score += 30
    if shift.urgency == "emergency":
        score += 30
    return score


def missing_licenses(db: Session, shift: ShiftListing, specialist_id: int, today: date_type) -> List[str]:
    credentials = (
        db.query(CredentialVerification)
        .filter(
            CredentialVerification.specialist_id == specialist_id,
            CredentialVerification.status == "verified",
        )
        .all()
    )
    held = set()
    for c in credentials:
        if c.expiry_date and c.expiry_date < today:
            continue
        held.add(c.credential_type.lower())
        if c.credential_number:
            held.add(c.credential_number.lower())
    return [lic for lic in (shift.required_licenses or []) if lic.lower() not in held]


class ShiftService:
    """
    Shift marketplace: clinics post shifts, verified specialists apply.
    """

    @staticmethod
    def list_open_shifts(
        db: Session,
        specialty: Optional[str] = None,
        shift_date: Optional[date_type] = None,
        urgency: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = db.query(ShiftListing).filter(ShiftListing.status == "open")
        if specialty:
            query = query.filter(ShiftListing.specialty_required == specialty)
        if shift_date:
            query = query.filter(ShiftListing.shift_date == shift_date)
        if urgency:
            query = query.filter(ShiftListing.urgency == urgency)
        rows = query.order_by(ShiftListing.shift_date.asc(), ShiftListing.start_time.asc()).all()
        return [row_to_dict(s) for s in rows]

    @staticmethod
    def _owned_clinic(db: Session, clinic_id: int, user_id: int, is_admin: bool = False) -> Clinic:
        clinic = db.query(Clinic).filter(Clinic.id == clinic_id).first()
        if not clinic:
            raise NotFoundError("Clinic not found")
        if not is_admin and clinic.owner_id != user_id:
            raise ForbiddenError("You do not manage this clinic")
        return clinic

    @staticmethod
    async def create_shift(
        db: Session,
        user_id: int,
        clinic_id: int,
        title: str,
        shift_date: date_type,
        start_time: time_type,
        end_time: time_type,
        specialty_required: Optional[str] = None,
        required_licenses: Optional[List[str]] = None,
        minimum_rating: float = 0.0,
        urgency: str = "normal",
        hourly_rate: Optional[float] = None,
        auto_accept_high_rated: bool = False,
        description: Optional[str] = None,
        is_admin: bool = False,
    ) -> Dict[str, Any]:
        ShiftService._owned_clinic(db, clinic_id, user_id, is_admin)
        if end_time <= start_time:
            raise ValueError("Shift end time must be after start time")

        shift = ShiftListing(
            clinic_id=clinic_id,
            title=title,
            description=description,
            specialty_required=specialty_required,
            required_licenses=required_licenses or [],
            minimum_rating=minimum_rating,
            urgency=urgency,
            shift_date=shift_date,
            start_time=start_time,
            end_time=end_time,
            hourly_rate=hourly_rate,
            auto_accept_high_rated=auto_accept_high_rated,
            status="open",
            applications_count=0,
        )
        db.add(shift)
        db.commit()
        db.refresh(shift)
        await publish_change("shift_listings", "INSERT", new=row_to_dict(shift))
        return row_to_dict(shift)

    @staticmethod
    async def apply(
        db: Session,
        user_id: int,
        shift_id: int,
        cover_note: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        now = now or datetime.utcnow()
        specialist = db.query(Specialist).filter(Specialist.user_id == user_id).first()
        if not specialist or specialist.verification_status != "verified":
            raise ForbiddenError("Credentials must be verified before applying to shifts")

        shift = db.query(ShiftListing).filter(ShiftListing.id == shift_id).first()
        if not shift:
            raise NotFoundError("Shift not found")
        if shift.status != "open":
            raise ValueError("Shift is no longer open")

        existing = (
            db.query(ShiftApplication)
            .filter(ShiftApplication.shift_id == shift_id, ShiftApplication.specialist_id == specialist.id)
            .first()
        )
        if existing:
            raise ConflictError("Already applied to this shift")

        missing = missing_licenses(db, shift, specialist.id, now.date())
        if missing:
            raise ValueError(f"Missing required licenses: {', '.join(missing)}")

        score = shift_match_score(shift, specialist)
        auto_approve = bool(
            shift.auto_accept_high_rated
            and score >= AUTO_APPROVE_SCORE
            and (specialist.average_rating or 0) >= AUTO_APPROVE_RATING
        )

        application = ShiftApplication(
            shift_id=shift.id,
            specialist_id=specialist.id,
            status="approved" if auto_approve else "pending",
            match_score=score,
            auto_approved=auto_approve,
            cover_note=cover_note,
            expires_at=None if auto_approve else now + APPLICATION_TTL,
        )
        db.add(application)
        db.flush()

        assignment = None
        if auto_approve:
            assignment = ShiftAssignment(
                shift_id=shift.id,
                specialist_id=specialist.id,
                application_id=application.id,
                status="confirmed",
            )
            db.add(assignment)
            shift.status = "filled"

        shift.applications_count = (shift.applications_count or 0) + 1
        db.commit()
        db.refresh(application)

        logger.info(f"Specialist {specialist.id} applied to shift {shift.id} (score={score}, auto={auto_approve})")
        await publish_change("shift_applications", "INSERT", new=row_to_dict(application))
        await publish_change("shift_listings", "UPDATE", new=row_to_dict(shift))

        if auto_approve:
            ShiftService._notify_approved(user_id, shift)

        return {
            "application": row_to_dict(application),
            "auto_approved": auto_approve,
            "assignment_id": assignment.id if assignment else None,
            "message": "Shift confirmed instantly!" if auto_approve else "Application submitted successfully",
        }

    @staticmethod
    def _notify_approved(user_id: int, shift: ShiftListing):
        from medmarket.tasks.notification_tasks import send_notification_task

        send_notification_task.delay(
            user_id=user_id,
            notification_type="shift_confirmed",
            title="Shift confirmed",
            body=f"You are confirmed for {shift.title} on {shift.shift_date.isoformat()}.",
            data={"shift_id": shift.id},
        )

    @staticmethod
    async def review_application(
        db: Session,
        user_id: int,
        application_id: int,
        approve: bool,
        is_admin: bool = False,
    ) -> Dict[str, Any]:
        application = db.query(ShiftApplication).filter(ShiftApplication.id == application_id).first()
        if not application:
            raise NotFoundError("Application not found")
        shift = application.shift
        ShiftService._owned_clinic(db, shift.clinic_id, user_id, is_admin)
        if application.status != "pending":
            raise ValueError(f"Application is already {application.status}")

        if not approve:
            application.status = "rejected"
            db.commit()
            await publish_change("shift_applications", "UPDATE", new=row_to_dict(application))
            return row_to_dict(application)

        if shift.status != "open":
            raise ValueError("Shift is no longer open")
        application.status = "approved"
        db.add(ShiftAssignment(
            shift_id=shift.id,
            specialist_id=application.specialist_id,
            application_id=application.id,
            status="confirmed",
        ))
        shift.status = "filled"
        # the shift is filled, so the remaining applicants lose out
        (
            db.query(ShiftApplication)
            .filter(
                ShiftApplication.shift_id == shift.id,
                ShiftApplication.id != application.id,
                ShiftApplication.status == "pending",
            )
            .update({"status": "rejected"}, synchronize_session=False)
        )
        db.commit()
        db.refresh(application)

        await publish_change("shift_applications", "UPDATE", new=row_to_dict(application))
        await publish_change("shift_listings", "UPDATE", new=row_to_dict(shift))
        ShiftService._notify_approved(application.specialist.user_id, shift)
        return row_to_dict(application)

    @staticmethod
    def list_applications(db: Session, user_id: int, shift_id: int, is_admin: bool = False) -> List[Dict[str, Any]]:
        shift = db.query(ShiftListing).filter(ShiftListing.id == shift_id).first()
        if not shift:
            raise NotFoundError("Shift not found")
        ShiftService._owned_clinic(db, shift.clinic_id, user_id, is_admin)
        rows = (
            db.query(ShiftApplication)
            .filter(ShiftApplication.shift_id == shift_id)
            .order_by(ShiftApplication.match_score.desc())
            .all()
        )
        return [row_to_dict(a) for a in rows]
