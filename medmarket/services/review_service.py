from typing import List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from medmarket.models.appointment import Appointment
from medmarket.models.review import Review
from medmarket.models.specialist import Specialist
from medmarket.schemas.review import ReviewCreate
from medmarket.utils.errors import ConflictError, NotFoundError


class ReviewService:

    @staticmethod
    def _check_review_authenticity(db: Session, patient_id: int, appointment_id: int) -> Appointment:
        """
        Ensure that:
        - Appointment exists and belongs to the patient
        - It is completed
        - It has not been reviewed yet
        """
        appt = (
            db.query(Appointment)
            .filter(Appointment.id == appointment_id, Appointment.patient_id == patient_id)
            .first()
        )
        if not appt:
            raise NotFoundError("Appointment not found")
        if appt.status != "completed":
            raise ValueError("Only completed appointments can be reviewed")

        existing = db.query(Review).filter(Review.appointment_id == appointment_id).first()
        if existing:
            raise ConflictError("You have already reviewed this appointment")
        return appt

    @staticmethod
    def create_review(db: Session, patient_id: int, payload: ReviewCreate) -> Review:
        appt = ReviewService._check_review_authenticity(db, patient_id, payload.appointment_id)

        review = Review(
            appointment_id=appt.id,
            patient_id=patient_id,
            specialist_id=appt.specialist_id,
            rating=payload.rating,
            comment=payload.comment,
        )
        db.add(review)
        db.commit()
        db.refresh(review)

        ReviewService.recalculate_specialist_rating(db, appt.specialist_id)
        return review

    @staticmethod
    def list_specialist_reviews(
        db: Session,
        specialist_id: int,
        skip: int = 0,
        limit: int = 20,
    ) -> Tuple[List[Review], int, Optional[float]]:
        q = db.query(Review).filter(Review.specialist_id == specialist_id)
        total = q.count()
        items = q.order_by(Review.created_at.desc()).offset(skip).limit(limit).all()
        avg = db.query(func.avg(Review.rating)).filter(Review.specialist_id == specialist_id).scalar()
        return items, total, round(float(avg), 2) if avg is not None else None

    @staticmethod
    def recalculate_specialist_rating(db: Session, specialist_id: int) -> Optional[float]:
        """Recalculate and store the specialist's average rating and review count."""
        avg_val, count_val = (
            db.query(func.avg(Review.rating), func.count(Review.id))
            .filter(Review.specialist_id == specialist_id)
            .first()
        )
        avg = round(float(avg_val), 2) if avg_val is not None else 0.0
        specialist = db.query(Specialist).filter(Specialist.id == specialist_id).first()
        if specialist:
            specialist.average_rating = avg
            specialist.total_reviews = int(count_val or 0)
            db.commit()
        return avg
