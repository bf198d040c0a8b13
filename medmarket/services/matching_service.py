from datetime import datetime
from typing import Any, Dict, List, Optional
import math
import logging

from sqlalchemy.orm import Session, joinedload

from medmarket.models.appointment import Appointment
from medmarket.models.specialist import Specialist
from medmarket.services.slot_service import SlotService
from medmarket.services.triage_service import infer_specialties
from medmarket.utils.helpers import haversine_miles
from medmarket.utils.validators import require_text

logger = logging.getLogger(__name__)

KM_PER_MILE = 1.609344
TOP_MATCHES = 10
NO_AVAILABILITY_DAYS = 999


def _normalize(values) -> List[str]:
    return [str(v).strip().lower() for v in (values or [])]


def days_until(moment: Optional[Any], now: Optional[datetime] = None) -> int:
    """Whole days until `moment` (floored). No slot counts as 999 days."""
    if not moment:
        return NO_AVAILABILITY_DAYS
    if isinstance(moment, str):
        moment = datetime.fromisoformat(moment)
    now = now or datetime.utcnow()
    return math.floor((moment - now).total_seconds() / 86400)


def score_band(score: int) -> str:
    if score >= 80:
        return "green"
    if score >= 60:
        return "blue"
    if score >= 40:
        return "yellow"
    return "orange"


def rescore_recommendations(
    specialists: List[Dict[str, Any]],
    language: str = "en",
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Apply the fixed display rubric to matcher results.

    specialty match 40, available within a week 20, rating 4.5+ 15,
    language 10, insurance 10, within 5 km 5. Sorted best first.
    """
    language = (language or "en").lower()
    scored = []
    for spec in specialists:
        score = 0
        reasons = []

        if spec.get("specialty_match"):
            score += 40
            reasons.append("Perfect specialty match")

        if days_until(spec.get("next_available"), now) < 7:
            score += 20
            reasons.append("Available within a week")

        if (spec.get("rating") or 0) >= 4.5:
            score += 15
            reasons.append("Highly rated (4.5+)")

        if language in _normalize(spec.get("languages")):
            score += 10
            reasons.append("Speaks your language")

        if spec.get("accepts_insurance"):
            score += 10
            reasons.append("Accepts your insurance")

        distance = spec.get("distance_km")
        if distance is not None and distance < 5:
            score += 5
            reasons.append("Close to your location")

        scored.append({
            **spec,
            "display_score": score,
            "reasons": reasons,
            "score_band": score_band(score),
        })

    scored.sort(key=lambda s: s["display_score"], reverse=True)
    return scored


class MatchingService:
    """
    Specialist matching for free-text symptoms:
    - Specialty inference from symptom keywords
    - Server-side ranking (specialty, rating, language, history, availability)
    - Display rubric applied on top of the ranked set
    """

    @staticmethod
    def _availability_points(days: int) -> int:
        if days <= 1:
            return 20
        if days <= 3:
            return 15
        if days <= 7:
            return 10
        return 0

    @staticmethod
    def match_specialists(
        db: Session,
        symptoms: str,
        specialty: Optional[str] = None,
        language: Optional[str] = None,
        insurance: Optional[str] = None,
        latitude: Optional[float] = None,
        longitude: Optional[float] = None,
        patient_id: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        symptoms = require_text(symptoms, "Please describe your symptoms")
        now = now or datetime.utcnow()

        suggested = [specialty.lower()] if specialty else infer_specialties(symptoms)
        candidates = (
            db.query(Specialist)
            .options(joinedload(Specialist.user))
            .filter(
                Specialist.verification_status == "verified",
                Specialist.is_accepting_patients == True,  # noqa: E712
            )
            .all()
        )

        seen_by_patient = set()
        if patient_id:
            seen_by_patient = {
                row[0]
                for row in db.query(Appointment.specialist_id)
                .filter(Appointment.patient_id == patient_id, Appointment.status != "cancelled")
                .distinct()
                .all()
            }

        ranked = []
        for spec in candidates:
            specialties = _normalize(spec.specialties)
            languages = _normalize(spec.languages)
            specialty_match = any(s in specialties for s in suggested)
            next_slot = SlotService.next_available(db, spec.id, now=now)
            days = days_until(next_slot, now)

            score = 0
            reasons = []
            if specialty_match:
                score += 40
                reasons.append("Specialty matches your symptoms")
            rating = spec.average_rating or 0.0
            score += round(rating * 4)
            if language and language.lower() in languages:
                score += 10
                reasons.append("Speaks your language")
            if spec.id in seen_by_patient:
                score += 10
                reasons.append("You have seen this specialist before")
            availability = MatchingService._availability_points(days)
            if availability:
                score += availability
                reasons.append(f"Available in {max(days, 0)} day(s)")

            distance_km = None
            if None not in (latitude, longitude, spec.latitude, spec.longitude):
                distance_km = round(haversine_miles(latitude, longitude, spec.latitude, spec.longitude) * KM_PER_MILE, 2)

            ranked.append({
                "specialist_id": spec.id,
                "name": spec.display_name,
                "specialties": spec.specialties or [],
                "languages": spec.languages or [],
                "rating": rating,
                "total_reviews": spec.total_reviews or 0,
                "consultation_fee": spec.consultation_fee,
                "currency": spec.currency,
                "accepts_insurance": bool(spec.accepts_insurance),
                "insurance_requested": insurance,
                "next_available": next_slot.isoformat() if next_slot else None,
                "distance_km": distance_km,
                "specialty_match": specialty_match,
                "match_score": score,
                "match_reasons": reasons,
            })

        ranked.sort(key=lambda r: r["match_score"], reverse=True)
        top = rescore_recommendations(ranked[:TOP_MATCHES], language=language or "en", now=now)
        logger.info(f"Matched {len(top)} specialist(s) for specialties {suggested}")
        return {
            "specialists": top,
            "suggested_specialties": suggested,
            "total_candidates": len(candidates),
        }
