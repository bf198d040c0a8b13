from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session, joinedload

from medmarket.models.specialist import AvailabilitySchedule, Specialist
from medmarket.utils.helpers import haversine_miles

logger = logging.getLogger(__name__)

EXPANDED_DISTANCE_MILES = 25
TOP_RESULTS = 10


def composite_score(available: bool, distance: float, max_distance: float, rating: float) -> float:
    """availability 40, proximity 30, rating 30."""
    score = 40.0 if available else 0.0
    if max_distance > 0:
        score += 30 * (1 - distance / max_distance)
    score += (rating or 0) / 5 * 30
    return round(score, 2)


def _location(spec: Specialist):
    if spec.latitude is not None and spec.longitude is not None:
        return spec.latitude, spec.longitude
    if spec.clinic and spec.clinic.latitude is not None and spec.clinic.longitude is not None:
        return spec.clinic.latitude, spec.clinic.longitude
    return None


class ConstraintSearchService:

    @staticmethod
    def search(
        db: Session,
        latitude: float,
        longitude: float,
        specialty: Optional[str] = None,
        language: Optional[str] = None,
        max_distance: float = 10,
        require_availability: bool = False,
    ) -> Dict[str, Any]:
        if max_distance <= 0:
            raise ValueError("maxDistance must be positive")

        specialists = (
            db.query(Specialist)
            .options(joinedload(Specialist.user), joinedload(Specialist.clinic))
            .filter(Specialist.verification_status == "verified")
            .all()
        )
        scheduled = {
            row[0]
            for row in db.query(AvailabilitySchedule.specialist_id)
            .filter(AvailabilitySchedule.is_active == True)  # noqa: E712
            .distinct()
            .all()
        }

        results: List[Dict[str, Any]] = []
        for spec in specialists:
            location = _location(spec)
            if not location:
                continue
            distance = haversine_miles(latitude, longitude, location[0], location[1])
            if distance > max_distance:
                continue
            specialties = [s.lower() for s in (spec.specialties or [])]
            if specialty and specialty.lower() not in specialties:
                continue
            languages = [lang.lower() for lang in (spec.languages or [])]
            if language and language.lower() not in languages:
                continue

            available = bool(spec.is_accepting_patients) and spec.id in scheduled
            if require_availability and not available:
                continue

            results.append({
                "specialist_id": spec.id,
                "name": spec.display_name,
                "specialties": spec.specialties or [],
                "languages": spec.languages or [],
                "clinic_name": spec.clinic.name if spec.clinic else None,
                "distance_miles": round(distance, 1),
                "rating": spec.average_rating or 0.0,
                "review_count": spec.total_reviews or 0,
                "available": available,
                "score": composite_score(available, distance, max_distance, spec.average_rating or 0.0),
            })

        results.sort(key=lambda r: r["score"], reverse=True)
        results = results[:TOP_RESULTS]

        suggestions = []
        if not results:
            if max_distance < EXPANDED_DISTANCE_MILES:
                suggestions.append({
                    "type": "expand_distance",
                    "message": f"No providers found within {max_distance:g} miles. Expand to {EXPANDED_DISTANCE_MILES} miles?",
                    "maxDistance": EXPANDED_DISTANCE_MILES,
                })
            if language:
                suggestions.append({
                    "type": "remove_language",
                    "message": f"No providers found speaking {language}. Search without a language filter?",
                })

        logger.info(f"Constraint search returned {len(results)} provider(s) within {max_distance} miles")
        return {"results": results, "total": len(results), "suggestions": suggestions}
