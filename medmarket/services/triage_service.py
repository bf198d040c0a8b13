"""Rule-based symptom triage and specialty inference.

Scores free-text symptoms against weighted keyword rules. Red-flag phrases
short-circuit to ``emergency``. The result is educational guidance, not a
diagnosis.
"""
import hashlib
import json
import logging
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from medmarket.models.compliance import SymptomCheck
from medmarket.utils.validators import require_text

logger = logging.getLogger(__name__)

DISCLAIMER = (
    "This assessment is educational and is not a diagnosis. "
    "Always consult a qualified healthcare provider."
)

RED_FLAGS = {
    "chest pain": "Chest pain can signal a cardiac emergency",
    "shortness of breath": "Difficulty breathing needs immediate evaluation",
    "difficulty breathing": "Difficulty breathing needs immediate evaluation",
    "slurred speech": "Possible stroke sign",
    "face drooping": "Possible stroke sign",
    "sudden weakness": "Possible stroke sign",
    "severe bleeding": "Uncontrolled bleeding",
    "coughing blood": "Coughing up blood",
    "suicidal": "Risk of self-harm",
    "unconscious": "Loss of consciousness",
    "seizure": "Seizure activity",
    "anaphylaxis": "Severe allergic reaction",
}

# keyword -> weight
SEVERITY_WEIGHTS = {
    "severe": 3,
    "high fever": 3,
    "vomiting": 2,
    "fever": 2,
    "dizziness": 2,
    "fainting": 3,
    "blood": 2,
    "worsening": 2,
    "persistent": 1,
    "pain": 1,
    "swelling": 1,
    "rash": 1,
    "cough": 1,
    "headache": 1,
    "fatigue": 1,
    "nausea": 1,
}

SPECIALTY_KEYWORDS = {
    "cardiology": ["chest pain", "palpitations", "heart", "blood pressure", "hypertension"],
    "pulmonology": ["cough", "shortness of breath", "wheezing", "asthma", "breathing"],
    "neurology": ["headache", "migraine", "dizziness", "numbness", "seizure", "memory", "slurred speech"],
    "dermatology": ["rash", "skin", "acne", "itch", "mole", "eczema"],
    "gastroenterology": ["stomach", "abdominal", "nausea", "diarrhea", "constipation", "heartburn", "vomiting"],
    "orthopedics": ["joint", "back pain", "knee", "fracture", "shoulder", "sprain"],
    "psychiatry": ["anxiety", "depression", "insomnia", "panic", "stress", "suicidal"],
    "ent": ["ear", "sore throat", "sinus", "hearing", "tonsil"],
    "endocrinology": ["thyroid", "diabetes", "blood sugar", "hormone"],
}

DEFAULT_SPECIALTY = "general_practice"


def infer_specialties(symptoms: str, limit: int = 3) -> List[str]:
    """Specialties whose keywords appear in the text, most hits first."""
    text = symptoms.lower()
    hits = []
    for specialty, keywords in SPECIALTY_KEYWORDS.items():
        count = sum(1 for k in keywords if k in text)
        if count:
            hits.append((count, specialty))
    hits.sort(key=lambda h: -h[0])
    ranked = [s for _, s in hits[:limit]]
    return ranked or [DEFAULT_SPECIALTY]


def assess(symptoms: str, age: Optional[int] = None, medical_history: Optional[str] = None) -> Dict:
    text = require_text(symptoms, "Please describe your symptoms").lower()
    matched = []

    red_flags = [(phrase, reason) for phrase, reason in RED_FLAGS.items() if phrase in text]
    score = 0
    for keyword, weight in SEVERITY_WEIGHTS.items():
        if keyword in text:
            score += weight
            matched.append(keyword)
    if age is not None and (age >= 65 or age < 2):
        score += 2
        matched.append("age_risk")
    if medical_history and any(k in medical_history.lower() for k in ("heart", "diabetes", "copd", "cancer", "immuno")):
        score += 1
        matched.append("history_risk")

    if red_flags:
        urgency = "emergency"
        matched = [p for p, _ in red_flags] + matched
    elif score >= 6:
        urgency = "urgent"
    elif score >= 3:
        urgency = "soon"
    else:
        urgency = "routine"

    specialties = infer_specialties(text)
    advice = {
        "emergency": "Seek emergency care now or call your local emergency number.",
        "urgent": "Book a visit within 24 hours.",
        "soon": "Book a visit within the next few days.",
        "routine": "A routine appointment is appropriate.",
    }[urgency]
    assessment = advice
    if red_flags:
        assessment = f"{advice} {'; '.join(reason for _, reason in red_flags)}."

    return {
        "assessment": assessment,
        "urgency": urgency,
        "score": score,
        "recommended_specialty": specialties[0],
        "suggested_specialties": specialties,
        "matched_rules": matched,
        "disclaimer": DISCLAIMER,
    }


class TriageService:

    @staticmethod
    def check_symptoms(
        db: Session,
        user_id: int,
        symptoms: str,
        age: Optional[int] = None,
        gender: Optional[str] = None,
        medical_history: Optional[str] = None,
    ) -> Dict:
        result = assess(symptoms, age=age, medical_history=medical_history)

        # Only a digest of the inputs is stored
        inputs_hash = hashlib.sha256(
            json.dumps({"symptoms": symptoms, "age": age, "gender": gender}, sort_keys=True).encode("utf-8")
        ).hexdigest()
        db.add(SymptomCheck(
            user_id=user_id,
            inputs_hash=inputs_hash,
            urgency=result["urgency"],
            score=result["score"],
            matched_rules=result["matched_rules"],
            recommended_specialty=result["recommended_specialty"],
        ))
        db.commit()

        if result["urgency"] == "emergency":
            logger.warning(f"Emergency triage result for user {user_id}")
        return result
