from datetime import date, datetime, timedelta

import pytest

from medmarket.models.compliance import SymptomCheck
from medmarket.services.matching_service import MatchingService, days_until, rescore_recommendations, score_band
from medmarket.services.triage_service import TriageService, assess, infer_specialties

EVERY_DAY = range(7)


# ============================================================================
# Triage
# ============================================================================

def test_red_flag_is_emergency():
    result = assess("Crushing chest pain since an hour")
    assert result["urgency"] == "emergency"
    assert "chest pain" in result["matched_rules"]
    assert result["recommended_specialty"] == "cardiology"
    assert "not a diagnosis" in result["disclaimer"]


def test_weighted_keywords_escalate_urgency():
    result = assess("severe headache with vomiting and fever")
    # severe 3 + vomiting 2 + fever 2 + headache 1
    assert result["score"] == 8
    assert result["urgency"] == "urgent"
    assert result["recommended_specialty"] == "neurology"


def test_age_adds_risk():
    assert assess("mild cough")["urgency"] == "routine"
    assert assess("mild cough", age=70)["urgency"] == "soon"


def test_unknown_symptoms_fall_back_to_general_practice():
    assert infer_specialties("I feel off") == ["general_practice"]


def test_blank_symptoms_rejected():
    with pytest.raises(ValueError, match="Please describe your symptoms"):
        assess("   ")


def test_check_stores_digest_not_text(db_session, builders):
    patient = builders.user(db_session, "patient")
    TriageService.check_symptoms(db_session, patient.id, "itchy rash on arm", age=30)

    check = db_session.query(SymptomCheck).one()
    assert check.user_id == patient.id
    assert len(check.inputs_hash) == 64
    assert "rash" not in check.inputs_hash
    assert check.recommended_specialty == "dermatology"


# ============================================================================
# Matching
# ============================================================================

def test_days_until_floors_and_defaults():
    now = datetime(2026, 3, 2, 12, 0)
    assert days_until(None, now) == 999
    assert days_until(now + timedelta(hours=36), now) == 1
    assert days_until((now + timedelta(days=3)).isoformat(), now) == 3


def test_score_bands():
    assert score_band(85) == "green"
    assert score_band(60) == "blue"
    assert score_band(40) == "yellow"
    assert score_band(10) == "orange"


def test_display_rubric():
    now = datetime(2026, 3, 2, 12, 0)
    specialists = [
        {"specialist_id": 1, "specialty_match": False, "next_available": None, "rating": 3.0, "languages": ["fr"]},
        {
            "specialist_id": 2,
            "specialty_match": True,
            "next_available": (now + timedelta(days=2)).isoformat(),
            "rating": 4.6,
            "languages": ["EN"],
            "accepts_insurance": True,
            "distance_km": 2.0,
        },
    ]
    ranked = rescore_recommendations(specialists, language="en", now=now)
    assert [s["specialist_id"] for s in ranked] == [2, 1]
    assert ranked[0]["display_score"] == 100
    assert ranked[1]["display_score"] == 0
    assert ranked[1]["score_band"] == "orange"


def test_match_specialists_prefers_inferred_specialty(db_session, builders):
    cardio = builders.specialist(db_session, weekdays=EVERY_DAY, specialties=["cardiology"], average_rating=4.8)
    builders.specialist(db_session, weekdays=EVERY_DAY, specialties=["dermatology"], average_rating=4.9)
    builders.specialist(db_session, specialties=["cardiology"], verification_status="pending")

    result = MatchingService.match_specialists(db_session, "chest pain and palpitations")
    assert result["suggested_specialties"] == ["cardiology"]
    assert result["total_candidates"] == 2

    top = result["specialists"][0]
    assert top["specialist_id"] == cardio.id
    # specialty 40 + within a week 20 + rating 15 + language 10
    assert top["display_score"] == 85
    assert top["score_band"] == "green"


@pytest.mark.asyncio
async def test_symptom_endpoints(async_client, db_session, builders):
    patient = builders.user(db_session, "patient")
    headers = builders.headers(db_session, patient)

    resp = await async_client.post("/functions/v1/ai-symptom-check", json={"symptoms": "skin rash"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["urgency"] == "routine"

    resp = await async_client.post("/functions/v1/smart-specialist-matcher", json={"symptoms": ""}, headers=headers)
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Please describe your symptoms"}

    resp = await async_client.post("/functions/v1/ai-symptom-check", json={"symptoms": "x", "age": 200}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("age:")


@pytest.mark.asyncio
async def test_unknown_function_is_404(async_client, db_session, builders):
    patient = builders.user(db_session, "patient")
    resp = await async_client.post("/functions/v1/nope", json={}, headers=builders.headers(db_session, patient))
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Function not found"}


def test_find_slots_skips_booked_time(db_session, builders):
    from medmarket.models.appointment import Appointment
    from medmarket.services.slot_service import SlotService

    specialist = builders.specialist(db_session, weekdays=EVERY_DAY)
    patient = builders.user(db_session, "patient")
    day = date.today() + timedelta(days=7)
    db_session.add(Appointment(
        patient_id=patient.id, specialist_id=specialist.id,
        scheduled_at=datetime.combine(day, datetime.min.time()).replace(hour=10),
        duration_minutes=60, status="confirmed",
    ))
    # an expired hold does not block its slot
    db_session.add(Appointment(
        patient_id=patient.id, specialist_id=specialist.id,
        scheduled_at=datetime.combine(day, datetime.min.time()).replace(hour=11),
        duration_minutes=60, status="hold", hold_expires_at=datetime.utcnow() - timedelta(minutes=5),
    ))
    db_session.commit()

    result = SlotService.find_available_slots(db_session, specialist.id, day, duration_minutes=60)
    starts = [s["start"][11:16] for s in result["slots"]]
    assert starts == ["09:00", "11:00", "12:00", "13:00", "14:00", "15:00", "16:00"]
    assert result["total_found"] == 7


def test_slot_range_is_limited(db_session, builders):
    from medmarket.services.slot_service import SlotService

    specialist = builders.specialist(db_session, weekdays=EVERY_DAY)
    start = date.today() + timedelta(days=1)
    with pytest.raises(ValueError, match="cannot exceed"):
        SlotService.compute_slots(db_session, specialist.id, start, start + timedelta(days=20))
    with pytest.raises(ValueError, match="endDate"):
        SlotService.compute_slots(db_session, specialist.id, start, start - timedelta(days=1))


async def test_slot_search_returns_first_fifty_of_total(async_client, db_session, builders):
    patient = builders.user(db_session, "patient")
    specialist = builders.specialist(db_session, weekdays=EVERY_DAY)
    start = date.today() + timedelta(days=1)

    resp = await async_client.post(
        "/functions/v1/find-available-slots",
        json={
            "specialistId": specialist.id,
            "startDate": start.isoformat(),
            "endDate": (start + timedelta(days=6)).isoformat(),
        },
        headers=builders.headers(db_session, patient),
    )
    assert resp.status_code == 200
    body = resp.json()
    # 09:00-17:00 in 30 minute steps over seven days
    assert body["total_found"] == 16 * 7
    assert len(body["slots"]) == 50
    assert body["slots"][0]["start"] == f"{start.isoformat()}T09:00:00"
    assert body["slots"][-1]["start"] == f"{(start + timedelta(days=3)).isoformat()}T09:30:00"
