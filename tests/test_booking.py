from datetime import date, datetime, timedelta

import pytest

from medmarket.models.appointment import Appointment, GroupBookingSession
from medmarket.services.booking_service import BookingService, hold_key
from medmarket.utils.errors import ConflictError, GoneError

EVERY_DAY = range(7)


def _next_week_at(hour: int) -> datetime:
    day = date.today() + timedelta(days=7)
    return datetime.combine(day, datetime.min.time()).replace(hour=hour)


@pytest.fixture
def booking_setup(db_session, builders):
    patient = builders.user(db_session, "patient")
    specialist = builders.specialist(db_session, weekdays=EVERY_DAY, consultation_fee=120.0)
    return patient, specialist


# ============================================================================
# Holds
# ============================================================================

async def test_hold_then_commit(db_session, booking_setup, mock_redis, mock_celery_tasks):
    patient, specialist = booking_setup
    start = _next_week_at(10)

    hold = await BookingService.create_hold(db_session, patient.id, specialist.id, start)
    assert hold["holdSeconds"] == 60
    assert hold_key(specialist.id, start) in mock_redis.store

    appt = db_session.get(Appointment, hold["appointmentId"])
    assert appt.status == "hold"
    assert appt.fee == 120.0

    result = await BookingService.commit_hold(db_session, hold["appointmentId"], patient.id, reason="checkup")
    assert result["status"] == "pending"
    assert hold_key(specialist.id, start) not in mock_redis.store
    mock_celery_tasks["confirm"].delay.assert_called_once_with(hold["appointmentId"])


async def test_second_hold_on_same_slot_conflicts(db_session, booking_setup, builders):
    patient, specialist = booking_setup
    other = builders.user(db_session, "patient")
    start = _next_week_at(10)

    await BookingService.create_hold(db_session, patient.id, specialist.id, start)
    with pytest.raises(ConflictError, match="Slot no longer available"):
        await BookingService.create_hold(db_session, other.id, specialist.id, start)


async def test_redis_guard_blocks_concurrent_hold(db_session, booking_setup, mock_redis):
    patient, specialist = booking_setup
    start = _next_week_at(11)
    mock_redis.store[hold_key(specialist.id, start)] = "999"

    with pytest.raises(ConflictError):
        await BookingService.create_hold(db_session, patient.id, specialist.id, start)


async def test_hold_in_the_past_rejected(db_session, booking_setup):
    patient, specialist = booking_setup
    with pytest.raises(ValueError, match="past"):
        await BookingService.create_hold(db_session, patient.id, specialist.id, datetime.utcnow() - timedelta(hours=1))


async def test_commit_after_expiry_is_gone(db_session, booking_setup, mock_celery_tasks):
    patient, specialist = booking_setup
    start = _next_week_at(10)
    hold = await BookingService.create_hold(db_session, patient.id, specialist.id, start)

    later = datetime.utcnow() + timedelta(seconds=61)
    with pytest.raises(GoneError, match="Hold expired or invalid"):
        await BookingService.commit_hold(db_session, hold["appointmentId"], patient.id, now=later)
    mock_celery_tasks["confirm"].delay.assert_not_called()


async def test_release_frees_the_slot(db_session, booking_setup, builders, mock_redis):
    patient, specialist = booking_setup
    start = _next_week_at(10)
    hold = await BookingService.create_hold(db_session, patient.id, specialist.id, start)

    assert await BookingService.release_hold(db_session, hold["appointmentId"], patient.id) == {"released": True}
    assert await BookingService.release_hold(db_session, hold["appointmentId"], patient.id) == {"released": False}
    assert mock_redis.store == {}

    other = builders.user(db_session, "patient")
    again = await BookingService.create_hold(db_session, other.id, specialist.id, start)
    assert again["appointmentId"]


async def test_purge_expired_holds(db_session, booking_setup, mock_redis, monkeypatch):
    patient, specialist = booking_setup
    expired_at, live_at = _next_week_at(9), _next_week_at(10)
    db_session.add_all([
        Appointment(patient_id=patient.id, specialist_id=specialist.id, scheduled_at=expired_at,
                    status="hold", hold_expires_at=datetime.utcnow() - timedelta(seconds=1)),
        Appointment(patient_id=patient.id, specialist_id=specialist.id, scheduled_at=live_at,
                    status="hold", hold_expires_at=datetime.utcnow() + timedelta(seconds=60)),
    ])
    db_session.commit()
    mock_redis.store[hold_key(specialist.id, expired_at)] = "1"
    mock_redis.store[hold_key(specialist.id, live_at)] = "2"

    published = []

    async def record_change(table, event_type, new=None, old=None):
        published.append((table, event_type, old))
        return 0

    monkeypatch.setattr("medmarket.services.booking_service.publish_change", record_change)

    assert await BookingService.purge_expired_holds(db_session) == 1
    assert db_session.query(Appointment).count() == 1
    assert list(mock_redis.store) == [hold_key(specialist.id, live_at)]
    assert len(published) == 1
    table, event_type, old = published[0]
    assert (table, event_type) == ("appointments", "DELETE")
    assert old["status"] == "hold"
    assert old["scheduled_at"].startswith(expired_at.date().isoformat())


async def test_cancelling_a_hold_frees_its_redis_guard(db_session, booking_setup, builders, mock_redis):
    patient, specialist = booking_setup
    start = _next_week_at(10)
    hold = await BookingService.create_hold(db_session, patient.id, specialist.id, start)
    assert hold_key(specialist.id, start) in mock_redis.store

    cancelled = await BookingService.cancel_appointment(db_session, hold["appointmentId"], patient.id, reason="changed plans")
    assert cancelled["status"] == "cancelled"
    assert mock_redis.store == {}

    other = builders.user(db_session, "patient")
    again = await BookingService.create_hold(db_session, other.id, specialist.id, start)
    assert again["appointmentId"] != hold["appointmentId"]


@pytest.mark.asyncio
async def test_book_with_hold_endpoint(async_client, db_session, booking_setup, builders, mock_celery_tasks):
    patient, specialist = booking_setup
    headers = builders.headers(db_session, patient)
    start = _next_week_at(14)

    resp = await async_client.post(
        "/functions/v1/book-with-hold",
        json={"action": "hold", "specialistId": specialist.id, "scheduledAt": start.isoformat() + "Z"},
        headers=headers,
    )
    assert resp.status_code == 200
    appointment_id = resp.json()["appointmentId"]

    resp = await async_client.post(
        "/functions/v1/book-with-hold",
        json={"action": "hold", "specialistId": specialist.id, "scheduledAt": start.isoformat() + "Z"},
        headers=builders.headers(db_session, builders.user(db_session, "patient")),
    )
    assert resp.status_code == 409
    assert resp.json() == {"detail": "Slot no longer available"}

    resp = await async_client.post(
        "/functions/v1/book-with-hold", json={"action": "commit", "appointmentId": appointment_id}, headers=headers,
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "pending"

    resp = await async_client.post(
        "/functions/v1/book-with-hold", json={"action": "commit", "appointmentId": appointment_id}, headers=headers,
    )
    assert resp.status_code == 410

    resp = await async_client.post("/functions/v1/book-with-hold", json={"action": "commit"}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "appointmentId is required"


# ============================================================================
# Group booking
# ============================================================================

def test_find_group_slots_perfect_and_partial(db_session, builders):
    patient = builders.user(db_session, "patient")
    day = date.today() + timedelta(days=7)
    full_day = [builders.specialist(db_session, weekdays=EVERY_DAY) for _ in range(3)]
    # the fourth specialist only works mornings
    morning = builders.specialist(db_session, weekdays=EVERY_DAY, closes=datetime.min.time().replace(hour=12))
    ids = [s.id for s in full_day] + [morning.id]

    result = BookingService.find_group_slots(db_session, patient.id, ids, day, duration_minutes=60)
    assert [m["start"][11:16] for m in result["perfect_matches"]] == ["09:00", "10:00", "11:00"]
    # 3 of 4 is 75%, above the 70% partial threshold
    assert result["partial_matches"][0]["start"][11:16] == "12:00"
    assert result["partial_matches"][0]["missing_count"] == 1
    assert "suggestion" not in result

    session = db_session.get(GroupBookingSession, result["sessionId"])
    assert session.status == "searching"


def test_find_group_slots_needs_two_specialists(db_session, builders):
    patient = builders.user(db_session, "patient")
    specialist = builders.specialist(db_session, weekdays=EVERY_DAY)
    with pytest.raises(ValueError, match="at least two"):
        BookingService.find_group_slots(db_session, patient.id, [specialist.id, specialist.id], date.today())


async def test_confirm_group_booking_books_everyone(db_session, builders, mock_celery_tasks):
    patient = builders.user(db_session, "patient")
    first = builders.specialist(db_session, weekdays=EVERY_DAY)
    second = builders.specialist(db_session, weekdays=EVERY_DAY)
    day = date.today() + timedelta(days=7)
    found = BookingService.find_group_slots(db_session, patient.id, [first.id, second.id], day)
    slot_start = datetime.fromisoformat(found["perfect_matches"][0]["start"])

    result = await BookingService.confirm_group_booking(db_session, patient.id, found["sessionId"], slot_start)
    assert result["status"] == "confirmed"
    assert sorted(a["specialist_id"] for a in result["appointments"]) == sorted([first.id, second.id])
    mock_celery_tasks["notify"].delay.assert_called_once()


async def test_confirm_group_booking_compensates_on_conflict(db_session, builders, mock_celery_tasks):
    patient = builders.user(db_session, "patient")
    first = builders.specialist(db_session, weekdays=EVERY_DAY)
    second = builders.specialist(db_session, weekdays=EVERY_DAY)
    day = date.today() + timedelta(days=7)
    found = BookingService.find_group_slots(db_session, patient.id, [first.id, second.id], day)
    slot_start = datetime.fromisoformat(found["perfect_matches"][0]["start"])

    # someone else takes the second specialist's slot meanwhile
    db_session.add(Appointment(
        patient_id=builders.user(db_session, "patient").id, specialist_id=second.id,
        scheduled_at=slot_start, duration_minutes=30, status="confirmed",
    ))
    db_session.commit()

    with pytest.raises(ConflictError):
        await BookingService.confirm_group_booking(db_session, patient.id, found["sessionId"], slot_start)

    session = db_session.get(GroupBookingSession, found["sessionId"])
    assert session.status == "failed"
    mine = db_session.query(Appointment).filter(Appointment.patient_id == patient.id).all()
    assert [a.status for a in mine] == ["cancelled"]
    assert mine[0].cancellation_reason == "Group booking failed"
    mock_celery_tasks["notify"].delay.assert_not_called()


# ============================================================================
# Appointment lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_specialist_confirms_and_completes(async_client, db_session, booking_setup, builders):
    patient, specialist = booking_setup
    appt = Appointment(patient_id=patient.id, specialist_id=specialist.id, scheduled_at=_next_week_at(9), status="pending")
    db_session.add(appt)
    db_session.commit()

    doctor_headers = builders.headers(db_session, specialist.user)
    resp = await async_client.post(f"/appointments/{appt.id}/confirm", headers=doctor_headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["status"] == "confirmed"

    resp = await async_client.post(f"/appointments/{appt.id}/confirm", headers=doctor_headers)
    assert resp.status_code == 400

    resp = await async_client.post(f"/appointments/{appt.id}/complete", headers=doctor_headers)
    assert resp.json()["data"]["status"] == "completed"

    resp = await async_client.post(f"/appointments/{appt.id}/confirm", headers=builders.headers(db_session, patient))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_patient_cancels_and_lists(async_client, db_session, booking_setup, builders):
    patient, specialist = booking_setup
    appt = Appointment(patient_id=patient.id, specialist_id=specialist.id, scheduled_at=_next_week_at(9), status="pending")
    db_session.add(appt)
    db_session.commit()
    headers = builders.headers(db_session, patient)

    resp = await async_client.post(f"/appointments/{appt.id}/cancel", json={"reason": "travel"}, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["cancellation_reason"] == "travel"

    resp = await async_client.get("/appointments?status=cancelled", headers=headers)
    assert [a["id"] for a in resp.json()["data"]] == [appt.id]

    stranger = builders.user(db_session, "patient")
    resp = await async_client.post(
        f"/appointments/{appt.id}/cancel", json={"reason": "x"}, headers=builders.headers(db_session, stranger),
    )
    assert resp.status_code == 403
