from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_specialist, get_current_user
from medmarket.schemas.appointment import AppointmentCancelRequest
from medmarket.services.booking_service import BookingService

router = APIRouter(prefix="/appointments", tags=["appointments"])


@router.get("")
async def list_appointments(
    status: Optional[str] = Query(None),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Appointments of the caller: booked by a patient, or with a specialist."""
    appointments = BookingService.list_for_user(
        db, current_user["sub"], current_user.get("user_type"), status=status,
    )
    return {"success": True, "data": appointments}


@router.post("/{appointment_id}/confirm")
async def confirm_appointment(
    appointment_id: int,
    current_user=Depends(get_current_specialist),
    db: Session = Depends(get_db),
):
    try:
        appointment = await BookingService.confirm_appointment(db, appointment_id, current_user["sub"])
        return {"success": True, "data": appointment}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{appointment_id}/complete")
async def complete_appointment(
    appointment_id: int,
    current_user=Depends(get_current_specialist),
    db: Session = Depends(get_db),
):
    try:
        appointment = await BookingService.complete_appointment(db, appointment_id, current_user["sub"])
        return {"success": True, "data": appointment}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: int,
    payload: AppointmentCancelRequest,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Cancel an upcoming appointment.
    - Patient or booked specialist only
    - Frees the slot for other patients
    """
    try:
        appointment = await BookingService.cancel_appointment(
            db, appointment_id, current_user["sub"], payload.reason,
        )
        return {"success": True, "data": appointment}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
