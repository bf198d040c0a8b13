from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_clinic_admin, get_current_specialist, get_current_user
from medmarket.schemas.shift import ApplicationReview, ShiftApply, ShiftCreate
from medmarket.services.shift_service import ShiftService

router = APIRouter(prefix="/shifts", tags=["shifts"])


@router.get("")
async def list_shifts(
    specialty: Optional[str] = Query(None),
    shift_date: Optional[date] = Query(None, alias="date"),
    urgency: Optional[str] = Query(None),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    shifts = ShiftService.list_open_shifts(db, specialty=specialty, shift_date=shift_date, urgency=urgency)
    return {"success": True, "data": shifts}


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_shift(
    payload: ShiftCreate,
    current_user=Depends(get_current_clinic_admin),
    db: Session = Depends(get_db),
):
    try:
        shift = await ShiftService.create_shift(
            db,
            current_user["sub"],
            is_admin=current_user.get("user_type") == "admin",
            **payload.model_dump(),
        )
        return {"success": True, "data": shift}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{shift_id}/apply", status_code=status.HTTP_201_CREATED)
async def apply_to_shift(
    shift_id: int,
    payload: ShiftApply,
    current_user=Depends(get_current_specialist),
    db: Session = Depends(get_db),
):
    try:
        result = await ShiftService.apply(db, current_user["sub"], shift_id, cover_note=payload.cover_note)
        return {"success": True, "data": result}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/{shift_id}/applications")
async def list_applications(
    shift_id: int,
    current_user=Depends(get_current_clinic_admin),
    db: Session = Depends(get_db),
):
    applications = ShiftService.list_applications(
        db, current_user["sub"], shift_id, is_admin=current_user.get("user_type") == "admin",
    )
    return {"success": True, "data": applications}


@router.post("/applications/{application_id}/review")
async def review_application(
    application_id: int,
    payload: ApplicationReview,
    current_user=Depends(get_current_clinic_admin),
    db: Session = Depends(get_db),
):
    """Approve or reject an application. Approval fills the shift."""
    try:
        application = await ShiftService.review_application(
            db,
            current_user["sub"],
            application_id,
            approve=payload.approve,
            is_admin=current_user.get("user_type") == "admin",
        )
        return {"success": True, "data": application}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
