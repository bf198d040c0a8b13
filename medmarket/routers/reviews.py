from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_patient
from medmarket.schemas.review import ReviewCreate, ReviewListResponse, ReviewResponse
from medmarket.services.review_service import ReviewService

router = APIRouter(tags=["reviews"])


@router.post(
    "/reviews",
    response_model=ReviewResponse,
    status_code=status.HTTP_201_CREATED,
)
def submit_review(
    payload: ReviewCreate,
    current_user=Depends(get_current_patient),
    db: Session = Depends(get_db),
):
    try:
        return ReviewService.create_review(db=db, patient_id=current_user["sub"], payload=payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get(
    "/specialists/{specialist_id}/reviews",
    response_model=ReviewListResponse,
)
def get_specialist_reviews(
    specialist_id: int,
    skip: int = 0,
    limit: int = 20,
    db: Session = Depends(get_db),
):
    items, total, avg = ReviewService.list_specialist_reviews(db=db, specialist_id=specialist_id, skip=skip, limit=limit)
    return ReviewListResponse(
        items=[ReviewResponse.model_validate(r) for r in items],
        total=total,
        average_rating=avg,
    )
