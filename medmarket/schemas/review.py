from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field


class ReviewCreate(BaseModel):
    appointment_id: int
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=4000)


class ReviewResponse(BaseModel):
    id: int
    appointment_id: int
    patient_id: int
    specialist_id: int
    rating: int
    comment: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ReviewListResponse(BaseModel):
    items: List[ReviewResponse]
    total: int
    average_rating: Optional[float] = None
