from datetime import date, time
from typing import List, Optional

from pydantic import BaseModel, Field


class ShiftCreate(BaseModel):
    clinic_id: int
    title: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    shift_date: date
    start_time: time
    end_time: time
    specialty_required: Optional[str] = None
    required_licenses: List[str] = Field(default_factory=list)
    minimum_rating: float = Field(0.0, ge=0, le=5)
    urgency: str = Field("normal", pattern="^(normal|urgent|emergency)$")
    hourly_rate: Optional[float] = Field(None, ge=0)
    auto_accept_high_rated: bool = False


class ShiftApply(BaseModel):
    cover_note: Optional[str] = Field(None, max_length=2000)


class ApplicationReview(BaseModel):
    approve: bool
