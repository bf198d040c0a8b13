"""Request bodies of the named functions under /functions/v1/{name}.

Clients send camelCase keys; fields are snake_case and accept either form.
"""
from datetime import date as date_type, datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class FunctionRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class WorkQueueRequest(FunctionRequest):
    action: str
    queue_id: Optional[int] = None
    item_id: Optional[int] = None
    clinic_id: Optional[int] = None
    reason: Optional[str] = None
    defer_until: Optional[datetime] = None
    duration_minutes: Optional[int] = None
    activity_type: Optional[str] = None


class PrioritizeRequest(FunctionRequest):
    user_id: Optional[int] = None


class SpecialistMatchRequest(FunctionRequest):
    symptoms: str = ""
    specialty: Optional[str] = None
    language: Optional[str] = None
    insurance: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    patient_id: Optional[int] = None


class SymptomCheckRequest(FunctionRequest):
    symptoms: str = ""
    age: Optional[int] = Field(None, ge=0, le=130)
    gender: Optional[str] = None
    medical_history: Optional[str] = None


class BookWithHoldRequest(FunctionRequest):
    action: Literal["hold", "commit", "release"]
    specialist_id: Optional[int] = None
    scheduled_at: Optional[datetime] = None
    duration_minutes: int = Field(30, ge=5, le=480)
    consultation_type: str = "in_person"
    appointment_id: Optional[int] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def check_action_fields(self):
        if self.action == "hold" and (self.specialist_id is None or self.scheduled_at is None):
            raise ValueError("specialistId and scheduledAt are required to hold a slot")
        if self.action in ("commit", "release") and self.appointment_id is None:
            raise ValueError("appointmentId is required")
        return self


class GroupSlot(FunctionRequest):
    start: datetime
    end: Optional[datetime] = None


class GroupBookingRequest(FunctionRequest):
    action: Literal["find_slots", "confirm_booking"]
    specialist_ids: List[int] = Field(default_factory=list)
    preferred_date: Optional[date_type] = None
    duration_minutes: int = Field(30, ge=5, le=480)
    session_id: Optional[int] = None
    slot: Optional[GroupSlot] = None
    consultation_type: str = "in_person"

    @model_validator(mode="after")
    def check_action_fields(self):
        if self.action == "find_slots" and self.preferred_date is None:
            raise ValueError("preferredDate is required")
        if self.action == "confirm_booking" and (self.session_id is None or self.slot is None):
            raise ValueError("sessionId and slot are required to confirm a booking")
        return self


class FindSlotsRequest(FunctionRequest):
    specialist_id: int
    date: Optional[date_type] = None
    start_date: Optional[date_type] = None
    end_date: Optional[date_type] = None
    duration_minutes: int = 30

    @model_validator(mode="after")
    def check_dates(self):
        if self.date is None and self.start_date is None:
            raise ValueError("date or startDate is required")
        return self


class ConstraintSearchRequest(FunctionRequest):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    specialty: Optional[str] = None
    language: Optional[str] = None
    max_distance: float = 10
    require_availability: bool = False


class ApplyToShiftRequest(FunctionRequest):
    shift_id: int
    cover_note: Optional[str] = Field(None, max_length=2000)


class ExportRequest(FunctionRequest):
    export_type: Literal["fhir_bundle", "appointments_csv"] = "fhir_bundle"
    background: bool = False


class HipaaAuditRequest(FunctionRequest):
    start_date: date_type
    end_date: date_type
    filter_user: Optional[int] = None
    filter_action: Optional[str] = None
