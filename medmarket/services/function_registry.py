"""Named functions callable as POST /functions/v1/{name}.

Each entry pairs a request model with an async handler
``handler(db, caller, body) -> dict``.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Type
import logging

from pydantic import BaseModel, ValidationError
from sqlalchemy.orm import Session

from medmarket.schemas.functions import (
    ApplyToShiftRequest,
    BookWithHoldRequest,
    ConstraintSearchRequest,
    ExportRequest,
    FindSlotsRequest,
    GroupBookingRequest,
    HipaaAuditRequest,
    PrioritizeRequest,
    SpecialistMatchRequest,
    SymptomCheckRequest,
    WorkQueueRequest,
)
from medmarket.services.booking_service import BookingService
from medmarket.services.compliance_service import ComplianceService
from medmarket.services.constraint_search_service import ConstraintSearchService
from medmarket.services.export_service import ExportService
from medmarket.services.matching_service import MatchingService
from medmarket.services.shift_service import ShiftService
from medmarket.services.slot_service import SlotService
from medmarket.services.table_registry import Caller
from medmarket.services.triage_service import TriageService
from medmarket.services.work_queue_service import WorkQueueService
from medmarket.utils.errors import ForbiddenError, NotFoundError
from medmarket.utils.helpers import naive_utc

logger = logging.getLogger(__name__)

Handler = Callable[[Session, Caller, Any], Awaitable[Dict[str, Any]]]


@dataclass(frozen=True)
class RemoteFunction:
    name: str
    request_model: Type[BaseModel]
    handler: Handler


def validation_message(exc: ValidationError) -> str:
    error = exc.errors()[0]
    message = error.get("msg", "Invalid request body")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    location = ".".join(str(p) for p in error.get("loc", ()))
    if location:
        return f"{location}: {message}"
    return message


def _require_id(value: Optional[int], name: str) -> int:
    if value is None:
        raise ValueError(f"{name} is required")
    return value


# -------------------------------------------------------------------------
# Handlers
# -------------------------------------------------------------------------
async def manage_work_queue(db: Session, caller: Caller, body: WorkQueueRequest) -> Dict[str, Any]:
    if caller.user_type == "patient":
        raise ForbiddenError("Work queues are for clinic staff")

    action = body.action
    if action == "get_queues":
        return {"queues": WorkQueueService.get_queues(db, _require_id(body.clinic_id, "clinicId"))}
    if action == "get_queue_items":
        return {"items": WorkQueueService.get_queue_items(db, _require_id(body.queue_id, "queueId"))}
    if action == "claim_item":
        return {"item": await WorkQueueService.claim_item(db, _require_id(body.item_id, "itemId"), caller.user_id)}
    if action == "start_work":
        return {"item": await WorkQueueService.start_work(db, _require_id(body.item_id, "itemId"), caller.user_id)}
    if action == "complete_item":
        return {"item": await WorkQueueService.complete_item(db, _require_id(body.item_id, "itemId"), caller.user_id)}
    if action == "defer_item":
        defer_until = naive_utc(body.defer_until) if body.defer_until else None
        item = await WorkQueueService.defer_item(
            db, _require_id(body.item_id, "itemId"), caller.user_id, reason=body.reason, defer_until=defer_until,
        )
        return {"item": item}
    if action == "escalate_item":
        item = await WorkQueueService.escalate_item(db, _require_id(body.item_id, "itemId"), caller.user_id, reason=body.reason)
        return {"item": item}
    if action == "get_metrics":
        return {"metrics": WorkQueueService.get_metrics(db, caller.user_id)}
    if action == "track_evening_work":
        tracked = WorkQueueService.track_evening_work(
            db,
            caller.user_id,
            _require_id(body.duration_minutes, "durationMinutes"),
            body.activity_type or "other",
            clinic_id=body.clinic_id,
        )
        return {"success": True, "tracked": tracked}
    raise ValueError("Invalid action")


async def prioritize_work_queue(db: Session, caller: Caller, body: PrioritizeRequest) -> Dict[str, Any]:
    user_id = body.user_id or caller.user_id
    if user_id != caller.user_id and caller.user_type not in ("admin", "clinic_admin"):
        raise ForbiddenError("You can only prioritize your own queue")
    return await WorkQueueService.prioritize(db, user_id)


async def smart_specialist_matcher(db: Session, caller: Caller, body: SpecialistMatchRequest) -> Dict[str, Any]:
    patient_id = body.patient_id
    if patient_id is None and caller.user_type == "patient":
        patient_id = caller.user_id
    return MatchingService.match_specialists(
        db,
        symptoms=body.symptoms,
        specialty=body.specialty,
        language=body.language,
        insurance=body.insurance,
        latitude=body.latitude,
        longitude=body.longitude,
        patient_id=patient_id,
    )


async def ai_symptom_check(db: Session, caller: Caller, body: SymptomCheckRequest) -> Dict[str, Any]:
    return TriageService.check_symptoms(
        db, caller.user_id, body.symptoms, age=body.age, gender=body.gender, medical_history=body.medical_history,
    )


async def book_with_hold(db: Session, caller: Caller, body: BookWithHoldRequest) -> Dict[str, Any]:
    if body.action == "hold":
        return await BookingService.create_hold(
            db,
            patient_id=caller.user_id,
            specialist_id=body.specialist_id,
            scheduled_at=naive_utc(body.scheduled_at),
            duration_minutes=body.duration_minutes,
            consultation_type=body.consultation_type,
        )
    if body.action == "commit":
        return await BookingService.commit_hold(db, body.appointment_id, caller.user_id, reason=body.reason)
    return await BookingService.release_hold(db, body.appointment_id, caller.user_id)


async def coordinate_group_booking(db: Session, caller: Caller, body: GroupBookingRequest) -> Dict[str, Any]:
    if body.action == "find_slots":
        return BookingService.find_group_slots(
            db, caller.user_id, body.specialist_ids, body.preferred_date, body.duration_minutes,
        )
    return await BookingService.confirm_group_booking(
        db, caller.user_id, body.session_id, naive_utc(body.slot.start), consultation_type=body.consultation_type,
    )


async def find_available_slots(db: Session, caller: Caller, body: FindSlotsRequest) -> Dict[str, Any]:
    start = body.start_date or body.date
    end = body.end_date or start
    return SlotService.find_available_slots(db, body.specialist_id, start, end, body.duration_minutes)


async def constraint_search(db: Session, caller: Caller, body: ConstraintSearchRequest) -> Dict[str, Any]:
    return ConstraintSearchService.search(
        db,
        latitude=body.latitude,
        longitude=body.longitude,
        specialty=body.specialty,
        language=body.language,
        max_distance=body.max_distance,
        require_availability=body.require_availability,
    )


async def apply_to_shift(db: Session, caller: Caller, body: ApplyToShiftRequest) -> Dict[str, Any]:
    return await ShiftService.apply(db, caller.user_id, body.shift_id, cover_note=body.cover_note)


async def generate_export(db: Session, caller: Caller, body: ExportRequest) -> Dict[str, Any]:
    job = ExportService.generate(db, caller.user_id, body.export_type, background=body.background)
    return {"job": job, "downloadUrl": job.get("download_url")}


async def generate_hipaa_audit(db: Session, caller: Caller, body: HipaaAuditRequest) -> Dict[str, Any]:
    if not caller.is_admin:
        raise ForbiddenError("Admin access required")
    return ComplianceService.generate_hipaa_audit(
        db, caller.user_id, body.start_date, body.end_date,
        filter_user=body.filter_user, filter_action=body.filter_action,
    )


FUNCTIONS: Dict[str, RemoteFunction] = {
    f.name: f
    for f in (
        RemoteFunction("manage-work-queue", WorkQueueRequest, manage_work_queue),
        RemoteFunction("ai-work-queue-prioritize", PrioritizeRequest, prioritize_work_queue),
        RemoteFunction("smart-specialist-matcher", SpecialistMatchRequest, smart_specialist_matcher),
        RemoteFunction("ai-symptom-check", SymptomCheckRequest, ai_symptom_check),
        RemoteFunction("book-with-hold", BookWithHoldRequest, book_with_hold),
        RemoteFunction("coordinate-group-booking", GroupBookingRequest, coordinate_group_booking),
        RemoteFunction("find-available-slots", FindSlotsRequest, find_available_slots),
        RemoteFunction("constraint-search", ConstraintSearchRequest, constraint_search),
        RemoteFunction("apply-to-shift", ApplyToShiftRequest, apply_to_shift),
        RemoteFunction("generate-export", ExportRequest, generate_export),
        RemoteFunction("generate-hipaa-audit", HipaaAuditRequest, generate_hipaa_audit),
    )
}


async def invoke(db: Session, caller: Caller, name: str, payload: Any) -> Dict[str, Any]:
    """Validate `payload` against the function's model and run it.

    Raises NotFoundError for unknown names and ValueError for invalid bodies.
    """
    function = FUNCTIONS.get(name)
    if function is None:
        raise NotFoundError("Function not found")
    try:
        body = function.request_model.model_validate(payload if payload is not None else {})
    except ValidationError as e:
        raise ValueError(validation_message(e))

    logger.info(f"Invoking function {name} for user {caller.user_id}")
    return await function.handler(db, caller, body)
