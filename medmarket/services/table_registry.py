"""Tables exposed through the generic table API and realtime channels.

Each entry states who may see and change rows:

- ``owner_columns``: user-id columns; a row belongs to every user named in them.
- ``specialist_column``: a specialists.id column; the row also belongs to that
  specialist's user.
- ``public_read``: any authenticated user may read every row.
Admins bypass all checks. Tables with no owner column are admin-writable only;
clinic-scoped writes (shifts, queues, media) go through their own services.
"""
from dataclasses import dataclass
from typing import Optional

from medmarket.models.user import User
from medmarket.models.clinic import Clinic, ClinicMedia
from medmarket.models.specialist import Specialist, AvailabilitySchedule, CredentialVerification
from medmarket.models.appointment import Appointment, GroupBookingSession
from medmarket.models.work_queue import WorkQueue, WorkQueueItem, EveningLoadMetric
from medmarket.models.shift import ShiftListing, ShiftApplication, ShiftAssignment
from medmarket.models.medical import MedicalRecord, Prescription
from medmarket.models.review import Review, Message
from medmarket.models.notification import Notification
from medmarket.models.compliance import (
    SecurityAuditLog, LegalArchive, Activity, DataExportJob, SymptomCheck,
)


@dataclass(frozen=True)
class TableSpec:
    name: str
    model: type
    owner_columns: tuple = ()
    specialist_column: Optional[str] = None
    public_read: bool = False
    writable: bool = True
    hidden_columns: tuple = ()
    readonly_columns: tuple = ("id", "created_at", "updated_at")
    audit_action: Optional[str] = None

    @property
    def is_owned(self) -> bool:
        return bool(self.owner_columns or self.specialist_column)


_SPECS = [
    TableSpec(
        "profiles", User,
        owner_columns=("id",),
        hidden_columns=("password_hash",),
        readonly_columns=("id", "created_at", "updated_at", "user_type", "status", "email_verified", "last_login"),
        audit_action="view_patient_record",
    ),
    TableSpec("clinics", Clinic, owner_columns=("owner_id",), public_read=True),
    TableSpec("clinic_media", ClinicMedia, public_read=True),
    TableSpec("specialists", Specialist, owner_columns=("user_id",), public_read=True,
              readonly_columns=("id", "created_at", "updated_at", "average_rating", "total_reviews", "verification_status")),
    TableSpec("availability_schedules", AvailabilitySchedule, specialist_column="specialist_id", public_read=True),
    TableSpec("credential_verifications", CredentialVerification, specialist_column="specialist_id",
              readonly_columns=("id", "created_at", "status", "verified_at")),
    TableSpec("appointments", Appointment, owner_columns=("patient_id",), specialist_column="specialist_id",
              audit_action="update_appointment"),
    TableSpec("group_booking_sessions", GroupBookingSession, owner_columns=("patient_id",), writable=False),
    TableSpec("work_queues", WorkQueue, public_read=True),
    TableSpec("work_queue_items", WorkQueueItem, public_read=True),
    TableSpec("evening_load_metrics", EveningLoadMetric, owner_columns=("user_id",), writable=False),
    TableSpec("shift_listings", ShiftListing, public_read=True),
    TableSpec("shift_applications", ShiftApplication, specialist_column="specialist_id", writable=False),
    TableSpec("shift_assignments", ShiftAssignment, specialist_column="specialist_id", writable=False),
    TableSpec("medical_records", MedicalRecord, owner_columns=("patient_id",), specialist_column="specialist_id",
              audit_action="view_patient_record"),
    TableSpec("prescriptions", Prescription, owner_columns=("patient_id",), specialist_column="specialist_id",
              audit_action="modify_prescription"),
    TableSpec("reviews", Review, owner_columns=("patient_id",), public_read=True, writable=False),
    TableSpec("messages", Message, owner_columns=("sender_id", "recipient_id")),
    TableSpec("notifications", Notification, owner_columns=("user_id",)),
    TableSpec("activities", Activity, owner_columns=("user_id",), writable=False),
    TableSpec("data_export_jobs", DataExportJob, owner_columns=("user_id",), writable=False),
    TableSpec("symptom_checks", SymptomCheck, owner_columns=("user_id",), writable=False),
    TableSpec("security_audit_log", SecurityAuditLog, writable=False),
    TableSpec("legal_archives", LegalArchive, writable=False),
]

TABLES = {spec.name: spec for spec in _SPECS}


def get_table(name: str) -> Optional[TableSpec]:
    return TABLES.get(name)


@dataclass(frozen=True)
class Caller:
    """Who is asking: the authenticated user and, for specialists, their profile id."""
    user_id: int
    user_type: str
    specialist_id: Optional[int] = None

    @property
    def is_admin(self) -> bool:
        return self.user_type == "admin"


def owns_row(spec: TableSpec, row: dict, caller: Caller) -> bool:
    for column in spec.owner_columns:
        if row.get(column) is not None and int(row[column]) == caller.user_id:
            return True
    if spec.specialist_column and caller.specialist_id is not None:
        value = row.get(spec.specialist_column)
        if value is not None and int(value) == caller.specialist_id:
            return True
    return False


def row_visible(spec: TableSpec, row: dict, caller: Caller) -> bool:
    if caller.is_admin or spec.public_read:
        return True
    return owns_row(spec, row, caller)
