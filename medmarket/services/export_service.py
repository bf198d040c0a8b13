import csv
import io
import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
import logging
import uuid

from sqlalchemy.orm import Session

from medmarket.core.config import settings
from medmarket.models.appointment import Appointment
from medmarket.models.base import row_to_dict
from medmarket.models.compliance import DataExportJob
from medmarket.models.medical import MedicalRecord, Prescription
from medmarket.models.user import User
from medmarket.services.audit_service import AuditService
from medmarket.services.storage_service import StorageService
from medmarket.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

EXPORT_TYPES = ("fhir_bundle", "appointments_csv")

# appointments.status -> FHIR Appointment.status
FHIR_APPOINTMENT_STATUS = {
    "hold": "proposed",
    "pending": "pending",
    "confirmed": "booked",
    "completed": "fulfilled",
    "cancelled": "cancelled",
    "no_show": "noshow",
}


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() + "Z" if value else None


def build_fhir_bundle(
    user: User,
    records: List[MedicalRecord],
    appointments: List[Appointment],
    prescriptions: List[Prescription],
) -> Dict[str, Any]:
    """FHIR R4 collection Bundle of the patient's records, appointments and prescriptions."""
    patient_ref = {"reference": f"Patient/{user.id}", "display": user.full_name}
    entries = [{
        "fullUrl": f"urn:uuid:patient-{user.id}",
        "resource": {
            "resourceType": "Patient",
            "id": str(user.id),
            "name": [{"family": user.last_name, "given": [user.first_name]}],
            "telecom": [t for t in (
                {"system": "email", "value": user.email},
                {"system": "phone", "value": user.phone} if user.phone else None,
            ) if t],
            "birthDate": user.date_of_birth.isoformat() if user.date_of_birth else None,
        },
    }]

    for record in records:
        entries.append({
            "fullUrl": f"urn:uuid:document-{record.id}",
            "resource": {
                "resourceType": "DocumentReference",
                "id": str(record.id),
                "status": "current",
                "type": {"text": record.record_type},
                "description": record.title,
                "subject": patient_ref,
                "date": _iso(record.created_at),
                "content": [{
                    "attachment": {
                        "contentType": record.content_type,
                        "url": record.file_url,
                        "title": record.title,
                    },
                }],
            },
        })

    for appt in appointments:
        end = appt.scheduled_at + timedelta(minutes=appt.duration_minutes or 30)
        entries.append({
            "fullUrl": f"urn:uuid:appointment-{appt.id}",
            "resource": {
                "resourceType": "Appointment",
                "id": str(appt.id),
                "status": FHIR_APPOINTMENT_STATUS.get(appt.status, "pending"),
                "description": appt.reason,
                "start": _iso(appt.scheduled_at),
                "end": _iso(end),
                "minutesDuration": appt.duration_minutes,
                "participant": [
                    {"actor": patient_ref, "status": "accepted"},
                    {"actor": {"reference": f"Practitioner/{appt.specialist_id}"}, "status": "accepted"},
                ],
            },
        })

    for rx in prescriptions:
        entries.append({
            "fullUrl": f"urn:uuid:medication-request-{rx.id}",
            "resource": {
                "resourceType": "MedicationRequest",
                "id": str(rx.id),
                "status": "active" if rx.status == "active" else "completed",
                "intent": "order",
                "medicationCodeableConcept": {"text": rx.medication_name},
                "subject": patient_ref,
                "authoredOn": _iso(rx.created_at),
                "dosageInstruction": [{
                    "text": " ".join(p for p in (rx.dosage, rx.frequency, rx.instructions) if p),
                }],
            },
        })

    return {
        "resourceType": "Bundle",
        "id": str(uuid.uuid4()),
        "type": "collection",
        "timestamp": _iso(datetime.utcnow()),
        "total": len(entries),
        "entry": entries,
    }


def appointments_csv(appointments: List[Appointment]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["id", "specialist_id", "scheduled_at", "duration_minutes", "status", "consultation_type", "fee", "currency"])
    for a in appointments:
        writer.writerow([
            a.id, a.specialist_id, a.scheduled_at.isoformat(), a.duration_minutes,
            a.status, a.consultation_type, a.fee, a.currency,
        ])
    return buffer.getvalue()


class ExportService:

    @staticmethod
    def create_job(db: Session, user_id: int, export_type: str) -> DataExportJob:
        if export_type not in EXPORT_TYPES:
            raise ValueError(f"exportType must be one of: {', '.join(EXPORT_TYPES)}")
        job = DataExportJob(user_id=user_id, export_type=export_type, status="processing")
        db.add(job)
        db.commit()
        db.refresh(job)
        return job

    @staticmethod
    def run_job(db: Session, job_id: int) -> Dict[str, Any]:
        """Build, upload and sign the export. Failures are recorded on the job."""
        job = db.query(DataExportJob).filter(DataExportJob.id == job_id).first()
        if not job:
            raise NotFoundError("Export job not found")

        try:
            user = db.query(User).filter(User.id == job.user_id).first()
            if not user:
                raise ValueError("User not found")
            appointments = (
                db.query(Appointment)
                .filter(Appointment.patient_id == user.id, Appointment.status != "hold")
                .order_by(Appointment.scheduled_at.asc())
                .all()
            )
            stamp = datetime.utcnow().strftime("%Y%m%d%H%M%S")

            if job.export_type == "fhir_bundle":
                records = db.query(MedicalRecord).filter(MedicalRecord.patient_id == user.id).all()
                prescriptions = db.query(Prescription).filter(Prescription.patient_id == user.id).all()
                bundle = build_fhir_bundle(user, records, appointments, prescriptions)
                payload = json.dumps(bundle, indent=2).encode("utf-8")
                path = f"{user.id}/fhir_bundle_{stamp}.json"
                content_type = "application/fhir+json"
            else:
                payload = appointments_csv(appointments).encode("utf-8")
                path = f"{user.id}/appointments_{stamp}.csv"
                content_type = "text/csv"

            StorageService.put_bytes("exports", path, payload, content_type)
            ttl = timedelta(days=settings.EXPORT_URL_TTL_DAYS)
            job.file_path = f"exports/{path}"
            job.download_url = StorageService.signed_url("exports", path, ttl)
            job.expires_at = datetime.utcnow() + ttl
            job.status = "completed"
            job.completed_at = datetime.utcnow()
            db.commit()
            AuditService.log(db, user.id, "export_data", "data_export_jobs", job.id, details={"export_type": job.export_type})
            logger.info(f"Export job {job.id} completed ({len(payload)} bytes)")

        except Exception as e:
            db.rollback()
            job.status = "failed"
            job.error_message = str(e)
            db.commit()
            logger.error(f"Export job {job.id} failed: {e}")

        db.refresh(job)
        return row_to_dict(job)

    @staticmethod
    def generate(db: Session, user_id: int, export_type: str = "fhir_bundle", background: bool = False) -> Dict[str, Any]:
        job = ExportService.create_job(db, user_id, export_type)
        if background:
            from medmarket.tasks.export_tasks import run_export_job

            run_export_job.delay(job.id)
            return row_to_dict(job)
        return ExportService.run_job(db, job.id)

    @staticmethod
    def list_jobs(db: Session, user_id: int) -> List[Dict[str, Any]]:
        jobs = (
            db.query(DataExportJob)
            .filter(DataExportJob.user_id == user_id)
            .order_by(DataExportJob.created_at.desc())
            .all()
        )
        return [row_to_dict(j) for j in jobs]
