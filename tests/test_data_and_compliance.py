import io
import json
from datetime import date, datetime, timedelta
from pathlib import Path

import pytest

from medmarket.core.config import settings
from medmarket.core.security import create_storage_token
from medmarket.models.appointment import Appointment
from medmarket.models.compliance import LegalArchive, SecurityAuditLog
from medmarket.models.medical import MedicalRecord, Prescription
from medmarket.models.user import User
from medmarket.services.compliance_service import ComplianceService, risk_level
from medmarket.services.csv_service import CsvService, parse_csv
from medmarket.services.export_service import ExportService
from medmarket.services.table_registry import Caller
from medmarket.utils.errors import ForbiddenError, NotFoundError


def _local_url(url: str) -> str:
    return url.replace(settings.PUBLIC_BASE_URL, "")


@pytest.fixture
def patient_with_history(db_session, builders):
    patient = builders.user(db_session, "patient", phone="+15550001111")
    specialist = builders.specialist(db_session)
    db_session.add_all([
        Appointment(
            patient_id=patient.id, specialist_id=specialist.id,
            scheduled_at=datetime(2026, 3, 2, 10, 0), duration_minutes=30, status="confirmed",
        ),
        Appointment(
            patient_id=patient.id, specialist_id=specialist.id,
            scheduled_at=datetime(2026, 3, 9, 10, 0), duration_minutes=30, status="hold",
            hold_expires_at=datetime.utcnow() + timedelta(minutes=1),
        ),
        MedicalRecord(patient_id=patient.id, title="Blood panel", record_type="lab_result", content_type="application/pdf"),
        Prescription(patient_id=patient.id, medication_name="Amoxicillin", dosage="500mg", frequency="3x daily"),
    ])
    db_session.commit()
    return patient


# ============================================================================
# Export
# ============================================================================

@pytest.mark.asyncio
async def test_fhir_export_is_stored_and_signed(async_client, db_session, patient_with_history):
    job = ExportService.generate(db_session, patient_with_history.id, "fhir_bundle")
    assert job["status"] == "completed"
    assert job["download_url"].startswith(f"{settings.PUBLIC_BASE_URL}/storage/signed/")

    resp = await async_client.get(_local_url(job["download_url"]))
    assert resp.status_code == 200
    bundle = json.loads(resp.content)

    assert bundle["resourceType"] == "Bundle"
    assert bundle["type"] == "collection"
    kinds = [e["resource"]["resourceType"] for e in bundle["entry"]]
    # hold appointments are not part of the record
    assert kinds == ["Patient", "DocumentReference", "Appointment", "MedicationRequest"]
    assert bundle["entry"][2]["resource"]["status"] == "booked"
    assert bundle["entry"][3]["resource"]["dosageInstruction"][0]["text"] == "500mg 3x daily"

    audit = db_session.query(SecurityAuditLog).filter(SecurityAuditLog.action == "export_data").one()
    assert audit.user_id == patient_with_history.id


def test_appointments_csv_export(db_session, patient_with_history):
    job = ExportService.generate(db_session, patient_with_history.id, "appointments_csv")
    path = Path(settings.UPLOAD_DIR) / job["file_path"]
    lines = path.read_text().splitlines()
    assert lines[0].startswith("id,specialist_id,scheduled_at")
    assert len(lines) == 2


def test_unknown_export_type(db_session, builders):
    user = builders.user(db_session)
    with pytest.raises(ValueError, match="exportType must be one of"):
        ExportService.generate(db_session, user.id, "pdf")


@pytest.mark.asyncio
async def test_background_export_is_queued(async_client, db_session, builders, mock_celery_tasks):
    user = builders.user(db_session)
    headers = builders.headers(db_session, user)

    resp = await async_client.post("/exports", json={"exportType": "fhir_bundle", "background": True}, headers=headers)
    assert resp.status_code == 201
    job = resp.json()["data"]
    assert job["status"] == "processing"
    mock_celery_tasks["export"].delay.assert_called_once_with(job["id"])

    resp = await async_client.get("/exports", headers=headers)
    assert [j["id"] for j in resp.json()["data"]] == [job["id"]]


# ============================================================================
# HIPAA audit
# ============================================================================

def _log(db, user_id, action, at):
    db.add(SecurityAuditLog(user_id=user_id, action=action, created_at=at))


def test_risk_levels():
    assert risk_level("delete_patient_record") == "high"
    assert risk_level("export_data") == "medium"
    assert risk_level("login") == "low"


def test_hipaa_audit_summary_is_archived(db_session, builders):
    admin = builders.user(db_session, "admin")
    nurse = builders.user(db_session, "specialist")
    day = datetime(2026, 1, 15)
    _log(db_session, nurse.id, "view_patient_record", day.replace(hour=2))
    _log(db_session, nurse.id, "delete_patient_record", day.replace(hour=10))
    _log(db_session, admin.id, "login", day.replace(hour=10, minute=30))
    _log(db_session, admin.id, "login", day - timedelta(days=3))
    db_session.commit()

    result = ComplianceService.generate_hipaa_audit(db_session, admin.id, date(2026, 1, 15), date(2026, 1, 15))
    summary = result["report"]["summary"]

    assert summary["totalEvents"] == 3
    assert summary["highRiskEvents"] == 1
    assert summary["mediumRiskEvents"] == 1
    assert summary["lowRiskEvents"] == 1
    assert summary["uniqueUsers"] == 2
    assert summary["accessPatterns"]["afterHoursAccess"] == 1
    assert summary["accessPatterns"]["peakAccessHour"] == 10
    assert summary["accessPatterns"]["suspiciousUsers"] == []

    archive = db_session.get(LegalArchive, result["archiveId"])
    assert archive.archive_type == "hipaa_audit"
    assert len(archive.content["logs"]) == 3

    filtered = ComplianceService.generate_hipaa_audit(
        db_session, admin.id, date(2026, 1, 15), date(2026, 1, 15), filter_user=nurse.id,
    )
    assert filtered["report"]["summary"]["totalEvents"] == 2


def test_hipaa_audit_rejects_reversed_period(db_session, builders):
    admin = builders.user(db_session, "admin")
    with pytest.raises(ValueError):
        ComplianceService.generate_hipaa_audit(db_session, admin.id, date(2026, 2, 1), date(2026, 1, 1))


@pytest.mark.asyncio
async def test_hipaa_audit_is_admin_only(async_client, db_session, builders):
    patient = builders.user(db_session)
    admin = builders.user(db_session, "admin")
    body = {"startDate": "2026-01-01", "endDate": "2026-01-31"}

    resp = await async_client.post("/functions/v1/generate-hipaa-audit", json=body, headers=builders.headers(db_session, patient))
    assert resp.status_code == 403
    assert resp.json() == {"detail": "Admin access required"}

    resp = await async_client.post("/compliance/hipaa-audit", json=body, headers=builders.headers(db_session, patient))
    assert resp.status_code == 403

    resp = await async_client.post("/compliance/hipaa-audit", json=body, headers=builders.headers(db_session, admin))
    assert resp.status_code == 200
    assert "archiveId" in resp.json()["data"]


# ============================================================================
# CSV
# ============================================================================

def test_parse_csv_pads_short_rows():
    rows = parse_csv("email,first_name,city\n\na@example.com,Ann\nb@example.com,Ben,Oslo\n")
    assert rows == [
        {"email": "a@example.com", "first_name": "Ann", "city": ""},
        {"email": "b@example.com", "first_name": "Ben", "city": "Oslo"},
    ]
    assert parse_csv("email,first_name\n") == []


def test_import_patients_as_admin(db_session, builders):
    admin = builders.user(db_session, "admin")
    caller = Caller(user_id=admin.id, user_type="admin")
    text = "email,first_name,last_name,password_hash,id\nNEW@Example.com,Nia,Okafor,secret,999\n"

    result = CsvService.import_csv(db_session, caller, "patients", text, file_name="patients.csv")
    assert result == {"records_imported": 1}

    imported = db_session.query(User).filter(User.email == "new@example.com").one()
    assert imported.user_type == "patient"
    assert imported.password_hash is None
    assert imported.id != 999


def test_clinic_admin_cannot_import_privileged_columns(db_session, builders):
    from medmarket.models.specialist import Specialist

    owner = builders.user(db_session, "clinic_admin")
    clinic = builders.clinic(db_session, owner)
    doctor = builders.user(db_session, "specialist")
    caller = Caller(user_id=owner.id, user_type="clinic_admin")

    with pytest.raises(ForbiddenError, match="Column 'verification_status' is read-only"):
        CsvService.import_csv(
            db_session, caller, "specialists",
            f"user_id,clinic_id,verification_status,average_rating\n{doctor.id},{clinic.id},verified,5\n",
        )
    with pytest.raises(ForbiddenError, match="Column 'user_type' is read-only"):
        CsvService.import_csv(db_session, caller, "patients", "email,user_type\nboss@example.com,admin\n")
    assert db_session.query(Specialist).count() == 0
    assert db_session.query(User).filter(User.email == "boss@example.com").count() == 0

    # plain columns still import for the clinic's own rows
    CsvService.import_csv(db_session, caller, "specialists", f"user_id,clinic_id\n{doctor.id},{clinic.id}\n")
    imported = db_session.query(Specialist).one()
    assert imported.verification_status != "verified"


def test_patient_import_always_creates_patients(db_session, builders):
    admin = builders.user(db_session, "admin")
    caller = Caller(user_id=admin.id, user_type="admin")

    CsvService.import_csv(db_session, caller, "patients", "email,user_type\nroot@example.com,admin\n")
    assert db_session.query(User).filter(User.email == "root@example.com").one().user_type == "patient"


def test_failed_batch_rolls_back_whole_import(db_session, builders):
    from medmarket.models.compliance import Activity

    admin = builders.user(db_session, "admin")
    caller = Caller(user_id=admin.id, user_type="admin")
    lines = ["email,first_name"] + [f"bulk{i}@example.com,Row{i}" for i in range(100)]
    # row 101 repeats row 1, so the second batch fails
    lines.append("bulk0@example.com,Again")

    with pytest.raises(ValueError, match="Import failed in rows 101-101"):
        CsvService.import_csv(db_session, caller, "patients", "\n".join(lines))

    assert db_session.query(User).filter(User.email.like("bulk%")).count() == 0
    assert db_session.query(Activity).filter(Activity.activity_type == "csv_import").count() == 0


def test_import_list_columns_and_errors(db_session, builders):
    admin = builders.user(db_session, "admin")
    doctor = builders.user(db_session, "specialist")
    caller = Caller(user_id=admin.id, user_type="admin")

    CsvService.import_csv(
        db_session, caller, "specialists",
        f"user_id,specialties,languages\n{doctor.id},cardiology;neurology,en;fr\n",
    )
    db_session.refresh(doctor)
    assert doctor.specialist.specialties == ["cardiology", "neurology"]
    assert doctor.specialist.languages == ["en", "fr"]

    with pytest.raises(ValueError, match="No valid data found in CSV file"):
        CsvService.import_csv(db_session, caller, "patients", "unknown_column\nvalue\n")
    with pytest.raises(NotFoundError):
        CsvService.import_csv(db_session, caller, "invoices", "a\nb\n")
    with pytest.raises(ForbiddenError):
        CsvService.import_csv(db_session, Caller(user_id=doctor.id, user_type="patient"), "patients", "email\nx@y.z\n")


@pytest.mark.asyncio
async def test_csv_endpoints(async_client, db_session, builders):
    admin = builders.user(db_session, "admin")
    headers = builders.headers(db_session, admin)

    upload = {"file": ("patients.csv", io.BytesIO(b"email,first_name\nzed@example.com,Zed\n"), "text/csv")}
    resp = await async_client.post("/data/import/patients", files=upload, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["data"]["records_imported"] == 1

    resp = await async_client.get("/data/export/patients", headers=headers)
    assert resp.status_code == 200
    assert resp.headers["content-disposition"] == 'attachment; filename="patients_export.csv"'
    lines = resp.text.splitlines()
    assert "password_hash" not in lines[0]
    assert any("zed@example.com" in line for line in lines[1:])

    patient = builders.user(db_session)
    resp = await async_client.get("/data/export/appointments", headers=builders.headers(db_session, patient))
    assert resp.status_code == 404
    assert resp.json() == {"detail": "No data to export"}


# ============================================================================
# Storage
# ============================================================================

@pytest.mark.asyncio
async def test_medical_record_upload_and_signed_download(async_client, db_session, builders):
    patient = builders.user(db_session)
    headers = builders.headers(db_session, patient)

    resp = await async_client.post(
        "/storage/medical-records",
        files={"file": ("scan.pdf", io.BytesIO(b"%PDF-1.4 scan"), "application/pdf")},
        data={"title": "MRI scan", "record_type": "imaging"},
        headers=headers,
    )
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["size"] == 13
    assert data["record"]["patient_id"] == patient.id
    assert data["record"]["file_url"] == f"medical-records/{data['path']}"

    resp = await async_client.get(_local_url(data["url"]))
    assert resp.status_code == 200
    assert resp.content == b"%PDF-1.4 scan"

    record = db_session.query(MedicalRecord).one()
    assert record.title == "MRI scan"


@pytest.mark.asyncio
async def test_storage_errors(async_client, db_session, builders):
    headers = builders.headers(db_session, builders.user(db_session))

    resp = await async_client.post(
        "/storage/not-a-bucket", files={"file": ("a.txt", io.BytesIO(b"x"), "text/plain")}, headers=headers,
    )
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Bucket not found"}

    resp = await async_client.post(
        "/storage/avatars", files={"file": ("a.png", io.BytesIO(b""), "image/png")}, headers=headers,
    )
    assert resp.status_code == 400
    assert resp.json() == {"detail": "Uploaded file is empty"}

    expired = create_storage_token("exports", "1/file.json", timedelta(seconds=-5))
    resp = await async_client.get(f"/storage/signed/{expired}")
    assert resp.status_code == 410
    assert resp.json() == {"detail": "Signed URL has expired"}

    resp = await async_client.get("/storage/signed/garbage")
    assert resp.status_code == 401
    assert resp.json() == {"detail": "Invalid signed URL"}


@pytest.mark.asyncio
async def test_public_avatar_url(async_client, db_session, builders):
    headers = builders.headers(db_session, builders.user(db_session))
    resp = await async_client.post(
        "/storage/avatars", files={"file": ("me.png", io.BytesIO(b"\x89PNG"), "image/png")}, headers=headers,
    )
    url = resp.json()["data"]["url"]
    assert "/storage/public/avatars/" in url
    assert resp.json()["data"]["record"] is None

    resp = await async_client.get(_local_url(url))
    assert resp.status_code == 200
    assert resp.content == b"\x89PNG"


def _stored_files(bucket):
    root = Path(settings.UPLOAD_DIR) / bucket
    return sorted(p for p in root.rglob("*") if p.is_file()) if root.exists() else []


@pytest.mark.asyncio
async def test_rejected_clinic_media_upload_leaves_nothing_behind(async_client, db_session, builders):
    from medmarket.models.clinic import ClinicMedia

    owner = builders.user(db_session, "clinic_admin")
    clinic = builders.clinic(db_session, owner)
    outsider = builders.user(db_session, "clinic_admin")
    before = _stored_files("clinic-media")

    def photo():
        return {"file": ("front.jpg", io.BytesIO(b"\xff\xd8jpeg"), "image/jpeg")}

    resp = await async_client.post(
        "/storage/clinic-media", files=photo(), data={"clinic_id": str(clinic.id)},
        headers=builders.headers(db_session, outsider),
    )
    assert resp.status_code == 403
    assert resp.json() == {"detail": "You do not manage this clinic"}

    resp = await async_client.post(
        "/storage/clinic-media", files=photo(), headers=builders.headers(db_session, owner),
    )
    assert resp.status_code == 400
    assert resp.json() == {"detail": "clinic_id is required for clinic media"}
    assert _stored_files("clinic-media") == before

    resp = await async_client.post(
        "/storage/clinic-media", files=photo(), data={"clinic_id": str(clinic.id), "caption": "Lobby"},
        headers=builders.headers(db_session, owner),
    )
    assert resp.status_code == 201
    assert resp.json()["data"]["record"]["media_type"] == "photo"
    assert len(_stored_files("clinic-media")) == len(before) + 1
    assert db_session.query(ClinicMedia).count() == 1
