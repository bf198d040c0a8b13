from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_user
from medmarket.services.audit_service import AuditService
from medmarket.services.storage_service import StorageService
from medmarket.services.table_service import TableService

router = APIRouter(prefix="/storage", tags=["storage"])


@router.post("/{bucket}", status_code=201)
async def upload_object(
    bucket: str,
    file: UploadFile = File(...),
    folder: Optional[str] = Form(None),
    clinic_id: Optional[int] = Form(None),
    patient_id: Optional[int] = Form(None),
    title: Optional[str] = Form(None),
    caption: Optional[str] = Form(None),
    record_type: str = Form("document"),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Upload a file into a bucket
    - clinic-media uploads create a clinic_media row
    - medical-records uploads create a medical_records row
    """
    caller = TableService.resolve_caller(db, current_user)
    try:
        stored = await StorageService.store_upload(
            db, caller, bucket, file,
            folder=folder, clinic_id=clinic_id, patient_id=patient_id,
            title=title or file.filename, caption=caption, record_type=record_type,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if bucket == "medical-records" and stored["record"]:
        AuditService.log(db, caller.user_id, "access_sensitive_data", "medical_records", stored["record"]["id"])
    return {"success": True, "data": stored}


@router.get("/signed/{token}")
def download_signed(token: str):
    return FileResponse(StorageService.resolve_signed(token))


@router.get("/public/{bucket}/{path:path}")
def download_public(bucket: str, path: str):
    return FileResponse(StorageService.resolve_public(bucket, path))
