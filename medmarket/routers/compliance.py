from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_admin, get_current_user
from medmarket.schemas.functions import ExportRequest, HipaaAuditRequest
from medmarket.services.compliance_service import ComplianceService
from medmarket.services.export_service import ExportService

router = APIRouter(tags=["compliance"])


@router.get("/exports")
async def list_exports(
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return {"success": True, "data": ExportService.list_jobs(db, current_user["sub"])}


@router.post("/exports", status_code=status.HTTP_201_CREATED)
async def create_export(
    payload: ExportRequest,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Export the caller's own records as a FHIR bundle or appointments CSV."""
    try:
        job = ExportService.generate(db, current_user["sub"], payload.export_type, background=payload.background)
        return {"success": True, "data": job}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/compliance/hipaa-audit")
async def hipaa_audit(
    payload: HipaaAuditRequest,
    current_user=Depends(get_current_admin),
    db: Session = Depends(get_db),
):
    try:
        result = ComplianceService.generate_hipaa_audit(
            db,
            current_user["sub"],
            payload.start_date,
            payload.end_date,
            filter_user=payload.filter_user,
            filter_action=payload.filter_action,
        )
        return {"success": True, "data": result}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
