from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_user
from medmarket.services.csv_service import CsvService
from medmarket.services.table_service import TableService

router = APIRouter(prefix="/data", tags=["data"])


@router.post("/import/{entity}")
async def import_csv(
    entity: str,
    file: UploadFile = File(...),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    caller = TableService.resolve_caller(db, current_user)
    raw = await file.read()
    await file.close()
    try:
        result = CsvService.import_csv(db, caller, entity, raw.decode("utf-8-sig"), file_name=file.filename)
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="CSV file must be UTF-8 encoded")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": True, "data": result}


@router.get("/export/{entity}")
def export_csv(
    entity: str,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    caller = TableService.resolve_caller(db, current_user)
    rows = CsvService.export_rows(db, caller, entity)
    return StreamingResponse(
        CsvService.iter_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{entity}_export.csv"'},
    )
