from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_user
from medmarket.services import function_registry
from medmarket.services.table_service import TableService

router = APIRouter(prefix="/functions/v1", tags=["functions"])


@router.get("")
def list_functions(current_user=Depends(get_current_user)):
    return {"success": True, "data": sorted(function_registry.FUNCTIONS)}


@router.post("/{name}")
async def invoke_function(
    name: str,
    payload: Optional[Any] = Body(None),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Run a named function with a JSON body; the response is the function's payload."""
    caller = TableService.resolve_caller(db, current_user)
    try:
        return await function_registry.invoke(db, caller, name, payload)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))
