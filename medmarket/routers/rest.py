from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_user
from medmarket.services.table_service import RESERVED_PARAMS, TableService

router = APIRouter(prefix="/rest", tags=["tables"])


def _filters(request: Request) -> Dict[str, str]:
    return {k: v for k, v in request.query_params.items() if k not in RESERVED_PARAMS}


@router.get("/{table}")
def select_rows(
    table: str,
    request: Request,
    order: Optional[str] = None,
    limit: Optional[int] = Query(None),
    offset: int = 0,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """
    Select rows. Filters are `column=op.value` query parameters,
    e.g. `?status=eq.pending&urgency=in.(urgent,high)&order=created_at.desc`.
    """
    caller = TableService.resolve_caller(db, current_user)
    try:
        return TableService.select(db, table, caller, _filters(request), order=order, limit=limit, offset=offset)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/{table}", status_code=201)
async def insert_rows(
    table: str,
    payload: Union[Dict[str, Any], List[Dict[str, Any]]] = Body(...),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    caller = TableService.resolve_caller(db, current_user)
    rows = payload if isinstance(payload, list) else [payload]
    try:
        return await TableService.insert(db, table, caller, rows)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/{table}")
async def update_rows(
    table: str,
    request: Request,
    changes: Dict[str, Any] = Body(...),
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    caller = TableService.resolve_caller(db, current_user)
    try:
        return await TableService.update(db, table, caller, _filters(request), changes)
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=400, detail=str(e))


@router.delete("/{table}")
async def delete_rows(
    table: str,
    request: Request,
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    caller = TableService.resolve_caller(db, current_user)
    try:
        return await TableService.delete(db, table, caller, _filters(request))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
