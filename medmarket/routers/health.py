from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.orm import Session

from medmarket.core.config import settings
from medmarket.core.database import get_db

router = APIRouter(tags=["health"])


@router.get("/health")
def health(db: Session = Depends(get_db)):
    """Liveness plus a database round-trip."""
    db.execute(text("SELECT 1"))
    return {"status": "ok", "app": settings.APP_NAME, "env": settings.ENV}
