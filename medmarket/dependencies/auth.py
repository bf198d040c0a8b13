from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from datetime import datetime
from medmarket.core.constants import UserRole
from medmarket.core.database import get_db
from medmarket.core.security import decode_token
from medmarket.models.user import User
from medmarket.models.session import UserSession

security = HTTPBearer()


def get_current_user_from_token(token: str, db: Session) -> dict:
    """
    Verify JWT token string (for WebSockets) and return current user claims.
    """
    payload = decode_token(token)
    if payload is None or not payload.get("sub") or not payload.get("jti"):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = int(payload.get("sub"))
    jti = payload.get("jti")

    session = db.query(UserSession).filter(
        UserSession.user_id == user_id,
        UserSession.token_jti == jti,
        UserSession.is_revoked == False,  # noqa: E712
    ).first()
    if not session:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token revoked or invalid")

    if session.expires_at and session.expires_at < datetime.utcnow():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    if user.status == "suspended":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account suspended")

    return {**payload, "sub": user_id, "jti": jti}


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
):
    """Verify JWT token and return current user"""
    return get_current_user_from_token(credentials.credentials, db)


def _require_role(current_user: dict, *roles: str, detail: str):
    if current_user.get("user_type") not in roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
    return current_user


async def get_current_patient(current_user=Depends(get_current_user)):
    """Verify current user is a patient"""
    return _require_role(current_user, UserRole.PATIENT, detail="Only patients can access this resource")


async def get_current_specialist(current_user=Depends(get_current_user)):
    """Verify current user is a specialist"""
    return _require_role(current_user, UserRole.SPECIALIST, detail="Only specialists can access this resource")


async def get_current_clinic_admin(current_user=Depends(get_current_user)):
    """Clinic administrators, or platform admins acting on their behalf"""
    return _require_role(current_user, UserRole.CLINIC_ADMIN, UserRole.ADMIN, detail="Clinic admin access required")


async def get_current_admin(current_user=Depends(get_current_user)):
    """Verify current user is an admin"""
    return _require_role(current_user, UserRole.ADMIN, detail="Admin access required")
