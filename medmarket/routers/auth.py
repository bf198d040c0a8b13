from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from medmarket.core.database import get_db
from medmarket.dependencies.auth import get_current_user
from medmarket.dependencies.rate_limit import rate_limit
from medmarket.schemas.auth import LoginRequest, RefreshTokenRequest, RegisterRequest, UserResponse
from medmarket.services.audit_service import AuditService
from medmarket.services.auth_service import AuthService
from medmarket.utils.helpers import get_client_ip

router = APIRouter(prefix="/auth", tags=["authentication"])


@router.post("/register", status_code=201)
async def register(
    request: RegisterRequest,
    db: Session = Depends(get_db),
    _: None = Depends(rate_limit),
):
    """
    Email/password registration
    - Validate inputs
    - Create user and role profile
    """
    try:
        result = AuthService.register(
            db=db,
            email=request.email,
            password=request.password,
            first_name=request.first_name,
            last_name=request.last_name,
            user_type=request.user_type,
            phone=request.phone,
            preferred_language=request.preferred_language,
            specialties=request.specialties,
            languages=request.languages,
            clinic_name=request.clinic_name,
            clinic_type=request.clinic_type,
        )
        return {"success": True, "data": result}
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post("/login")
async def login(
    request: LoginRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    _: None = Depends(rate_limit),
):
    ip_address = get_client_ip(http_request)
    result = AuthService.login(
        db=db,
        email=request.email,
        password=request.password,
        ip_address=ip_address,
        user_agent=http_request.headers.get("user-agent", ""),
    )
    AuditService.log(db, result["user_id"], "login", "users", result["user_id"], ip_address=ip_address)
    return {"success": True, "data": result}


@router.post("/refresh")
async def refresh(
    request: RefreshTokenRequest,
    http_request: Request,
    db: Session = Depends(get_db),
    _: None = Depends(rate_limit),
):
    """Rotate the refresh token and issue a new access token."""
    result = AuthService.refresh_tokens(
        db=db,
        refresh_token=request.refresh_token,
        ip_address=get_client_ip(http_request),
        user_agent=http_request.headers.get("user-agent", ""),
    )
    return {"success": True, "data": result}


@router.post("/logout")
async def logout(
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    AuthService.logout(db, current_user["sub"], current_user["jti"])
    return {"success": True, "data": {"message": "Logged out"}}


@router.get("/me")
async def me(
    current_user=Depends(get_current_user),
    db: Session = Depends(get_db),
):
    user = AuthService.get_user(db, current_user["sub"])
    return {"success": True, "data": UserResponse.model_validate(user).model_dump(mode="json")}
