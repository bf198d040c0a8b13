"""Bearer-token screening for every HTTP request.

Malformed, revoked or expired session tokens are turned away before routing,
and the caller's id and role are attached to `request.state` for request
logging. Role checks and row scoping stay in the route dependencies.
"""
from datetime import datetime
from starlette.requests import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from medmarket.core.security import decode_token
from medmarket.core import database
from medmarket.models.session import UserSession
from medmarket.models.user import User

# Signed links carry their own token; the rest need no caller at all
OPEN_PATH_PREFIXES = ("/health", "/docs", "/redoc", "/openapi.json", "/storage/signed/", "/storage/public/")


def _reject(detail: str) -> JSONResponse:
    return JSONResponse(status_code=401, content={"detail": detail})


class JWTMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request.state.user_id = None
        request.state.user_type = None

        auth_header = request.headers.get("authorization")
        if not auth_header or request.url.path.startswith(OPEN_PATH_PREFIXES):
            return await call_next(request)

        scheme, _, token = auth_header.partition(" ")
        if scheme.lower() != "bearer" or not token:
            return _reject("Invalid authorization header")

        payload = decode_token(token)
        if not payload or payload.get("type", "access") != "access":
            return _reject("Invalid token")
        if not payload.get("jti") or not payload.get("sub"):
            return _reject("Invalid token payload")

        user_id = int(payload["sub"])
        db = database.SessionLocal()
        try:
            row = (
                db.query(UserSession, User.status)
                .join(User, User.id == UserSession.user_id)
                .filter(
                    UserSession.user_id == user_id,
                    UserSession.token_jti == payload["jti"],
                    UserSession.is_revoked == False,  # noqa: E712
                )
                .first()
            )
        finally:
            db.close()

        if not row:
            return _reject("Token revoked or invalid")
        session, user_status = row
        if session.expires_at and session.expires_at < datetime.utcnow():
            return _reject("Token expired")
        if user_status == "suspended":
            return JSONResponse(status_code=403, content={"detail": "Account suspended"})

        request.state.auth = payload
        request.state.user_id = user_id
        request.state.user_type = payload.get("user_type")
        return await call_next(request)
