from sqlalchemy.orm import Session
from datetime import datetime, timedelta
from typing import Optional, List
import logging

from medmarket.models.user import User
from medmarket.models.session import UserSession
from medmarket.models.specialist import Specialist
from medmarket.models.clinic import Clinic
from medmarket.core.config import settings
from medmarket.core.security import (
    hash_password, verify_password, create_access_token,
    create_refresh_token, hash_token, decode_refresh_token,
)
from medmarket.utils.errors import (
    InvalidCredentialsError, UserNotFoundError, UserAlreadyExistsError, ForbiddenError,
)

logger = logging.getLogger(__name__)


class AuthService:

    @staticmethod
    def register(
        db: Session,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        user_type: str,
        phone: Optional[str] = None,
        preferred_language: str = "en",
        specialties: Optional[List[str]] = None,
        languages: Optional[List[str]] = None,
        clinic_name: Optional[str] = None,
        clinic_type: str = "physical",
    ) -> dict:
        """
        Create an account and its role profile.
        - Specialists get a Specialist row pending verification
        - Clinic admins get a Clinic when `clinic_name` is given
        """
        email = email.strip().lower()
        if db.query(User).filter(User.email == email).first():
            raise UserAlreadyExistsError("Email already registered")

        user = User(
            email=email,
            phone=phone,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
            user_type=user_type,
            status="active",
            preferred_language=preferred_language,
        )
        db.add(user)
        db.flush()

        if user_type == "specialist":
            db.add(Specialist(
                user_id=user.id,
                specialties=specialties or [],
                languages=languages or [preferred_language],
                verification_status="pending",
            ))
        elif user_type == "clinic_admin" and clinic_name:
            db.add(Clinic(owner_id=user.id, name=clinic_name, clinic_type=clinic_type))

        db.commit()
        db.refresh(user)
        logger.info(f"Registered {user_type} account {user.id}")

        return {
            "user_id": user.id,
            "email": user.email,
            "user_type": user.user_type,
            "message": "Account created. Please log in.",
        }

    @staticmethod
    def _issue_session(db: Session, user: User, ip_address: str, user_agent: str) -> dict:
        access_token, access_jti = create_access_token(
            user_id=user.id,
            email=user.email,
            user_type=user.user_type,
        )
        refresh_token, refresh_jti = create_refresh_token(user.id)

        now = datetime.utcnow()
        db.add(UserSession(
            user_id=user.id,
            token_jti=access_jti,
            refresh_jti=refresh_jti,
            refresh_token_hash=hash_token(refresh_token),
            ip_address=ip_address,
            user_agent=user_agent,
            expires_at=now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES),
            refresh_expires_at=now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS),
        ))
        user.last_login = now
        db.commit()

        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            "user_id": user.id,
            "email": user.email,
            "user_type": user.user_type,
            "first_name": user.first_name,
        }

    @staticmethod
    def login(db: Session, email: str, password: str, ip_address: str, user_agent: str = "") -> dict:
        """
        Email/password login
        - Verify credentials
        - Create access & refresh tokens
        - Track session
        """
        user = db.query(User).filter(User.email == email.strip().lower()).first()
        if not user or not verify_password(password, user.password_hash or ""):
            raise InvalidCredentialsError("Invalid email or password")

        if user.status == "suspended":
            raise ForbiddenError("Account suspended. Contact support.")

        return AuthService._issue_session(db, user, ip_address, user_agent)

    @staticmethod
    def refresh_tokens(db: Session, refresh_token: str, ip_address: str, user_agent: str = "") -> dict:
        """
        Refresh access token using a valid refresh token with rotation.
        A reused or expired refresh token revokes the whole session.
        """
        payload = decode_refresh_token(refresh_token)
        if not payload or not payload.get("jti"):
            raise InvalidCredentialsError("Invalid refresh token")

        user_id = int(payload.get("sub"))
        session = (
            db.query(UserSession)
            .filter(
                UserSession.user_id == user_id,
                UserSession.refresh_jti == payload["jti"],
                UserSession.is_revoked == False,  # noqa: E712
            )
            .first()
        )
        if not session:
            raise InvalidCredentialsError("Invalid or revoked refresh token")

        now = datetime.utcnow()
        if session.refresh_expires_at and session.refresh_expires_at < now:
            AuthService._revoke(db, session, "refresh_expired")
            raise InvalidCredentialsError("Refresh token expired")

        if session.refresh_token_hash != hash_token(refresh_token):
            AuthService._revoke(db, session, "refresh_mismatch")
            raise InvalidCredentialsError("Invalid refresh token")

        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFoundError("User not found")

        access_token, access_jti = create_access_token(
            user_id=user.id,
            email=user.email,
            user_type=user.user_type,
        )
        new_refresh_token, new_refresh_jti = create_refresh_token(user.id)

        session.token_jti = access_jti
        session.refresh_jti = new_refresh_jti
        session.refresh_token_hash = hash_token(new_refresh_token)
        session.refresh_expires_at = now + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)
        session.expires_at = now + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
        session.ip_address = ip_address
        session.user_agent = user_agent
        user.last_login = now
        db.commit()

        return {
            "access_token": access_token,
            "refresh_token": new_refresh_token,
            "token_type": "bearer",
            "expires_in": settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            "user_id": user.id,
            "email": user.email,
            "user_type": user.user_type,
            "first_name": user.first_name,
        }

    @staticmethod
    def _revoke(db: Session, session: UserSession, reason: str):
        session.is_revoked = True
        session.revoked_at = datetime.utcnow()
        session.revoked_reason = reason
        db.commit()

    @staticmethod
    def logout(db: Session, user_id: int, jti: str) -> bool:
        session = db.query(UserSession).filter(
            UserSession.user_id == user_id,
            UserSession.token_jti == jti,
        ).first()
        if not session:
            return False
        session.refresh_token_hash = ""
        AuthService._revoke(db, session, "logout")
        return True

    @staticmethod
    def get_user(db: Session, user_id: int) -> User:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            raise UserNotFoundError("User not found")
        return user
