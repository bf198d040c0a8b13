from pydantic import BaseModel, EmailStr, Field, field_validator, ConfigDict
from typing import Optional, List
from datetime import datetime

from medmarket.utils.validators import validate_password_strength


class RegisterRequest(BaseModel):
    """Email/password registration request"""
    email: EmailStr
    password: str = Field(..., min_length=8)
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    phone: Optional[str] = Field(None, max_length=20)
    user_type: str = Field("patient", pattern="^(patient|specialist|clinic_admin)$")
    preferred_language: str = Field("en", min_length=2, max_length=10)
    # specialist sign-up
    specialties: List[str] = Field(default_factory=list)
    languages: List[str] = Field(default_factory=list)
    # clinic sign-up
    clinic_name: Optional[str] = None
    clinic_type: str = Field("physical", pattern="^(physical|virtual)$")

    @field_validator("password")
    def password_strength(cls, v):
        return validate_password_strength(v)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshTokenRequest(BaseModel):
    refresh_token: str


class TokenResponse(BaseModel):
    """Token response (access + refresh)"""
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds
    user_id: int
    email: str
    user_type: str
    first_name: Optional[str] = None


class UserResponse(BaseModel):
    id: int
    email: str
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    user_type: str
    status: str
    preferred_language: Optional[str] = None
    insurance_provider: Optional[str] = None
    city: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)
