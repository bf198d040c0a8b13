from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, Float, Text
from sqlalchemy.orm import relationship, validates
from datetime import datetime
from medmarket.core.database import Base


class User(Base):
    """Account and profile row. Patients are users with `user_type == "patient"`."""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    phone = Column(String(20), index=True, nullable=True)
    first_name = Column(String(100))
    last_name = Column(String(100))
    password_hash = Column(String(255), nullable=True)

    # Profile
    avatar_url = Column(Text, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    gender = Column(String(20), nullable=True)
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)
    preferred_language = Column(String(10), default="en")
    insurance_provider = Column(String(255), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Account status
    user_type = Column(String(50), index=True, nullable=False)
    status = Column(String(50), default="active", index=True)
    email_verified = Column(Boolean, default=False)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    last_login = Column(DateTime, nullable=True)

    specialist = relationship("Specialist", back_populates="user", uselist=False)
    sessions = relationship("UserSession", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User {self.email}>"

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    @validates("phone")
    def normalize_phone(self, key, value):
        return value or None

    @validates("email")
    def normalize_email(self, key, value):
        return value.strip().lower() if value else value
