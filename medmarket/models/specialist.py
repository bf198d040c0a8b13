from sqlalchemy import Column, Integer, String, Boolean, DateTime, Date, Time, Text, Float, ForeignKey, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from medmarket.core.database import Base


class Specialist(Base):
    __tablename__ = "specialists"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    clinic_id = Column(Integer, ForeignKey("clinics.id", ondelete="SET NULL"), nullable=True, index=True)

    specialties = Column(JSON, default=list)
    languages = Column(JSON, default=lambda: ["en"])
    bio = Column(Text, nullable=True)
    years_experience = Column(Integer, nullable=True)
    consultation_fee = Column(Float, nullable=True)
    currency = Column(String(3), default="USD")

    average_rating = Column(Float, default=0.0)
    total_reviews = Column(Integer, default=0)
    accepts_insurance = Column(Boolean, default=False)
    is_accepting_patients = Column(Boolean, default=True, index=True)
    verification_status = Column(String(50), default="pending", index=True)  # pending | verified | rejected

    city = Column(String(100), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user = relationship("User", back_populates="specialist")
    clinic = relationship("Clinic", back_populates="specialists")
    schedules = relationship("AvailabilitySchedule", back_populates="specialist", cascade="all, delete-orphan")
    credentials = relationship("CredentialVerification", back_populates="specialist", cascade="all, delete-orphan")

    @property
    def display_name(self) -> str:
        return self.user.full_name if self.user else f"Specialist {self.id}"


class AvailabilitySchedule(Base):
    __tablename__ = "availability_schedules"

    id = Column(Integer, primary_key=True, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False, index=True)
    day_of_week = Column(Integer, nullable=False)  # 0 = Sunday
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    specialist = relationship("Specialist", back_populates="schedules")


class CredentialVerification(Base):
    __tablename__ = "credential_verifications"

    id = Column(Integer, primary_key=True, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False, index=True)
    credential_type = Column(String(100), nullable=False)
    credential_number = Column(String(100), nullable=True)
    status = Column(String(50), default="pending")  # pending | verified | rejected
    expiry_date = Column(Date, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    specialist = relationship("Specialist", back_populates="credentials")
