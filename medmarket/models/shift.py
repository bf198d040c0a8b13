"""Locum shift marketplace models."""
from sqlalchemy import Column, Integer, String, DateTime, Date, Time, Boolean, Float, Text, ForeignKey, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from medmarket.core.database import Base


class ShiftListing(Base):
    __tablename__ = "shift_listings"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    specialty_required = Column(String(100), nullable=True)
    required_licenses = Column(JSON, default=list)
    minimum_rating = Column(Float, default=0.0)
    urgency = Column(String(20), default="normal")  # normal | urgent | emergency
    shift_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)
    hourly_rate = Column(Float, nullable=True)
    status = Column(String(20), default="open", index=True)
    auto_accept_high_rated = Column(Boolean, default=False)
    applications_count = Column(Integer, default=0)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    clinic = relationship("Clinic")
    applications = relationship("ShiftApplication", back_populates="shift", cascade="all, delete-orphan")


class ShiftApplication(Base):
    __tablename__ = "shift_applications"

    id = Column(Integer, primary_key=True, index=True)
    shift_id = Column(Integer, ForeignKey("shift_listings.id", ondelete="CASCADE"), nullable=False, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(20), default="pending")  # pending | approved | rejected | expired
    match_score = Column(Integer, default=0)
    auto_approved = Column(Boolean, default=False)
    cover_note = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    shift = relationship("ShiftListing", back_populates="applications")
    specialist = relationship("Specialist")


class ShiftAssignment(Base):
    __tablename__ = "shift_assignments"

    id = Column(Integer, primary_key=True, index=True)
    shift_id = Column(Integer, ForeignKey("shift_listings.id", ondelete="CASCADE"), nullable=False, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False)
    application_id = Column(Integer, ForeignKey("shift_applications.id"), nullable=True)
    status = Column(String(20), default="confirmed")
    created_at = Column(DateTime, default=datetime.utcnow)
