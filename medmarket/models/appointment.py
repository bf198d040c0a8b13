from sqlalchemy import Column, Integer, String, DateTime, Date, Text, Float, ForeignKey, JSON
from sqlalchemy.orm import relationship
from datetime import datetime
from medmarket.core.database import Base


class Appointment(Base):
    __tablename__ = "appointments"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    specialist_id = Column(Integer, ForeignKey("specialists.id", ondelete="CASCADE"), nullable=False, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id", ondelete="SET NULL"), nullable=True)

    scheduled_at = Column(DateTime, nullable=False, index=True)
    duration_minutes = Column(Integer, default=30)
    status = Column(String(50), default="pending", index=True)
    consultation_type = Column(String(50), default="in_person")  # in_person | video | phone
    fee = Column(Float, nullable=True)
    currency = Column(String(3), default="USD")
    reason = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)

    hold_expires_at = Column(DateTime, nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    group_session_id = Column(Integer, ForeignKey("group_booking_sessions.id"), nullable=True)
    reminder_sent_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    patient = relationship("User")
    specialist = relationship("Specialist")
    clinic = relationship("Clinic")


class GroupBookingSession(Base):
    __tablename__ = "group_booking_sessions"

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    specialist_ids = Column(JSON, default=list)
    preferred_date = Column(Date, nullable=False)
    duration_minutes = Column(Integer, default=30)
    status = Column(String(50), default="searching")  # searching | confirmed | failed
    selected_slot = Column(JSON, nullable=True)
    appointment_ids = Column(JSON, default=list)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
