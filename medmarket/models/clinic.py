"""Clinic and clinic media models."""
from datetime import datetime
from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Text, Float, Boolean
from sqlalchemy.orm import relationship
from medmarket.core.database import Base


class Clinic(Base):
    __tablename__ = "clinics"

    id = Column(Integer, primary_key=True, index=True)
    owner_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    clinic_type = Column(String(20), default="physical")  # physical | virtual
    address = Column(Text, nullable=True)
    city = Column(String(100), nullable=True)
    country = Column(String(100), nullable=True)
    phone = Column(String(20), nullable=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True, index=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    owner = relationship("User")
    specialists = relationship("Specialist", back_populates="clinic")
    media = relationship("ClinicMedia", back_populates="clinic", cascade="all, delete-orphan")


class ClinicMedia(Base):
    __tablename__ = "clinic_media"

    id = Column(Integer, primary_key=True, index=True)
    clinic_id = Column(Integer, ForeignKey("clinics.id", ondelete="CASCADE"), nullable=False, index=True)
    url = Column(Text, nullable=False)
    media_type = Column(String(50), default="photo")
    caption = Column(String(255), nullable=True)
    uploaded_by = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    clinic = relationship("Clinic", back_populates="media")
