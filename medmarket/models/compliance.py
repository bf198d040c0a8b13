"""Audit trail, legal archive, activity log and export job models."""
from sqlalchemy import Column, Integer, String, DateTime, Text, ForeignKey, JSON
from datetime import datetime
from medmarket.core.database import Base


class SecurityAuditLog(Base):
    __tablename__ = "security_audit_log"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=True)
    resource_id = Column(String(100), nullable=True)
    ip_address = Column(String(45), nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)


class LegalArchive(Base):
    __tablename__ = "legal_archives"

    id = Column(Integer, primary_key=True, index=True)
    archive_type = Column(String(50), nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(JSON, nullable=False)
    retention_years = Column(Integer, default=6)
    created_by = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Activity(Base):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    activity_type = Column(String(50), nullable=False)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow)


class DataExportJob(Base):
    __tablename__ = "data_export_jobs"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    export_type = Column(String(50), nullable=False)
    status = Column(String(20), default="processing")
    file_path = Column(Text, nullable=True)
    download_url = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class SymptomCheck(Base):
    __tablename__ = "symptom_checks"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    inputs_hash = Column(String(64), nullable=False)
    urgency = Column(String(20), nullable=False)
    score = Column(Integer, default=0)
    matched_rules = Column(JSON, default=list)
    recommended_specialty = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
