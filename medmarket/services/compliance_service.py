"""HIPAA access-audit reports built from the security audit log."""
from collections import Counter
from datetime import datetime, date as date_type, time as time_type
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy.orm import Session

from medmarket.core.config import settings
from medmarket.models.base import row_to_dict
from medmarket.models.compliance import LegalArchive, SecurityAuditLog

logger = logging.getLogger(__name__)

HIGH_RISK_ACTIONS = ("delete_patient_record", "access_sensitive_data", "modify_prescription")
MEDIUM_RISK_ACTIONS = ("view_patient_record", "update_appointment", "export_data")
SUSPICIOUS_EVENT_COUNT = 50


def risk_level(action: str) -> str:
    if action in HIGH_RISK_ACTIONS:
        return "high"
    if action in MEDIUM_RISK_ACTIONS:
        return "medium"
    return "low"


def top_actions(logs: List[SecurityAuditLog], limit: int = 10) -> List[Dict[str, Any]]:
    counts = Counter(log.action for log in logs)
    return [{"action": action, "count": count} for action, count in counts.most_common(limit)]


def access_patterns(logs: List[SecurityAuditLog]) -> Dict[str, Any]:
    per_user = Counter(log.user_id for log in logs)
    per_hour = Counter(log.created_at.hour for log in logs)

    suspicious = [
        {"userId": user_id, "accessCount": count}
        for user_id, count in per_user.items()
        if count > SUSPICIOUS_EVENT_COUNT
    ]
    after_hours = sum(count for hour, count in per_hour.items() if hour >= 23 or hour <= 6)
    peak = per_hour.most_common(1)
    return {
        "suspiciousUsers": suspicious,
        "afterHoursAccess": after_hours,
        "peakAccessHour": peak[0][0] if peak else None,
    }


def summarize(logs: List[SecurityAuditLog]) -> Dict[str, Any]:
    levels = Counter(risk_level(log.action) for log in logs)
    return {
        "totalEvents": len(logs),
        "highRiskEvents": levels["high"],
        "mediumRiskEvents": levels["medium"],
        "lowRiskEvents": levels["low"],
        "uniqueUsers": len({log.user_id for log in logs}),
        "topActions": top_actions(logs),
        "accessPatterns": access_patterns(logs),
    }


class ComplianceService:

    @staticmethod
    def generate_hipaa_audit(
        db: Session,
        admin_id: int,
        start_date: date_type,
        end_date: date_type,
        filter_user: Optional[int] = None,
        filter_action: Optional[str] = None,
    ) -> Dict[str, Any]:
        if end_date < start_date:
            raise ValueError("endDate must not be before startDate")

        start = datetime.combine(start_date, time_type.min)
        end = datetime.combine(end_date, time_type.max)
        query = db.query(SecurityAuditLog).filter(
            SecurityAuditLog.created_at >= start,
            SecurityAuditLog.created_at <= end,
        )
        if filter_user:
            query = query.filter(SecurityAuditLog.user_id == filter_user)
        if filter_action:
            query = query.filter(SecurityAuditLog.action == filter_action)
        logs = query.order_by(SecurityAuditLog.created_at.desc()).all()

        report = {
            "period": {"startDate": start_date.isoformat(), "endDate": end_date.isoformat()},
            "summary": summarize(logs),
            "generatedAt": datetime.utcnow().isoformat(),
        }
        archive = LegalArchive(
            archive_type="hipaa_audit",
            title=f"HIPAA audit {start_date.isoformat()} to {end_date.isoformat()}",
            content={**report, "logs": [row_to_dict(log) for log in logs]},
            retention_years=settings.AUDIT_RETENTION_YEARS,
            created_by=admin_id,
        )
        db.add(archive)
        db.commit()
        db.refresh(archive)

        logger.info(f"HIPAA audit archived as {archive.id} ({len(logs)} events)")
        return {"report": report, "archiveId": archive.id}
