"""CSV import and export for bulk data entry.

The format is deliberately naive: one record per line, values split on commas,
no quoting. List columns take ``;``-separated values.
"""
import csv
import io
import json
from typing import Any, Dict, Iterator, List, Optional
import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from medmarket.models.appointment import Appointment
from medmarket.models.base import row_to_dict
from medmarket.models.clinic import Clinic
from medmarket.models.specialist import Specialist
from medmarket.models.user import User
from medmarket.services.audit_service import AuditService
from medmarket.services.table_registry import Caller, get_table
from medmarket.services.table_service import coerce_value
from medmarket.utils.errors import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

BATCH_SIZE = 100
EXPORT_LIMIT = 10000

ENTITY_MODELS = {
    "appointments": Appointment,
    "patients": User,
    "specialists": Specialist,
}

# table whose read-only columns bind non-admin importers
ENTITY_TABLES = {
    "appointments": "appointments",
    "patients": "profiles",
    "specialists": "specialists",
}

# never imported, never exported
PROTECTED_COLUMNS = ("id", "created_at", "updated_at", "password_hash", "last_login")


def parse_csv(text: str) -> List[Dict[str, str]]:
    lines = [line for line in text.splitlines() if line.strip()]
    if len(lines) < 2:
        return []
    headers = [h.strip() for h in lines[0].split(",")]
    rows = []
    for line in lines[1:]:
        values = [v.strip() for v in line.split(",")]
        rows.append({h: values[i] if i < len(values) else "" for i, h in enumerate(headers)})
    return rows


def _model_for(entity: str):
    model = ENTITY_MODELS.get(entity)
    if model is None:
        raise NotFoundError(f"Unknown entity '{entity}'")
    return model


def _require_manager(caller: Caller):
    if caller.user_type not in ("admin", "clinic_admin"):
        raise ForbiddenError("Only administrators can import data")


def _clinic_ids(db: Session, caller: Caller) -> List[int]:
    return [row[0] for row in db.query(Clinic.id).filter(Clinic.owner_id == caller.user_id).all()]


class CsvService:

    @staticmethod
    def build_records(entity: str, rows: List[Dict[str, str]], caller: Caller) -> List[Dict[str, Any]]:
        """Keep known columns, drop blanks, coerce to column types.

        Non-admins may not set the columns the table API treats as read-only.
        """
        columns = _model_for(entity).__table__.columns
        readonly = () if caller.is_admin else get_table(ENTITY_TABLES[entity]).readonly_columns
        records = []
        for row in rows:
            record = {}
            for name, raw in row.items():
                if name in PROTECTED_COLUMNS or name not in columns or raw == "":
                    continue
                if name in readonly:
                    raise ForbiddenError(f"Column '{name}' is read-only")
                record[name] = coerce_value(columns[name], raw)
            if record:
                if entity == "patients":
                    record["user_type"] = "patient"
                    if "email" in record:
                        record["email"] = record["email"].lower()
                records.append(record)
        return records

    @staticmethod
    def import_csv(db: Session, caller: Caller, entity: str, text: str, file_name: Optional[str] = None) -> Dict[str, Any]:
        _require_manager(caller)
        model = _model_for(entity)
        records = CsvService.build_records(entity, parse_csv(text), caller)
        if not records:
            raise ValueError("No valid data found in CSV file")

        if caller.user_type == "clinic_admin" and entity in ("appointments", "specialists"):
            allowed = _clinic_ids(db, caller)
            for record in records:
                if record.get("clinic_id") not in allowed:
                    raise ForbiddenError("Rows must belong to a clinic you manage")

        # one transaction: a failing batch rolls back the whole file
        imported = 0
        try:
            for start in range(0, len(records), BATCH_SIZE):
                batch = records[start:start + BATCH_SIZE]
                db.add_all([model(**record) for record in batch])
                db.flush()
                imported += len(batch)
            db.commit()
        except IntegrityError as e:
            db.rollback()
            end = min(imported + BATCH_SIZE, len(records))
            logger.warning(f"CSV import of {entity} rolled back at rows {imported + 1}-{end}: {e.orig}")
            raise ValueError(
                f"Import failed in rows {imported + 1}-{end}: duplicate or missing values. No rows were imported"
            )

        AuditService.record_activity(db, caller.user_id, "csv_import", {
            "entity": entity,
            "records_imported": imported,
            "file_name": file_name,
        })
        logger.info(f"User {caller.user_id} imported {imported} {entity} row(s)")
        return {"records_imported": imported}

    @staticmethod
    def _export_query(db: Session, caller: Caller, entity: str):
        model = _model_for(entity)
        query = db.query(model)
        if entity == "patients":
            query = query.filter(User.user_type == "patient")

        if caller.is_admin:
            return query
        if caller.user_type == "clinic_admin":
            clinic_ids = _clinic_ids(db, caller)
            if entity == "patients":
                patient_ids = select(Appointment.patient_id).where(Appointment.clinic_id.in_(clinic_ids))
                return query.filter(User.id.in_(patient_ids))
            return query.filter(model.clinic_id.in_(clinic_ids))
        if entity == "appointments":
            if caller.specialist_id is not None:
                return query.filter(Appointment.specialist_id == caller.specialist_id)
            return query.filter(Appointment.patient_id == caller.user_id)
        raise ForbiddenError("You cannot export this data")

    @staticmethod
    def export_rows(db: Session, caller: Caller, entity: str) -> List[Dict[str, Any]]:
        model = _model_for(entity)
        rows = (
            CsvService._export_query(db, caller, entity)
            .order_by(model.__table__.c.id)
            .limit(EXPORT_LIMIT)
            .all()
        )
        if not rows:
            raise NotFoundError("No data to export")

        AuditService.record_activity(db, caller.user_id, "csv_export", {
            "entity": entity,
            "records_exported": len(rows),
        })
        return [row_to_dict(r, exclude=("password_hash",)) for r in rows]

    @staticmethod
    def iter_csv(rows: List[Dict[str, Any]]) -> Iterator[str]:
        """Header from the first row's keys; nested values JSON-encoded."""
        headers = list(rows[0].keys())
        buffer = io.StringIO()
        writer = csv.writer(buffer)

        writer.writerow(headers)
        yield buffer.getvalue()
        for row in rows:
            buffer.seek(0)
            buffer.truncate(0)
            writer.writerow([
                json.dumps(row.get(h)) if isinstance(row.get(h), (dict, list)) else row.get(h)
                for h in headers
            ])
            yield buffer.getvalue()
