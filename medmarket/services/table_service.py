from datetime import datetime, date, time, timezone
from typing import Any, Dict, List, Optional, Tuple
import json
import logging

from sqlalchemy import or_, false
from sqlalchemy.orm import Session
from sqlalchemy.sql.sqltypes import JSON

from medmarket.models.base import row_to_dict
from medmarket.models.specialist import Specialist
from medmarket.realtime.channels import publish_change
from medmarket.services.audit_service import AuditService
from medmarket.services.table_registry import Caller, TableSpec, get_table, owns_row
from medmarket.utils.errors import ForbiddenError, NotFoundError

logger = logging.getLogger(__name__)

FILTER_OPERATORS = ("eq", "neq", "gt", "gte", "lt", "lte", "in", "like", "is")
RESERVED_PARAMS = ("order", "limit", "offset", "select")
DEFAULT_LIMIT = 100
MAX_LIMIT = 1000


# -------------------------------------------------------------------------
# Value coercion
# -------------------------------------------------------------------------
def _python_type(column) -> Optional[type]:
    if isinstance(column.type, JSON):
        return None
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def coerce_value(column, raw: Any) -> Any:
    """Convert wire values (query strings, JSON, CSV cells) to the column's Python type."""
    if raw is None:
        return None
    if isinstance(column.type, JSON):
        if isinstance(raw, str):
            text = raw.strip()
            if text.startswith("[") or text.startswith("{"):
                return json.loads(text)
            return [part.strip() for part in text.split(";") if part.strip()]
        return raw

    target = _python_type(column)
    if target is None or isinstance(raw, target) and not (target is int and isinstance(raw, bool)):
        return raw

    name = column.key
    try:
        if target is bool:
            if isinstance(raw, str):
                lowered = raw.strip().lower()
                if lowered in ("true", "1", "yes", "t"):
                    return True
                if lowered in ("false", "0", "no", "f", ""):
                    return False
                raise ValueError(raw)
            return bool(raw)
        if target is int:
            return int(raw)
        if target is float:
            return float(raw)
        if target is datetime:
            parsed = datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
            # stored as naive UTC
            if parsed.tzinfo is not None:
                parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
            return parsed
        if target is date:
            return date.fromisoformat(str(raw)[:10])
        if target is time:
            return time.fromisoformat(str(raw))
        if target is str:
            return str(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid value for column '{name}': {raw}")
    return raw


def parse_filter(spec: TableSpec, column_name: str, expression: str) -> Tuple[Any, str, Any]:
    """Parse a ``column=op.value`` predicate into (column, op, value)."""
    column = _column(spec, column_name)
    op, dot, raw = expression.partition(".")
    if not dot or op not in FILTER_OPERATORS:
        raise ValueError(f"Invalid filter operator for '{column_name}': {expression}")

    if op == "is":
        lowered = raw.lower()
        if lowered == "null":
            return column, op, None
        if lowered in ("true", "false"):
            return column, op, lowered == "true"
        raise ValueError(f"Invalid 'is' value for '{column_name}': {raw}")
    if op == "in":
        inner = raw.strip()
        if not (inner.startswith("(") and inner.endswith(")")):
            raise ValueError(f"'in' filter must look like in.(a,b) for '{column_name}'")
        values = [v.strip() for v in inner[1:-1].split(",") if v.strip()]
        return column, op, [coerce_value(column, v) for v in values]
    if op == "like":
        return column, op, raw.replace("*", "%")
    return column, op, coerce_value(column, raw)


def _column(spec: TableSpec, name: str):
    table = spec.model.__table__
    if name in spec.hidden_columns or name not in table.columns:
        raise ValueError(f"Unknown column '{name}' on table '{spec.name}'")
    return table.columns[name]


def _apply_filter(query, column, op: str, value):
    if op == "eq":
        return query.filter(column == value)
    if op == "neq":
        return query.filter(column != value)
    if op == "gt":
        return query.filter(column > value)
    if op == "gte":
        return query.filter(column >= value)
    if op == "lt":
        return query.filter(column < value)
    if op == "lte":
        return query.filter(column <= value)
    if op == "in":
        return query.filter(column.in_(value))
    if op == "like":
        return query.filter(column.like(value))
    if op == "is":
        return query.filter(column.is_(value))
    raise ValueError(f"Unsupported operator: {op}")


class TableService:
    """
    Generic row access for registered tables:
    - Filtered select with ordering and paging
    - Insert / update / delete with ownership checks
    - Realtime change publishing for every mutation
    """

    @staticmethod
    def resolve_caller(db: Session, current_user: dict) -> Caller:
        user_id = int(current_user["sub"])
        user_type = current_user.get("user_type", "")
        specialist_id = None
        if user_type == "specialist":
            specialist = db.query(Specialist.id).filter(Specialist.user_id == user_id).first()
            specialist_id = specialist[0] if specialist else None
        return Caller(user_id=user_id, user_type=user_type, specialist_id=specialist_id)

    @staticmethod
    def get_spec(table: str) -> TableSpec:
        spec = get_table(table)
        if spec is None:
            raise NotFoundError("Table not found")
        return spec

    # -------------------------------------------------------------------------
    # Query building
    # -------------------------------------------------------------------------
    @staticmethod
    def _scoped_query(db: Session, spec: TableSpec, caller: Caller, for_write: bool = False):
        model = spec.model
        query = db.query(model)
        if caller.is_admin:
            return query
        if not for_write and spec.public_read:
            return query

        conditions = [getattr(model, col) == caller.user_id for col in spec.owner_columns]
        if spec.specialist_column and caller.specialist_id is not None:
            conditions.append(getattr(model, spec.specialist_column) == caller.specialist_id)
        if not conditions:
            return query.filter(false())
        return query.filter(or_(*conditions))

    @staticmethod
    def _filtered(db: Session, spec: TableSpec, caller: Caller, filters: Dict[str, str], for_write: bool = False):
        query = TableService._scoped_query(db, spec, caller, for_write=for_write)
        for name, expression in filters.items():
            column, op, value = parse_filter(spec, name, expression)
            query = _apply_filter(query, column, op, value)
        return query

    @staticmethod
    def _ordered(spec: TableSpec, query, order: Optional[str]):
        if not order:
            return query.order_by(spec.model.__table__.c.id)
        for part in order.split(","):
            name, _, direction = part.strip().partition(".")
            column = _column(spec, name)
            if direction in ("", "asc"):
                query = query.order_by(column.asc())
            elif direction == "desc":
                query = query.order_by(column.desc())
            else:
                raise ValueError(f"Invalid order direction: {direction}")
        return query

    @staticmethod
    def serialize(spec: TableSpec, row) -> Dict[str, Any]:
        return row_to_dict(row, exclude=spec.hidden_columns)

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------
    @staticmethod
    def select(
        db: Session,
        table: str,
        caller: Caller,
        filters: Dict[str, str],
        order: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        spec = TableService.get_spec(table)
        limit = DEFAULT_LIMIT if limit is None else limit
        if limit < 1 or limit > MAX_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_LIMIT}")
        if offset < 0:
            raise ValueError("offset must be >= 0")

        query = TableService._filtered(db, spec, caller, filters)
        query = TableService._ordered(spec, query, order)
        rows = query.offset(offset).limit(limit).all()

        if spec.audit_action and rows and not caller.is_admin:
            AuditService.log(db, caller.user_id, spec.audit_action, resource_type=spec.name,
                             resource_id=",".join(str(r.id) for r in rows[:20]))
        return [TableService.serialize(spec, r) for r in rows]

    @staticmethod
    def _clean_payload(spec: TableSpec, payload: Dict[str, Any], caller: Caller, for_update: bool) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise ValueError("Each row must be a JSON object")
        cleaned = {}
        for name, raw in payload.items():
            column = _column(spec, name)
            if name in spec.readonly_columns and not caller.is_admin:
                raise ValueError(f"Column '{name}' is read-only")
            if for_update and not caller.is_admin and (name in spec.owner_columns or name == spec.specialist_column):
                raise ValueError(f"Column '{name}' is read-only")
            cleaned[name] = coerce_value(column, raw)
        return cleaned

    @staticmethod
    def _check_writable(spec: TableSpec, caller: Caller):
        if caller.is_admin:
            return
        if not spec.writable or not spec.is_owned:
            raise ForbiddenError(f"Table '{spec.name}' is read-only")

    @staticmethod
    async def insert(db: Session, table: str, caller: Caller, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        spec = TableService.get_spec(table)
        TableService._check_writable(spec, caller)
        if not rows:
            raise ValueError("No rows to insert")

        created = []
        for payload in rows:
            values = TableService._clean_payload(spec, payload, caller, for_update=False)
            if not caller.is_admin:
                if spec.owner_columns and spec.owner_columns[0] not in values:
                    values[spec.owner_columns[0]] = caller.user_id
                if not owns_row(spec, values, caller):
                    raise ForbiddenError("Cannot insert rows owned by another user")
            obj = spec.model(**values)
            db.add(obj)
            created.append(obj)

        db.commit()
        result = []
        for obj in created:
            db.refresh(obj)
            data = TableService.serialize(spec, obj)
            result.append(data)
            await publish_change(spec.name, "INSERT", new=data)
        logger.info(f"Inserted {len(result)} row(s) into {spec.name} by user {caller.user_id}")
        return result

    @staticmethod
    async def update(db: Session, table: str, caller: Caller, filters: Dict[str, str], changes: Dict[str, Any]) -> List[Dict[str, Any]]:
        spec = TableService.get_spec(table)
        TableService._check_writable(spec, caller)
        if not filters:
            raise ValueError("Update requires at least one filter")
        values = TableService._clean_payload(spec, changes, caller, for_update=True)
        if not values:
            raise ValueError("No columns to update")

        rows = TableService._filtered(db, spec, caller, filters, for_write=True).all()
        before = [TableService.serialize(spec, r) for r in rows]
        for row in rows:
            for name, value in values.items():
                setattr(row, name, value)
        db.commit()

        result = []
        for row, old in zip(rows, before):
            db.refresh(row)
            data = TableService.serialize(spec, row)
            result.append(data)
            await publish_change(spec.name, "UPDATE", new=data, old=old)
        if spec.audit_action and result:
            AuditService.log(db, caller.user_id, spec.audit_action, resource_type=spec.name,
                             resource_id=",".join(str(r["id"]) for r in result[:20]))
        return result

    @staticmethod
    async def delete(db: Session, table: str, caller: Caller, filters: Dict[str, str]) -> List[Dict[str, Any]]:
        spec = TableService.get_spec(table)
        TableService._check_writable(spec, caller)
        if not filters:
            raise ValueError("Delete requires at least one filter")

        rows = TableService._filtered(db, spec, caller, filters, for_write=True).all()
        removed = [TableService.serialize(spec, r) for r in rows]
        for row in rows:
            db.delete(row)
        db.commit()

        for old in removed:
            await publish_change(spec.name, "DELETE", old=old)
        if spec.name in ("profiles", "medical_records") and removed:
            AuditService.log(db, caller.user_id, "delete_patient_record", resource_type=spec.name,
                             resource_id=",".join(str(r["id"]) for r in removed[:20]))
        return removed
