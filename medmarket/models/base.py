"""Base SQLAlchemy model utilities."""
from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy import inspect


def _plain(value):
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return value


def row_to_dict(obj, exclude: tuple = ()) -> dict:
    """Column values of a mapped row as JSON-friendly primitives."""
    mapper = inspect(obj).mapper
    return {
        attr.key: _plain(getattr(obj, attr.key))
        for attr in mapper.column_attrs
        if attr.key not in exclude
    }
