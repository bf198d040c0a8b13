"""Reusable field validators for request schemas."""
import re


def validate_password_strength(value: str) -> str:
    """Password must contain uppercase, lowercase, digit, special char"""
    if not re.search(r"[A-Z]", value):
        raise ValueError("Password must contain uppercase letter")
    if not re.search(r"[a-z]", value):
        raise ValueError("Password must contain lowercase letter")
    if not re.search(r"[0-9]", value):
        raise ValueError("Password must contain digit")
    if not re.search(r"[!@#$%^&*]", value):
        raise ValueError("Password must contain special character")
    return value


def require_text(value: str | None, message: str) -> str:
    """Reject missing or whitespace-only text."""
    if value is None or not str(value).strip():
        raise ValueError(message)
    return str(value).strip()
