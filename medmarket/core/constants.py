"""Application constants such as user roles and record statuses."""
from enum import Enum


class UserRole(str, Enum):
    PATIENT = "patient"
    SPECIALIST = "specialist"
    CLINIC_ADMIN = "clinic_admin"
    ADMIN = "admin"


# Statuses that occupy a specialist's time slot
BLOCKING_APPOINTMENT_STATUSES = ("hold", "pending", "confirmed")

# Higher rank sorts first
URGENCY_RANK = {"urgent": 4, "high": 3, "routine": 2, "low": 1}

STORAGE_BUCKETS = ("clinic-media", "medical-records", "exports", "avatars")
