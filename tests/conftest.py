"""Pytest fixtures for the API and service tests.

Environment is set before any medmarket module reads settings. Every test
gets fresh tables, an in-memory Redis stand-in and no live Celery broker.
"""
import os
import tempfile
import uuid
from datetime import time

os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["ALGORITHM"] = "HS256"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["CELERY_TASK_ALWAYS_EAGER"] = "true"
os.environ["EMAIL_BACKEND"] = "console"
os.environ["SMS_BACKEND"] = "console"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="medmarket-uploads-")

import pytest  # noqa: E402
from unittest.mock import MagicMock, patch  # noqa: E402


class MockRedis:
    """Mock Redis for testing without a real Redis instance."""
    def __init__(self):
        self.store = {}

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ttl=None):
        self.store[key] = value

    async def set_if_absent(self, key, value, ttl=None):
        if key in self.store:
            return False
        self.store[key] = value
        return True

    async def delete(self, key):
        self.store.pop(key, None)


@pytest.fixture(autouse=True)
def mock_redis(monkeypatch):
    from medmarket.cache.cache_service import redis_cache

    mm = MockRedis()
    monkeypatch.setattr(redis_cache, "get", mm.get)
    monkeypatch.setattr(redis_cache, "set", mm.set)
    monkeypatch.setattr(redis_cache, "set_if_absent", mm.set_if_absent)
    monkeypatch.setattr(redis_cache, "delete", mm.delete)
    return mm


@pytest.fixture(autouse=True)
def reset_database():
    """Drop / create all tables so each test starts clean."""
    from medmarket.core.database import Base, engine
    from medmarket.realtime.channels import channel_manager

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    channel_manager.subscriptions.clear()
    yield


@pytest.fixture
def db_session(reset_database):
    from medmarket.core.database import SessionLocal

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def mock_celery_tasks():
    """Replace task objects so `.delay` calls are recorded instead of run."""
    with patch("medmarket.tasks.notification_tasks.send_notification_task") as mock_notify, \
         patch("medmarket.tasks.notification_tasks.send_appointment_confirmation") as mock_confirm, \
         patch("medmarket.tasks.export_tasks.run_export_job") as mock_export:
        mock_notify.delay = MagicMock()
        mock_confirm.delay = MagicMock()
        mock_export.delay = MagicMock()
        yield {"notify": mock_notify, "confirm": mock_confirm, "export": mock_export}


@pytest.fixture
async def async_client():
    """httpx AsyncClient bound to a fresh app instance."""
    from httpx import ASGITransport, AsyncClient
    from medmarket.main import create_app

    app = create_app()
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
        yield client


# ============================================================================
# Data builders
# ============================================================================

def make_user(db, user_type="patient", **fields):
    from medmarket.core.security import hash_password
    from medmarket.models.user import User

    user = User(
        email=fields.pop("email", f"{user_type}_{uuid.uuid4().hex[:8]}@example.com"),
        password_hash=hash_password(fields.pop("password", "Password123!")),
        first_name=fields.pop("first_name", "Test"),
        last_name=fields.pop("last_name", user_type.title()),
        user_type=user_type,
        status="active",
        **fields,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def make_clinic(db, owner, **fields):
    from medmarket.models.clinic import Clinic

    clinic = Clinic(owner_id=owner.id, name=fields.pop("name", "Riverside Health"), **fields)
    db.add(clinic)
    db.commit()
    db.refresh(clinic)
    return clinic


def make_specialist(db, user=None, weekdays=(), opens=time(9, 0), closes=time(17, 0), **fields):
    """Verified specialist. `weekdays` uses the stored convention, 0 = Sunday."""
    from medmarket.models.specialist import AvailabilitySchedule, Specialist

    user = user or make_user(db, "specialist")
    fields.setdefault("verification_status", "verified")
    fields.setdefault("specialties", ["cardiology"])
    fields.setdefault("languages", ["en"])
    specialist = Specialist(user_id=user.id, **fields)
    db.add(specialist)
    db.flush()
    for day in weekdays:
        db.add(AvailabilitySchedule(specialist_id=specialist.id, day_of_week=day, start_time=opens, end_time=closes))
    db.commit()
    db.refresh(specialist)
    return specialist


def auth_headers(db, user):
    from medmarket.services.auth_service import AuthService

    tokens = AuthService._issue_session(db, user, "127.0.0.1", "pytest")
    return {"Authorization": f"Bearer {tokens['access_token']}"}


@pytest.fixture
def builders():
    """Builders as a namespace so tests don't import from conftest."""
    class _Builders:
        user = staticmethod(make_user)
        clinic = staticmethod(make_clinic)
        specialist = staticmethod(make_specialist)
        headers = staticmethod(auth_headers)

    return _Builders
