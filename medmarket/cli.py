"""Small CLI helpers wired to project scripts for developer convenience.

Usage (from project root):
  runserver --host=0.0.0.0 --port=8000 --no-reload
  run-tests
  migrate        # defaults to `alembic upgrade head`
  init-env       # copies .env.example -> .env if missing
  seed-demo      # creates tables and demo accounts in the configured database
  worker         # starts a Celery worker with the beat scheduler embedded
"""
from __future__ import annotations

import sys
import shutil
import subprocess
from datetime import time
from pathlib import Path
from typing import List


def _args() -> List[str]:
    return sys.argv[1:]


def runserver() -> None:
    """Run Uvicorn programmatically. Accepts simple flags:

    --host=<host>  (default 127.0.0.1)
    --port=<port>  (default 8000)
    --no-reload    (disable auto-reload)
    --reload       (enable auto-reload)
    """
    import uvicorn

    host = "127.0.0.1"
    port = 8000
    reload = True

    for a in _args():
        if a.startswith("--host="):
            host = a.split("=", 1)[1]
        elif a.startswith("--port="):
            try:
                port = int(a.split("=", 1)[1])
            except ValueError:
                print(f"Ignoring invalid port: {a}")
        elif a == "--no-reload":
            reload = False
        elif a == "--reload":
            reload = True

    print(f"Starting uvicorn on {host}:{port} (reload={reload})")
    uvicorn.run("medmarket.main:app", host=host, port=port, reload=reload)


def run_tests() -> None:
    """Run pytest with any forwarded args."""
    cmd = ["pytest"] + _args()
    subprocess.run(cmd, check=True)


def run_migrations() -> None:
    """Run alembic. If no args provided, runs `alembic upgrade head`."""
    args = _args()
    cmd = ["alembic"] + args if args else ["alembic", "upgrade", "head"]
    subprocess.run(cmd, check=True)


def run_worker() -> None:
    """Celery worker with embedded beat for hold purges, reminders and shift expiry."""
    cmd = ["celery", "-A", "medmarket.core.celery_app:celery_app", "worker", "-B", "--loglevel=info"] + _args()
    subprocess.run(cmd, check=True)


def init_env() -> None:
    """Copy `.env.example` to `.env` if `.env` is missing."""
    root = Path(__file__).resolve().parents[1]
    src = root / ".env.example"
    dst = root / ".env"
    if dst.exists():
        print(f".env already exists at {dst}")
        return
    if not src.exists():
        print(f".env.example not found at {src}")
        return
    shutil.copy(src, dst)
    print(f"Created .env from .env.example at {dst}")


def seed_demo() -> None:
    """Create tables plus demo accounts, a clinic with a work queue and a verified specialist.

    All accounts share the password `Password123!`. Existing emails are skipped.
    """
    from medmarket.core.database import Base, SessionLocal, engine
    from medmarket.models.clinic import Clinic
    from medmarket.models.specialist import AvailabilitySchedule, Specialist
    from medmarket.models.user import User
    from medmarket.models.work_queue import WorkQueue, WorkQueueItem
    from medmarket.services.auth_service import AuthService

    Base.metadata.create_all(bind=engine)
    password = "Password123!"
    accounts = [
        ("admin@medmarket.local", "Ada", "Admin", "admin", {}),
        ("clinic@medmarket.local", "Cleo", "Clinic", "clinic_admin", {"clinic_name": "Riverside Health"}),
        ("specialist@medmarket.local", "Sam", "Heart", "specialist", {"specialties": ["cardiology"], "languages": ["en", "es"]}),
        ("patient@medmarket.local", "Pat", "Patient", "patient", {}),
    ]

    db = SessionLocal()
    try:
        for email, first, last, user_type, extra in accounts:
            if db.query(User).filter(User.email == email).first():
                print(f"Skipping existing account {email}")
                continue
            AuthService.register(db, email, password, first, last, user_type, **extra)
            print(f"Created {user_type} {email}")

        clinic = db.query(Clinic).filter(Clinic.name == "Riverside Health").first()
        specialist = (
            db.query(Specialist)
            .join(User, User.id == Specialist.user_id)
            .filter(User.email == "specialist@medmarket.local")
            .first()
        )
        if specialist and specialist.verification_status != "verified":
            specialist.verification_status = "verified"
            specialist.clinic_id = clinic.id if clinic else None
            specialist.latitude, specialist.longitude = 40.7128, -74.0060
            # Monday to Friday, 9 to 5
            for day in range(1, 6):
                db.add(AvailabilitySchedule(
                    specialist_id=specialist.id,
                    day_of_week=day,
                    start_time=time(9, 0),
                    end_time=time(17, 0),
                ))

        if clinic and not db.query(WorkQueue).filter(WorkQueue.clinic_id == clinic.id).first():
            inbox = WorkQueue(clinic_id=clinic.id, name="Clinical inbox", queue_type="inbox")
            db.add(inbox)
            db.flush()
            for title, topic, urgency in (
                ("Chest pain follow-up", "results", "urgent"),
                ("Refill request: lisinopril", "refill", "routine"),
                ("Referral letter", "referral", "low"),
            ):
                db.add(WorkQueueItem(queue_id=inbox.id, title=title, topic=topic, urgency=urgency, priority=urgency))
            print("Created demo work queue")
        db.commit()
    finally:
        db.close()


if __name__ == "__main__":
    # Allow running the helpers directly: python -m medmarket.cli runserver
    if len(sys.argv) <= 1:
        print(__doc__)
        sys.exit(0)
    cmd = sys.argv[1]
    sys.argv.pop(1)
    if cmd == "runserver":
        runserver()
    elif cmd in ("run-tests", "tests", "test"):
        run_tests()
    elif cmd in ("migrate", "alembic"):
        run_migrations()
    elif cmd in ("init-env", "initenv"):
        init_env()
    elif cmd in ("seed-demo", "seed"):
        seed_demo()
    elif cmd == "worker":
        run_worker()
    else:
        print(f"Unknown command: {cmd}")
