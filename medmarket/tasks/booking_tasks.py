import asyncio
from celery import shared_task
from datetime import datetime, timedelta

from sqlalchemy import and_
from medmarket.core.database import SessionLocal
from medmarket.models.appointment import Appointment
from medmarket.models.shift import ShiftApplication
from medmarket.services.booking_service import BookingService
from medmarket.services.email_service import send_appointment_email
from medmarket.services.sms_service import send_sms_message
import logging

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3)
def purge_expired_holds(self):
    """Drop `hold` appointments whose reservation window has passed."""
    db = SessionLocal()
    try:
        removed = asyncio.run(BookingService.purge_expired_holds(db))
        if removed:
            logger.info(f"Purged {removed} expired hold(s)")
        return removed
    except Exception as e:
        logger.error(f"Error in purge_expired_holds: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()


@shared_task(bind=True, max_retries=3)
def send_reminders_24h_before(self):
    """
    Remind patients ~24 hours before `scheduled_at`.
    Scheduled every 15 minutes via Celery Beat.
    """
    db = SessionLocal()
    try:
        now = datetime.utcnow()
        start_window = now + timedelta(hours=24)
        end_window = start_window + timedelta(hours=1)

        appts = (
            db.query(Appointment)
            .filter(
                and_(
                    Appointment.status.in_(("pending", "confirmed")),
                    Appointment.scheduled_at >= start_window,
                    Appointment.scheduled_at < end_window,
                    Appointment.reminder_sent_at.is_(None),
                )
            )
            .all()
        )

        logger.info(f"Found {len(appts)} appointments for 24h reminder window")

        for a in appts:
            try:
                when = a.scheduled_at.strftime("%Y-%m-%d %H:%M")
                specialist_name = a.specialist.display_name
                send_appointment_email(
                    to_email=a.patient.email,
                    recipient_name=a.patient.first_name,
                    specialist_name=specialist_name,
                    scheduled_at=when,
                    is_reminder=True,
                )
                if a.patient.phone:
                    send_sms_message(
                        to_number=a.patient.phone,
                        body=f"Reminder: appointment with {specialist_name} on {when}.",
                    )
                a.reminder_sent_at = datetime.utcnow()
                db.commit()
            except Exception as e:
                logger.error(f"Failed to send 24h reminder for appt {a.id}: {e}")
                db.rollback()
    except Exception as e:
        logger.error(f"Error in send_reminders_24h_before: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()


@shared_task(bind=True, max_retries=3)
def expire_shift_applications(self):
    db = SessionLocal()
    try:
        expired = (
            db.query(ShiftApplication)
            .filter(
                ShiftApplication.status == "pending",
                ShiftApplication.expires_at <= datetime.utcnow(),
            )
            .update({"status": "expired"}, synchronize_session=False)
        )
        db.commit()
        return expired
    except Exception as e:
        logger.error(f"Error in expire_shift_applications: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()
