from celery import shared_task
from typing import Any, Dict, List, Optional

from medmarket.core.database import SessionLocal
from medmarket.models.appointment import Appointment
from medmarket.models.user import User
from medmarket.services.email_service import send_email, send_appointment_email
from medmarket.services.notification_service import NotificationService
from medmarket.services.sms_service import send_sms_message
import logging

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3)
def send_notification_task(
    self,
    user_id: int,
    notification_type: str,
    title: str,
    body: str,
    data: Optional[Dict[str, Any]] = None,
    channels: Optional[List[str]] = None,  # ["in_app", "email", "sms"]
):
    """
    Central task to send notifications via multiple channels.
    - Creates the in-app Notification record.
    - Dispatches to Email/SMS services.
    - Records which channels went out.
    """
    db = SessionLocal()
    try:
        user = db.query(User).filter(User.id == user_id).first()
        if not user:
            logger.error(f"User {user_id} not found for notification.")
            return

        channels = channels or ["in_app", "email"]
        notification = NotificationService.create(db, user_id, notification_type, title, body, data=data)

        if "email" in channels and user.email:
            try:
                notification.email_sent = send_email(user.email, title, body, html=f"<p>{body}</p>")
            except Exception as e:
                logger.error(f"Failed to send email to {user.email}: {e}")

        if "sms" in channels and user.phone:
            notification.sms_sent = send_sms_message(to_number=user.phone, body=f"{title}: {body}")

        db.commit()
        return notification.id

    except Exception as e:
        logger.error(f"Error in send_notification_task: {e}")
        raise self.retry(exc=e, countdown=60)
    finally:
        db.close()


@shared_task
def send_appointment_confirmation(appointment_id: int):
    """Patient and specialist notifications for a freshly committed booking."""
    db = SessionLocal()
    try:
        appt = db.query(Appointment).filter(Appointment.id == appointment_id).first()
        if not appt:
            return

        when = appt.scheduled_at.strftime("%Y-%m-%d %H:%M")
        specialist_name = appt.specialist.display_name if appt.specialist else "your specialist"

        try:
            send_appointment_email(
                to_email=appt.patient.email,
                recipient_name=appt.patient.first_name,
                specialist_name=specialist_name,
                scheduled_at=when,
            )
        except Exception as e:
            logger.error(f"Failed to send email: {e}")

        send_notification_task.delay(
            user_id=appt.patient_id,
            notification_type="appointment_confirmation",
            title="Appointment booked",
            body=f"Your appointment with {specialist_name} on {when} is booked.",
            data={"appointment_id": appt.id},
            channels=["in_app"],
        )
        if appt.specialist:
            send_notification_task.delay(
                user_id=appt.specialist.user_id,
                notification_type="new_appointment",
                title="New appointment booked",
                body=f"New appointment with {appt.patient.first_name} on {when}.",
                data={"appointment_id": appt.id},
                channels=["in_app", "email"],
            )
    finally:
        db.close()
