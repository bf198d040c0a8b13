import smtplib
import logging
from email.message import EmailMessage
from typing import Optional

from medmarket.core.config import settings

logger = logging.getLogger(__name__)


def send_email(to_email: str, subject: str, body: str, html: Optional[str] = None) -> bool:
    if settings.EMAIL_BACKEND == "console":
        logger.info(f"[email] to={to_email} subject={subject!r}\n{body}")
        return True

    smtp_host = settings.SMTP_HOST
    smtp_port = settings.SMTP_PORT
    smtp_user = settings.SMTP_USER
    smtp_pass = settings.SMTP_PASSWORD

    if not smtp_host or not smtp_user or not smtp_pass:
        raise RuntimeError("SMTP credentials not configured (SMTP_HOST / SMTP_USER / SMTP_PASSWORD)")

    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = f"{settings.SENDER_NAME} <{smtp_user}>"
    msg["To"] = to_email
    msg.set_content(body)
    if html:
        msg.add_alternative(html, subtype="html")

    try:
        with smtplib.SMTP(smtp_host, smtp_port, timeout=10) as server:
            server.ehlo()
            if smtp_port == 587:
                server.starttls()
                server.ehlo()
            server.login(smtp_user, smtp_pass)
            server.send_message(msg)
        return True
    except Exception:
        logger.exception("Failed to send email")
        raise


def send_appointment_email(
    to_email: str,
    recipient_name: str,
    specialist_name: str,
    scheduled_at: str,
    is_reminder: bool = False,
) -> bool:
    subject = "Appointment reminder" if is_reminder else "Appointment booked"
    lead = "This is a reminder of" if is_reminder else "We have received"
    body = (
        f"Hi {recipient_name},\n\n"
        f"{lead} your appointment with {specialist_name} on {scheduled_at}.\n\n"
        f"- {settings.SENDER_NAME}"
    )
    html = (
        f"<p>Hi {recipient_name},</p>"
        f"<p>{lead} your appointment with <strong>{specialist_name}</strong> on {scheduled_at}.</p>"
        f"<br/><p>- {settings.SENDER_NAME}</p>"
    )
    return send_email(to_email, subject, body, html)
