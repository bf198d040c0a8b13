from typing import Optional
import logging

from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException

from medmarket.core.config import settings

logger = logging.getLogger(__name__)


def send_sms_message(
    to_number: str,
    body: str,
    from_number: Optional[str] = None,
) -> bool:
    """
    Send a transactional SMS.
    Returns True if successful, False otherwise.
    """
    if settings.SMS_BACKEND == "console":
        logger.info(f"[sms] to={to_number}: {body}")
        return True

    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        logger.warning("Twilio credentials not configured. Skipping SMS.")
        return False

    from_number = from_number or settings.TWILIO_FROM_NUMBER
    if not to_number or not from_number:
        logger.warning(f"Missing phone numbers. To: {to_number}, From: {from_number}")
        return False

    try:
        client = Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)
        message = client.messages.create(to=to_number, from_=from_number, body=body)
        logger.info(f"SMS sent to {to_number}. SID: {message.sid}")
        return True
    except TwilioRestException as e:
        logger.error(f"Twilio error sending SMS to {to_number}: {e}")
        return False
