import logging
from typing import Protocol

from twilio.base.exceptions import TwilioException
from twilio.rest import Client

from phoneauth.core.utils import mask_phone_number

logger = logging.getLogger(__name__)


class SmsSender(Protocol):
    def send(self, phone_number: str, code: str) -> bool: ...


def otp_message_body(code: str, expiry_minutes: int = 5) -> str:
    return f"Your verification code is: {code}. Valid for {expiry_minutes} minutes."


class LoggingSmsSender:
    """Development sender. Logs the masked destination only, never the code."""

    def send(self, phone_number: str, code: str) -> bool:
        logger.info("sms_stub destination=%s length=%s", mask_phone_number(phone_number), len(code))
        return True


class TwilioSmsSender:
    def __init__(self, account_sid: str, auth_token: str, from_number: str, expiry_minutes: int = 5):
        if not account_sid or not auth_token:
            raise ValueError("Twilio credentials not configured")
        if not from_number:
            raise ValueError("Twilio from number not configured")
        self.client = Client(account_sid, auth_token)
        self.from_number = from_number
        self.expiry_minutes = expiry_minutes

    def send(self, phone_number: str, code: str) -> bool:
        try:
            message = self.client.messages.create(
                body=otp_message_body(code, self.expiry_minutes),
                from_=self.from_number,
                to=phone_number,
            )
        except TwilioException as exc:
            logger.error("sms_send_failed destination=%s error=%s", mask_phone_number(phone_number), exc)
            return False
        logger.info("sms_sent destination=%s sid=%s", mask_phone_number(phone_number), message.sid)
        return True
