from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging
import re
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

SMS_COOLDOWN_KEY = 'sms_cooldown'
RATE_LIMITED_SID = 'RATE_LIMITED'

TWILIO_ERROR_REASONS = {
    21608: 'The "From" phone number is not a valid, SMS-capable Twilio phone number.',
    21211: 'The "To" phone number is not a valid phone number.',
    20003: 'Authentication error, the Twilio credentials are invalid.',
}

def normalize_phone_e164(number: str) -> str:
    """Coerce a phone number to E.164, assuming US when no country code is given"""
    digits = re.sub(r'[^\d+]', '', number or '')
    if not digits:
        return ''
    if digits.startswith('+'):
        return digits
    if len(digits) == 11 and digits.startswith('1'):
        return f"+{digits}"
    return f"+1{digits}"

@dataclass
class SmsResult:
    sid: str
    status: str
    to: str
    from_: str
    body: str
    rate_limited: bool = False

class TwilioClient:
    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        phone_number: str,
        database=None,
        monitor=None,
        cooldown_seconds: int = 600,
        client: Optional[Client] = None
    ):
        self.client = client or Client(account_sid, auth_token)
        self.phone_number = phone_number
        self.database = database
        self.monitor = monitor
        self.cooldown_seconds = cooldown_seconds
        self.validator = RequestValidator(auth_token)

    def validate_request(self, url: str, params: Dict[str, Any], signature: Optional[str]) -> bool:
        """Check the X-Twilio-Signature header against the request URL and form params"""
        if not signature:
            logger.warning("X-Twilio-Signature header is missing")
            return False
        return self.validator.validate(url, params, signature)

    def send_message(
        self,
        to_number: str,
        message: str,
        from_number: Optional[str] = None,
        request_id: str = '',
        business_id: Optional[str] = None,
        bypass_rate_limit: bool = False,
        payload: Optional[Dict[str, Any]] = None
    ) -> SmsResult:
        """Send an SMS message, honouring the per-recipient cooldown unless bypassed"""
        from_number = from_number or self.phone_number
        log_prefix = f"[send_message][{request_id}]" if request_id else "[send_message]"
        logger.info(f"{log_prefix} Request to send SMS from {from_number} to {to_number}")

        if not bypass_rate_limit and self._in_cooldown(to_number):
            logger.info(f"{log_prefix} SMS to {to_number} rate-limited, skipping")
            return SmsResult(
                sid=RATE_LIMITED_SID,
                status='skipped',
                to=to_number,
                from_=from_number,
                body='Rate limited',
                rate_limited=True
            )

        try:
            sent = self.client.messages.create(
                body=message,
                from_=from_number,
                to=to_number
            )
        except TwilioRestException as e:
            reason = TWILIO_ERROR_REASONS.get(e.code, '')
            logger.error(f"{log_prefix} Twilio error {e.code} sending message: {str(e)} {reason}")
            self._track(to_number, from_number, business_id, 'failed', request_id, len(message),
                        error_code=str(e.code), error_message=e.msg, payload=payload)
            raise AppError(f"Failed to send message: {e.msg}", status_code=502,
                           user_message=reason or None)
        except Exception as e:
            logger.error(f"{log_prefix} Unexpected error sending message: {str(e)}")
            self._track(to_number, from_number, business_id, 'failed', request_id, len(message),
                        error_code='unknown', error_message=str(e), payload=payload)
            raise AppError(f"Failed to send message: {str(e)}", status_code=502)

        logger.info(f"{log_prefix} Message sent successfully, SID: {sent.sid}")
        if not bypass_rate_limit:
            self._start_cooldown(to_number)
        self._track(to_number, from_number, business_id, sent.status or 'sent', request_id,
                    len(message), message_sid=sent.sid, payload=payload)

        return SmsResult(
            sid=sent.sid,
            status=sent.status or 'sent',
            to=to_number,
            from_=from_number,
            body=message
        )

    def _in_cooldown(self, phone: str) -> bool:
        if self.database is None or self.cooldown_seconds <= 0:
            return False
        try:
            return self.database.is_rate_limited(phone, SMS_COOLDOWN_KEY)
        except Exception as e:
            # The hosted store being down must not block replies
            logger.error(f"Error checking SMS cooldown for {phone}: {str(e)}")
            return False

    def _start_cooldown(self, phone: str) -> None:
        if self.database is None or self.cooldown_seconds <= 0:
            return
        try:
            self.database.set_rate_limit(phone, SMS_COOLDOWN_KEY, self.cooldown_seconds)
        except Exception as e:
            logger.error(f"Error setting SMS cooldown for {phone}: {str(e)}")

    def _track(self, to_number, from_number, business_id, status, request_id, body_length,
               message_sid='', error_code=None, error_message=None, payload=None):
        if self.monitor is None:
            return
        self.monitor.track_sms_event(
            message_sid=message_sid,
            from_number=from_number,
            to_number=to_number,
            business_id=business_id,
            status=status,
            request_id=request_id,
            body_length=body_length,
            error_code=error_code,
            error_message=error_message,
            payload=payload
        )
