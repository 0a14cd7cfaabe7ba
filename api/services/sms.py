import asyncio
import json
import functools
import logging
import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from twilio.twiml.voice_response import VoiceResponse

from lib.error_handler import AppError, ErrorHandler
from lib.twilio_client import SmsResult, normalize_phone_e164
from .business import Business

logger = logging.getLogger(__name__)

MISSED_STATUSES = {'no-answer', 'busy', 'failed', 'canceled'}
GENERIC_BUSINESS_NAME = 'our business'
DIAL_TIMEOUT_SECONDS = 20

def effective_call_status(params: Dict[str, Any]) -> str:
    """DialCallStatus wins on dial-action callbacks, CallStatus otherwise"""
    return params.get('DialCallStatus') or params.get('CallStatus') or ''

def _duration(params: Dict[str, Any], key: str) -> Optional[int]:
    value = params.get(key)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None

def is_missed_call(params: Dict[str, Any]) -> bool:
    status = effective_call_status(params)
    if status in MISSED_STATUSES:
        return True
    if status == 'completed':
        durations = [_duration(params, 'ConnectDuration'), _duration(params, 'DialCallDuration')]
        return any(d == 0 for d in durations)
    return False

def was_connected(params: Dict[str, Any]) -> bool:
    return (_duration(params, 'ConnectDuration') or 0) > 0

def _override_forwarding(params: Dict[str, Any]) -> Optional[str]:
    raw = params.get('_testOverrides')
    if not raw:
        return None
    try:
        overrides = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError as e:
        logger.error(f"Error parsing test overrides: {str(e)}")
        return None
    return overrides.get('forwardingNumber') if isinstance(overrides, dict) else None

class SMSService:
    def __init__(
        self,
        twilio_client,
        database,
        responder,
        monitor=None,
        phone_number: str = '',
        default_owner_phone: str = '',
        fallback_forwarding: str = '',
        webhook_base_url: str = ''
    ):
        self.twilio = twilio_client
        self.database = database
        self.responder = responder
        self.monitor = monitor
        self.phone_number = phone_number
        self.default_owner_phone = default_owner_phone
        self.fallback_forwarding = fallback_forwarding
        self.webhook_base_url = webhook_base_url.rstrip('/')
        logger.info(f"SMS service initialized with phone number: {phone_number}")

    async def _run(self, func, *args, **kwargs):
        # Twilio and Supabase clients are blocking, keep them off the event loop
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(func, *args, **kwargs))

    async def lookup_business(self, phone_number: str) -> Optional[Business]:
        record = await self._run(self.database.get_business_by_phone, phone_number)
        if record is None:
            return None
        return Business.from_record(record)

    async def send_sms(self, to_number: str, message: str, **kwargs) -> SmsResult:
        logger.info(f"Sending SMS to {to_number}: {message[:20]}...")
        return await self._run(self.twilio.send_message, to_number, message, **kwargs)

    async def log_call_event(self, **event) -> None:
        event.setdefault('payload', {})
        await self._run(self.database.log_call_event, event)

    def owner_phone_for(self, business: Optional[Business]) -> str:
        if business and business.owner_phone:
            return business.owner_phone
        return self.default_owner_phone

    async def notify_owner(
        self,
        business: Business,
        customer_phone: str,
        message: str,
        alert_type: str,
        detection_source: str,
        request_id: str = ''
    ) -> bool:
        """Text the owner and record the alert, delivered or not"""
        owner_phone = self.owner_phone_for(business)
        if not owner_phone:
            logger.warning(f"No owner phone configured for business {business.id}, skipping {alert_type} alert")
            return False

        message_sid = ''
        error_message = None
        try:
            result = await self.send_sms(
                owner_phone,
                message,
                from_number=self.phone_number or None,
                request_id=request_id,
                business_id=business.id,
                bypass_rate_limit=True,
                payload={'type': alert_type}
            )
            message_sid = result.sid
        except AppError as e:
            error_message = e.message
            logger.error(f"Failed to send {alert_type} alert to owner: {e.message}")

        delivered = error_message is None
        if self.monitor is not None:
            await self._run(
                self.monitor.track_owner_alert,
                business_id=business.id,
                owner_phone=owner_phone,
                customer_phone=customer_phone,
                alert_type=alert_type,
                message_content=message,
                detection_source=detection_source,
                message_sid=message_sid,
                delivered=delivered,
                error_message=error_message
            )
        return delivered

    async def handle_missed_call(self, params: Dict[str, Any]) -> Dict[str, Any]:
        call_sid = params.get('CallSid', '')
        from_number = params['From']
        to_number = params['To']
        call_status = effective_call_status(params)

        if not is_missed_call(params):
            logger.info(f"[{call_sid}] Call status {call_status} is not a missed call, ignoring")
            return {'success': True, 'message': f"Status {call_status} ignored"}

        business = await self.lookup_business(normalize_phone_e164(to_number))
        if business is None:
            raise AppError("Business not found", status_code=404)
        logger.info(f"[{call_sid}] Missed call from {from_number} for {business.name} ({call_status})")

        owner_notified = await self.notify_owner(
            business,
            from_number,
            f"Missed call from {from_number}. Status: {call_status}",
            alert_type='missed_call',
            detection_source='twilio_webhook',
            request_id=call_sid
        )

        await self.log_call_event(
            call_sid=call_sid,
            from_number=from_number,
            to_number=to_number,
            business_id=business.id,
            event_type='voice.missed',
            call_status=call_status,
            owner_notified=owner_notified,
            payload=params
        )

        auto_reply_sent = False
        reply = None
        if not business.auto_reply_enabled:
            logger.info(f"[{call_sid}] Auto-reply disabled for {business.name}")
        elif was_connected(params):
            logger.info(f"[{call_sid}] Call connected, no auto-reply needed")
        else:
            reply = await self.responder.missed_call_reply(business)
            try:
                result = await self.send_sms(
                    from_number,
                    reply,
                    from_number=self.phone_number or None,
                    request_id=call_sid,
                    business_id=business.id,
                    payload={'type': 'missed_call_auto_reply', 'callSid': call_sid}
                )
                auto_reply_sent = not result.rate_limited
            except AppError as e:
                ErrorHandler.handle_sms_error(e)

        return {
            'success': True,
            'callSid': call_sid,
            'callStatus': call_status,
            'ownerNotificationSent': owner_notified,
            'autoReplySent': auto_reply_sent,
            'message': reply
        }

    async def handle_incoming_message(self, params: Dict[str, Any]) -> Dict[str, Any]:
        start = time.time()
        request_id = uuid.uuid4().hex[:8]
        from_number = params['From']
        to_number = params['To']
        body = params['Body']
        logger.info(f"[{request_id}] Processing text from {from_number} to {to_number}: {body[:40]}")

        business = await self.lookup_business(normalize_phone_e164(to_number))
        if business is None:
            raise AppError("Business not found", status_code=404)

        if not business.auto_reply_enabled:
            logger.info(f"[{request_id}] Auto-reply disabled for {business.name}")
            return {'success': True, 'message': 'Auto-reply disabled'}

        urgency = await self.responder.detect_urgency(body, business)
        owner_alert_sent = False
        if urgency.urgent:
            logger.info(f"[{request_id}] Urgent message detected via {urgency.source}")
            owner_alert_sent = await self.notify_owner(
                business,
                from_number,
                f"URGENT: Message from {from_number}: \"{body}\"\nDetected via: {urgency.source}",
                alert_type='urgent_message',
                detection_source=urgency.source,
                request_id=request_id
            )

        reply = await self.responder.sms_reply(body, business)
        logger.info(f"[{request_id}] Responding with {reply.source} reply")

        await self.log_call_event(
            call_sid=params.get('MessageSid', ''),
            from_number=from_number,
            to_number=to_number,
            business_id=business.id,
            event_type='sms.inbound',
            call_status='received',
            owner_notified=owner_alert_sent,
            payload=params
        )

        response = {
            'requestId': request_id,
            'businessId': business.id,
            'businessName': business.name,
            'matchedFaq': reply.matched_faq,
            'responseMessage': reply.message,
            'responseSource': reply.source,
            'urgent': urgency.urgent,
            'ownerAlertSent': owner_alert_sent,
        }

        try:
            result = await self.send_sms(
                from_number,
                reply.message,
                from_number=to_number,
                request_id=request_id,
                business_id=business.id,
                payload={'type': 'sms_auto_reply', 'responseSource': reply.source}
            )
        except AppError as e:
            logger.error(f"[{request_id}] Twilio error: {e.message}")
            return {'success': False, **response, 'error': f"Failed to send SMS: {e.message}"}

        return {
            'success': True,
            **response,
            'processingTime': int((time.time() - start) * 1000),
            'messageSid': result.sid
        }

    async def handle_voice_call(self, params: Dict[str, Any]) -> str:
        """Greet the caller, then dial the owner or hang up and text them"""
        call_sid = params.get('CallSid', '')
        to_number = normalize_phone_e164(params['To'])
        from_number = normalize_phone_e164(params['From'])
        logger.info(f"Incoming call from {from_number} to {to_number} (CallSid: {call_sid})")

        business = await self.lookup_business(to_number)
        business_name = business.name if business and business.name else GENERIC_BUSINESS_NAME

        forwarding_number = _override_forwarding(params) \
            or (business.forwarding_number if business else None) \
            or self.fallback_forwarding
        forwarding_number = normalize_phone_e164(forwarding_number) if forwarding_number else ''
        logger.info(f"Chosen forwarding number: {forwarding_number or 'None available'}")

        response = VoiceResponse()
        response.say(
            f"Hey, thanks for calling {business_name}. We're currently unavailable, but we'll text you shortly.",
            voice='woman'
        )

        if forwarding_number:
            dial = response.dial(
                action=self.missed_call_url(from_number, to_number, call_sid),
                method='POST',
                caller_id=to_number,
                timeout=DIAL_TIMEOUT_SECONDS
            )
            dial.number(forwarding_number)
        else:
            response.pause(length=1)
            response.hangup()
            await self._text_caller(business, business_name, from_number, call_sid)

        await self.log_call_event(
            call_sid=call_sid,
            from_number=from_number,
            to_number=to_number,
            business_id=business.id if business else None,
            event_type='voice.inbound',
            call_status=params.get('CallStatus', ''),
            owner_notified=False,
            payload=params
        )
        return str(response)

    def missed_call_url(self, from_number: str, to_number: str, call_sid: str) -> str:
        query = urlencode({'From': from_number, 'To': to_number, 'CallSid': call_sid})
        return f"{self.webhook_base_url}/api/missed-call?{query}"

    async def _text_caller(self, business: Optional[Business], business_name: str, from_number: str, call_sid: str) -> None:
        if business and not business.auto_reply_enabled:
            return
        message = (business.auto_reply_message if business else None) \
            or f"Thanks for calling {business_name}! We missed you, but reply here and we'll get right back to you."
        try:
            await self.send_sms(
                from_number,
                message,
                from_number=self.phone_number or None,
                request_id=call_sid,
                business_id=business.id if business else None,
                payload={'type': 'voice_auto_reply', 'callSid': call_sid}
            )
            logger.info(f"Auto-text sent to caller: {message}")
        except AppError as e:
            logger.error(f"Failed to send auto-text: {e.message}")

    async def handle_call_status(self, params: Dict[str, Any]) -> Dict[str, Any]:
        call_sid = params.get('CallSid', '')
        call_status = params.get('CallStatus', '')
        logger.info(f"Call status update for {call_sid}: {call_status}")

        await self.log_call_event(
            call_sid=call_sid,
            from_number=params.get('From', ''),
            to_number=params.get('To', ''),
            business_id=None,
            event_type='voice.status',
            call_status=call_status,
            owner_notified=False,
            payload=params
        )
        return {'success': True, 'callSid': call_sid, 'callStatus': call_status}
