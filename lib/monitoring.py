import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration

logger = logging.getLogger(__name__)

def init_sentry(dsn: str, environment: str) -> bool:
    """Initialise Sentry when a DSN is configured"""
    if not dsn:
        logger.info("SENTRY_DSN not set, errors will only be logged")
        return False
    sentry_sdk.init(
        dsn=dsn,
        integrations=[FlaskIntegration()],
        traces_sample_rate=1.0,
        environment=environment,
    )
    logger.info("Sentry initialized")
    return True

class Monitor:
    """Records SMS, owner alert and OpenAI usage events and reports failures to Sentry"""

    def __init__(self, database=None, sentry_enabled: bool = False):
        self.database = database
        self.sentry_enabled = sentry_enabled

    def capture_exception(self, error: Exception, **context) -> None:
        if self.sentry_enabled:
            with sentry_sdk.new_scope() as scope:
                for key, value in context.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_exception(error)
        else:
            logger.error(f"Captured exception: {str(error)} {context}")

    def capture_message(self, message: str, level: str = 'info', **context) -> None:
        if self.sentry_enabled:
            with sentry_sdk.new_scope() as scope:
                for key, value in context.items():
                    scope.set_extra(key, value)
                sentry_sdk.capture_message(message, level=level)
        else:
            logger.log(logging.getLevelName(level.upper()), f"Captured message: {message} {context}")

    def track_sms_event(
        self,
        message_sid: str,
        from_number: str,
        to_number: str,
        business_id: Optional[str],
        status: str,
        request_id: str = '',
        body_length: int = 0,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        record = {
            'message_sid': message_sid,
            'from_number': from_number,
            'to_number': to_number,
            'business_id': business_id,
            'status': status,
            'error_code': error_code,
            'error_message': error_message,
            'request_id': request_id,
            'body_length': body_length,
            'payload': payload or {}
        }
        row = self._insert('insert_sms_event', record)

        if status in ('failed', 'undelivered'):
            self.capture_message(
                f"SMS delivery failure: {error_message or 'Unknown error'}",
                'error',
                message_sid=message_sid,
                to_number=to_number,
                business_id=business_id,
                error_code=error_code,
                request_id=request_id
            )
        return row

    def track_owner_alert(
        self,
        business_id: Optional[str],
        owner_phone: str,
        customer_phone: str,
        alert_type: str,
        message_content: str,
        detection_source: str,
        message_sid: str = '',
        delivered: bool = True,
        error_message: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        record = {
            'business_id': business_id,
            'owner_phone': owner_phone,
            'customer_phone': customer_phone,
            'alert_type': alert_type,
            'message_content': message_content,
            'detection_source': detection_source,
            'message_sid': message_sid,
            'delivered': delivered,
            'error_message': error_message
        }
        row = self._insert('insert_owner_alert', record)

        if not delivered:
            self.capture_message(
                f"Failed to deliver owner alert: {error_message or 'Unknown error'}",
                'error',
                business_id=business_id,
                owner_phone=owner_phone,
                alert_type=alert_type,
                detection_source=detection_source
            )
        return row

    def track_openai_usage(
        self,
        endpoint: str,
        business_id: Optional[str],
        tokens_used: int,
        cost_estimate: float,
        model: str,
        request_id: str = '',
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        record = {
            'service': 'openai',
            'endpoint': endpoint,
            'business_id': business_id,
            'tokens_used': tokens_used,
            'cost_estimate': cost_estimate,
            'model': model,
            'request_id': request_id,
            'reset_date': _today(),
            'metadata': metadata or {}
        }
        return self._insert('insert_api_usage', record)

    def check_openai_usage_limit(self, business_id: Optional[str], token_limit: int) -> bool:
        """True when the business has spent its daily token budget"""
        if not business_id or self.database is None:
            return False
        try:
            total = self.database.tokens_used_on(business_id, _today())
        except Exception as e:
            logger.error(f"Error checking OpenAI usage limit: {str(e)}")
            self.capture_exception(e, context='check_openai_usage_limit', business_id=business_id)
            return False

        if total > token_limit * 0.8:
            logger.warning(f"Business {business_id} is approaching OpenAI usage limit: {total}/{token_limit} tokens")
            if total > token_limit * 0.9:
                self.capture_message(
                    f"Business {business_id} is at 90% of OpenAI usage limit: {total}/{token_limit} tokens",
                    'warning',
                    business_id=business_id
                )
        return total >= token_limit

    def _insert(self, method: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if self.database is None:
            logger.info(f"No database configured, skipping {method}: {record}")
            return None
        try:
            return getattr(self.database, method)(record)
        except Exception as e:
            logger.error(f"Monitoring write failed ({method}): {str(e)}")
            self.capture_exception(e, context=method)
            return None

def _today() -> str:
    return datetime.now(timezone.utc).strftime('%Y-%m-%d')
