from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Any
import logging
from supabase import create_client, Client

from lib.config import get_settings
from lib.error_handler import AppError

logger = logging.getLogger(__name__)

class Database:
    """Thin wrapper over the Supabase tables the responder reads and writes"""

    BUSINESSES = 'businesses'
    CALL_EVENTS = 'call_events'
    SMS_EVENTS = 'sms_events'
    OWNER_ALERTS = 'owner_alerts'
    API_USAGE = 'api_usage'
    RATE_LIMITS = 'rate_limits'

    def __init__(self, client: Optional[Client] = None):
        if client is None:
            settings = get_settings()
            client = create_client(settings.supabase_url, settings.supabase_key)
        self.supabase = client

    # Businesses

    def get_business_by_phone(self, phone_number: str) -> Optional[Dict[str, Any]]:
        """Find the business whose public or Twilio number matches, newest first"""
        try:
            result = self.supabase.table(self.BUSINESSES)\
                .select('*')\
                .or_(f"public_phone.eq.{phone_number},twilio_phone.eq.{phone_number}")\
                .order('created_at', desc=True)\
                .execute()
        except Exception as e:
            raise AppError(f"Business lookup error: {str(e)}", status_code=500)

        rows = result.data or []
        if not rows:
            logger.info(f"No business found with phone number {phone_number}")
            return None
        if len(rows) > 1:
            logger.info(f"Found {len(rows)} businesses with phone number {phone_number}, using the most recent one")
        return rows[0]

    def get_business_by_id(self, business_id: str) -> Optional[Dict[str, Any]]:
        try:
            result = self.supabase.table(self.BUSINESSES)\
                .select('*')\
                .eq('id', business_id)\
                .limit(1)\
                .execute()
        except Exception as e:
            raise AppError(f"Error retrieving business: {str(e)}", status_code=500)
        return result.data[0] if result.data else None

    def get_business_by_stripe_customer(self, customer_id: str) -> Optional[Dict[str, Any]]:
        try:
            result = self.supabase.table(self.BUSINESSES)\
                .select('*')\
                .eq('stripe_customer_id', customer_id)\
                .limit(1)\
                .execute()
        except Exception as e:
            raise AppError(f"Error retrieving business: {str(e)}", status_code=500)
        return result.data[0] if result.data else None

    def create_business(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.supabase.table(self.BUSINESSES).insert(fields).execute()
        except Exception as e:
            raise AppError(f"Error creating business: {str(e)}", status_code=500)
        if not result.data:
            raise AppError("Error creating business: no row returned", status_code=500)
        return result.data[0]

    def update_business(self, business_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        try:
            result = self.supabase.table(self.BUSINESSES)\
                .update(fields)\
                .eq('id', business_id)\
                .execute()
        except Exception as e:
            raise AppError(f"Error updating business: {str(e)}", status_code=500)
        if not result.data:
            raise AppError(f"Business {business_id} not found", status_code=404)
        return result.data[0]

    # Event logs

    def log_call_event(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Append a call/SMS webhook event; failures are logged, never raised"""
        return self._insert(self.CALL_EVENTS, event)

    def insert_sms_event(self, event: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._insert(self.SMS_EVENTS, event)

    def insert_owner_alert(self, alert: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._insert(self.OWNER_ALERTS, alert)

    def insert_api_usage(self, usage: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        return self._insert(self.API_USAGE, usage)

    def tokens_used_on(self, business_id: str, reset_date: str, service: str = 'openai') -> int:
        result = self.supabase.table(self.API_USAGE)\
            .select('tokens_used')\
            .eq('service', service)\
            .eq('business_id', business_id)\
            .eq('reset_date', reset_date)\
            .execute()
        return sum((row.get('tokens_used') or 0) for row in (result.data or []))

    # Rate limits

    def is_rate_limited(self, phone: str, key: str) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        result = self.supabase.table(self.RATE_LIMITS)\
            .select('*')\
            .eq('phone', phone)\
            .eq('key', key)\
            .gt('expires_at', now)\
            .limit(1)\
            .execute()
        return bool(result.data)

    def set_rate_limit(self, phone: str, key: str, expires_in_seconds: int) -> None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in_seconds)
        self.supabase.table(self.RATE_LIMITS)\
            .upsert({
                'phone': phone,
                'key': key,
                'expires_at': expires_at.isoformat()
            }, on_conflict='phone,key')\
            .execute()

    def _insert(self, table: str, record: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        try:
            result = self.supabase.table(table).insert(record).execute()
            return result.data[0] if result.data else None
        except Exception as e:
            logger.error(f"Failed to insert into {table}: {str(e)}")
            return None
