import json
import logging
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from lib.error_handler import AppError
from lib.twilio_client import normalize_phone_e164

logger = logging.getLogger(__name__)

TIERS = ('basic', 'pro', 'enterprise')

class Faq(BaseModel):
    question: str = ''
    answer: str = ''

class Business(BaseModel):
    """A business row from Supabase, with custom_settings flattened out"""

    id: str
    name: str = ''
    business_type: str = 'local'
    public_phone: Optional[str] = None
    twilio_phone: Optional[str] = None
    address: Optional[str] = None
    website: Optional[str] = None
    subscription_tier: str = 'basic'
    subscription_status: Optional[str] = None
    hours: Dict[str, Any] = Field(default_factory=dict)
    faqs: List[Faq] = Field(default_factory=list)
    custom_settings: Dict[str, Any] = Field(default_factory=dict)
    custom_alert_keywords: List[str] = Field(default_factory=list)
    ordering_link: Optional[str] = None
    owner_phone: Optional[str] = None
    forwarding_number: Optional[str] = None

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Business':
        settings = _parse_json(record.get('custom_settings'), {}) or {}
        if not isinstance(settings, dict):
            settings = {}

        tier = (record.get('subscription_tier') or 'basic').lower()
        if tier not in TIERS:
            logger.warning(f"Unknown subscription tier '{tier}' for business {record.get('id')}, using basic")
            tier = 'basic'

        hours = _parse_json(record.get('hours_json'), {})
        keywords = _parse_json(record.get('custom_alert_keywords'), [])

        return cls(
            id=str(record['id']),
            name=record.get('name') or '',
            business_type=record.get('business_type') or 'local',
            public_phone=record.get('public_phone'),
            twilio_phone=record.get('twilio_phone'),
            address=record.get('address'),
            website=record.get('website'),
            subscription_tier=tier,
            subscription_status=record.get('subscription_status'),
            hours=hours if isinstance(hours, dict) else {},
            faqs=_parse_faqs(record.get('faqs_json'), record.get('id')),
            custom_settings=settings,
            custom_alert_keywords=[k for k in keywords if isinstance(k, str) and k.strip()]
                                  if isinstance(keywords, list) else [],
            ordering_link=record.get('online_ordering_url') or _setting(settings, 'orderingLink', 'ordering_link'),
            owner_phone=_setting(settings, 'ownerPhone', 'owner_phone') or record.get('owner_phone'),
            forwarding_number=_setting(settings, 'forwardingNumber', 'forwarding_number')
                              or record.get('forwarding_number'),
        )

    @property
    def auto_reply_enabled(self) -> bool:
        value = _setting(self.custom_settings, 'autoReplyEnabled', 'auto_reply_enabled')
        return value is not False

    @property
    def auto_reply_message(self) -> Optional[str]:
        return _setting(self.custom_settings, 'autoReplyMessage', 'auto_reply_message') or None

    @property
    def fallback_message(self) -> Optional[str]:
        return _setting(self.custom_settings, 'fallbackMessage', 'fallback_message') or None

    @property
    def booking_link(self) -> Optional[str]:
        return _setting(self.custom_settings, 'bookingLink', 'booking_link') or None

    @property
    def quote_link(self) -> Optional[str]:
        return _setting(self.custom_settings, 'quoteLink', 'quote_link') or None

    @property
    def additional_info(self) -> Optional[str]:
        return _setting(self.custom_settings, 'additionalInfo', 'additional_info') or None

    def prompt_context(self, hours_text: str) -> Dict[str, Any]:
        return {
            'hours': hours_text,
            'location': self.address,
            'website': self.website,
            'ordering_link': self.ordering_link,
        }

def _setting(settings: Dict[str, Any], camel: str, snake: str) -> Any:
    if camel in settings:
        return settings[camel]
    return settings.get(snake)

def _parse_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return default
    return value

def _parse_faqs(value: Any, business_id: Any) -> List[Faq]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except ValueError as e:
            logger.error(f"Error parsing FAQs for business {business_id}: {str(e)}")
            return []
    if not isinstance(value, list):
        return []
    return [
        Faq(question=str(faq['question']), answer=str(faq.get('answer') or ''))
        for faq in value if isinstance(faq, dict) and faq.get('question')
    ]

REQUIRED_INFO_FIELDS = ('name', 'phoneNumber', 'industry', 'hoursJson')

def save_business_info(database, data: Dict[str, Any]) -> Dict[str, Any]:
    """Create or update a business from the settings form"""
    missing = [field for field in REQUIRED_INFO_FIELDS if not data.get(field)]
    if missing:
        raise AppError(
            f"The following required fields are missing: {', '.join(missing)}",
            status_code=400,
            details={'missingFields': missing}
        )

    team_size = data.get('teamSize')
    faqs = data.get('faqs')
    fields = {
        'name': data['name'],
        'public_phone': normalize_phone_e164(str(data['phoneNumber'])),
        'business_type': data['industry'],
        'hours_json': data['hoursJson'],
        'website': data.get('website') or '',
        'team_size': int(team_size) if str(team_size or '').isdigit() else 0,
        'address': data.get('address') or '',
        'email': data.get('email') or '',
        'online_ordering_url': data.get('onlineOrderingLink') or None,
        'reservation_link': data.get('reservationLink') or None,
        'faqs_json': faqs if faqs is None or isinstance(faqs, str) else json.dumps(faqs),
    }

    record_id = data.get('recordId')
    if data.get('customAutoTextMessage'):
        settings: Dict[str, Any] = {}
        if record_id:
            existing = database.get_business_by_id(record_id)
            if existing:
                settings = _parse_json(existing.get('custom_settings'), {}) or {}
        fields['custom_settings'] = {**settings, 'autoReplyMessage': data['customAutoTextMessage']}

    if record_id:
        record = database.update_business(record_id, fields)
        logger.info(f"Updated business {record_id}")
    else:
        record = database.create_business(fields)
        logger.info(f"Created business {record.get('id')}")
    return record
