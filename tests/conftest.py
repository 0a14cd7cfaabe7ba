import copy
import json
import pytest
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.routes import Services, create_app
from api.services.billing import BillingService
from api.services.responder import Responder
from api.services.sms import SMSService
from lib.config import Settings
from lib.rate_limiter import RateLimiter
from lib.twilio_client import SmsResult

BUSINESS_PHONE = '+15550001111'
TWILIO_PHONE = '+15550002222'
OWNER_PHONE = '+15559990000'
CUSTOMER_PHONE = '+15551234567'

BUSINESS_RECORD = {
    'id': 'biz-123',
    'name': 'Mock Business',
    'business_type': 'restaurant',
    'public_phone': BUSINESS_PHONE,
    'twilio_phone': TWILIO_PHONE,
    'subscription_tier': 'basic',
    'hours_json': {
        'Monday': '9am-5pm',
        'Tuesday': '9am-5pm',
        'Wednesday': '9am-5pm',
        'Thursday': '9am-5pm',
        'Friday': '9am-5pm',
        'Saturday': '10am-2pm',
        'Sunday': '10am-2pm',
    },
    'faqs_json': json.dumps([
        {'question': 'What are your hours?', 'answer': 'We are open 9am-5pm on weekdays.'},
        {'question': 'Do you take reservations', 'answer': 'Yes, call us to book a table.'},
    ]),
    'custom_settings': {'ownerPhone': OWNER_PHONE},
    'online_ordering_url': None,
    'custom_alert_keywords': ['emergency'],
    'created_at': '2024-01-01T00:00:00Z',
}

@pytest.fixture
def business_record():
    return copy.deepcopy(BUSINESS_RECORD)

@pytest.fixture
def mock_database(business_record):
    database = MagicMock()
    database.get_business_by_phone.return_value = business_record
    database.get_business_by_id.return_value = business_record
    database.get_business_by_stripe_customer.return_value = business_record
    database.create_business.return_value = {'id': 'biz-new'}
    database.update_business.return_value = business_record
    return database

@pytest.fixture
def mock_twilio():
    twilio = MagicMock()
    twilio.send_message.return_value = SmsResult(
        sid='SM123', status='queued', to=CUSTOMER_PHONE, from_=TWILIO_PHONE, body='sent'
    )
    twilio.validate_request.return_value = True
    return twilio

@pytest.fixture
def mock_openai():
    openai = MagicMock()
    openai.generate_sms_response = AsyncMock(return_value=None)
    openai.classify_message_intent = AsyncMock(return_value=False)
    openai.generate_missed_call_response = AsyncMock(return_value="AI generated missed call reply")
    return openai

@pytest.fixture
def settings():
    return Settings(
        environment='test',
        validate_twilio_signature=False,
        twilio_auth_token='test-token',
        twilio_phone_number=TWILIO_PHONE,
        webhook_base_url='https://api.example.com',
        default_owner_phone='',
        fallback_forwarding='',
        inbound_rate_limit=3,
        inbound_rate_window_seconds=600,
        stripe_secret_key='sk_test',
        stripe_webhook_secret='whsec_test',
        stripe_price_basic='price_basic',
        stripe_price_pro='price_pro',
        stripe_price_enterprise='price_enterprise',
    )

@pytest.fixture
def services(settings, mock_database, mock_twilio, mock_openai):
    monitor = MagicMock()
    sms_service = SMSService(
        twilio_client=mock_twilio,
        database=mock_database,
        responder=Responder(mock_openai, enable_openai_fallback=True),
        monitor=monitor,
        phone_number=TWILIO_PHONE,
        default_owner_phone=settings.default_owner_phone,
        fallback_forwarding=settings.fallback_forwarding,
        webhook_base_url=settings.webhook_base_url
    )
    billing_service = BillingService(
        database=mock_database,
        secret_key=settings.stripe_secret_key,
        webhook_secret=settings.stripe_webhook_secret,
        price_ids=settings.stripe_price_ids
    )
    return Services(
        settings=settings,
        sms=sms_service,
        billing=billing_service,
        database=mock_database,
        twilio=mock_twilio,
        monitor=monitor,
        inbound_limiter=RateLimiter(settings.inbound_rate_limit, settings.inbound_rate_window_seconds)
    )

@pytest.fixture
def test_client(services):
    app = create_app(services)
    app.config['TESTING'] = True
    return app.test_client()
