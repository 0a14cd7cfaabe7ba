import pytest
from unittest.mock import AsyncMock, MagicMock

from api.services.business import Business, Faq
from api.services.responder import (
    NO_HOURS_TEXT,
    Responder,
    append_ordering_link,
    basic_template,
    format_hours,
    format_topics,
    match_faq,
    mentions_ordering,
    topics_for_business_type,
)
from lib.error_handler import AppError

def make_business(**fields):
    record = {'id': 'biz-1', 'name': 'Joe\'s Garage', 'business_type': 'auto_shop'}
    record.update(fields)
    return Business.from_record(record)

def test_format_hours_groups_consecutive_days():
    hours = {
        'Monday': '9-5', 'Tuesday': '9-5', 'Wednesday': '9-5',
        'Thursday': '9-7', 'Friday': '9-5',
        'Saturday': '10-2', 'Sunday': '10-2',
    }

    assert format_hours(hours) == (
        "Monday-Wednesday: 9-5, Thursday: 9-7, Friday: 9-5, Saturday and Sunday: 10-2"
    )

def test_format_hours_skips_closed_days():
    assert format_hours({'Monday': '9-5', 'Tuesday': '', 'Sunday': 'Closed'}) == "Monday: 9-5, Sunday: Closed"

def test_format_hours_does_not_group_across_closed_days():
    assert format_hours({'Monday': '9-5', 'Wednesday': '9-5', 'Friday': '9-5'}) == (
        "Monday: 9-5, Wednesday: 9-5, Friday: 9-5"
    )
    assert format_hours({'Monday': '9-5', 'Tuesday': '9-5', 'Wednesday': '', 'Thursday': '9-5'}) == (
        "Monday and Tuesday: 9-5, Thursday: 9-5"
    )

def test_format_hours_empty():
    assert format_hours({}) == NO_HOURS_TEXT
    assert format_hours(None) == NO_HOURS_TEXT

def test_topics_for_business_type():
    assert format_topics(topics_for_business_type('Auto Shop')) == "scheduling a repair or getting a quote"
    assert topics_for_business_type('bakery') == ['scheduling an appointment', 'requesting information']
    assert format_topics(['a', 'b', 'c']) == "a, b, or c"
    assert format_topics([]) == ''

def test_match_faq_normalises_punctuation_and_case():
    faqs = [Faq(question='Are you open on Sundays?', answer='Yes, 10-2.')]

    assert match_faq("hi!! are you   OPEN on sundays", faqs).answer == 'Yes, 10-2.'
    assert match_faq("are you open on mondays", faqs) is None

def test_mentions_ordering():
    assert mentions_ordering("Do you do DELIVERY?")
    assert not mentions_ordering("What time do you close?")

def test_append_ordering_link_only_once():
    link = 'https://order.example.com'

    assert append_ordering_link('Hi.', link) == 'Hi. Order online here: https://order.example.com'
    assert append_ordering_link(f'Order at {link}', link) == f'Order at {link}'
    assert append_ordering_link('Hi.', None) == 'Hi.'

def test_basic_template_industry_extras():
    garage = make_business(custom_settings={'quoteLink': 'https://quote.example.com'})
    clinic = make_business(name='Main St Clinic', business_type='healthcare')

    assert "For a service quote, visit https://quote.example.com." in basic_template(garage)
    assert "For medical emergencies, please call 911." in basic_template(clinic)

def test_business_from_record_tolerates_bad_json():
    business = make_business(
        faqs_json='not json',
        custom_settings='{"auto_reply_message": "Back soon", "owner_phone": "+15550000000"}',
        subscription_tier='platinum'
    )

    assert business.faqs == []
    assert business.auto_reply_message == 'Back soon'
    assert business.owner_phone == '+15550000000'
    assert business.subscription_tier == 'basic'
    assert business.auto_reply_enabled is True

@pytest.mark.asyncio
async def test_detect_urgency_prefers_keywords():
    openai = MagicMock()
    openai.classify_message_intent = AsyncMock(return_value=True)
    responder = Responder(openai)
    business = make_business(custom_alert_keywords=['tow'])

    urgency = await responder.detect_urgency("I need a TOW truck", business)

    assert urgency.urgent is True
    assert urgency.source == 'custom_keywords'
    openai.classify_message_intent.assert_not_awaited()

@pytest.mark.asyncio
async def test_detect_urgency_without_model():
    responder = Responder(None)

    urgency = await responder.detect_urgency("My brakes failed", make_business())

    assert urgency.urgent is False
    assert urgency.source is None

@pytest.mark.asyncio
async def test_sms_reply_when_fallback_disabled():
    openai = MagicMock()
    openai.generate_sms_response = AsyncMock(return_value="model text")
    responder = Responder(openai, enable_openai_fallback=False)

    reply = await responder.sms_reply("Can you fix my car?", make_business())

    assert reply.source == 'default_fallback'
    openai.generate_sms_response.assert_not_awaited()

@pytest.mark.asyncio
async def test_missed_call_reply_falls_back_on_model_error():
    openai = MagicMock()
    openai.generate_missed_call_response = AsyncMock(side_effect=AppError("usage limit exceeded", 429))
    responder = Responder(openai)
    business = make_business(subscription_tier='pro', hours_json='{"Monday": "8-6"}')

    message = await responder.missed_call_reply(business)

    assert message == (
        "Thanks for calling Joe's Garage. We're currently unavailable. "
        "Please call back during our business hours: Monday: 8-6."
    )
